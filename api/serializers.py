from rest_framework import serializers

from core.models import ExchangeSymbol
from execution.models import Order, Position
from jobs.models import JobQueueEntry


class ExchangeSymbolSerializer(serializers.ModelSerializer):
    exchange = serializers.CharField(source="exchange.canonical", read_only=True)

    class Meta:
        model = ExchangeSymbol
        fields = "__all__"


class OrderSerializer(serializers.ModelSerializer):
    client_order_id = serializers.CharField(read_only=True)

    class Meta:
        model = Order
        fields = "__all__"


class PositionSerializer(serializers.ModelSerializer):
    trader = serializers.CharField(source="trader.name", read_only=True)
    symbol = serializers.CharField(source="exchange_symbol.symbol", read_only=True, default=None)
    orders = OrderSerializer(many=True, read_only=True)

    class Meta:
        model = Position
        fields = "__all__"


class JobQueueEntrySerializer(serializers.ModelSerializer):
    class Meta:
        model = JobQueueEntry
        fields = "__all__"
