import uuid

from django.db import models

from core.models import ExchangeSymbol, TimeStampedModel, Trader


class Position(TimeStampedModel):
    class Status(models.TextChoices):
        NEW = "new", "New"
        SYNCING = "syncing", "Syncing"
        SYNCED = "synced", "Synced"
        LOCKED = "locked", "Locked"
        CLOSED = "closed", "Closed"
        CANCELLED = "cancelled", "Cancelled"
        ERROR = "error", "Error"

    class Side(models.TextChoices):
        LONG = "LONG", "Long"
        SHORT = "SHORT", "Short"

    TERMINAL_STATUSES = (Status.CLOSED, Status.CANCELLED, Status.ERROR)

    trader = models.ForeignKey(Trader, on_delete=models.PROTECT, related_name="positions")
    exchange_symbol = models.ForeignKey(
        ExchangeSymbol,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="positions",
    )
    status = models.CharField(max_length=12, choices=Status.choices, default=Status.NEW)
    side = models.CharField(max_length=5, choices=Side.choices, null=True, blank=True)
    initial_mark_price = models.DecimalField(max_digits=28, decimal_places=10, null=True, blank=True)
    total_trade_amount = models.DecimalField(max_digits=28, decimal_places=10, null=True, blank=True)
    leverage = models.PositiveIntegerField(null=True, blank=True)
    initial_profit_percentage_ratio = models.DecimalField(max_digits=10, decimal_places=4, null=True, blank=True)
    unrealized_pnl = models.DecimalField(max_digits=28, decimal_places=10, null=True, blank=True)
    realized_pnl = models.DecimalField(max_digits=28, decimal_places=10, null=True, blank=True)
    trade_configuration = models.JSONField(default=dict, blank=True)
    dispatch_group_id = models.CharField(max_length=64, blank=True, default="")
    comments = models.TextField(blank=True, default="")
    closed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "positions"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["trader", "status"], name="positions_trader_status_idx"),
            models.Index(fields=["exchange_symbol", "status"], name="positions_symbol_status_idx"),
        ]

    def __str__(self) -> str:  # pragma: no cover - trivial
        symbol = self.exchange_symbol.symbol if self.exchange_symbol_id else "unbound"
        return f"#{self.pk} {symbol} {self.side or '-'} [{self.status}]"

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES


class Order(TimeStampedModel):
    class Type(models.TextChoices):
        MARKET = "MARKET", "Market"
        LIMIT = "LIMIT", "Limit"
        PROFIT = "PROFIT", "Profit"
        CANCEL_POSITION = "CANCEL-POSITION", "Cancel position"

    class Status(models.TextChoices):
        NEW = "new", "New"
        SYNCED = "synced", "Synced"
        FILLED = "filled", "Filled"
        CANCELLED = "cancelled", "Cancelled"
        ERROR = "error", "Error"

    position = models.ForeignKey(Position, on_delete=models.CASCADE, related_name="orders")
    uuid = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    type = models.CharField(max_length=16, choices=Type.choices)
    status = models.CharField(max_length=12, choices=Status.choices, default=Status.NEW)
    price_ratio_percentage = models.DecimalField(max_digits=10, decimal_places=4, default=0)
    amount_divider = models.DecimalField(max_digits=10, decimal_places=4, default=1)
    entry_average_price = models.DecimalField(max_digits=28, decimal_places=10, null=True, blank=True)
    entry_quantity = models.DecimalField(max_digits=28, decimal_places=10, null=True, blank=True)
    filled_average_price = models.DecimalField(max_digits=28, decimal_places=10, null=True, blank=True)
    filled_quantity = models.DecimalField(max_digits=28, decimal_places=10, null=True, blank=True)
    order_exchange_system_id = models.CharField(max_length=64, blank=True, default="", db_index=True)
    api_result = models.JSONField(null=True, blank=True)
    error_message = models.TextField(blank=True, default="")

    class Meta:
        db_table = "orders"
        ordering = ["id"]
        indexes = [
            models.Index(fields=["position", "type", "status"], name="orders_position_type_idx"),
        ]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"#{self.pk} {self.type} [{self.status}] pos={self.position_id}"

    @property
    def client_order_id(self) -> str:
        return self.uuid.hex
