from decimal import Decimal
from unittest.mock import Mock, patch

from django.test import SimpleTestCase, TestCase

from core.exceptions import ExchangeApiError, ExchangeTransportError
from core.models import Exchange, Trader
from exchanges import mappers
from exchanges.binance import BinanceFuturesMapper


class BinanceFuturesMapperTest(SimpleTestCase):
    def setUp(self):
        self.gateway = Mock()
        self.mapper = BinanceFuturesMapper(self.gateway, position_id=4)

    def test_place_limit_order_sends_gtc_and_reduce_only(self):
        self.mapper.place_order(
            "BTCUSDT", "SELL", "LIMIT", Decimal("0.010"), price=Decimal("101.5"), reduce_only=True, client_order_id="abc"
        )

        self.gateway.request.assert_called_once_with(
            "POST",
            "/fapi/v1/order",
            signed=True,
            params={
                "symbol": "BTCUSDT",
                "side": "SELL",
                "type": "LIMIT",
                "quantity": Decimal("0.010"),
                "newClientOrderId": "abc",
                "price": Decimal("101.5"),
                "timeInForce": "GTC",
                "reduceOnly": True,
            },
            position_id=4,
        )

    def test_market_order_has_no_price(self):
        self.mapper.place_order("BTCUSDT", "BUY", "MARKET", Decimal("1"))
        params = self.gateway.request.call_args.kwargs["params"]
        self.assertNotIn("price", params)
        self.assertNotIn("reduceOnly", params)

    def test_get_order_by_client_id(self):
        self.mapper.get_order("BTCUSDT", client_order_id="abc")
        params = self.gateway.request.call_args.kwargs["params"]
        self.assertEqual(params, {"symbol": "BTCUSDT", "origClientOrderId": "abc"})

    def test_account_balance_maps_available_balance_by_asset(self):
        self.gateway.request.return_value = [
            {"asset": "USDT", "balance": "120.5", "availableBalance": "100.25"},
            {"asset": "BNB", "balance": "0.1"},
        ]
        self.assertEqual(
            self.mapper.get_account_balance(),
            {"USDT": Decimal("100.25"), "BNB": Decimal("0.1")},
        )

    def test_mark_price_is_an_unsigned_call(self):
        self.gateway.request.return_value = {"symbol": "BTCUSDT", "markPrice": "64000.10"}
        self.assertEqual(self.mapper.get_mark_price("BTCUSDT"), Decimal("64000.10"))
        self.assertFalse(self.gateway.request.call_args.kwargs["signed"])

    def test_leverage_brackets_for_symbol(self):
        brackets = [{"initialLeverage": 20, "notionalCap": 50000}]
        self.gateway.request.return_value = [
            {"symbol": "ETHUSDT", "brackets": []},
            {"symbol": "BTCUSDT", "brackets": brackets},
        ]
        self.assertEqual(self.mapper.get_leverage_brackets("BTCUSDT"), brackets)

    def test_missing_leverage_brackets_raise(self):
        self.gateway.request.return_value = []
        with self.assertRaises(ExchangeApiError):
            self.mapper.get_leverage_brackets("BTCUSDT")

    def test_positions_are_filtered_by_symbol(self):
        self.gateway.request.return_value = [
            {"symbol": "BTCUSDT", "positionAmt": "0.5"},
            {"symbol": "ETHUSDT", "positionAmt": "1"},
        ]
        self.assertEqual(self.mapper.get_positions("BTCUSDT"), [{"symbol": "BTCUSDT", "positionAmt": "0.5"}])

    @patch("time.sleep")
    def test_reads_are_retried_on_transport_errors(self, _sleep):
        self.gateway.request.side_effect = [ExchangeTransportError("reset"), [{"orderId": 1}]]
        self.assertEqual(self.mapper.get_open_orders("BTCUSDT"), [{"orderId": 1}])
        self.assertEqual(self.gateway.request.call_count, 2)

    def test_writes_are_not_retried(self):
        self.gateway.request.side_effect = ExchangeTransportError("reset")
        with self.assertRaises(ExchangeTransportError):
            self.mapper.cancel_order("BTCUSDT", 123)
        self.assertEqual(self.gateway.request.call_count, 1)


class MapperFactoryTest(TestCase):
    def test_mapper_is_resolved_by_exchange_canonical(self):
        exchange = Exchange.objects.create(canonical="binance", name="Binance")
        trader = Trader.objects.create(name="alice", exchange=exchange, api_key="k", api_secret="s")

        mapper = mappers.get_mapper(trader, position_id=3)

        self.assertIsInstance(mapper, BinanceFuturesMapper)
        self.assertEqual(mapper.position_id, 3)
        self.assertEqual(mapper.gateway.api_secret, "s")

    def test_unknown_exchange_is_rejected(self):
        exchange = Exchange.objects.create(canonical="kraken", name="Kraken")
        trader = Trader.objects.create(name="bob", exchange=exchange)
        with self.assertRaises(ValueError):
            mappers.get_mapper(trader)
