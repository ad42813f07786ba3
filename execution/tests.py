from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase, override_settings

from core.exceptions import ExchangeApiError
from execution.models import Order, Position
from execution.test_utils import FakeMapper, ladder_configuration, make_symbol, make_trader
from jobs.models import JobQueueEntry
from jobs.poller import JobPoller


def drain_queue(max_cycles=30):
    """Run poller cycles (eager Celery) until nothing more can be leased."""
    poller = JobPoller(max_parallel=3)
    for _ in range(max_cycles):
        if not poller.poll_once():
            return


@override_settings(ORDER_DISPATCH_RETRY_SECONDS=0, ORDER_DISPATCH_MAX_DEFERRALS=10)
class PositionLifecycleTest(TestCase):
    def setUp(self):
        self.trader = make_trader()
        self.symbol = make_symbol(self.trader.exchange)
        self.mapper = FakeMapper(mark_price="100")
        self.leg_states_at_profit = None
        original_place = self.mapper.place_order

        def recording_place(symbol, side, order_type, quantity, **kwargs):
            if kwargs.get("reduce_only") and order_type == "LIMIT":
                self.leg_states_at_profit = dict(
                    Order.objects.exclude(type=Order.Type.PROFIT).values_list("type", "status")
                )
            return original_place(symbol, side, order_type, quantity, **kwargs)

        self.mapper.place_order = recording_place
        patcher = patch("exchanges.mappers.get_mapper", return_value=self.mapper)
        patcher.start()
        self.addCleanup(patcher.stop)

    def _open_position(self):
        return Position.objects.create(
            trader=self.trader,
            exchange_symbol=self.symbol,
            total_trade_amount=Decimal("1000"),
            trade_configuration=ladder_configuration(),
        )

    def test_ladder_is_placed_in_order_and_position_syncs(self):
        position = self._open_position()

        drain_queue()

        position.refresh_from_db()
        self.assertEqual(position.status, Position.Status.SYNCED)
        self.assertEqual(position.leverage, 20)
        self.assertEqual(position.initial_mark_price, Decimal("100"))
        placed = [(p["args"][1], p["args"][2], p["reduce_only"]) for p in self.mapper.placed()]
        self.assertEqual(placed, [("BUY", "LIMIT", False), ("BUY", "MARKET", False), ("SELL", "LIMIT", True)])
        self.assertEqual(
            self.leg_states_at_profit,
            {Order.Type.LIMIT: Order.Status.SYNCED, Order.Type.MARKET: Order.Status.SYNCED},
        )
        self.assertEqual(
            set(position.orders.values_list("status", flat=True)),
            {Order.Status.SYNCED},
        )
        profit = position.orders.get(type=Order.Type.PROFIT)
        self.assertEqual(profit.entry_average_price, Decimal("105"))
        self.assertEqual(profit.entry_quantity, Decimal("5"))
        self.assertFalse(JobQueueEntry.objects.exclude(status=JobQueueEntry.Status.COMPLETED).exists())

    def test_failed_leg_rolls_the_position_back(self):
        original_place = self.mapper.place_order

        def reject_market(symbol, side, order_type, quantity, **kwargs):
            if order_type == "MARKET":
                raise ExchangeApiError("Margin is insufficient.", status_code=400, code=-2019)
            return original_place(symbol, side, order_type, quantity, **kwargs)

        self.mapper.place_order = reject_market
        position = self._open_position()
        # The resting LIMIT leg is still open when the rollback runs.
        self.mapper.get_open_orders = lambda symbol: [
            {"orderId": o.order_exchange_system_id} for o in position.orders.filter(status=Order.Status.SYNCED)
        ]

        drain_queue()

        position.refresh_from_db()
        self.assertEqual(position.status, Position.Status.CANCELLED)
        self.assertIn("Margin is insufficient", position.comments)
        self.assertIsNotNone(position.closed_at)
        statuses = dict(position.orders.values_list("type", "status"))
        self.assertEqual(statuses[Order.Type.MARKET], Order.Status.ERROR)
        self.assertEqual(statuses[Order.Type.PROFIT], Order.Status.CANCELLED)
        self.assertEqual(statuses[Order.Type.LIMIT], Order.Status.CANCELLED)
        self.assertEqual([c[0] for c in self.mapper.calls if c[0] == "cancel_order"], ["cancel_order"])

        group = JobQueueEntry.objects.filter(group_id=position.dispatch_group_id)
        self.assertTrue(group.exists())
        self.assertEqual(set(group.values_list("status", flat=True)), {JobQueueEntry.Status.COMPLETED})
        self.assertFalse(JobQueueEntry.objects.exclude(status=JobQueueEntry.Status.COMPLETED).exists())
