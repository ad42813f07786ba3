from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.core.management import call_command
from django.test import TestCase

from core.exceptions import ExchangeApiError, RepricingError
from execution.models import Order, Position
from execution.repricing import enqueue_repricing, positions_with_possible_fills, reprice_position
from execution.tasks import scan_positions_for_repricing
from execution.test_utils import FakeMapper, make_symbol, make_trader
from jobs.models import JobQueueEntry


def _exchange_order(order_id, status="NEW", executed="0", avg="0"):
    return {"orderId": order_id, "clientOrderId": None, "status": status, "executedQty": executed, "avgPrice": avg}


class RepricePositionTest(TestCase):
    def setUp(self):
        self.trader = make_trader()
        self.symbol = make_symbol(self.trader.exchange, tick_size="0.01")
        self.mapper = FakeMapper()
        patcher = patch("exchanges.mappers.get_mapper", return_value=self.mapper)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.position = self._position(Position.Side.LONG)

    def _position(self, side):
        position = Position.objects.create(
            trader=self.trader,
            exchange_symbol=self.symbol,
            status=Position.Status.SYNCED,
            side=side,
            initial_mark_price=Decimal("20"),
            initial_profit_percentage_ratio=Decimal("5"),
        )
        self.limit = Order.objects.create(
            position=position, type=Order.Type.LIMIT, status=Order.Status.SYNCED,
            order_exchange_system_id="1", entry_average_price=Decimal("10"), entry_quantity=Decimal("2"),
        )
        self.market = Order.objects.create(
            position=position, type=Order.Type.MARKET, status=Order.Status.SYNCED, order_exchange_system_id="2",
        )
        self.profit = Order.objects.create(
            position=position, type=Order.Type.PROFIT, status=Order.Status.SYNCED, order_exchange_system_id="3",
            price_ratio_percentage=Decimal("5"), entry_average_price=Decimal("21"), entry_quantity=Decimal("3"),
        )
        self.mapper.orders = {
            1: _exchange_order(1, "FILLED", "2", "10"),
            2: _exchange_order(2, "FILLED", "3", "20"),
            3: _exchange_order(3),
        }
        return position

    def test_profit_leg_moves_to_weighted_average_plus_ratio(self):
        self.assertEqual(reprice_position(self.position.pk), "amended")

        self.profit.refresh_from_db()
        self.assertEqual(self.profit.filled_average_price, Decimal("16"))
        self.assertEqual(self.profit.filled_quantity, Decimal("5"))
        self.assertEqual(self.profit.entry_average_price, Decimal("16.8"))
        self.assertEqual(self.profit.entry_quantity, Decimal("5"))
        self.assertEqual(
            self.mapper.calls[-1],
            ("modify_order", ("BTCUSDT", "3", "SELL", Decimal("5"), Decimal("16.8")), {}),
        )
        self.limit.refresh_from_db()
        self.assertEqual(self.limit.filled_quantity, Decimal("2"))
        self.position.refresh_from_db()
        self.assertEqual(self.position.status, Position.Status.SYNCED)

    def test_short_position_subtracts_ratio(self):
        Position.objects.filter(pk=self.position.pk).update(side=Position.Side.SHORT)

        reprice_position(self.position.pk)

        self.assertEqual(
            self.mapper.calls[-1],
            ("modify_order", ("BTCUSDT", "3", "BUY", Decimal("5"), Decimal("15.2")), {}),
        )

    def test_repeated_run_does_not_amend_again(self):
        reprice_position(self.position.pk)
        self.assertEqual(reprice_position(self.position.pk), "unchanged")
        self.assertEqual(self.mapper.verbs().count("modify_order"), 1)

    def test_partial_or_unfilled_legs_are_ignored(self):
        self.mapper.orders[1] = _exchange_order(1, "PARTIALLY_FILLED", "1", "10")
        self.mapper.orders[2] = _exchange_order(2, "NEW")

        self.assertEqual(reprice_position(self.position.pk), "unfilled")
        self.assertNotIn("modify_order", self.mapper.verbs())

    def test_filled_profit_order_queues_close(self):
        self.mapper.orders[3] = _exchange_order(3, "FILLED", "5", "16.8")

        self.assertEqual(reprice_position(self.position.pk), "closing")

        entry = JobQueueEntry.objects.get(job_class="close-position")
        self.assertEqual(entry.arguments, [self.position.pk])
        self.position.refresh_from_db()
        self.assertEqual(self.position.status, Position.Status.SYNCED)

    def test_failed_amendment_keeps_local_target_and_raises(self):
        self.mapper.fail_on["modify_order"] = ExchangeApiError("Order would immediately trigger.", status_code=400, code=-2021)

        with self.assertRaises(RepricingError) as ctx:
            reprice_position(self.position.pk)

        self.assertEqual(ctx.exception.context["order_id"], self.profit.pk)
        self.profit.refresh_from_db()
        self.assertEqual(self.profit.entry_average_price, Decimal("16.8"))
        self.assertIn("immediately trigger", self.profit.error_message)
        self.position.refresh_from_db()
        self.assertEqual(self.position.status, Position.Status.SYNCED)

    def test_failed_amendment_is_sent_again_on_next_run(self):
        self.mapper.fail_on["modify_order"] = ExchangeApiError("Order would immediately trigger.", status_code=400, code=-2021)
        with self.assertRaises(RepricingError):
            reprice_position(self.position.pk)

        del self.mapper.fail_on["modify_order"]
        self.assertEqual(reprice_position(self.position.pk), "amended")

        self.assertEqual(self.mapper.verbs().count("modify_order"), 2)
        self.assertEqual(
            self.mapper.calls[-1],
            ("modify_order", ("BTCUSDT", "3", "SELL", Decimal("5"), Decimal("16.8")), {}),
        )
        self.profit.refresh_from_db()
        self.assertEqual(self.profit.error_message, "")

    def test_exchange_order_already_at_target_is_unchanged(self):
        self.mapper.orders[3].update({"price": "16.80", "origQty": "5.000"})

        self.assertEqual(reprice_position(self.position.pk), "unchanged")
        self.assertNotIn("modify_order", self.mapper.verbs())

    def test_positions_not_synced_are_skipped(self):
        Position.objects.filter(pk=self.position.pk).update(status=Position.Status.LOCKED)
        self.assertEqual(reprice_position(self.position.pk), "skipped")
        self.assertEqual(self.mapper.calls, [])

    def test_reprice_command_reports_outcome(self):
        out = StringIO()
        call_command("reprice_position", str(self.position.pk), stdout=out)
        self.assertIn(f"Position #{self.position.pk}: amended", out.getvalue())


class RepricingTriggerTest(TestCase):
    def setUp(self):
        self.trader = make_trader()
        self.symbol = make_symbol(self.trader.exchange, last_mark_price=Decimal("100"))
        self.long = Position.objects.create(
            trader=self.trader, exchange_symbol=self.symbol, status=Position.Status.SYNCED, side=Position.Side.LONG
        )
        Order.objects.create(
            position=self.long, type=Order.Type.LIMIT, status=Order.Status.SYNCED,
            entry_average_price=Decimal("98"), entry_quantity=Decimal("5"),
        )
        other_trader = make_trader("bob")
        self.short = Position.objects.create(
            trader=other_trader, exchange_symbol=self.symbol, status=Position.Status.SYNCED, side=Position.Side.SHORT
        )
        Order.objects.create(
            position=self.short, type=Order.Type.LIMIT, status=Order.Status.SYNCED,
            entry_average_price=Decimal("102"), entry_quantity=Decimal("5"),
        )

    def test_crossed_entries_by_side(self):
        self.assertEqual(positions_with_possible_fills(self.symbol, Decimal("97.5")), [self.long.pk])
        self.assertEqual(positions_with_possible_fills(self.symbol, Decimal("102")), [self.short.pk])
        self.assertEqual(positions_with_possible_fills(self.symbol, Decimal("100")), [])

    def test_fully_filled_legs_are_not_candidates(self):
        Order.objects.filter(position=self.long).update(filled_quantity=Decimal("5"))
        self.assertEqual(positions_with_possible_fills(self.symbol, Decimal("90")), [])

    def test_mark_price_tick_queues_repricing(self):
        with self.captureOnCommitCallbacks(execute=True):
            self.symbol.last_mark_price = Decimal("97")
            self.symbol.save()

        entries = JobQueueEntry.objects.filter(job_class="reprice-position")
        self.assertEqual([(e.arguments, e.group_id) for e in entries], [([self.long.pk], f"reprice-{self.long.pk}")])
        self.symbol.refresh_from_db()
        self.assertIsNotNone(self.symbol.price_last_synced_at)

    def test_unchanged_mark_price_queues_nothing(self):
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            self.symbol.is_eligible = False
            self.symbol.save()

        self.assertEqual(callbacks, [])
        self.assertFalse(JobQueueEntry.objects.exists())

    def test_periodic_scan_queues_each_synced_position_once(self):
        Position.objects.create(trader=self.trader, status=Position.Status.CLOSED)

        self.assertEqual(scan_positions_for_repricing(), 2)
        self.assertEqual(scan_positions_for_repricing(), 0)
        self.assertEqual(enqueue_repricing([self.long.pk]), 0)
        self.assertEqual(JobQueueEntry.objects.filter(job_class="reprice-position").count(), 2)
