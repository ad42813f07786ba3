from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase, override_settings

from core.exceptions import ExchangeApiError, OrderDispatchError
from execution.models import Order, Position
from execution.test_utils import FakeMapper, ladder_configuration, make_symbol, make_trader
from jobs.models import JobQueueEntry
from jobs.poller import JobPoller, enqueue
from jobs.runner import execute_entry


def run_job(tag, arguments, group_id=None, attempts=None):
    """Enqueue, lease and execute one job in-process; returns the refreshed entry."""
    entry = enqueue(tag, arguments, group_id=group_id)
    if attempts is not None:
        JobQueueEntry.objects.filter(pk=entry.pk).update(attempts=attempts - 1)
    leased = JobPoller(max_parallel=1).lease(1)
    assert [e.pk for e in leased] == [entry.pk]
    try:
        execute_entry(leased[0])
    finally:
        entry.refresh_from_db()
    return entry


@override_settings(ORDER_DISPATCH_RETRY_SECONDS=5, ORDER_DISPATCH_MAX_DEFERRALS=3)
class DispatchOrderJobTest(TestCase):
    def setUp(self):
        self.trader = make_trader()
        self.symbol = make_symbol(self.trader.exchange)
        self.position = Position.objects.create(
            trader=self.trader,
            exchange_symbol=self.symbol,
            status=Position.Status.SYNCING,
            side=Position.Side.LONG,
            initial_mark_price=Decimal("100"),
            total_trade_amount=Decimal("1000"),
            leverage=10,
            initial_profit_percentage_ratio=Decimal("5"),
            trade_configuration=ladder_configuration(),
        )
        self.limit = Order.objects.create(position=self.position, type=Order.Type.LIMIT, price_ratio_percentage=2, amount_divider=2)
        self.market = Order.objects.create(position=self.position, type=Order.Type.MARKET, amount_divider=2)
        self.profit = Order.objects.create(position=self.position, type=Order.Type.PROFIT, price_ratio_percentage=5)
        self.mapper = FakeMapper(mark_price="100")
        patcher = patch("exchanges.mappers.get_mapper", return_value=self.mapper)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_market_leg_defers_while_limit_leg_is_new(self):
        entry = run_job("dispatch-order", [self.market.pk])

        self.market.refresh_from_db()
        self.assertEqual(entry.status, JobQueueEntry.Status.PENDING)
        self.assertGreater(entry.available_at, 0)
        self.assertEqual(self.market.status, Order.Status.NEW)
        self.assertNotIn("place_order", self.mapper.verbs())

    def test_profit_leg_defers_while_any_sibling_is_new(self):
        Order.objects.filter(pk=self.limit.pk).update(status=Order.Status.SYNCED)

        entry = run_job("dispatch-order", [self.profit.pk])

        self.assertEqual(entry.status, JobQueueEntry.Status.PENDING)
        self.assertEqual(self.mapper.verbs(), [])

    def test_limit_leg_is_priced_off_mark_and_floored(self):
        entry = run_job("dispatch-order", [self.limit.pk])

        self.limit.refresh_from_db()
        self.assertEqual(entry.status, JobQueueEntry.Status.COMPLETED)
        self.assertEqual(self.limit.status, Order.Status.SYNCED)
        self.assertEqual(self.limit.entry_average_price, Decimal("98"))
        self.assertEqual(self.limit.entry_quantity, Decimal("5"))
        placed = self.mapper.placed()[0]
        self.assertEqual(placed["args"], ("BTCUSDT", "BUY", "LIMIT", Decimal("5")))
        self.assertEqual(placed["price"], Decimal("98"))
        self.assertEqual(placed["client_order_id"], self.limit.uuid.hex)
        self.assertFalse(placed["reduce_only"])

    def test_market_leg_must_fill(self):
        Order.objects.filter(pk=self.limit.pk).update(status=Order.Status.SYNCED)

        run_job("dispatch-order", [self.market.pk])

        self.market.refresh_from_db()
        self.assertEqual(self.market.status, Order.Status.SYNCED)
        self.assertEqual(self.market.filled_quantity, Decimal("5"))
        self.assertEqual(self.market.filled_average_price, Decimal("100"))
        self.assertEqual(self.mapper.verbs(), ["place_order", "get_order"])

    def test_profit_leg_is_reduce_only_for_market_fill(self):
        Order.objects.filter(pk=self.limit.pk).update(status=Order.Status.SYNCED)
        Order.objects.filter(pk=self.market.pk).update(status=Order.Status.SYNCED, filled_quantity=Decimal("4.5"))

        run_job("dispatch-order", [self.profit.pk])

        placed = self.mapper.placed()[0]
        self.assertEqual(placed["args"], ("BTCUSDT", "SELL", "LIMIT", Decimal("4.5")))
        self.assertEqual(placed["price"], Decimal("105"))
        self.assertTrue(placed["reduce_only"])

    def test_sibling_error_aborts_without_exchange_calls(self):
        Order.objects.filter(pk=self.limit.pk).update(status=Order.Status.ERROR)

        entry = run_job("dispatch-order", [self.market.pk])

        self.market.refresh_from_db()
        self.assertEqual(entry.status, JobQueueEntry.Status.COMPLETED)
        self.assertEqual(self.market.status, Order.Status.NEW)
        self.assertEqual(self.mapper.verbs(), [])

    def test_exchange_failure_errors_order_and_queues_validation(self):
        self.mapper.fail_on["place_order"] = ExchangeApiError("Margin is insufficient.", status_code=400, code=-2019)

        with self.assertRaises(OrderDispatchError) as ctx:
            run_job("dispatch-order", [self.limit.pk], group_id="batch-1")

        self.assertEqual(ctx.exception.context["order_id"], self.limit.pk)
        self.assertIsInstance(ctx.exception.__cause__, ExchangeApiError)
        self.limit.refresh_from_db()
        self.assertEqual(self.limit.status, Order.Status.ERROR)
        self.assertIn("Margin is insufficient", self.limit.error_message)
        failed = JobQueueEntry.objects.get(job_class="dispatch-order")
        self.assertEqual(failed.status, JobQueueEntry.Status.FAILED)
        validate = JobQueueEntry.objects.get(job_class="validate-position")
        self.assertEqual(validate.arguments, [self.position.pk])
        self.assertNotEqual(validate.group_id, "batch-1")

    def test_unfilled_market_leg_is_an_error(self):
        Order.objects.filter(pk=self.limit.pk).update(status=Order.Status.SYNCED)
        original_place = self.mapper.place_order

        def resting_market(*args, **kwargs):
            result = original_place(*args, **kwargs)
            self.mapper.orders[result["orderId"]]["status"] = "EXPIRED"
            return result

        self.mapper.place_order = resting_market

        with self.assertRaises(OrderDispatchError):
            run_job("dispatch-order", [self.market.pk])

        self.market.refresh_from_db()
        self.assertEqual(self.market.status, Order.Status.ERROR)
        self.assertIn("not filled", self.market.error_message)

    def test_barrier_gives_up_after_max_deferrals(self):
        with self.assertRaises(OrderDispatchError):
            run_job("dispatch-order", [self.market.pk], attempts=4)

        self.market.refresh_from_db()
        self.assertEqual(self.market.status, Order.Status.ERROR)
        self.assertIn("gave up waiting", self.market.error_message)

    def test_released_leg_adopts_order_already_on_exchange(self):
        existing = self.mapper.place_order(
            "BTCUSDT", "BUY", "LIMIT", Decimal("5"), price=Decimal("98"), client_order_id=self.limit.client_order_id
        )
        self.mapper.calls.clear()

        run_job("dispatch-order", [self.limit.pk], attempts=2)

        self.limit.refresh_from_db()
        self.assertEqual(self.limit.status, Order.Status.SYNCED)
        self.assertEqual(self.limit.order_exchange_system_id, str(existing["orderId"]))
        self.assertEqual(self.mapper.verbs(), ["get_order"])

    def test_released_leg_places_when_exchange_has_no_such_order(self):
        run_job("dispatch-order", [self.limit.pk], attempts=2)

        self.assertEqual(self.mapper.verbs(), ["get_order", "place_order"])


class CancelOrderJobTest(TestCase):
    def setUp(self):
        self.trader = make_trader()
        self.symbol = make_symbol(self.trader.exchange)
        self.position = Position.objects.create(
            trader=self.trader,
            exchange_symbol=self.symbol,
            status=Position.Status.SYNCED,
            side=Position.Side.LONG,
        )
        self.order = Order.objects.create(
            position=self.position,
            type=Order.Type.LIMIT,
            status=Order.Status.SYNCED,
            order_exchange_system_id="555",
        )
        self.mapper = FakeMapper()
        patcher = patch("exchanges.mappers.get_mapper", return_value=self.mapper)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_cancels_exchange_order_and_local_row(self):
        run_job("cancel-order", [self.position.pk, "555"])

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CANCELLED)
        self.assertEqual(self.mapper.calls[0], ("cancel_order", ("BTCUSDT", "555"), {}))

    def test_order_already_gone_is_not_an_error(self):
        self.mapper.fail_on["cancel_order"] = ExchangeApiError("Unknown order sent.", status_code=400, code=-2011)

        entry = run_job("cancel-order", [self.position.pk, "555"])

        self.assertEqual(entry.status, JobQueueEntry.Status.COMPLETED)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.CANCELLED)

    def test_other_cancel_failures_propagate(self):
        self.mapper.fail_on["cancel_order"] = ExchangeApiError("Internal error", status_code=500, code=-1001)

        with self.assertRaises(ExchangeApiError):
            run_job("cancel-order", [self.position.pk, "555"])

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.SYNCED)
