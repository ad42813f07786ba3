from decimal import Decimal
from unittest.mock import Mock, patch

from django.test import TestCase, override_settings

from core.exceptions import (
    ExchangeTransportError,
    InsufficientBalanceError,
    PositionDispatchError,
    PositionValidationError,
    RollbackError,
)
from execution.models import Order, Position
from execution.positions import close_position, dispatch_position, rollback_position, validate_position
from execution.test_utils import FakeMapper, ladder_configuration, make_symbol, make_trader
from jobs.models import JobQueueEntry


class _MapperPatchMixin:
    def patch_mapper(self, mapper):
        patcher = patch("exchanges.mappers.get_mapper", return_value=mapper)
        patcher.start()
        self.addCleanup(patcher.stop)
        return mapper


class PositionCreationHookTest(TestCase):
    def setUp(self):
        self.trader = make_trader()

    def test_new_position_gets_ladder_orders_and_dispatch_job(self):
        position = Position.objects.create(
            trader=self.trader,
            trade_configuration=ladder_configuration(
                limits=[{"price_ratio_percentage": 1, "amount_divider": 4}, {"price_ratio_percentage": 3, "amount_divider": 4}]
            ),
        )

        types = list(position.orders.values_list("type", flat=True))
        self.assertEqual(types, ["LIMIT", "LIMIT", "MARKET", "PROFIT"])
        entry = JobQueueEntry.objects.get()
        self.assertEqual((entry.job_class, entry.arguments, entry.group_id), ("dispatch-position", [position.pk], None))

    @override_settings(POSITION_LIMIT_LADDER=[{"price_ratio_percentage": 1.5, "amount_divider": 4}], POSITION_PROFIT_PERCENTAGE=0.36)
    def test_ladder_plan_is_snapshotted_from_settings(self):
        position = Position.objects.create(trader=self.trader)

        position.refresh_from_db()
        self.assertEqual(position.trade_configuration["profit"], {"price_ratio_percentage": 0.36})
        self.assertEqual(position.orders.count(), 3)

    def test_positions_created_in_other_states_are_left_alone(self):
        position = Position.objects.create(trader=self.trader, status=Position.Status.SYNCED)
        self.assertFalse(position.orders.exists())
        self.assertFalse(JobQueueEntry.objects.exists())


class DispatchPositionTest(_MapperPatchMixin, TestCase):
    def setUp(self):
        self.trader = make_trader()
        self.btc = make_symbol(self.trader.exchange, "BTCUSDT", side="LONG")
        self.mapper = self.patch_mapper(FakeMapper(balance="1000", mark_price="100"))

    def _position(self, **kwargs):
        kwargs.setdefault("trade_configuration", ladder_configuration())
        return Position.objects.create(trader=self.trader, **kwargs)

    def test_dispatch_sizes_binds_and_queues_the_ladder(self):
        position = self._position()

        dispatch_position(position.pk)

        position.refresh_from_db()
        self.assertEqual(position.status, Position.Status.SYNCING)
        self.assertEqual(position.total_trade_amount, Decimal("100"))
        self.assertEqual(position.exchange_symbol, self.btc)
        self.assertEqual(position.side, "LONG")
        self.assertEqual(position.leverage, 20)
        self.assertEqual(position.initial_mark_price, Decimal("100"))
        self.assertEqual(position.initial_profit_percentage_ratio, Decimal("5"))
        self.assertEqual(
            self.mapper.verbs(),
            ["get_account_balance", "update_margin_type", "get_leverage_brackets", "set_default_leverage", "get_mark_price"],
        )
        self.assertEqual(self.mapper.calls[1], ("update_margin_type", ("BTCUSDT", "CROSSED"), {}))

        batch = list(JobQueueEntry.objects.filter(group_id=position.dispatch_group_id))
        legs = {o.pk: o.type for o in position.orders.all()}
        self.assertEqual(
            [(e.job_class, legs.get(e.arguments[0]) if e.job_class == "dispatch-order" else None) for e in batch],
            [
                ("dispatch-order", "LIMIT"),
                ("dispatch-order", "MARKET"),
                ("dispatch-order", "PROFIT"),
                ("validate-position", None),
            ],
        )

    def test_leverage_is_capped_by_notional_brackets(self):
        self.mapper.brackets = [
            {"initialLeverage": 20, "notionalCap": 50000},
            {"initialLeverage": 10, "notionalCap": 100000},
        ]
        position = self._position(total_trade_amount=Decimal("6000"))

        dispatch_position(position.pk)

        position.refresh_from_db()
        self.assertEqual(position.leverage, 10)
        self.assertIn(("set_default_leverage", ("BTCUSDT", 10), {}), self.mapper.calls)
        self.assertNotIn("get_account_balance", self.mapper.verbs())

    def test_planned_leverage_caps_exchange_maximum(self):
        position = self._position(trade_configuration=ladder_configuration(planned_leverage=5))
        dispatch_position(position.pk)
        position.refresh_from_db()
        self.assertEqual(position.leverage, 5)

    def test_balance_below_minimum_fails_position_with_comment(self):
        self.mapper.balance = {"USDT": Decimal("5")}
        position = self._position()

        with self.assertRaises(PositionDispatchError) as ctx:
            dispatch_position(position.pk)

        self.assertIsInstance(ctx.exception.__cause__, InsufficientBalanceError)
        self.assertEqual(ctx.exception.context["position_id"], position.pk)
        position.refresh_from_db()
        self.assertEqual(position.status, Position.Status.ERROR)
        self.assertIn("below the minimum trade amount", position.comments)
        self.assertFalse(JobQueueEntry.objects.filter(job_class="dispatch-order").exists())

    def test_missing_balance_fails_position(self):
        self.mapper.balance = {}
        position = self._position()
        with self.assertRaises(PositionDispatchError):
            dispatch_position(position.pk)
        position.refresh_from_db()
        self.assertIn("No USDT balance", position.comments)

    def test_missing_trade_plan_is_a_validation_error(self):
        position = Position.objects.create(trader=self.trader, status=Position.Status.SYNCED)
        Position.objects.filter(pk=position.pk).update(status=Position.Status.NEW, trade_configuration={})

        with self.assertRaises(PositionDispatchError) as ctx:
            dispatch_position(position.pk)

        self.assertIsInstance(ctx.exception.__cause__, PositionValidationError)
        self.assertEqual(self.mapper.verbs(), [])

    def test_symbols_held_by_open_positions_are_excluded(self):
        eth = make_symbol(self.trader.exchange, "ETHUSDT", side="SHORT")
        make_symbol(self.trader.exchange, "XRPUSDT", is_eligible=False)
        Position.objects.create(trader=self.trader, exchange_symbol=self.btc, status=Position.Status.SYNCED)
        position = self._position()

        dispatch_position(position.pk)

        position.refresh_from_db()
        self.assertEqual(position.exchange_symbol, eth)
        self.assertEqual(position.side, "SHORT")

    def test_closed_positions_do_not_hold_symbols(self):
        Position.objects.create(trader=self.trader, exchange_symbol=self.btc, status=Position.Status.CLOSED)
        position = self._position()
        dispatch_position(position.pk)
        position.refresh_from_db()
        self.assertEqual(position.exchange_symbol, self.btc)

    def test_no_eligible_symbol_fails_position(self):
        Position.objects.create(trader=self.trader, exchange_symbol=self.btc, status=Position.Status.SYNCING)
        position = self._position()

        with self.assertRaises(PositionDispatchError):
            dispatch_position(position.pk)

        position.refresh_from_db()
        self.assertEqual(position.status, Position.Status.ERROR)
        self.assertIn("No eligible symbol", position.comments)

    def test_non_positive_mark_price_fails_position(self):
        self.mapper.mark_price = Decimal("0")
        position = self._position()
        with self.assertRaises(PositionDispatchError):
            dispatch_position(position.pk)
        position.refresh_from_db()
        self.assertIn("No mark price", position.comments)

    def test_only_new_positions_are_dispatched(self):
        position = Position.objects.create(trader=self.trader, status=Position.Status.SYNCING)
        dispatch_position(position.pk)
        self.assertEqual(self.mapper.verbs(), [])

    def test_dispatch_job_failure_marks_entry_failed(self):
        from jobs.poller import JobPoller
        from jobs.runner import execute_entry

        self.mapper.balance = {"USDT": Decimal("1")}
        position = self._position()
        entry = JobPoller(max_parallel=1).lease(1)[0]

        with self.assertRaises(PositionDispatchError):
            execute_entry(entry)

        entry.refresh_from_db()
        self.assertEqual(entry.arguments, [position.pk])
        self.assertEqual(entry.status, JobQueueEntry.Status.FAILED)
        self.assertIn("PositionDispatchError", entry.error_message)


class ValidatePositionTest(TestCase):
    def setUp(self):
        self.trader = make_trader()
        self.position = Position.objects.create(trader=self.trader, status=Position.Status.SYNCING)
        self.limit = Order.objects.create(position=self.position, type=Order.Type.LIMIT, status=Order.Status.SYNCED)
        self.market = Order.objects.create(position=self.position, type=Order.Type.MARKET, status=Order.Status.SYNCED)

    def test_all_legs_synced_marks_position_synced(self):
        self.assertEqual(validate_position(self.position.pk), Position.Status.SYNCED)
        self.position.refresh_from_db()
        self.assertEqual(self.position.status, Position.Status.SYNCED)

    def test_errored_leg_queues_rollback_once(self):
        Order.objects.filter(pk=self.market.pk).update(status=Order.Status.ERROR)

        self.assertEqual(validate_position(self.position.pk), "rollback")
        validate_position(self.position.pk)

        rollback = JobQueueEntry.objects.get(job_class="rollback-position")
        self.assertEqual(rollback.arguments, [self.position.pk])
        self.position.refresh_from_db()
        self.assertEqual(self.position.status, Position.Status.SYNCING)

    def test_pending_leg_defers_validation(self):
        Order.objects.filter(pk=self.market.pk).update(status=Order.Status.NEW)
        job = Mock()

        self.assertEqual(validate_position(self.position.pk, job=job), "waiting")
        job.defer.assert_called_once()

    def test_synced_or_closed_positions_are_left_alone(self):
        for status in (Position.Status.SYNCED, Position.Status.CLOSED, Position.Status.CANCELLED):
            Position.objects.filter(pk=self.position.pk).update(status=status)
            Order.objects.filter(pk=self.market.pk).update(status=Order.Status.ERROR)
            self.assertEqual(validate_position(self.position.pk), status)
        self.assertFalse(JobQueueEntry.objects.exists())


class RollbackPositionTest(_MapperPatchMixin, TestCase):
    def setUp(self):
        self.trader = make_trader()
        self.symbol = make_symbol(self.trader.exchange)
        self.position = Position.objects.create(
            trader=self.trader,
            exchange_symbol=self.symbol,
            status=Position.Status.SYNCING,
            side=Position.Side.LONG,
            dispatch_group_id="batch-1",
        )
        self.limit = Order.objects.create(
            position=self.position, type=Order.Type.LIMIT, status=Order.Status.SYNCED, order_exchange_system_id="11"
        )
        self.market = Order.objects.create(
            position=self.position, type=Order.Type.MARKET, status=Order.Status.ERROR, error_message="rejected"
        )
        self.profit = Order.objects.create(position=self.position, type=Order.Type.PROFIT)
        self.mapper = self.patch_mapper(FakeMapper())
        self.mapper.open_orders = [{"orderId": 11}, {"orderId": 12}]
        self.mapper.positions = [
            {"symbol": "BTCUSDT", "positionAmt": "0.500", "entryPrice": "100", "markPrice": "99", "unRealizedProfit": "-0.5"}
        ]

    def test_rollback_cancels_flattens_and_records_audit_order(self):
        failed = JobQueueEntry.objects.create(
            job_class="dispatch-order", arguments=[self.market.pk], status=JobQueueEntry.Status.FAILED, group_id="batch-1"
        )

        rollback_position(self.position.pk)

        cancels = JobQueueEntry.objects.filter(job_class="cancel-order").order_by("id")
        self.assertEqual([c.arguments for c in cancels], [[self.position.pk, "11"], [self.position.pk, "12"]])
        placed = self.mapper.placed()[0]
        self.assertEqual(placed["args"], ("BTCUSDT", "SELL", "MARKET", Decimal("0.500")))
        self.assertTrue(placed["reduce_only"])

        audit = self.position.orders.get(type=Order.Type.CANCEL_POSITION)
        self.assertEqual(audit.entry_average_price, Decimal("100"))
        self.assertEqual(audit.filled_average_price, Decimal("99"))
        self.assertEqual(audit.filled_quantity, Decimal("0.5"))

        self.position.refresh_from_db()
        self.profit.refresh_from_db()
        failed.refresh_from_db()
        self.assertEqual(self.position.status, Position.Status.CANCELLED)
        self.assertEqual(self.position.realized_pnl, Decimal("-0.5"))
        self.assertIsNotNone(self.position.closed_at)
        self.assertIn("rejected", self.position.comments)
        self.assertEqual(self.profit.status, Order.Status.CANCELLED)
        self.assertEqual(failed.status, JobQueueEntry.Status.COMPLETED)

    def test_flat_exchange_position_needs_no_closing_order(self):
        self.mapper.positions = [{"symbol": "BTCUSDT", "positionAmt": "0", "unRealizedProfit": "0"}]
        rollback_position(self.position.pk)
        self.assertNotIn("place_order", self.mapper.verbs())
        self.assertFalse(self.position.orders.filter(type=Order.Type.CANCEL_POSITION).exists())

    def test_short_position_is_flattened_with_a_buy(self):
        self.mapper.positions = [{"symbol": "BTCUSDT", "positionAmt": "-2", "unRealizedProfit": "1"}]
        rollback_position(self.position.pk)
        self.assertEqual(self.mapper.placed()[0]["args"][1:3], ("BUY", "MARKET"))

    def test_rollback_of_cancelled_position_makes_no_exchange_calls(self):
        Position.objects.filter(pk=self.position.pk).update(status=Position.Status.CANCELLED)

        with patch("exchanges.mappers.get_mapper") as get_mapper:
            rollback_position(self.position.pk)

        get_mapper.assert_not_called()
        self.assertEqual(self.mapper.calls, [])

    def test_exchange_failure_is_wrapped(self):
        self.mapper.fail_on["get_positions"] = ExchangeTransportError("timeout")

        with self.assertRaises(RollbackError) as ctx:
            rollback_position(self.position.pk)

        self.assertIsInstance(ctx.exception.__cause__, ExchangeTransportError)
        self.position.refresh_from_db()
        self.assertEqual(self.position.status, Position.Status.SYNCING)


class ClosePositionTest(_MapperPatchMixin, TestCase):
    def setUp(self):
        self.trader = make_trader()
        self.symbol = make_symbol(self.trader.exchange)
        self.position = Position.objects.create(
            trader=self.trader,
            exchange_symbol=self.symbol,
            status=Position.Status.SYNCED,
            side=Position.Side.LONG,
            trade_configuration=ladder_configuration(),
        )
        self.limit = Order.objects.create(position=self.position, type=Order.Type.LIMIT, status=Order.Status.SYNCED)
        self.profit = Order.objects.create(position=self.position, type=Order.Type.PROFIT, status=Order.Status.SYNCED)
        self.mapper = self.patch_mapper(FakeMapper())
        self.mapper.positions = [{"symbol": "BTCUSDT", "positionAmt": "0", "unRealizedProfit": "3.25"}]

    def test_close_settles_legs_and_opens_next_position(self):
        successor = close_position(self.position.pk)

        self.position.refresh_from_db()
        self.limit.refresh_from_db()
        self.profit.refresh_from_db()
        self.assertEqual(self.position.status, Position.Status.CLOSED)
        self.assertEqual(self.position.realized_pnl, Decimal("3.25"))
        self.assertIsNotNone(self.position.closed_at)
        self.assertEqual(self.limit.status, Order.Status.CANCELLED)
        self.assertEqual(self.profit.status, Order.Status.FILLED)
        self.assertIn(("cancel_open_orders", ("BTCUSDT",), {}), self.mapper.calls)

        self.assertEqual(successor.trader, self.trader)
        self.assertEqual(successor.status, Position.Status.NEW)
        queued = JobQueueEntry.objects.filter(job_class="dispatch-position")
        self.assertEqual([e.arguments for e in queued], [[successor.pk]])

    def test_no_open_limits_skips_cancel_all(self):
        Order.objects.filter(pk=self.limit.pk).update(status=Order.Status.FILLED)
        close_position(self.position.pk)
        self.assertNotIn("cancel_open_orders", self.mapper.verbs())

    def test_inactive_trader_gets_no_successor(self):
        self.trader.is_active = False
        self.trader.save()
        self.assertIsNone(close_position(self.position.pk))
        self.assertEqual(Position.objects.filter(trader=self.trader).count(), 1)

    def test_only_synced_positions_close(self):
        Position.objects.filter(pk=self.position.pk).update(status=Position.Status.SYNCING)
        self.assertIsNone(close_position(self.position.pk))
        self.assertEqual(self.mapper.calls, [])
