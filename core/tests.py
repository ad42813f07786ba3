from unittest.mock import Mock, patch

from django.test import SimpleTestCase, TestCase, override_settings

from core.exceptions import (
    ExchangeApiError,
    OrderDispatchError,
    PositionDispatchError,
    error_context,
    record_exception,
)
from core.models import ExceptionLog
from core.notifications import notify_position_rolled_back, send_telegram


class ErrorContextTest(SimpleTestCase):
    def test_context_drops_none_values(self):
        exc = OrderDispatchError("boom", position_id=1, order_id=None)
        self.assertEqual(exc.context, {"position_id": 1})
        self.assertEqual(str(exc), "boom")

    def test_error_context_walks_causes_outermost_wins(self):
        try:
            try:
                raise ExchangeApiError("rejected", status_code=400, code=-2019, position_id=9)
            except ExchangeApiError as inner:
                raise PositionDispatchError("dispatch failed", position_id=3) from inner
        except PositionDispatchError as outer:
            ctx = error_context(outer)

        self.assertEqual(ctx["position_id"], 3)
        self.assertEqual(ctx["code"], -2019)
        self.assertEqual(ctx["status_code"], 400)


class RecordExceptionTest(TestCase):
    def test_record_exception_persists_context_and_traceback(self):
        try:
            raise OrderDispatchError("LIMIT order failed", order_id=4)
        except OrderDispatchError as exc:
            row = record_exception(exc, job_entry_id=11)

        row.refresh_from_db()
        self.assertEqual(row.exception_class, "OrderDispatchError")
        self.assertEqual(row.context, {"order_id": 4, "job_entry_id": 11})
        self.assertIn("LIMIT order failed", row.traceback)
        self.assertEqual(ExceptionLog.objects.count(), 1)

    def test_record_exception_never_raises(self):
        with patch("core.models.ExceptionLog.objects.create", side_effect=RuntimeError("db down")):
            self.assertIsNone(record_exception(ValueError("x")))


class TelegramNotificationTest(SimpleTestCase):
    @override_settings(TELEGRAM_ENABLED=False)
    def test_disabled_telegram_sends_nothing(self):
        with patch("core.notifications.httpx.post") as post:
            self.assertFalse(send_telegram("hello"))
        post.assert_not_called()

    @override_settings(TELEGRAM_ENABLED=True, TELEGRAM_BOT_TOKEN="t", TELEGRAM_CHAT_ID="c")
    def test_rollback_alert_includes_reason_and_pnl(self):
        with patch("core.notifications.httpx.post", return_value=Mock(status_code=200)) as post:
            notify_position_rolled_back(5, "BTCUSDT", reason="LIMIT #9: rejected", realized_pnl="-1.5")

        text = post.call_args.kwargs["json"]["text"]
        self.assertIn("#5 BTCUSDT", text)
        self.assertIn("-1.5", text)
        self.assertIn("LIMIT #9: rejected", text)
