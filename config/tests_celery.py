from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import Mock, patch

import redis
from django.test import SimpleTestCase, override_settings

from config import celery as celery_cfg
from core.exceptions import OrderDispatchError


def _payload(**overrides):
    payload = {
        "task_name": celery_cfg.JOB_RUNNER_TASK,
        "task_id": "id-1",
        "error": "boom",
        "error_class": "OrderDispatchError",
    }
    payload.update(overrides)
    return payload


class FailurePayloadTest(SimpleTestCase):
    def test_job_runner_failure_carries_entry_and_error_context(self):
        exc = OrderDispatchError("LIMIT order #7 failed", position_id=3, order_id=7)
        payload = celery_cfg._failure_payload(
            celery_cfg.JOB_RUNNER_TASK,
            "task-1",
            exc,
            [42],
            {},
            SimpleNamespace(traceback="tb"),
        )

        self.assertEqual(payload["job_entry_id"], 42)
        self.assertEqual(payload["error_class"], "OrderDispatchError")
        self.assertEqual(payload["context"], {"position_id": 3, "order_id": 7})

    def test_other_tasks_have_no_job_entry(self):
        payload = celery_cfg._failure_payload("jobs.tasks.poll_job_queue", "t", RuntimeError("x"), [1], {}, None)
        self.assertNotIn("job_entry_id", payload)
        self.assertNotIn("context", payload)

    def test_alert_text_lists_known_references(self):
        text = celery_cfg._alert_text(
            _payload(job_entry_id=42, context={"order_id": 7, "position_id": 3, "status_code": 400})
        )
        self.assertEqual(text, "id-1: boom (position_id=3, order_id=7, job_entry_id=42)")
        self.assertEqual(celery_cfg._alert_text(_payload(task_name="other")), "id-1: boom")


@override_settings(CELERY_DLQ_REDIS_KEY="celery:test:dlq", CELERY_DLQ_MAXLEN=123)
class DeadLetterQueueTest(SimpleTestCase):
    def test_push_trims_to_maxlen(self):
        pipe = Mock()
        client = Mock()
        client.pipeline.return_value = pipe
        with patch("config.celery._dlq_client", return_value=client):
            celery_cfg._push_task_failure_dlq(_payload())

        pipe.lpush.assert_called_once()
        self.assertEqual(pipe.lpush.call_args.args[0], "celery:test:dlq")
        pipe.ltrim.assert_called_once_with("celery:test:dlq", 0, 122)
        pipe.execute.assert_called_once()

    def test_redis_outage_is_logged_not_raised(self):
        pipe = Mock()
        pipe.execute.side_effect = redis.ConnectionError("down")
        client = Mock()
        client.pipeline.return_value = pipe
        with patch("config.celery._dlq_client", return_value=client):
            celery_cfg._push_task_failure_dlq(_payload())

    def test_non_redis_broker_has_no_dlq(self):
        # Test settings run Celery on the in-memory broker.
        self.assertIsNone(celery_cfg._dlq_client())

    def test_signal_routes_to_dlq_and_notify(self):
        sender = SimpleNamespace(name=celery_cfg.JOB_RUNNER_TASK)
        with (
            patch("config.celery._push_task_failure_dlq") as push_mock,
            patch("config.celery._notify_task_failure") as notify_mock,
        ):
            celery_cfg._on_task_failure(
                sender=sender,
                task_id="abc-1",
                exception=RuntimeError("db-down"),
                args=[5],
                kwargs={},
                einfo=SimpleNamespace(traceback="tb"),
            )

        push_mock.assert_called_once()
        self.assertEqual(push_mock.call_args.args[0]["job_entry_id"], 5)
        self.assertEqual(notify_mock.call_args.args[0]["error"], "db-down")


@override_settings(CELERY_NOTIFY_ON_FAILURE=True, CELERY_FAILURE_NOTIFY_THROTTLE_SECONDS=300)
class FailureNotificationTest(SimpleTestCase):
    def test_throttled_per_task_and_error_class(self):
        client = Mock()
        client.set.return_value = False
        with (
            patch("config.celery._dlq_client", return_value=client),
            patch("core.notifications.notify_error") as notify_mock,
        ):
            celery_cfg._notify_task_failure(_payload())

        notify_mock.assert_not_called()
        self.assertEqual(
            client.set.call_args.args[0],
            f"celery:notify_fail:{celery_cfg.JOB_RUNNER_TASK}:OrderDispatchError",
        )
        self.assertEqual(client.set.call_args.kwargs, {"nx": True, "ex": 300})

    def test_sends_alert_when_not_throttled(self):
        client = Mock()
        client.set.return_value = True
        with (
            patch("config.celery._dlq_client", return_value=client),
            patch("core.notifications.notify_error") as notify_mock,
        ):
            celery_cfg._notify_task_failure(_payload(job_entry_id=9))

        notify_mock.assert_called_once_with(f"celery:{celery_cfg.JOB_RUNNER_TASK}", "id-1: boom (job_entry_id=9)")

    @override_settings(CELERY_NOTIFY_ON_FAILURE=False)
    def test_disabled_notifications_skip_redis(self):
        with patch("config.celery._dlq_client") as client_mock:
            celery_cfg._notify_task_failure(_payload())
        client_mock.assert_not_called()
