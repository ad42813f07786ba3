from __future__ import annotations

import json
import logging
import os

from celery import Celery
from celery.signals import task_failure
import redis

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("ladder_engine")
app.config_from_object("django.conf:settings", namespace="CELERY")
logger = logging.getLogger(__name__)

JOB_RUNNER_TASK = "jobs.tasks.run_job_entry"
# Context keys worth surfacing in an operator alert, in display order.
_ALERT_REFS = ("position_id", "order_id", "job_entry_id", "code")


app.conf.update(
    task_acks_late=os.getenv("CELERY_TASK_ACKS_LATE", "true").lower() == "true",
    task_reject_on_worker_lost=os.getenv("CELERY_TASK_REJECT_ON_WORKER_LOST", "true").lower() == "true",
    task_time_limit=int(os.getenv("CELERY_TASK_TIME_LIMIT", "300")),
    task_soft_time_limit=int(os.getenv("CELERY_TASK_SOFT_TIME_LIMIT", "240")),
    # Job entries are already leased from the ledger; a worker must not hoard them.
    worker_prefetch_multiplier=1,
)
app.autodiscover_tasks()


def _dlq_client() -> redis.Redis | None:
    broker_url = str(app.conf.broker_url or "")
    if not broker_url.startswith(("redis://", "rediss://")):
        return None
    try:
        return redis.from_url(broker_url)
    except ValueError as exc:
        logger.warning("Task failure DLQ disabled: %s", exc)
        return None


def _failure_payload(task_name: str, task_id: str, exception, args, kwargs, einfo) -> dict:
    """
    Flatten a task failure into the JSON document kept on the DLQ.

    Failures of the job runner carry the ledger entry id, so an operator can
    go from a DLQ record straight to the frozen group.
    """
    payload = {
        "task_name": task_name,
        "task_id": task_id,
        "error": str(exception or "unknown error"),
        "error_class": type(exception).__name__ if exception is not None else "",
        "args": list(args or []),
        "kwargs": dict(kwargs or {}),
        "traceback": str(getattr(einfo, "traceback", "") or "")[:4000],
    }
    if task_name == JOB_RUNNER_TASK and args:
        payload["job_entry_id"] = args[0]
    context = getattr(exception, "context", None)
    if isinstance(context, dict) and context:
        payload["context"] = context
    return payload


def _alert_text(payload: dict) -> str:
    refs = dict(payload.get("context") or {})
    if "job_entry_id" in payload:
        refs.setdefault("job_entry_id", payload["job_entry_id"])
    shown = [f"{key}={refs[key]}" for key in _ALERT_REFS if key in refs]
    text = f"{payload['task_id']}: {payload['error']}"
    return f"{text} ({', '.join(shown)})" if shown else text


def _push_task_failure_dlq(payload: dict) -> None:
    from django.conf import settings

    client = _dlq_client()
    if client is None:
        return
    key = settings.CELERY_DLQ_REDIS_KEY
    try:
        pipe = client.pipeline()
        pipe.lpush(key, json.dumps(payload, default=str))
        pipe.ltrim(key, 0, settings.CELERY_DLQ_MAXLEN - 1)
        pipe.execute()
    except redis.RedisError as exc:
        logger.warning("Failed to push task failure to DLQ: %s", exc)


def _notify_task_failure(payload: dict) -> None:
    """Telegram alert, at most one per task and error class per throttle window."""
    from django.conf import settings

    if not settings.CELERY_NOTIFY_ON_FAILURE:
        return
    throttle_key = f"celery:notify_fail:{payload['task_name']}:{payload['error_class'] or 'unknown'}"
    client = _dlq_client()
    if client is not None:
        try:
            if not client.set(throttle_key, "1", nx=True, ex=settings.CELERY_FAILURE_NOTIFY_THROTTLE_SECONDS):
                return
        except redis.RedisError as exc:
            logger.debug("Failure notify throttle unavailable: %s", exc)

    from core.notifications import notify_error

    notify_error(f"celery:{payload['task_name']}", _alert_text(payload))


@task_failure.connect
def _on_task_failure(
    sender=None,
    task_id=None,
    exception=None,
    args=None,
    kwargs=None,
    traceback=None,
    einfo=None,
    **extras,
):
    task_name = getattr(sender, "name", str(sender or "unknown"))
    payload = _failure_payload(task_name, str(task_id or ""), exception, args, kwargs, einfo)
    _push_task_failure_dlq(payload)
    _notify_task_failure(payload)
