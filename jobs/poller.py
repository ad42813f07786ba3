"""
Durable job ledger and the poller that leases from it.

A group is blocked while any of its entries is running or failed, which gives
one active job per group without a lock table; a failed entry freezes its
group until it is retried or the group is resolved. Leasing is FIFO by id,
one entry per group per cycle, capped by the free worker capacity.
"""
from __future__ import annotations

import logging
import socket
import uuid

from django.conf import settings
from django.db import transaction
from prometheus_client import Counter

from core.exceptions import record_exception
from jobs.models import JobQueueEntry, now_ms
from jobs.registry import build_job, get_job_class

logger = logging.getLogger(__name__)

jobs_leased_total = Counter("job_queue_leased_total", "Job ledger entries leased", ["job_class"])

Status = JobQueueEntry.Status


def new_group_id() -> str:
    return uuid.uuid4().hex


def enqueue(job_class: str, arguments: list | None = None, group_id: str | None = None, delay: float = 0) -> JobQueueEntry:
    get_job_class(job_class)
    entry = JobQueueEntry.objects.create(
        job_class=job_class,
        arguments=list(arguments or []),
        group_id=group_id,
        available_at=now_ms() + int(delay * 1000) if delay else 0,
    )
    logger.debug("Enqueued #%s %s%s group=%s", entry.pk, job_class, entry.arguments, group_id)
    return entry


def enqueue_once(job_class: str, arguments: list | None = None, group_id: str | None = None) -> JobQueueEntry | None:
    """Enqueue unless an identical entry is already pending."""
    arguments = list(arguments or [])
    pending = JobQueueEntry.objects.filter(job_class=job_class, status=Status.PENDING).only("arguments")
    if any(row.arguments == arguments for row in pending):
        return None
    return enqueue(job_class, arguments, group_id=group_id)


def blocked_groups() -> set[str]:
    return set(
        JobQueueEntry.objects.filter(status__in=[Status.RUNNING, Status.FAILED], group_id__isnull=False)
        .values_list("group_id", flat=True)
        .distinct()
    )


class JobPoller:
    def __init__(
        self,
        max_parallel: int | None = None,
        hostname: str | None = None,
        queue: str | None = None,
        lease_timeout: int | None = None,
    ):
        self.max_parallel = int(max_parallel or settings.JOB_POLLER_MAX_PARALLEL)
        self.hostname = hostname or socket.gethostname()
        self.queue = queue or settings.JOB_POLLER_QUEUE_NAME
        self.lease_timeout = int(lease_timeout or settings.JOB_LEASE_TIMEOUT_SECONDS)

    def lease(self, max_parallel: int) -> list[JobQueueEntry]:
        if max_parallel <= 0:
            return []
        selected = self._select_candidates(max_parallel)
        leased = []
        for entry_id in selected:
            entry = self._claim(entry_id)
            if entry is None:
                logger.info("Job #%s already claimed by another poller", entry_id)
                continue
            jobs_leased_total.labels(entry.job_class).inc()
            leased.append(entry)
        return leased

    def _select_candidates(self, max_parallel: int) -> list[int]:
        now = now_ms()
        selected: list[int] = []
        taken_groups: set[str] = set()
        with transaction.atomic():
            blocked = blocked_groups()
            rows = (
                JobQueueEntry.objects.select_for_update()
                .filter(status=Status.PENDING, available_at__lte=now)
                .order_by("id")
                .values_list("id", "group_id")
            )
            for entry_id, group_id in rows:
                if group_id is not None:
                    if group_id in blocked or group_id in taken_groups:
                        continue
                    taken_groups.add(group_id)
                selected.append(entry_id)
                if len(selected) >= max_parallel:
                    break
        return selected

    def _claim(self, entry_id: int) -> JobQueueEntry | None:
        now = now_ms()
        with transaction.atomic():
            entry = JobQueueEntry.objects.select_for_update().filter(pk=entry_id).first()
            if entry is None or entry.status != Status.PENDING:
                return None
            entry.status = Status.RUNNING
            entry.hostname = self.hostname
            entry.started_at = now
            entry.completed_at = None
            entry.duration = None
            entry.lease_expires_at = now + self.lease_timeout * 1000
            entry.attempts = int(entry.attempts or 0) + 1
            entry.save(
                update_fields=[
                    "status",
                    "hostname",
                    "started_at",
                    "completed_at",
                    "duration",
                    "lease_expires_at",
                    "attempts",
                    "updated_at",
                ]
            )
        return entry

    def dispatch(self, entry: JobQueueEntry) -> bool:
        from jobs.tasks import run_job_entry

        try:
            build_job(entry.job_class, entry.arguments)
            run_job_entry.apply_async(args=[entry.pk], queue=self.queue)
        except Exception as exc:
            logger.error("Failed to dispatch job #%s %s: %s", entry.pk, entry.job_class, exc)
            record_exception(exc, job_entry_id=entry.pk, job_class=entry.job_class)
            entry.mark_failed(exc)
            return False
        return True

    def poll_once(self) -> list[JobQueueEntry]:
        running = JobQueueEntry.objects.filter(status=Status.RUNNING).count()
        capacity = self.max_parallel - running
        if capacity <= 0:
            return []
        entries = self.lease(capacity)
        for entry in entries:
            self.dispatch(entry)
        return entries

    def reap_expired_leases(self) -> int:
        now = now_ms()
        expired = list(
            JobQueueEntry.objects.filter(status=Status.RUNNING, lease_expires_at__lt=now).only(
                "id", "job_class", "started_at", "hostname", "status"
            )
        )
        reaped = 0
        for entry in expired:
            if entry.mark_failed(f"lease expired on {entry.hostname or 'unknown host'}"):
                reaped += 1
                logger.warning("Reaped job #%s %s: lease expired", entry.pk, entry.job_class)
        return reaped


def retry_entry(entry: JobQueueEntry) -> bool:
    """Put a failed entry back in the queue, unfreezing its group."""
    note = f"[retried at {now_ms()}] "
    updated = JobQueueEntry.objects.filter(pk=entry.pk, status=Status.FAILED).update(
        status=Status.PENDING,
        available_at=0,
        hostname="",
        lease_expires_at=None,
        error_message=(note + (entry.error_message or ""))[:4000],
    )
    return bool(updated)


def resolve_group(group_id: str, note: str) -> int:
    """Close out every failed or pending entry of a frozen group."""
    if not group_id:
        return 0
    resolved = 0
    finished = now_ms()
    for entry in JobQueueEntry.objects.filter(group_id=group_id, status__in=[Status.FAILED, Status.PENDING]):
        message = f"{entry.error_message}\n{note}".strip() if entry.error_message else note
        entry.status = Status.COMPLETED
        entry.completed_at = finished
        entry.error_message = message[:4000]
        entry.save(update_fields=["status", "completed_at", "error_message", "updated_at"])
        resolved += 1
    if resolved:
        logger.info("Resolved %s job(s) of group %s: %s", resolved, group_id, note)
    return resolved
