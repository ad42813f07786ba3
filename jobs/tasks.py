from __future__ import annotations

import logging

from celery import shared_task

from jobs.models import JobQueueEntry
from jobs.poller import JobPoller
from jobs.runner import execute_entry

logger = logging.getLogger(__name__)


@shared_task(acks_late=True)
def run_job_entry(entry_id: int) -> str:
    entry = JobQueueEntry.objects.filter(pk=entry_id).first()
    if entry is None:
        logger.warning("run_job_entry: entry #%s does not exist", entry_id)
        return "missing"
    if entry.status != JobQueueEntry.Status.RUNNING:
        logger.warning("run_job_entry: entry #%s is %s, not running; skipping", entry_id, entry.status)
        return entry.status
    return execute_entry(entry)


@shared_task(expires=30)
def poll_job_queue() -> int:
    return len(JobPoller().poll_once())


@shared_task(expires=55)
def reap_job_leases() -> int:
    return JobPoller().reap_expired_leases()
