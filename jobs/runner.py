from __future__ import annotations

import logging

from prometheus_client import Counter

from core.exceptions import record_exception
from jobs.models import JobQueueEntry
from jobs.registry import build_job

logger = logging.getLogger(__name__)

job_outcomes_total = Counter(
    "job_queue_outcomes_total",
    "Job ledger entries finished by the runner",
    ["job_class", "outcome"],  # outcome: completed, deferred, failed
)


def execute_entry(entry: JobQueueEntry) -> str:
    """Run one leased entry and record its outcome on the ledger."""
    try:
        job = build_job(entry.job_class, entry.arguments)
        job.set_job_entry(entry)
        job.handle()
    except Exception as exc:
        record_exception(exc, job_entry_id=entry.pk, job_class=entry.job_class)
        entry.mark_failed(exc)
        job_outcomes_total.labels(entry.job_class, "failed").inc()
        logger.error("Job #%s %s failed: %s", entry.pk, entry.job_class, exc)
        raise

    if job.deferred_for is not None:
        entry.defer(job.deferred_for)
        job_outcomes_total.labels(entry.job_class, "deferred").inc()
        logger.info("Job #%s %s deferred %.1fs", entry.pk, entry.job_class, job.deferred_for)
        return JobQueueEntry.Status.PENDING

    entry.mark_completed()
    job_outcomes_total.labels(entry.job_class, "completed").inc()
    return JobQueueEntry.Status.COMPLETED
