from __future__ import annotations

import time

from django.db import models

from core.models import TimeStampedModel


def now_ms() -> int:
    return int(time.time() * 1000)


class JobQueueEntry(TimeStampedModel):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        RUNNING = "running", "Running"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"

    job_class = models.CharField(max_length=64, db_index=True)
    arguments = models.JSONField(default=list, blank=True)
    status = models.CharField(max_length=12, choices=Status.choices, default=Status.PENDING)
    group_id = models.CharField(max_length=64, null=True, blank=True, db_index=True)
    # Epoch millis. A pending entry is not leased before available_at.
    available_at = models.BigIntegerField(default=0)
    started_at = models.BigIntegerField(null=True, blank=True)
    completed_at = models.BigIntegerField(null=True, blank=True)
    duration = models.BigIntegerField(null=True, blank=True)
    lease_expires_at = models.BigIntegerField(null=True, blank=True)
    attempts = models.PositiveIntegerField(default=0)
    hostname = models.CharField(max_length=128, blank=True, default="")
    error_message = models.TextField(blank=True, default="")

    class Meta:
        db_table = "job_queue"
        ordering = ["id"]
        indexes = [
            models.Index(fields=["status", "available_at"], name="job_queue_status_avail_idx"),
            models.Index(fields=["group_id", "status"], name="job_queue_group_status_idx"),
        ]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"#{self.pk} {self.job_class}{self.arguments} [{self.status}]"

    def _finish(self, status: str, error_message: str | None = None) -> bool:
        """Move a running entry to a terminal status. False if it is no longer running."""
        finished = now_ms()
        fields = {
            "status": status,
            "completed_at": finished,
            "duration": finished - int(self.started_at or finished),
            "lease_expires_at": None,
        }
        if error_message is not None:
            fields["error_message"] = error_message[:4000]
        updated = JobQueueEntry.objects.filter(pk=self.pk, status=self.Status.RUNNING).update(**fields)
        if updated:
            for key, value in fields.items():
                setattr(self, key, value)
        return bool(updated)

    def mark_completed(self) -> bool:
        return self._finish(self.Status.COMPLETED)

    def mark_failed(self, error) -> bool:
        message = str(error) or type(error).__name__
        if isinstance(error, BaseException):
            message = f"{type(error).__name__}: {message}"
        return self._finish(self.Status.FAILED, message)

    def defer(self, seconds: float) -> bool:
        """Hand a running entry back to the ledger, leasable again after `seconds`."""
        fields = {
            "status": self.Status.PENDING,
            "available_at": now_ms() + int(seconds * 1000),
            "hostname": "",
            "lease_expires_at": None,
        }
        updated = JobQueueEntry.objects.filter(pk=self.pk, status=self.Status.RUNNING).update(**fields)
        if updated:
            for key, value in fields.items():
                setattr(self, key, value)
        return bool(updated)
