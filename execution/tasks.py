import logging

from celery import shared_task

from execution.models import Position
from execution.repricing import enqueue_repricing

logger = logging.getLogger(__name__)


@shared_task(expires=55)
def scan_positions_for_repricing() -> int:
    """Queue a repricing pass for every synced position."""
    position_ids = list(
        Position.objects.filter(status=Position.Status.SYNCED).order_by("id").values_list("id", flat=True)
    )
    queued = enqueue_repricing(position_ids)
    if queued:
        logger.info("Repricing scan queued %s of %s synced position(s)", queued, len(position_ids))
    return queued
