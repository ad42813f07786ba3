from __future__ import annotations

import logging

from django.db import transaction
from django.db.models.signals import post_save, pre_save
from django.dispatch import receiver
from django.utils import timezone as dj_tz

from core.models import ExchangeSymbol
from execution.models import Position

logger = logging.getLogger(__name__)


@receiver(post_save, sender=Position, dispatch_uid="execution.position_created")
def position_created(sender, instance: Position, created: bool, raw: bool = False, **kwargs):
    if raw or not created or instance.status != Position.Status.NEW:
        return
    from execution.positions import prepare_position

    prepare_position(instance)


@receiver(pre_save, sender=ExchangeSymbol, dispatch_uid="execution.symbol_price_stash")
def stash_previous_mark_price(sender, instance: ExchangeSymbol, raw: bool = False, **kwargs):
    previous = None
    if instance.pk and not raw:
        previous = sender.objects.filter(pk=instance.pk).values_list("last_mark_price", flat=True).first()
    instance._previous_mark_price = previous
    if instance.last_mark_price is not None and instance.last_mark_price != previous:
        instance.price_last_synced_at = dj_tz.now()


@receiver(post_save, sender=ExchangeSymbol, dispatch_uid="execution.symbol_price_moved")
def mark_price_moved(sender, instance: ExchangeSymbol, created: bool, raw: bool = False, **kwargs):
    if raw or created or instance.last_mark_price is None:
        return
    if instance.last_mark_price == getattr(instance, "_previous_mark_price", None):
        return
    symbol_id = instance.pk
    mark = instance.last_mark_price

    def _scan():
        from execution.repricing import enqueue_repricing, positions_with_possible_fills

        symbol = ExchangeSymbol.objects.filter(pk=symbol_id).first()
        if symbol is None:
            return
        queued = enqueue_repricing(positions_with_possible_fills(symbol, mark))
        if queued:
            logger.info("Mark price of %s moved to %s; queued %s repricing job(s)", symbol.symbol, mark, queued)

    transaction.on_commit(_scan)
