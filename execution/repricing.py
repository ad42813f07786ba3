"""
Weighted-average re-pricing of the PROFIT leg.

As entry legs fill, the exit order is moved to `avg_fill * (1 +/- profit%)`
and resized to the filled quantity. The local PROFIT row is committed before the
exchange amendment, and every run compares the target against the exchange's
own PROFIT order, so an amendment that failed is sent again on the next run.
"""
from __future__ import annotations

import logging
from decimal import Decimal

from django.db import transaction
from prometheus_client import Counter

from core.exceptions import RepricingError
from exchanges import mappers
from execution.models import Order, Position
from execution.sizing import exit_side, profit_price, round_quantity, to_decimal, weighted_average
from jobs.base import Job
from jobs.poller import enqueue_once
from jobs.registry import register_job

logger = logging.getLogger(__name__)

repricing_amendments_total = Counter(
    "repricing_amendments_total",
    "PROFIT leg repricing runs",
    ["outcome"],  # amended, unchanged, unfilled, closing, failed
)

_FILLED = "FILLED"


def _observe_fills(mapper, symbol: str, legs: list[Order]) -> list[tuple[Decimal, Decimal]]:
    fills = []
    for leg in legs:
        if not leg.order_exchange_system_id:
            continue
        data = mapper.get_order(symbol, order_id=leg.order_exchange_system_id) or {}
        executed = to_decimal(data.get("executedQty"))
        if executed <= 0 or data.get("status") != _FILLED:
            continue
        price = to_decimal(data.get("avgPrice")) or to_decimal(leg.entry_average_price)
        leg.filled_quantity = executed
        leg.filled_average_price = price
        leg.save(update_fields=["filled_quantity", "filled_average_price", "updated_at"])
        fills.append((executed, price))
    return fills


def _claim(position_id: int):
    """Lock a synced position for repricing and return it with its PROFIT leg."""
    with transaction.atomic():
        position = Position.objects.select_for_update().get(pk=position_id)
        if position.status != Position.Status.SYNCED:
            return None, None
        profit = position.orders.filter(type=Order.Type.PROFIT, status=Order.Status.SYNCED).first()
        if profit is None or not profit.order_exchange_system_id:
            return None, None
        position.status = Position.Status.LOCKED
        position.save(update_fields=["status", "updated_at"])
    return position, profit


def reprice_position(position_id: int) -> str:
    """Recompute and amend the PROFIT leg of one synced position. Returns the outcome."""
    position, profit = _claim(position_id)
    if position is None:
        return "skipped"

    failure = None
    symbol = position.exchange_symbol
    mapper = mappers.get_mapper(position.trader, position_id=position.pk)
    try:
        remote_profit = mapper.get_order(symbol.symbol, order_id=profit.order_exchange_system_id) or {}
        if remote_profit.get("status") == _FILLED:
            outcome = "closing"
            enqueue_once("close-position", [position.pk])
        else:
            legs = list(
                position.orders.filter(
                    type__in=[Order.Type.LIMIT, Order.Type.MARKET],
                    status=Order.Status.SYNCED,
                )
            )
            total_qty, avg_price = weighted_average(_observe_fills(mapper, symbol.symbol, legs))
            if avg_price is None:
                outcome = "unfilled"
            else:
                target_price = profit_price(
                    avg_price,
                    position.initial_profit_percentage_ratio or profit.price_ratio_percentage,
                    position.side,
                    symbol.tick_size,
                    symbol.precision_price,
                )
                target_qty = round_quantity(total_qty, symbol.precision_quantity)
                # The exchange copy is authoritative; a failed amendment leaves it behind the local row.
                if (
                    to_decimal(remote_profit.get("price")) == target_price
                    and to_decimal(remote_profit.get("origQty")) == target_qty
                ):
                    outcome = "unchanged"
                else:
                    profit.filled_average_price = avg_price
                    profit.filled_quantity = total_qty
                    profit.entry_average_price = target_price
                    profit.entry_quantity = target_qty
                    profit.save()
                    outcome = "amended"
                    try:
                        profit.api_result = mapper.modify_order(
                            symbol.symbol,
                            profit.order_exchange_system_id,
                            exit_side(position.side),
                            target_qty,
                            target_price,
                        )
                        profit.error_message = ""
                        profit.save(update_fields=["api_result", "error_message", "updated_at"])
                    except Exception as exc:
                        outcome = "failed"
                        failure = exc
                        profit.error_message = str(exc)[:4000]
                        profit.save(update_fields=["error_message", "updated_at"])
    finally:
        Position.objects.filter(pk=position.pk, status=Position.Status.LOCKED).update(
            status=Position.Status.SYNCED
        )

    repricing_amendments_total.labels(outcome).inc()
    if failure is not None:
        raise RepricingError(
            f"Amending PROFIT order #{profit.pk} of position #{position_id} failed: {failure}",
            position_id=position_id,
            order_id=profit.pk,
        ) from failure
    logger.info("Position #%s repricing: %s", position_id, outcome)
    return outcome


def positions_with_possible_fills(exchange_symbol, mark_price=None) -> list[int]:
    """Synced positions on the symbol whose LIMIT legs the mark price has crossed."""
    mark = to_decimal(mark_price if mark_price is not None else exchange_symbol.last_mark_price)
    if mark <= 0:
        return []
    legs = Order.objects.filter(
        type=Order.Type.LIMIT,
        status=Order.Status.SYNCED,
        position__status=Position.Status.SYNCED,
        position__exchange_symbol=exchange_symbol,
        entry_average_price__isnull=False,
    ).select_related("position")
    hits = []
    for leg in legs:
        if leg.filled_quantity and leg.entry_quantity and leg.filled_quantity >= leg.entry_quantity:
            continue
        crossed = mark <= leg.entry_average_price if leg.position.side == Position.Side.LONG else mark >= leg.entry_average_price
        if crossed and leg.position_id not in hits:
            hits.append(leg.position_id)
    return hits


def enqueue_repricing(position_ids) -> int:
    queued = 0
    for position_id in position_ids:
        if enqueue_once("reprice-position", [position_id], group_id=f"reprice-{position_id}"):
            queued += 1
    return queued


@register_job("reprice-position")
class RepricePositionJob(Job):
    def __init__(self, position_id):
        self.position_id = int(position_id)

    def handle(self) -> None:
        reprice_position(self.position_id)
