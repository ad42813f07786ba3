"""
Position lifecycle: dispatch, validate, rollback, close.

    new -> syncing -> synced -> closed
    error / cancelled from any non-terminal state, locked while closing.
"""
from __future__ import annotations

import logging
import random
from decimal import ROUND_FLOOR, Decimal

from django.conf import settings
from django.db import transaction
from django.utils import timezone as dj_tz

from core.exceptions import (
    InsufficientBalanceError,
    PositionCloseError,
    PositionDispatchError,
    PositionValidationError,
    RollbackError,
)
from core.models import ExchangeSymbol
from core.notifications import notify_position_closed, notify_position_rolled_back
from exchanges import mappers
from execution.models import Order, Position
from execution.sizing import build_trade_configuration, ladder_legs, max_leverage_for_notional, to_decimal
from jobs.base import Job
from jobs.poller import enqueue, enqueue_once, new_group_id, resolve_group
from jobs.registry import register_job

logger = logging.getLogger(__name__)

_LEG_ORDER = {Order.Type.LIMIT: 0, Order.Type.MARKET: 1, Order.Type.PROFIT: 2}


def prepare_position(position: Position) -> None:
    """Snapshot the ladder plan, create the legs and queue the dispatch."""
    if not position.trade_configuration:
        position.trade_configuration = build_trade_configuration()
        position.save(update_fields=["trade_configuration", "updated_at"])
    if not position.orders.exists():
        Order.objects.bulk_create(
            [Order(position=position, **leg) for leg in ladder_legs(position.trade_configuration)]
        )
    enqueue("dispatch-position", [position.pk])


def _validate_mandatory(position: Position) -> None:
    missing = []
    if not position.trader_id:
        missing.append("trader")
    if not position.status:
        missing.append("status")
    config = position.trade_configuration or {}
    if not config.get("market") or not config.get("profit"):
        missing.append("trade configuration")
    if missing:
        raise PositionValidationError(
            f"Position #{position.pk} is missing: {', '.join(missing)}",
            position_id=position.pk,
        )


def _trade_amount_from_balance(position: Position, mapper) -> Decimal:
    config = position.trade_configuration
    asset = config.get("quote_asset") or settings.POSITION_QUOTE_ASSET
    minimum = to_decimal(config.get("minimum_trade_amount", settings.POSITION_MINIMUM_TRADE_AMOUNT))
    percentage = to_decimal(config.get("amount_percentage_per_trade", settings.POSITION_AMOUNT_PERCENTAGE_PER_TRADE))
    balance = mapper.get_account_balance().get(asset)
    if balance is None or balance <= 0:
        raise InsufficientBalanceError(
            f"No {asset} balance available to open a position",
            position_id=position.pk,
        )
    if balance < minimum:
        raise InsufficientBalanceError(
            f"{asset} balance {balance} is below the minimum trade amount {minimum}",
            position_id=position.pk,
        )
    return (balance * percentage / Decimal("100")).to_integral_value(rounding=ROUND_FLOOR)


def _pick_symbol(position: Position) -> ExchangeSymbol:
    held = (
        Position.objects.filter(trader_id=position.trader_id, exchange_symbol__isnull=False)
        .exclude(pk=position.pk)
        .exclude(status__in=Position.TERMINAL_STATUSES)
        .values_list("exchange_symbol_id", flat=True)
    )
    eligible = list(
        ExchangeSymbol.objects.filter(
            exchange_id=position.trader.exchange_id,
            is_active=True,
            is_eligible=True,
        ).exclude(pk__in=list(held))
    )
    if not eligible:
        raise PositionValidationError(
            f"No eligible symbol left for trader {position.trader.name}",
            position_id=position.pk,
        )
    return random.choice(eligible)


def dispatch_position(position_id: int) -> Position:
    position = Position.objects.select_related("trader__exchange", "exchange_symbol").get(pk=position_id)
    if position.status != Position.Status.NEW:
        logger.info("Position #%s is %s; dispatch skipped", position.pk, position.status)
        return position

    try:
        _validate_mandatory(position)
        config = position.trade_configuration
        mapper = mappers.get_mapper(position.trader, position_id=position.pk)

        if position.total_trade_amount is None:
            position.total_trade_amount = _trade_amount_from_balance(position, mapper)

        if position.exchange_symbol_id is None:
            position.exchange_symbol = _pick_symbol(position)
        symbol = position.exchange_symbol

        position.side = symbol.side
        position.initial_profit_percentage_ratio = to_decimal((config.get("profit") or {}).get("price_ratio_percentage"))

        mapper.update_margin_type(symbol.symbol, config.get("margin_type") or "CROSSED")
        brackets = mapper.get_leverage_brackets(symbol.symbol)
        planned = int(config.get("planned_leverage") or settings.POSITION_PLANNED_LEVERAGE)
        position.leverage = min(planned, max_leverage_for_notional(brackets, position.total_trade_amount))
        mapper.set_default_leverage(symbol.symbol, position.leverage)

        if position.initial_mark_price is None:
            mark = mapper.get_mark_price(symbol.symbol)
            if not mark or mark <= 0:
                raise PositionValidationError(
                    f"No mark price available for {symbol.symbol}",
                    position_id=position.pk,
                )
            position.initial_mark_price = mark

        group_id = new_group_id()
        legs = sorted(
            position.orders.filter(type__in=list(_LEG_ORDER)),
            key=lambda o: (_LEG_ORDER[o.type], o.pk),
        )
        with transaction.atomic():
            for leg in legs:
                enqueue("dispatch-order", [leg.pk], group_id=group_id)
            enqueue("validate-position", [position.pk], group_id=group_id)
            position.dispatch_group_id = group_id
            position.status = Position.Status.SYNCING
            position.save()
    except Exception as exc:
        position.status = Position.Status.ERROR
        position.comments = str(exc)[:4000]
        position.save(update_fields=["status", "comments", "updated_at"])
        raise PositionDispatchError(
            f"Position #{position.pk} dispatch failed: {exc}",
            position_id=position.pk,
        ) from exc

    logger.info(
        "Position #%s dispatched: %s %s amount=%s leverage=%s mark=%s group=%s",
        position.pk,
        symbol.symbol,
        position.side,
        position.total_trade_amount,
        position.leverage,
        position.initial_mark_price,
        group_id,
    )
    return position


def validate_position(position_id: int, job: Job | None = None) -> str:
    """Finalize a dispatched position, or hand it to rollback when a leg errored."""
    position = Position.objects.get(pk=position_id)
    if position.status in (Position.Status.SYNCED, Position.Status.CLOSED, Position.Status.CANCELLED):
        return position.status

    legs = list(position.orders.exclude(type=Order.Type.CANCEL_POSITION))
    if any(o.status == Order.Status.ERROR for o in legs):
        logger.warning("Position #%s has errored legs; rolling back", position.pk)
        enqueue_once("rollback-position", [position.pk])
        return "rollback"
    if any(o.status == Order.Status.NEW for o in legs):
        if job is not None:
            job.defer(settings.ORDER_DISPATCH_RETRY_SECONDS)
        return "waiting"

    position.status = Position.Status.SYNCED
    position.save(update_fields=["status", "updated_at"])
    logger.info("Position #%s synced", position.pk)
    return position.status


def _live_snapshot(rows: list[dict]) -> tuple[Decimal, dict]:
    size = sum((to_decimal(r.get("positionAmt")) for r in rows), Decimal("0"))
    snapshot = next((r for r in rows if to_decimal(r.get("positionAmt")) != 0), rows[0] if rows else {})
    return size, snapshot


def rollback_position(position_id: int) -> Position:
    position = Position.objects.select_related("trader__exchange", "exchange_symbol").get(pk=position_id)
    if position.status == Position.Status.CANCELLED:
        logger.info("Position #%s already cancelled; rollback is a no-op", position.pk)
        return position

    symbol = position.exchange_symbol
    realized_pnl = None
    try:
        if symbol is not None:
            mapper = mappers.get_mapper(position.trader, position_id=position.pk)
            for open_order in mapper.get_open_orders(symbol.symbol):
                enqueue("cancel-order", [position.pk, str(open_order.get("orderId"))])

            size, snapshot = _live_snapshot(mapper.get_positions(symbol.symbol))
            realized_pnl = to_decimal(snapshot.get("unRealizedProfit")) if snapshot else None
            if size != 0:
                quantity = abs(size)
                result = mapper.place_order(
                    symbol.symbol,
                    "SELL" if size > 0 else "BUY",
                    "MARKET",
                    quantity,
                    reduce_only=True,
                    client_order_id=f"rollback-{position.pk}",
                )
                Order.objects.create(
                    position=position,
                    type=Order.Type.CANCEL_POSITION,
                    status=Order.Status.SYNCED,
                    entry_average_price=to_decimal(snapshot.get("entryPrice")),
                    filled_average_price=to_decimal(snapshot.get("markPrice")),
                    entry_quantity=quantity,
                    filled_quantity=quantity,
                    order_exchange_system_id=str(result.get("orderId") or ""),
                    api_result=result,
                )
    except Exception as exc:
        raise RollbackError(
            f"Rollback of position #{position.pk} failed: {exc}",
            position_id=position.pk,
        ) from exc

    position.orders.filter(status=Order.Status.NEW).exclude(type=Order.Type.CANCEL_POSITION).update(
        status=Order.Status.CANCELLED
    )
    reason = "; ".join(
        f"{o.type} #{o.pk}: {o.error_message}" for o in position.orders.filter(status=Order.Status.ERROR)
    )
    position.status = Position.Status.CANCELLED
    position.realized_pnl = realized_pnl
    position.closed_at = dj_tz.now()
    if reason:
        position.comments = f"Rolled back. {reason}"[:4000]
    position.save(update_fields=["status", "realized_pnl", "closed_at", "comments", "updated_at"])
    if position.dispatch_group_id:
        resolve_group(position.dispatch_group_id, f"resolved by rollback of position #{position.pk}")

    logger.warning("Position #%s rolled back (pnl=%s)", position.pk, realized_pnl)
    notify_position_rolled_back(position.pk, symbol.symbol if symbol else "-", reason, realized_pnl)
    return position


def close_position(position_id: int) -> Position | None:
    """Close a position whose PROFIT leg filled and open the trader's next one."""
    with transaction.atomic():
        position = Position.objects.select_for_update().get(pk=position_id)
        if position.status != Position.Status.SYNCED:
            logger.info("Position #%s is %s; close skipped", position.pk, position.status)
            return None
        position.status = Position.Status.LOCKED
        position.save(update_fields=["status", "updated_at"])

        symbol = position.exchange_symbol
        try:
            mapper = mappers.get_mapper(position.trader, position_id=position.pk)
            open_limits = position.orders.filter(type=Order.Type.LIMIT, status=Order.Status.SYNCED)
            if open_limits.exists():
                mapper.cancel_open_orders(symbol.symbol)
                open_limits.update(status=Order.Status.CANCELLED)
            position.orders.filter(type=Order.Type.PROFIT, status=Order.Status.SYNCED).update(
                status=Order.Status.FILLED
            )
            _size, snapshot = _live_snapshot(mapper.get_positions(symbol.symbol))
        except Exception as exc:
            raise PositionCloseError(
                f"Closing position #{position.pk} failed: {exc}",
                position_id=position.pk,
            ) from exc

        position.realized_pnl = to_decimal(snapshot.get("unRealizedProfit")) if snapshot else None
        position.status = Position.Status.CLOSED
        position.closed_at = dj_tz.now()
        position.save(update_fields=["status", "realized_pnl", "closed_at", "updated_at"])

        successor = None
        if position.trader.is_active:
            successor = Position.objects.create(trader=position.trader)

    logger.info(
        "Position #%s closed (pnl=%s); next position #%s",
        position.pk,
        position.realized_pnl,
        successor.pk if successor else None,
    )
    notify_position_closed(position.pk, symbol.symbol, position.realized_pnl)
    return successor


@register_job("dispatch-position")
class DispatchPositionJob(Job):
    def __init__(self, position_id):
        self.position_id = int(position_id)

    def handle(self) -> None:
        dispatch_position(self.position_id)


@register_job("validate-position")
class ValidatePositionJob(Job):
    def __init__(self, position_id):
        self.position_id = int(position_id)

    def handle(self) -> None:
        validate_position(self.position_id, job=self)


@register_job("rollback-position")
class RollbackPositionJob(Job):
    def __init__(self, position_id):
        self.position_id = int(position_id)

    def handle(self) -> None:
        rollback_position(self.position_id)


@register_job("close-position")
class ClosePositionJob(Job):
    def __init__(self, position_id):
        self.position_id = int(position_id)

    def handle(self) -> None:
        close_position(self.position_id)
