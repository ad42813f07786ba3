"""
Order dispatch: turn one ladder leg into an exchange order.

Legs of a position share a job group, so they run one at a time. The barrier
below additionally keeps ladder order when legs are re-leased out of sequence:
MARKET waits for every LIMIT, PROFIT waits for everything.
"""
from __future__ import annotations

import logging

from django.conf import settings

from core.exceptions import ExchangeApiError, OrderDispatchError
from exchanges import mappers
from execution.models import Order, Position
from execution.sizing import (
    entry_side,
    exit_side,
    floor_to_tick,
    ladder_price,
    leg_quantity,
    round_quantity,
    to_decimal,
)
from jobs.base import Job
from jobs.poller import enqueue, new_group_id
from jobs.registry import register_job

logger = logging.getLogger(__name__)

# Binance: "Order does not exist" / "Unknown order sent".
_UNKNOWN_ORDER_CODES = {-2013, -2011}


def must_wait(order: Order, siblings: list[Order]) -> bool:
    if order.type == Order.Type.MARKET:
        return any(s.status == Order.Status.NEW and s.type != Order.Type.PROFIT for s in siblings)
    if order.type == Order.Type.PROFIT:
        return any(s.status == Order.Status.NEW for s in siblings)
    return False


def apply_exchange_result(order: Order, result: dict, price=None, quantity=None) -> Order:
    executed = to_decimal(result.get("executedQty"))
    avg_price = to_decimal(result.get("avgPrice"))
    order.order_exchange_system_id = str(result.get("orderId") or order.order_exchange_system_id)
    order.entry_average_price = price if price is not None else (avg_price or None)
    order.entry_quantity = quantity if quantity is not None else to_decimal(result.get("origQty"))
    order.filled_quantity = executed
    order.filled_average_price = avg_price if avg_price > 0 else None
    order.api_result = result
    order.status = Order.Status.SYNCED
    order.save()
    return order


def _find_existing(mapper, symbol: str, order: Order) -> dict | None:
    """Look the leg up by client order id, for a leg leased again after an interrupted run."""
    try:
        existing = mapper.get_order(symbol, client_order_id=order.client_order_id)
    except ExchangeApiError as exc:
        if exc.code in _UNKNOWN_ORDER_CODES:
            return None
        raise
    return existing if existing and existing.get("orderId") else None


def place_leg(order: Order, siblings: list[Order], mapper, recover: bool = False) -> Order:
    position = order.position
    symbol = position.exchange_symbol
    mark = position.initial_mark_price
    if symbol is None or mark is None or position.side is None:
        raise OrderDispatchError(
            f"Position #{position.pk} is not ready for order placement",
            position_id=position.pk,
            order_id=order.pk,
        )

    if recover:
        existing = _find_existing(mapper, symbol.symbol, order)
        if existing is not None:
            logger.warning("Order #%s already on exchange as %s; adopting it", order.pk, existing.get("orderId"))
            return apply_exchange_result(order, existing)

    if order.type == Order.Type.MARKET:
        quantity = leg_quantity(position.total_trade_amount, order.amount_divider, mark, symbol.precision_quantity)
        placed = mapper.place_order(
            symbol.symbol,
            entry_side(position.side),
            "MARKET",
            quantity,
            client_order_id=order.client_order_id,
        )
        confirmed = mapper.get_order(symbol.symbol, order_id=placed.get("orderId"))
        if confirmed.get("status") != "FILLED":
            raise OrderDispatchError(
                f"Market order {placed.get('orderId')} not filled (status {confirmed.get('status')})",
                position_id=position.pk,
                order_id=order.pk,
            )
        return apply_exchange_result(order, confirmed, quantity=quantity)

    is_exit = order.type == Order.Type.PROFIT
    price = floor_to_tick(
        ladder_price(mark, order.price_ratio_percentage, position.side, is_exit=is_exit),
        symbol.tick_size,
        symbol.precision_price,
    )
    if is_exit:
        market = next((s for s in siblings if s.type == Order.Type.MARKET), None)
        if market is not None and market.filled_quantity:
            quantity = round_quantity(market.filled_quantity, symbol.precision_quantity)
        else:
            quantity = leg_quantity(position.total_trade_amount, order.amount_divider, mark, symbol.precision_quantity)
        result = mapper.place_order(
            symbol.symbol,
            exit_side(position.side),
            "LIMIT",
            quantity,
            price=price,
            reduce_only=True,
            client_order_id=order.client_order_id,
        )
    else:
        quantity = leg_quantity(position.total_trade_amount, order.amount_divider, mark, symbol.precision_quantity)
        result = mapper.place_order(
            symbol.symbol,
            entry_side(position.side),
            "LIMIT",
            quantity,
            price=price,
            client_order_id=order.client_order_id,
        )
    return apply_exchange_result(order, result, price=price, quantity=quantity)


@register_job("dispatch-order")
class DispatchOrderJob(Job):
    def __init__(self, order_id):
        self.order_id = int(order_id)

    def handle(self) -> None:
        order = Order.objects.select_related(
            "position__trader__exchange",
            "position__exchange_symbol",
        ).get(pk=self.order_id)
        if order.status != Order.Status.NEW:
            logger.info("Order #%s is already %s; nothing to dispatch", order.pk, order.status)
            return

        siblings = list(
            order.position.orders.exclude(pk=order.pk).exclude(type=Order.Type.CANCEL_POSITION)
        )
        if any(s.status == Order.Status.ERROR for s in siblings):
            logger.warning("Order #%s skipped: a sibling leg of position #%s errored", order.pk, order.position_id)
            return

        if must_wait(order, siblings):
            if self.deferrals >= settings.ORDER_DISPATCH_MAX_DEFERRALS:
                self._fail(
                    order,
                    OrderDispatchError(
                        f"{order.type} order #{order.pk} gave up waiting for sibling legs",
                        position_id=order.position_id,
                        order_id=order.pk,
                    ),
                )
            logger.info("Order #%s (%s) waiting for sibling legs", order.pk, order.type)
            self.defer(settings.ORDER_DISPATCH_RETRY_SECONDS)
            return

        mapper = mappers.get_mapper(order.position.trader, position_id=order.position_id)
        try:
            place_leg(order, siblings, mapper, recover=self.deferrals > 0)
        except Exception as exc:
            self._fail(order, exc)
        logger.info("Order #%s (%s) synced as %s", order.pk, order.type, order.order_exchange_system_id)

    def _fail(self, order: Order, exc: Exception) -> None:
        order.status = Order.Status.ERROR
        order.error_message = str(exc)[:4000]
        order.save(update_fields=["status", "error_message", "updated_at"])
        # The batch group is frozen by this failure; validation runs in a fresh one.
        enqueue("validate-position", [order.position_id], group_id=new_group_id())
        if isinstance(exc, OrderDispatchError):
            raise exc
        raise OrderDispatchError(
            f"{order.type} order #{order.pk} failed: {exc}",
            position_id=order.position_id,
            order_id=order.pk,
        ) from exc


@register_job("cancel-order")
class CancelOrderJob(Job):
    def __init__(self, position_id, exchange_order_id):
        self.position_id = int(position_id)
        self.exchange_order_id = str(exchange_order_id)

    def handle(self) -> None:
        position = Position.objects.select_related("trader__exchange", "exchange_symbol").get(pk=self.position_id)
        if position.exchange_symbol is None:
            logger.warning("Cancel skipped: position #%s has no symbol", position.pk)
            return
        mapper = mappers.get_mapper(position.trader, position_id=position.pk)
        try:
            mapper.cancel_order(position.exchange_symbol.symbol, self.exchange_order_id)
        except ExchangeApiError as exc:
            if exc.code not in _UNKNOWN_ORDER_CODES:
                raise
            logger.info("Exchange order %s already gone: %s", self.exchange_order_id, exc)
        updated = position.orders.filter(
            order_exchange_system_id=self.exchange_order_id,
            status__in=[Order.Status.NEW, Order.Status.SYNCED],
        ).update(status=Order.Status.CANCELLED)
        logger.info(
            "Cancelled exchange order %s for position #%s (local rows updated: %s)",
            self.exchange_order_id,
            position.pk,
            updated,
        )
