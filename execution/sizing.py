"""
Ladder arithmetic: leg prices and sizes, leverage caps, weighted averages.

Prices are floored to the symbol tick with ccxt's precision helpers so the
exchange never sees an off-grid price.
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Iterable

from ccxt.base.decimal_to_precision import (
    DECIMAL_PLACES,
    ROUND,
    TICK_SIZE,
    TRUNCATE,
    decimal_to_precision,
)
from django.conf import settings

LONG = "LONG"
SHORT = "SHORT"

_HUNDRED = Decimal("100")


def to_decimal(value, default: str = "0") -> Decimal:
    try:
        return Decimal(str(value if value not in (None, "") else default))
    except (InvalidOperation, ValueError):
        return Decimal(default)


def floor_to_tick(value, tick_size, precision: int | None = None) -> Decimal:
    tick = to_decimal(tick_size)
    if tick > 0:
        return Decimal(decimal_to_precision(str(value), TRUNCATE, tick, TICK_SIZE))
    if precision is not None:
        return Decimal(decimal_to_precision(str(value), TRUNCATE, int(precision), DECIMAL_PLACES))
    return to_decimal(value)


def round_quantity(value, precision: int) -> Decimal:
    return Decimal(decimal_to_precision(str(value), ROUND, int(precision), DECIMAL_PLACES))


def entry_side(position_side: str) -> str:
    return "BUY" if position_side == LONG else "SELL"


def exit_side(position_side: str) -> str:
    return "SELL" if position_side == LONG else "BUY"


def ladder_price(mark_price, ratio_percentage, position_side: str, is_exit: bool = False) -> Decimal:
    """
    Offset the mark price by a percentage.

    Entries sit on the cheap side of the mark for the position (below for LONG,
    above for SHORT); the exit sits on the other side.
    """
    mark = to_decimal(mark_price)
    ratio = to_decimal(ratio_percentage) / _HUNDRED
    below = (position_side == LONG) != is_exit
    return mark * (1 - ratio) if below else mark * (1 + ratio)


def leg_quantity(total_trade_amount, amount_divider, mark_price, precision: int) -> Decimal:
    divider = to_decimal(amount_divider, "1")
    mark = to_decimal(mark_price)
    if divider <= 0 or mark <= 0:
        raise ValueError(f"Cannot size leg with divider={divider} mark={mark}")
    return round_quantity(to_decimal(total_trade_amount) / divider / mark, precision)


def max_leverage_for_notional(brackets: Iterable[dict], trade_amount) -> int:
    """Largest bracket leverage whose notional cap holds trade_amount x leverage; 1 if none."""
    amount = to_decimal(trade_amount)
    best = 1
    rows = sorted(brackets or [], key=lambda b: to_decimal(b.get("notionalCap")))
    for bracket in rows:
        leverage = int(to_decimal(bracket.get("initialLeverage")))
        if amount * leverage <= to_decimal(bracket.get("notionalCap")) and leverage > best:
            best = leverage
    return best


def weighted_average(fills: Iterable[tuple]) -> tuple[Decimal, Decimal | None]:
    """(total_qty, avg_price) over (qty, price) pairs; avg is None when nothing filled."""
    total_qty = Decimal("0")
    weighted_sum = Decimal("0")
    for qty, price in fills:
        qty = to_decimal(qty)
        total_qty += qty
        weighted_sum += qty * to_decimal(price)
    if total_qty == 0:
        return total_qty, None
    return total_qty, weighted_sum / total_qty


def profit_price(avg_price, profit_percentage, position_side: str, tick_size, precision: int | None = None) -> Decimal:
    ratio = to_decimal(profit_percentage) / _HUNDRED
    avg = to_decimal(avg_price)
    target = avg * (1 + ratio) if position_side == LONG else avg * (1 - ratio)
    return floor_to_tick(target, tick_size, precision)


def build_trade_configuration() -> dict:
    """Snapshot of the configured ladder plan, stored on each new position."""
    return {
        "amount_percentage_per_trade": settings.POSITION_AMOUNT_PERCENTAGE_PER_TRADE,
        "minimum_trade_amount": settings.POSITION_MINIMUM_TRADE_AMOUNT,
        "planned_leverage": settings.POSITION_PLANNED_LEVERAGE,
        "quote_asset": settings.POSITION_QUOTE_ASSET,
        "margin_type": "CROSSED",
        "profit": {"price_ratio_percentage": settings.POSITION_PROFIT_PERCENTAGE},
        "market": {"amount_divider": settings.POSITION_MARKET_AMOUNT_DIVIDER},
        "limits": [dict(leg) for leg in settings.POSITION_LIMIT_LADDER],
    }


def ladder_legs(trade_configuration: dict) -> list[dict]:
    """Order rows for a plan, in dispatch order: LIMITs, MARKET, PROFIT."""
    legs = [
        {
            "type": "LIMIT",
            "price_ratio_percentage": to_decimal(leg.get("price_ratio_percentage")),
            "amount_divider": to_decimal(leg.get("amount_divider"), "1"),
        }
        for leg in trade_configuration.get("limits") or []
    ]
    legs.append(
        {
            "type": "MARKET",
            "price_ratio_percentage": Decimal("0"),
            "amount_divider": to_decimal((trade_configuration.get("market") or {}).get("amount_divider"), "1"),
        }
    )
    legs.append(
        {
            "type": "PROFIT",
            "price_ratio_percentage": to_decimal((trade_configuration.get("profit") or {}).get("price_ratio_percentage")),
            "amount_divider": Decimal("1"),
        }
    )
    return legs
