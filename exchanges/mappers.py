from __future__ import annotations

from decimal import Decimal
from typing import Protocol

from core.models import Trader

from .binance import BinanceFuturesMapper


class ExchangeMapper(Protocol):
    """Exchange-agnostic verbs consumed by the order and position state machines."""

    def get_order(self, symbol: str, order_id=None, client_order_id: str | None = None) -> dict:
        ...

    def place_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        quantity: Decimal,
        price: Decimal | None = None,
        reduce_only: bool = False,
        client_order_id: str | None = None,
    ) -> dict:
        ...

    def modify_order(self, symbol: str, order_id, side: str, quantity: Decimal, price: Decimal) -> dict:
        ...

    def cancel_order(self, symbol: str, order_id) -> dict:
        ...

    def cancel_open_orders(self, symbol: str) -> dict:
        ...

    def get_open_orders(self, symbol: str) -> list[dict]:
        ...

    def get_positions(self, symbol: str | None = None) -> list[dict]:
        ...

    def get_account_balance(self) -> dict[str, Decimal]:
        ...

    def get_mark_price(self, symbol: str) -> Decimal:
        ...

    def set_default_leverage(self, symbol: str, leverage: int) -> dict:
        ...

    def update_margin_type(self, symbol: str, margin_type: str = "CROSSED") -> dict:
        ...

    def get_leverage_brackets(self, symbol: str) -> list[dict]:
        ...


_MAPPERS = {
    BinanceFuturesMapper.canonical: BinanceFuturesMapper,
}


def get_mapper(trader: Trader, position_id: int | None = None) -> ExchangeMapper:
    canonical = trader.exchange.canonical
    try:
        mapper_cls = _MAPPERS[canonical]
    except KeyError:
        raise ValueError(f"No exchange mapper registered for '{canonical}'") from None
    return mapper_cls.from_trader(trader, position_id=position_id)
