"""
In-memory exchange mapper and fixtures shared by the execution tests.
"""
from __future__ import annotations

from decimal import Decimal

from core.exceptions import ExchangeApiError
from core.models import Exchange, ExchangeSymbol, Trader


def ladder_configuration(limits=None, market_divider=2, profit=5, planned_leverage=20) -> dict:
    return {
        "amount_percentage_per_trade": 10,
        "minimum_trade_amount": 10,
        "planned_leverage": planned_leverage,
        "quote_asset": "USDT",
        "margin_type": "CROSSED",
        "profit": {"price_ratio_percentage": profit},
        "market": {"amount_divider": market_divider},
        "limits": limits if limits is not None else [{"price_ratio_percentage": 2, "amount_divider": 2}],
    }


def make_trader(name="alice", canonical="binance") -> Trader:
    exchange, _ = Exchange.objects.get_or_create(canonical=canonical, defaults={"name": canonical.title()})
    return Trader.objects.create(name=name, exchange=exchange, api_key="key", api_secret="secret")


def make_symbol(exchange, symbol="BTCUSDT", side="LONG", tick_size="0.01", **kwargs) -> ExchangeSymbol:
    kwargs.setdefault("precision_price", 2)
    kwargs.setdefault("precision_quantity", 3)
    return ExchangeSymbol.objects.create(
        exchange=exchange,
        symbol=symbol,
        side=side,
        tick_size=Decimal(tick_size),
        **kwargs,
    )


class FakeMapper:
    """Records every verb; MARKET orders fill at the mark price, LIMIT orders rest."""

    def __init__(self, balance="1000", mark_price="100", brackets=None, positions=None):
        self.calls: list[tuple[str, tuple, dict]] = []
        self.balance = {"USDT": Decimal(balance)} if balance is not None else {}
        self.mark_price = Decimal(mark_price)
        self.brackets = brackets if brackets is not None else [{"initialLeverage": 20, "notionalCap": 10_000_000}]
        self.positions = positions if positions is not None else []
        self.open_orders: list[dict] = []
        self.orders: dict[int, dict] = {}
        self.fail_on: dict[str, Exception] = {}
        self._next_id = 1000

    def _record(self, verb, *args, **kwargs):
        self.calls.append((verb, args, kwargs))
        exc = self.fail_on.get(verb)
        if exc is not None:
            raise exc

    def verbs(self) -> list[str]:
        return [verb for verb, _args, _kwargs in self.calls]

    def placed(self) -> list[dict]:
        return [kwargs | {"args": args} for verb, args, kwargs in self.calls if verb == "place_order"]

    def fill(self, order_id, quantity, price) -> None:
        order = self.orders[int(order_id)]
        order.update({"status": "FILLED", "executedQty": str(quantity), "avgPrice": str(price)})

    def place_order(self, symbol, side, order_type, quantity, price=None, reduce_only=False, client_order_id=None):
        self._record("place_order", symbol, side, order_type, quantity, price=price, reduce_only=reduce_only,
                     client_order_id=client_order_id)
        self._next_id += 1
        is_market = order_type == "MARKET"
        order = {
            "orderId": self._next_id,
            "clientOrderId": client_order_id,
            "symbol": symbol,
            "side": side,
            "type": order_type,
            "origQty": str(quantity),
            "price": str(price or 0),
            "reduceOnly": reduce_only,
            "status": "FILLED" if is_market else "NEW",
            "executedQty": str(quantity) if is_market else "0",
            "avgPrice": str(self.mark_price) if is_market else "0",
        }
        self.orders[self._next_id] = order
        return dict(order)

    def get_order(self, symbol, order_id=None, client_order_id=None):
        self._record("get_order", symbol, order_id=order_id, client_order_id=client_order_id)
        if order_id is not None and int(order_id) in self.orders:
            return dict(self.orders[int(order_id)])
        for order in self.orders.values():
            if client_order_id and order["clientOrderId"] == client_order_id:
                return dict(order)
        raise ExchangeApiError("Order does not exist.", status_code=400, code=-2013)

    def modify_order(self, symbol, order_id, side, quantity, price):
        self._record("modify_order", symbol, order_id, side, quantity, price)
        order = self.orders[int(order_id)]
        order.update({"origQty": str(quantity), "price": str(price)})
        return dict(order)

    def cancel_order(self, symbol, order_id):
        self._record("cancel_order", symbol, order_id)
        return {"orderId": order_id, "status": "CANCELED"}

    def cancel_open_orders(self, symbol):
        self._record("cancel_open_orders", symbol)
        return {"code": 200, "msg": "The operation of cancel all open order is done."}

    def get_open_orders(self, symbol):
        self._record("get_open_orders", symbol)
        return list(self.open_orders)

    def get_positions(self, symbol=None):
        self._record("get_positions", symbol)
        return list(self.positions)

    def get_account_balance(self):
        self._record("get_account_balance")
        return dict(self.balance)

    def get_mark_price(self, symbol):
        self._record("get_mark_price", symbol)
        return self.mark_price

    def set_default_leverage(self, symbol, leverage):
        self._record("set_default_leverage", symbol, leverage)
        return {"symbol": symbol, "leverage": leverage}

    def update_margin_type(self, symbol, margin_type="CROSSED"):
        self._record("update_margin_type", symbol, margin_type)
        return {"code": 200}

    def get_leverage_brackets(self, symbol):
        self._record("get_leverage_brackets", symbol)
        return list(self.brackets)
