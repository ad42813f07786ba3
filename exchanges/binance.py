"""
Binance USDT-M futures mapper over the rate-limited gateway.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.exceptions import ExchangeApiError, ExchangeTransportError
from core.models import Trader
from exchanges.gateway import RateLimitedGateway

logger = logging.getLogger(__name__)

# Reads are safe to repeat on a dropped connection; writes are not retried.
_retry_read = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
    retry=retry_if_exception_type(ExchangeTransportError),
    reraise=True,
)

ORDER_PATH = "/fapi/v1/order"
OPEN_ORDERS_PATH = "/fapi/v1/openOrders"
ALL_OPEN_ORDERS_PATH = "/fapi/v1/allOpenOrders"
POSITION_RISK_PATH = "/fapi/v2/positionRisk"
BALANCE_PATH = "/fapi/v2/balance"
PREMIUM_INDEX_PATH = "/fapi/v1/premiumIndex"
LEVERAGE_PATH = "/fapi/v1/leverage"
MARGIN_TYPE_PATH = "/fapi/v1/marginType"
LEVERAGE_BRACKET_PATH = "/fapi/v1/leverageBracket"


def _dec(value: Any, default: str = "0") -> Decimal:
    try:
        return Decimal(str(value if value not in (None, "") else default))
    except ArithmeticError:
        return Decimal(default)


class BinanceFuturesMapper:
    canonical = "binance"

    def __init__(self, gateway: RateLimitedGateway, position_id: int | None = None):
        self.gateway = gateway
        self.position_id = position_id

    @classmethod
    def from_trader(cls, trader: Trader, position_id: int | None = None) -> "BinanceFuturesMapper":
        from django.conf import settings

        if not trader.api_key or not trader.api_secret:
            logger.warning("Trader %s has no API credentials; signed calls will be rejected.", trader.name)
        gateway = RateLimitedGateway(
            exchange=trader.exchange,
            api_key=trader.api_key,
            api_secret=trader.api_secret,
            base_url=trader.exchange.base_url or settings.BINANCE_FUTURES_BASE_URL,
        )
        return cls(gateway, position_id=position_id)

    def _call(self, method: str, path: str, params: dict | None = None, signed: bool = True) -> Any:
        return self.gateway.request(method, path, signed=signed, params=params, position_id=self.position_id)

    @_retry_read
    def get_order(self, symbol: str, order_id: str | int | None = None, client_order_id: str | None = None) -> dict:
        params = {"symbol": symbol}
        if order_id:
            params["orderId"] = order_id
        else:
            params["origClientOrderId"] = client_order_id
        return self._call("GET", ORDER_PATH, params)

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
        params: dict[str, Any] = {
            "symbol": symbol,
            "side": side,
            "type": order_type,
            "quantity": quantity,
            "newClientOrderId": client_order_id,
        }
        if order_type == "LIMIT":
            params["price"] = price
            params["timeInForce"] = "GTC"
        if reduce_only:
            params["reduceOnly"] = True
        return self._call("POST", ORDER_PATH, params)

    def modify_order(self, symbol: str, order_id: str | int, side: str, quantity: Decimal, price: Decimal) -> dict:
        return self._call(
            "PUT",
            ORDER_PATH,
            {"symbol": symbol, "orderId": order_id, "side": side, "quantity": quantity, "price": price},
        )

    def cancel_order(self, symbol: str, order_id: str | int) -> dict:
        return self._call("DELETE", ORDER_PATH, {"symbol": symbol, "orderId": order_id})

    def cancel_open_orders(self, symbol: str) -> dict:
        return self._call("DELETE", ALL_OPEN_ORDERS_PATH, {"symbol": symbol})

    @_retry_read
    def get_open_orders(self, symbol: str) -> list[dict]:
        return list(self._call("GET", OPEN_ORDERS_PATH, {"symbol": symbol}) or [])

    @_retry_read
    def get_positions(self, symbol: str | None = None) -> list[dict]:
        rows = self._call("GET", POSITION_RISK_PATH, {"symbol": symbol} if symbol else None) or []
        return [row for row in rows if not symbol or row.get("symbol") == symbol]

    @_retry_read
    def get_account_balance(self) -> dict[str, Decimal]:
        rows = self._call("GET", BALANCE_PATH) or []
        return {
            str(row.get("asset")): _dec(row.get("availableBalance", row.get("balance")))
            for row in rows
            if row.get("asset")
        }

    @_retry_read
    def get_mark_price(self, symbol: str) -> Decimal:
        data = self._call("GET", PREMIUM_INDEX_PATH, {"symbol": symbol}, signed=False) or {}
        return _dec(data.get("markPrice"))

    def set_default_leverage(self, symbol: str, leverage: int) -> dict:
        return self._call("POST", LEVERAGE_PATH, {"symbol": symbol, "leverage": int(leverage)})

    def update_margin_type(self, symbol: str, margin_type: str = "CROSSED") -> dict:
        return self._call("POST", MARGIN_TYPE_PATH, {"symbol": symbol, "marginType": margin_type})

    @_retry_read
    def get_leverage_brackets(self, symbol: str) -> list[dict]:
        data = self._call("GET", LEVERAGE_BRACKET_PATH, {"symbol": symbol})
        rows = data if isinstance(data, list) else [data]
        for row in rows:
            if isinstance(row, dict) and row.get("symbol") == symbol:
                return list(row.get("brackets") or [])
        raise ExchangeApiError(f"No leverage brackets returned for {symbol}", symbol=symbol)
