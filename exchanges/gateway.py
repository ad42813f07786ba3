"""
Rate-limited, signed REST gateway shared by every exchange mapper.

One call = pick an egress address, sign, send, log to `ApiRequestLog`, fold the
reported weight. A 429/418 backs the address off and rotates to the next one
(tenacity drives the attempts); other failures are typed and not retried here.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import socket
import time
from typing import Any
from urllib.parse import urlencode

import requests
from django.conf import settings
from prometheus_client import Counter
from requests.adapters import HTTPAdapter
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from core.crypto import mask_secret
from core.exceptions import ExchangeApiError, ExchangeTransportError, RateLimitExceededError
from core.models import Exchange
from exchanges.ip_balancer import IpBalancer
from exchanges.models import ApiRequestLog

logger = logging.getLogger(__name__)

gateway_requests_total = Counter(
    "exchange_gateway_requests_total",
    "Outbound exchange REST calls",
    ["exchange", "method", "outcome"],  # outcome: ok, rate_limited, api_error, transport_error
)

RATE_LIMIT_STATUSES = {418, 429}
USED_WEIGHT_HEADER = "X-MBX-USED-WEIGHT-1M"
_LOOPBACK = {"127.0.0.1", "localhost", "::1", ""}


class SourceAddressAdapter(HTTPAdapter):
    """Bind outgoing connections to one local egress address."""

    def __init__(self, source_address: str, **kwargs):
        self.source_address = source_address
        super().__init__(**kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        pool_kwargs["source_address"] = (self.source_address, 0)
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)


def _encode_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _decode_body(resp) -> Any:
    try:
        return resp.json()
    except ValueError:
        return {"raw": (resp.text or "")[:2000]}


def _used_weight(headers) -> int | None:
    raw = (headers or {}).get(USED_WEIGHT_HEADER)
    try:
        return int(raw) if raw not in (None, "") else None
    except (TypeError, ValueError):
        return None


class RateLimitedGateway:
    def __init__(
        self,
        exchange: Exchange,
        api_key: str = "",
        api_secret: str = "",
        base_url: str | None = None,
        balancer: IpBalancer | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        retry_wait: float | None = None,
        errors_to_skip: dict[int, list[int]] | None = None,
    ):
        self.exchange = exchange
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = (base_url or exchange.base_url or "").rstrip("/")
        self.balancer = balancer or IpBalancer(exchange)
        self.timeout = float(timeout or settings.EXCHANGE_HTTP_TIMEOUT)
        self.max_attempts = int(max_attempts or settings.EXCHANGE_MAX_ATTEMPTS)
        self.retry_wait = float(settings.EXCHANGE_RATE_LIMIT_RETRY_SECONDS if retry_wait is None else retry_wait)
        self.errors_to_skip = errors_to_skip if errors_to_skip is not None else settings.EXCHANGE_HTTP_ERRORS_TO_SKIP
        self._sessions: dict[str, requests.Session] = {}

    def request(
        self,
        method: str,
        path: str,
        signed: bool = False,
        params: dict | None = None,
        position_id: int | None = None,
        order_id: int | None = None,
    ) -> Any:
        method = method.upper()
        ip = self.balancer.select_ip(self.balancer.endpoint_weight(path))
        loggable = {"position_id": position_id, "order_id": order_id}
        if len(self.balancer.addresses) < 2:
            try:
                return self._send(ip, method, path, signed, params, loggable)
            except RateLimitExceededError:
                self.balancer.back_off(ip)
                raise

        retryer = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.retry_wait),
            retry=retry_if_exception_type(RateLimitExceededError),
            reraise=True,
        )
        for attempt in retryer:
            with attempt:
                try:
                    return self._send(ip, method, path, signed, params, loggable)
                except RateLimitExceededError:
                    self.balancer.back_off(ip)
                    rotated = self.balancer.next_ip(ip)
                    logger.warning(
                        "Rate limited on %s %s via %s (attempt %s/%s); rotating to %s",
                        method,
                        path,
                        ip,
                        attempt.retry_state.attempt_number,
                        self.max_attempts,
                        rotated,
                    )
                    ip = rotated
                    raise

    def _session(self, ip: str) -> requests.Session:
        session = self._sessions.get(ip)
        if session is None:
            session = requests.Session()
            if ip not in _LOOPBACK:
                adapter = SourceAddressAdapter(ip)
                session.mount("https://", adapter)
                session.mount("http://", adapter)
            self._sessions[ip] = session
        return session

    def _query(self, params: dict | None, signed: bool) -> tuple[str, dict]:
        items = {k: _encode_value(v) for k, v in (params or {}).items() if v is not None}
        if signed:
            items["recvWindow"] = str(settings.EXCHANGE_RECV_WINDOW)
            items["timestamp"] = str(int(time.time() * 1000))
        query = urlencode(items)
        if signed:
            signature = hmac.new(
                self.api_secret.encode("utf-8"),
                query.encode("utf-8"),
                hashlib.sha256,
            ).hexdigest()
            query = f"{query}&signature={signature}"
        return query, items

    def _send(self, ip: str, method: str, path: str, signed: bool, params: dict | None, loggable: dict) -> Any:
        query, payload = self._query(params, signed)
        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{query}"
        headers = {"X-MBX-APIKEY": self.api_key} if self.api_key else {}

        started = time.monotonic()
        try:
            resp = self._session(ip).request(method, url, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            self._log_request(ip, method, path, payload, headers, loggable, started, None, {"error": str(exc)}, {})
            gateway_requests_total.labels(self.exchange.canonical, method, "transport_error").inc()
            raise ExchangeTransportError(
                f"{method} {path} failed: {exc}",
                exchange=self.exchange.canonical,
                path=path,
                ip=ip,
            ) from exc

        body = _decode_body(resp)
        self._log_request(
            ip, method, path, payload, headers, loggable, started,
            resp.status_code, body, dict(resp.headers or {}),
        )

        if resp.status_code in RATE_LIMIT_STATUSES:
            gateway_requests_total.labels(self.exchange.canonical, method, "rate_limited").inc()
            raise RateLimitExceededError(
                f"Rate limit exceeded on {path} via {ip}",
                exchange=self.exchange.canonical,
                path=path,
                ip=ip,
            )
        if resp.status_code >= 400:
            code = body.get("code") if isinstance(body, dict) else None
            if code is not None and code in self.errors_to_skip.get(resp.status_code, []):
                logger.info("Ignoring %s %s error code %s: %s", method, path, code, body.get("msg"))
                return body
            gateway_requests_total.labels(self.exchange.canonical, method, "api_error").inc()
            message = body.get("msg") if isinstance(body, dict) else None
            raise ExchangeApiError(
                f"{method} {path} returned {resp.status_code}: {message or body}",
                status_code=resp.status_code,
                code=code,
                exchange=self.exchange.canonical,
                path=path,
            )

        self.balancer.record_usage(ip, path, _used_weight(resp.headers))
        gateway_requests_total.labels(self.exchange.canonical, method, "ok").inc()
        return body

    def _log_request(self, ip, method, path, payload, headers, loggable, started, status_code, body, resp_headers):
        sent_headers = {k: mask_secret(v) for k, v in headers.items()}
        try:
            ApiRequestLog.objects.create(
                exchange=self.exchange,
                http_method=method,
                path=path,
                payload=payload,
                ip_address=ip,
                hostname=socket.gethostname(),
                http_headers_sent=sent_headers,
                response_code=status_code,
                response=body if isinstance(body, (dict, list)) else {"raw": str(body)},
                http_headers_returned=resp_headers,
                duration_ms=int((time.monotonic() - started) * 1000),
                related_position_id=loggable.get("position_id"),
                related_order_id=loggable.get("order_id"),
            )
        except Exception as exc:
            logger.warning("Failed to write api request log for %s %s: %s", method, path, exc)
