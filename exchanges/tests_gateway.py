from unittest.mock import Mock, patch

import requests
from django.test import TestCase
from django.utils import timezone as dj_tz

from core.exceptions import ExchangeApiError, ExchangeTransportError, RateLimitExceededError
from core.models import Exchange
from exchanges.gateway import RateLimitedGateway
from exchanges.ip_balancer import IpBalancer
from exchanges.models import ApiRequestLog, EndpointWeightRecord, IpWeightRecord


def _response(status_code=200, body=None, headers=None):
    resp = Mock()
    resp.status_code = status_code
    resp.json.return_value = body if body is not None else {}
    resp.text = ""
    resp.headers = headers or {}
    return resp


class _ScriptedSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, headers=None, timeout=None):
        self.calls.append((method, url, headers))
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RateLimitedGatewayTest(TestCase):
    def setUp(self):
        self.exchange = Exchange.objects.create(canonical="binance", name="Binance", base_url="https://fapi.test")

    def _gateway(self, addresses, sessions, **kwargs):
        balancer = IpBalancer(self.exchange, addresses, strategy="fixed", penalty=9999)
        gateway = RateLimitedGateway(
            self.exchange,
            api_key="key-1234",
            api_secret="secret",
            balancer=balancer,
            retry_wait=0,
            max_attempts=3,
            **kwargs,
        )
        patcher = patch.object(gateway, "_session", side_effect=lambda ip: sessions[ip])
        patcher.start()
        self.addCleanup(patcher.stop)
        return gateway

    def test_rate_limit_rotates_to_next_address_and_penalises_previous(self):
        session_a = _ScriptedSession(_response(429, {"code": -1003, "msg": "Too many requests"}))
        session_b = _ScriptedSession(_response(200, {"orderId": 1}, {"X-MBX-USED-WEIGHT-1M": "3"}))
        gateway = self._gateway(["10.0.0.1", "10.0.0.2"], {"10.0.0.1": session_a, "10.0.0.2": session_b})

        body = gateway.request("GET", "/fapi/v1/order", signed=True, params={"symbol": "BTCUSDT"})

        self.assertEqual(body, {"orderId": 1})
        self.assertEqual(len(session_a.calls), 1)
        self.assertEqual(len(session_b.calls), 1)
        weights = dict(IpWeightRecord.objects.values_list("ip_address", "current_weight"))
        self.assertEqual(weights["10.0.0.1"], 9999)
        self.assertEqual(weights["10.0.0.2"], 3)

    def test_single_address_fails_immediately_on_rate_limit(self):
        session = _ScriptedSession(_response(429, {"code": -1003}), _response(200, {}))
        gateway = self._gateway(["10.0.0.1"], {"10.0.0.1": session})

        with self.assertRaises(RateLimitExceededError):
            gateway.request("GET", "/fapi/v2/balance", signed=True)

        self.assertEqual(len(session.calls), 1)
        self.assertEqual(IpWeightRecord.objects.get().current_weight, 9999)

    def test_rate_limit_gives_up_after_max_attempts(self):
        sessions = {
            "10.0.0.1": _ScriptedSession(_response(429), _response(429)),
            "10.0.0.2": _ScriptedSession(_response(418)),
        }
        gateway = self._gateway(["10.0.0.1", "10.0.0.2"], sessions)

        with self.assertRaises(RateLimitExceededError):
            gateway.request("GET", "/fapi/v1/openOrders")

        self.assertEqual(len(sessions["10.0.0.1"].calls), 2)
        self.assertEqual(len(sessions["10.0.0.2"].calls), 1)

    def test_signed_request_carries_signature_and_api_key(self):
        session = _ScriptedSession(_response(200, []))
        gateway = self._gateway(["10.0.0.1"], {"10.0.0.1": session})

        gateway.request("POST", "/fapi/v1/order", signed=True, params={"symbol": "BTCUSDT", "reduceOnly": True, "price": None})

        method, url, headers = session.calls[0]
        self.assertEqual(method, "POST")
        self.assertTrue(url.startswith("https://fapi.test/fapi/v1/order?symbol=BTCUSDT&reduceOnly=true&recvWindow="))
        self.assertIn("&signature=", url)
        self.assertNotIn("price", url)
        self.assertEqual(headers, {"X-MBX-APIKEY": "key-1234"})

    def test_api_error_is_typed_and_not_retried(self):
        session = _ScriptedSession(_response(400, {"code": -2019, "msg": "Margin is insufficient."}))
        gateway = self._gateway(["10.0.0.1", "10.0.0.2"], {"10.0.0.1": session, "10.0.0.2": _ScriptedSession()})

        with self.assertRaises(ExchangeApiError) as ctx:
            gateway.request("POST", "/fapi/v1/order", signed=True, position_id=12)

        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(ctx.exception.code, -2019)
        self.assertIn("Margin is insufficient", str(ctx.exception))
        self.assertEqual(len(session.calls), 1)

    def test_skipped_error_codes_return_body(self):
        body = {"code": -4046, "msg": "No need to change margin type."}
        session = _ScriptedSession(_response(400, body))
        gateway = self._gateway(["10.0.0.1"], {"10.0.0.1": session})

        self.assertEqual(gateway.request("POST", "/fapi/v1/marginType", signed=True), body)

    def test_transport_error_is_wrapped(self):
        session = _ScriptedSession(requests.ConnectTimeout("timed out"))
        gateway = self._gateway(["10.0.0.1"], {"10.0.0.1": session})

        with self.assertRaises(ExchangeTransportError) as ctx:
            gateway.request("GET", "/fapi/v1/premiumIndex")

        self.assertIsInstance(ctx.exception.__cause__, requests.ConnectTimeout)
        self.assertIsNone(ApiRequestLog.objects.get().response_code)

    def test_every_call_is_logged_with_masked_key(self):
        session = _ScriptedSession(_response(200, {"ok": True}, {"X-MBX-USED-WEIGHT-1M": "1"}))
        gateway = self._gateway(["10.0.0.1"], {"10.0.0.1": session})

        gateway.request("GET", "/fapi/v1/order", signed=True, params={"symbol": "ETHUSDT"}, position_id=7, order_id=9)

        log = ApiRequestLog.objects.get()
        self.assertEqual(log.path, "/fapi/v1/order")
        self.assertEqual(log.response_code, 200)
        self.assertEqual(log.related_position_id, 7)
        self.assertEqual(log.related_order_id, 9)
        self.assertEqual(log.payload["symbol"], "ETHUSDT")
        self.assertEqual(log.http_headers_sent, {"X-MBX-APIKEY": "****1234"})

    def test_least_weight_accounts_for_learned_endpoint_cost(self):
        now = dj_tz.now()
        IpWeightRecord.objects.create(exchange=self.exchange, ip_address="10.0.0.1", current_weight=8, last_reset_at=now)
        IpWeightRecord.objects.create(exchange=self.exchange, ip_address="10.0.0.2", current_weight=9, last_reset_at=now)
        EndpointWeightRecord.objects.create(exchange=self.exchange, endpoint="/fapi/v2/positionRisk", weight=3)
        session_a = _ScriptedSession(_response(200, {"ok": True}))
        session_b = _ScriptedSession()
        balancer = IpBalancer(self.exchange, ["10.0.0.1", "10.0.0.2"], strategy="least-weight", weight_limit=10)
        gateway = RateLimitedGateway(self.exchange, api_key="key-1234", api_secret="secret", balancer=balancer, retry_wait=0)
        patcher = patch.object(gateway, "_session", side_effect=lambda ip: {"10.0.0.1": session_a, "10.0.0.2": session_b}[ip])
        patcher.start()
        self.addCleanup(patcher.stop)

        with self.assertRaises(RateLimitExceededError):
            gateway.request("GET", "/fapi/v2/positionRisk", signed=True)
        self.assertEqual(session_a.calls + session_b.calls, [])

        self.assertEqual(gateway.request("GET", "/fapi/v1/premiumIndex"), {"ok": True})
        self.assertEqual(len(session_a.calls), 1)
