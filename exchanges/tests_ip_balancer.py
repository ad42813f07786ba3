from datetime import datetime, timedelta, timezone as dt_timezone
from unittest.mock import patch

import redis
from django.test import TestCase
from django.utils import timezone as dj_tz

from core.exceptions import RateLimitExceededError
from core.models import Exchange
from exchanges.ip_balancer import FIXED, LEAST_WEIGHT, ROUND_ROBIN, IpBalancer
from exchanges.models import EndpointWeightRecord, IpWeightRecord


class _DummyRedis:
    def __init__(self):
        self.counters = {}

    def incr(self, key):
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]


class _BrokenRedis:
    def incr(self, key):
        raise redis.ConnectionError("down")


class IpBalancerSelectionTest(TestCase):
    def setUp(self):
        self.exchange = Exchange.objects.create(canonical="binance", name="Binance")
        self.addresses = ["10.0.0.1", "10.0.0.2", "10.0.0.3"]

    def test_fixed_always_returns_first_address(self):
        balancer = IpBalancer(self.exchange, self.addresses, strategy=FIXED)
        self.assertEqual({balancer.select_ip() for _ in range(4)}, {"10.0.0.1"})

    def test_round_robin_cycles_through_addresses(self):
        balancer = IpBalancer(self.exchange, self.addresses, strategy=ROUND_ROBIN)
        with patch("exchanges.ip_balancer._redis_client", return_value=_DummyRedis()):
            picks = [balancer.select_ip() for _ in range(4)]
        self.assertEqual(picks, ["10.0.0.1", "10.0.0.2", "10.0.0.3", "10.0.0.1"])

    def test_round_robin_falls_back_to_first_address_without_redis(self):
        balancer = IpBalancer(self.exchange, self.addresses, strategy=ROUND_ROBIN)
        with patch("exchanges.ip_balancer._redis_client", return_value=_BrokenRedis()):
            self.assertEqual(balancer.select_ip(), "10.0.0.1")

    def test_least_weight_picks_lowest_address_under_limit(self):
        now = dj_tz.now()
        IpWeightRecord.objects.create(exchange=self.exchange, ip_address="10.0.0.1", current_weight=50, last_reset_at=now)
        IpWeightRecord.objects.create(exchange=self.exchange, ip_address="10.0.0.2", current_weight=10, last_reset_at=now)
        IpWeightRecord.objects.create(exchange=self.exchange, ip_address="10.0.0.3", current_weight=30, last_reset_at=now)

        balancer = IpBalancer(self.exchange, self.addresses, strategy=LEAST_WEIGHT, weight_limit=100)

        self.assertEqual(balancer.select_ip(), "10.0.0.2")

    def test_least_weight_ignores_counters_from_previous_minute(self):
        stale = dj_tz.now() - timedelta(minutes=2)
        IpWeightRecord.objects.create(exchange=self.exchange, ip_address="10.0.0.1", current_weight=500, last_reset_at=stale)
        balancer = IpBalancer(self.exchange, self.addresses[:1], strategy=LEAST_WEIGHT, weight_limit=100)
        self.assertEqual(balancer.select_ip(), "10.0.0.1")

    def test_least_weight_raises_when_every_address_is_over_limit(self):
        now = dj_tz.now()
        for ip in self.addresses[:2]:
            IpWeightRecord.objects.create(exchange=self.exchange, ip_address=ip, current_weight=100, last_reset_at=now)
        balancer = IpBalancer(self.exchange, self.addresses[:2], strategy=LEAST_WEIGHT, weight_limit=100)

        with self.assertRaises(RateLimitExceededError):
            balancer.select_ip()

    def test_least_weight_needs_room_for_the_call_cost(self):
        now = dj_tz.now()
        IpWeightRecord.objects.create(exchange=self.exchange, ip_address="10.0.0.1", current_weight=8, last_reset_at=now)
        IpWeightRecord.objects.create(exchange=self.exchange, ip_address="10.0.0.2", current_weight=9, last_reset_at=now)
        balancer = IpBalancer(self.exchange, self.addresses[:2], strategy=LEAST_WEIGHT, weight_limit=10)

        self.assertEqual(balancer.select_ip(), "10.0.0.1")
        self.assertEqual(balancer.select_ip(2), "10.0.0.1")
        with self.assertRaises(RateLimitExceededError) as ctx:
            balancer.select_ip(3)
        self.assertEqual(ctx.exception.context["cost"], 3)

    def test_next_ip_wraps_around(self):
        balancer = IpBalancer(self.exchange, self.addresses)
        self.assertEqual(balancer.next_ip("10.0.0.3"), "10.0.0.1")
        self.assertEqual(balancer.next_ip("unknown"), "10.0.0.1")


class IpBalancerBookkeepingTest(TestCase):
    def setUp(self):
        self.exchange = Exchange.objects.create(canonical="binance", name="Binance")
        self.balancer = IpBalancer(self.exchange, ["10.0.0.1"], penalty=9999)
        # Pin the clock inside one minute window.
        self.now = datetime(2026, 1, 5, 12, 30, 20, tzinfo=dt_timezone.utc)
        clock = patch("exchanges.ip_balancer.dj_tz.now", return_value=self.now)
        clock.start()
        self.addCleanup(clock.stop)

    def test_back_off_adds_penalty(self):
        self.balancer.record_usage("10.0.0.1", "/fapi/v1/order", reported_weight=7)
        self.assertEqual(self.balancer.back_off("10.0.0.1"), 7 + 9999)
        record = IpWeightRecord.objects.get(ip_address="10.0.0.1")
        self.assertEqual(record.current_weight, 7 + 9999)

    def test_usage_without_header_adds_learned_endpoint_weight(self):
        EndpointWeightRecord.objects.create(exchange=self.exchange, endpoint="/fapi/v2/balance", weight=5)
        self.balancer.record_usage("10.0.0.1", "/fapi/v2/balance")
        self.assertEqual(self.balancer.record_usage("10.0.0.1", "/fapi/v2/balance"), 10)

    def test_reported_weight_refines_endpoint_cost(self):
        self.balancer.record_usage("10.0.0.1", "/fapi/v1/order", reported_weight=10)
        self.balancer.record_usage("10.0.0.1", "/fapi/v1/leverageBracket", reported_weight=11)
        self.balancer.record_usage("10.0.0.1", "/fapi/v2/positionRisk", reported_weight=16)

        self.assertEqual(self.balancer.endpoint_weight("/fapi/v2/positionRisk"), 5)
        self.assertEqual(self.balancer.endpoint_weight("/fapi/v1/leverageBracket"), 1)
        self.assertEqual(self.balancer.endpoint_weight("/never/called"), 1)

    def test_counter_resets_when_minute_changes(self):
        IpWeightRecord.objects.create(
            exchange=self.exchange,
            ip_address="10.0.0.1",
            current_weight=1500,
            last_reset_at=self.now - timedelta(minutes=1, seconds=5),
        )
        self.assertEqual(self.balancer.record_usage("10.0.0.1", "/fapi/v1/order"), 1)
        record = IpWeightRecord.objects.get(ip_address="10.0.0.1")
        self.assertEqual(record.last_reset_at.second, 0)
