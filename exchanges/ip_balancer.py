"""
Egress address selection and per-address weight bookkeeping.

Weight counters live in `IpWeightRecord` rows shared by every poller host, so
each read-modify-write happens under `select_for_update()` inside one short
transaction. Counters are minute windows: a record whose `last_reset_at`
belongs to an earlier wall-clock minute counts as zero.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime

import redis
from django.conf import settings
from django.db import transaction
from django.utils import timezone as dj_tz

from core.exceptions import RateLimitExceededError
from core.models import Exchange
from exchanges.models import EndpointWeightRecord, IpWeightRecord

logger = logging.getLogger(__name__)

FIXED = "fixed"
ROUND_ROBIN = "round-robin"
LEAST_WEIGHT = "least-weight"


def _redis_client():
    try:
        return redis.from_url(settings.REDIS_URL)
    except Exception:
        return None


def _minute_floor(value: datetime) -> datetime:
    return value.replace(second=0, microsecond=0)


def _is_current_window(last_reset_at: datetime | None, now: datetime) -> bool:
    return last_reset_at is not None and _minute_floor(last_reset_at) == _minute_floor(now)


class IpBalancer:
    def __init__(
        self,
        exchange: Exchange,
        addresses: list[str] | None = None,
        strategy: str | None = None,
        weight_limit: int | None = None,
        penalty: int | None = None,
    ):
        self.exchange = exchange
        self.addresses = list(addresses if addresses is not None else settings.EXCHANGE_EGRESS_IPS) or ["127.0.0.1"]
        self.strategy = (strategy or settings.EXCHANGE_IP_BALANCER_STRATEGY).lower()
        self.weight_limit = int(weight_limit or settings.EXCHANGE_WEIGHT_LIMIT)
        self.penalty = int(penalty or settings.EXCHANGE_RATE_LIMIT_PENALTY)

    # -- selection --

    def select_ip(self, cost: int = 1) -> str:
        """Pick an egress address for a call that will consume `cost` weight."""
        if self.strategy == ROUND_ROBIN:
            return self._round_robin()
        if self.strategy == LEAST_WEIGHT:
            return self._least_weight(cost)
        return self.addresses[0]

    def next_ip(self, current: str) -> str:
        try:
            idx = self.addresses.index(current)
        except ValueError:
            return self.addresses[0]
        return self.addresses[(idx + 1) % len(self.addresses)]

    def _round_robin(self) -> str:
        client = _redis_client()
        if client is None:
            logger.warning("Round-robin cursor unavailable (redis down); using first address")
            return self.addresses[0]
        key = f"ipbalancer:cursor:{self.exchange.canonical}"
        try:
            cursor = int(client.incr(key))
        except redis.RedisError as exc:
            logger.warning("Round-robin cursor update failed: %s", exc)
            return self.addresses[0]
        return self.addresses[(cursor - 1) % len(self.addresses)]

    def _least_weight(self, cost: int = 1) -> str:
        weights = self.current_weights()
        candidates = [
            (weights.get(ip, 0), idx, ip)
            for idx, ip in enumerate(self.addresses)
            if weights.get(ip, 0) + cost <= self.weight_limit
        ]
        if not candidates:
            raise RateLimitExceededError(
                "All egress addresses exceeded the rate limit",
                exchange=self.exchange.canonical,
                weight_limit=self.weight_limit,
                cost=cost,
            )
        return min(candidates)[2]

    def current_weights(self) -> dict[str, int]:
        now = dj_tz.now()
        rows = IpWeightRecord.objects.filter(exchange=self.exchange, ip_address__in=self.addresses)
        return {
            row.ip_address: (row.current_weight if _is_current_window(row.last_reset_at, now) else 0)
            for row in rows
        }

    # -- bookkeeping --

    @contextmanager
    def _locked_ip_record(self, ip: str):
        """Yield (record, window_was_reset) under a row lock; saves on exit."""
        record, _ = IpWeightRecord.objects.select_for_update().get_or_create(
            exchange=self.exchange,
            ip_address=ip,
        )
        now = dj_tz.now()
        reset = not _is_current_window(record.last_reset_at, now)
        if reset:
            record.current_weight = 0
            record.last_reset_at = _minute_floor(now)
        yield record, reset
        record.save(update_fields=["current_weight", "last_reset_at", "updated_at"])

    def endpoint_weight(self, endpoint: str) -> int:
        record, _ = EndpointWeightRecord.objects.get_or_create(
            exchange=self.exchange,
            endpoint=endpoint,
            defaults={"weight": 1},
        )
        return max(1, int(record.weight))

    def back_off(self, ip: str) -> int:
        with transaction.atomic():
            with self._locked_ip_record(ip) as (record, _reset):
                record.current_weight += self.penalty
        logger.warning(
            "Backing off %s on %s: weight now %s",
            ip,
            self.exchange.canonical,
            record.current_weight,
        )
        return record.current_weight

    def record_usage(self, ip: str, endpoint: str, reported_weight: int | None = None) -> int:
        """
        Fold one successful call into the address counter.

        With an exchange-reported minute weight the counter takes that value and
        the endpoint cost is learned from the delta; without it the learned
        endpoint cost is added.
        """
        with transaction.atomic():
            endpoint_record, _ = EndpointWeightRecord.objects.select_for_update().get_or_create(
                exchange=self.exchange,
                endpoint=endpoint,
                defaults={"weight": 1},
            )
            with self._locked_ip_record(ip) as (record, reset):
                if reported_weight is None:
                    record.current_weight += max(1, endpoint_record.weight)
                else:
                    delta = int(reported_weight) - record.current_weight
                    if not reset and delta > 0 and delta != endpoint_record.weight:
                        endpoint_record.weight = delta
                        endpoint_record.save(update_fields=["weight", "updated_at"])
                    record.current_weight = max(0, int(reported_weight))
        return record.current_weight
