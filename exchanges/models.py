from django.db import models

from core.models import Exchange, TimeStampedModel


class IpWeightRecord(TimeStampedModel):
    """Rolling request weight used by one egress address in the current minute."""

    exchange = models.ForeignKey(Exchange, on_delete=models.CASCADE, related_name="ip_weights")
    ip_address = models.CharField(max_length=64)
    current_weight = models.PositiveIntegerField(default=0)
    last_reset_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["exchange", "ip_address"], name="exch_ipweight_exchange_ip_uniq"),
        ]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.ip_address} {self.current_weight}"


class EndpointWeightRecord(TimeStampedModel):
    exchange = models.ForeignKey(Exchange, on_delete=models.CASCADE, related_name="endpoint_weights")
    endpoint = models.CharField(max_length=128)
    weight = models.PositiveIntegerField(default=1)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["exchange", "endpoint"], name="exch_epweight_exchange_ep_uniq"),
        ]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.endpoint} w={self.weight}"


class ApiRequestLog(models.Model):
    exchange = models.ForeignKey(Exchange, on_delete=models.CASCADE, related_name="request_logs")
    http_method = models.CharField(max_length=8)
    path = models.CharField(max_length=128)
    payload = models.JSONField(default=dict, blank=True)
    ip_address = models.CharField(max_length=64, blank=True, default="")
    hostname = models.CharField(max_length=128, blank=True, default="")
    http_headers_sent = models.JSONField(default=dict, blank=True)
    response_code = models.PositiveSmallIntegerField(null=True, blank=True)
    response = models.JSONField(null=True, blank=True)
    http_headers_returned = models.JSONField(default=dict, blank=True)
    duration_ms = models.PositiveIntegerField(default=0)
    related_position_id = models.BigIntegerField(null=True, blank=True, db_index=True)
    related_order_id = models.BigIntegerField(null=True, blank=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["exchange", "path", "created_at"], name="exch_reqlog_path_idx"),
        ]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.http_method} {self.path} -> {self.response_code}"
