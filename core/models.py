from django.db import models

from core.fields import EncryptedCredentialField


class TimeStampedModel(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class Exchange(TimeStampedModel):
    canonical = models.CharField(max_length=32, unique=True)
    name = models.CharField(max_length=64)
    base_url = models.CharField(max_length=255, blank=True, default="")
    is_active = models.BooleanField(default=True)

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.name or self.canonical


class Trader(TimeStampedModel):
    name = models.CharField(max_length=64, unique=True)
    exchange = models.ForeignKey(Exchange, on_delete=models.PROTECT, related_name="traders")
    api_key = EncryptedCredentialField(blank=True, default="")
    api_secret = EncryptedCredentialField(blank=True, default="")
    is_active = models.BooleanField(default=True)

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.name} ({self.exchange.canonical})"


class ExchangeSymbol(TimeStampedModel):
    class Side(models.TextChoices):
        LONG = "LONG", "Long"
        SHORT = "SHORT", "Short"

    exchange = models.ForeignKey(Exchange, on_delete=models.CASCADE, related_name="symbols")
    symbol = models.CharField(max_length=32)
    precision_price = models.PositiveSmallIntegerField(default=2)
    precision_quantity = models.PositiveSmallIntegerField(default=3)
    precision_quote = models.PositiveSmallIntegerField(default=8)
    tick_size = models.DecimalField(max_digits=18, decimal_places=10, default=0)
    last_mark_price = models.DecimalField(max_digits=28, decimal_places=10, null=True, blank=True)
    price_last_synced_at = models.DateTimeField(null=True, blank=True)
    side = models.CharField(max_length=5, choices=Side.choices, default=Side.LONG)
    is_active = models.BooleanField(default=True)
    is_eligible = models.BooleanField(default=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["exchange", "symbol"], name="core_exsym_exchange_symbol_uniq"),
        ]
        indexes = [
            models.Index(fields=["exchange", "is_active", "is_eligible"], name="core_exsym_eligible_idx"),
        ]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.symbol} ({self.exchange.canonical})"


class ExceptionLog(models.Model):
    """Durable record of a failure, written before the error is re-raised."""

    exception_class = models.CharField(max_length=128)
    message = models.TextField(blank=True, default="")
    context = models.JSONField(default=dict, blank=True)
    traceback = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.created_at} - {self.exception_class}"
