"""
Typed error taxonomy shared by the job runner, the state machines and the gateway.

Every error carries a `context` dict (position/order/job ids, exchange details)
so the durable exception log and the Celery DLQ can reconstruct the root cause.
"""
from __future__ import annotations

import logging
import traceback as tb
from typing import Any

logger = logging.getLogger(__name__)


class LadderEngineError(Exception):
    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def __str__(self) -> str:
        return self.message


class JobRegistryError(LadderEngineError):
    """Unknown job tag or arguments that do not fit the job's constructor."""


class PositionValidationError(LadderEngineError):
    pass


class InsufficientBalanceError(LadderEngineError):
    pass


class PositionDispatchError(LadderEngineError):
    pass


class RollbackError(LadderEngineError):
    pass


class OrderDispatchError(LadderEngineError):
    pass


class PositionCloseError(LadderEngineError):
    pass


class RepricingError(LadderEngineError):
    pass


class ExchangeError(LadderEngineError):
    pass


class RateLimitExceededError(ExchangeError):
    pass


class ExchangeTransportError(ExchangeError):
    """Network failure or timeout before a response was received."""


class ExchangeApiError(ExchangeError):
    def __init__(self, message: str, status_code: int | None = None, code: int | None = None, **context: Any):
        super().__init__(message, status_code=status_code, code=code, **context)
        self.status_code = status_code
        self.code = code


def error_context(exc: BaseException) -> dict:
    """Merge the context of `exc` and every wrapped cause, outermost wins."""
    merged: dict = {}
    seen = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        for key, value in getattr(current, "context", {}).items():
            merged.setdefault(key, value)
        current = current.__cause__
    return merged


def record_exception(exc: BaseException, **context: Any):
    """Persist `exc` to the exception log. Never raises."""
    from core.models import ExceptionLog

    payload = {**error_context(exc), **{k: v for k, v in context.items() if v is not None}}
    try:
        return ExceptionLog.objects.create(
            exception_class=type(exc).__name__,
            message=str(exc)[:4000],
            context=payload,
            traceback="".join(tb.format_exception(type(exc), exc, exc.__traceback__))[-8000:],
        )
    except Exception as log_exc:
        logger.warning("Failed to persist exception log for %s: %s", type(exc).__name__, log_exc)
        return None
