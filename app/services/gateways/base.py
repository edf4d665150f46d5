"""Payment gateway port.

Every rail implements the same two calls so the reconciliation core is written once
against a canonical event shape:

- initiate(order) -> PaymentHandle: what the buyer needs to pay (card intent, bank instructions)
- parse_webhook(raw) -> WebhookEvent: signature verified, normalized gateway callback
"""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from functools import wraps

from app.core.config import settings
from app.core.errors import ExternalServiceError
from app.models import Order

log = logging.getLogger("coursepay.gateway")

SUCCEEDED = "succeeded"
FAILED = "failed"
IGNORED = "ignored"


@dataclass(frozen=True)
class RawWebhook:
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)

    def header(self, name: str) -> str:
        name = name.lower()
        for key, value in self.headers.items():
            if key.lower() == name:
                return value
        return ""


@dataclass(frozen=True)
class PaymentHandle:
    reference: str | None
    instructions: dict


@dataclass(frozen=True)
class WebhookEvent:
    gateway: str
    verified: bool
    outcome: str = IGNORED  # succeeded | failed | ignored
    external_event_id: str | None = None
    order_reference: str | None = None
    amount_paid: int | None = None
    currency: str | None = None
    reason: str | None = None  # why unverified / ignored

    @classmethod
    def rejected(cls, gateway: str, reason: str) -> "WebhookEvent":
        return cls(gateway=gateway, verified=False, reason=reason)


class GatewayUnavailable(Exception):
    """Transient gateway failure worth retrying (connection reset, rate limit, 5xx)."""


def retry_on_gateway_error(max_retries: int | None = None, base_delay: float | None = None):
    """
    Retry GatewayUnavailable with exponential backoff, then raise ExternalServiceError (502).
    Defaults come from settings at call time.
    """

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            retries = settings.gateway_max_retries if max_retries is None else max_retries
            delay_base = settings.gateway_retry_base_delay if base_delay is None else base_delay
            last_exception = None
            for attempt in range(retries + 1):
                try:
                    return func(*args, **kwargs)
                except GatewayUnavailable as e:
                    last_exception = e
                    if attempt < retries:
                        delay = delay_base * (2**attempt)
                        log.warning(
                            "Gateway call %s failed on attempt %s/%s: %s. Retrying in %.2fs",
                            func.__name__,
                            attempt + 1,
                            retries + 1,
                            e,
                            delay,
                        )
                        time.sleep(delay)
            log.error("Gateway call %s failed after %s attempts: %s", func.__name__, retries + 1, last_exception)
            raise ExternalServiceError(f"Payment gateway unavailable: {str(last_exception)[:80]}")

        return wrapper

    return decorator


class PaymentGateway(ABC):
    gateway_id: str = ""

    @abstractmethod
    def initiate(self, order: Order) -> PaymentHandle:
        """Create whatever the buyer needs to pay this order."""
        ...

    @abstractmethod
    def parse_webhook(self, raw: RawWebhook) -> WebhookEvent:
        """Verify and normalize a callback. Bad input yields verified=False, never an exception."""
        ...
