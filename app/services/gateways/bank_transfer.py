"""
Bank transfer rail. The buyer wires the exact total with the order code in the transfer
description; the bank processor posts a signed callback per incoming transaction:

    {"id": ..., "amount": ..., "description": ..., "timestamp": ..., "signature": ..., "transferType": "in"}

signature = base64(HMAC-SHA256(secret, f"{id}{amount}{description}{timestamp}"))
"""
import base64
import hashlib
import hmac
import json
import logging
import re

from app.core.config import settings
from app.core.errors import ErrorCodes, ValidationError
from app.models import Order, PaymentMethod
from app.services.gateways.base import IGNORED, SUCCEEDED, PaymentGateway, PaymentHandle, RawWebhook, WebhookEvent

log = logging.getLogger("coursepay.gateway.bank_transfer")

REQUIRED_FIELDS = ("id", "amount", "description", "timestamp", "signature")


def _code_pattern(prefix: str) -> re.Pattern:
    return re.compile(rf"(?<![A-Z0-9]){re.escape(prefix)}\d{{8}}[A-Z0-9]{{6}}(?![A-Z0-9])", re.IGNORECASE)


def extract_order_code(description: str, prefix: str | None = None) -> str | None:
    """Exactly one distinct order code in the free text, upper-cased; otherwise None."""
    pattern = _code_pattern(prefix or settings.order_code_prefix)
    found = {m.group(0).upper() for m in pattern.finditer(description or "")}
    if len(found) != 1:
        if len(found) > 1:
            log.warning("Ambiguous transfer description: %s candidate codes", len(found))
        return None
    return found.pop()


def parse_amount(value) -> int | None:
    """Whole amounts only: ints, integral floats and digit strings. Anything else is None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str) and value.strip().isascii() and value.strip().isdigit():
        return int(value.strip())
    return None


def sign_payload(secret: str, transaction_id, amount, description, timestamp) -> str:
    message = f"{transaction_id}{amount}{description}{timestamp}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


class BankTransferGateway(PaymentGateway):
    gateway_id = PaymentMethod.BANK_TRANSFER.value

    def __init__(self, secret: str | None = None) -> None:
        self._secret = secret

    @property
    def secret(self) -> str:
        return self._secret if self._secret is not None else settings.bank_transfer_secret

    def initiate(self, order: Order) -> PaymentHandle:
        if not settings.bank_transfer_account_number:
            raise ValidationError("Bank transfer is not configured.", ErrorCodes.PAYMENT_METHOD_UNAVAILABLE)
        return PaymentHandle(
            reference=None,
            instructions={
                "method": PaymentMethod.BANK_TRANSFER.value,
                "amount": order.total_amount,
                "currency": order.currency,
                "bank_name": settings.bank_transfer_bank_name,
                "account_number": settings.bank_transfer_account_number,
                "account_name": settings.bank_transfer_account_name,
                "transfer_description": order.code,
                "note": f"Transfer exactly {order.total_amount} {order.currency} and include {order.code} in the description.",
            },
        )

    def parse_webhook(self, raw: RawWebhook) -> WebhookEvent:
        if not self.secret:
            return WebhookEvent.rejected(self.gateway_id, "callback secret not configured")
        try:
            data = json.loads(raw.body or b"{}")
        except ValueError:
            return WebhookEvent.rejected(self.gateway_id, "malformed payload")
        if not isinstance(data, dict) or any(data.get(k) in (None, "") for k in REQUIRED_FIELDS if k != "description"):
            return WebhookEvent.rejected(self.gateway_id, "missing fields")

        description = data.get("description") or ""
        expected = sign_payload(self.secret, data["id"], data["amount"], description, data["timestamp"])
        if not hmac.compare_digest(expected.encode("utf-8"), str(data["signature"]).encode("utf-8")):
            log.warning("Bank transfer callback signature rejected: id=%s", data.get("id"))
            return WebhookEvent.rejected(self.gateway_id, "bad signature")

        event_id = str(data["id"])
        if str(data.get("transferType") or "in").lower() == "out":
            return WebhookEvent(
                gateway=self.gateway_id,
                verified=True,
                outcome=IGNORED,
                external_event_id=event_id,
                reason="outgoing transfer",
            )
        amount = parse_amount(data["amount"])
        if amount is None:
            return WebhookEvent.rejected(self.gateway_id, "amount is not an integer")
        return WebhookEvent(
            gateway=self.gateway_id,
            verified=True,
            outcome=SUCCEEDED,
            external_event_id=event_id,
            order_reference=extract_order_code(description),
            amount_paid=amount,
            currency=settings.currency,
        )
