"""Card rail on Stripe: PaymentIntent at checkout, signed webhook at settlement."""
import json
import logging

import stripe

from app.core.config import settings
from app.core.errors import ErrorCodes, ValidationError
from app.models import Order, PaymentMethod
from app.services.gateways.base import (
    FAILED,
    IGNORED,
    SUCCEEDED,
    GatewayUnavailable,
    PaymentGateway,
    PaymentHandle,
    RawWebhook,
    WebhookEvent,
    retry_on_gateway_error,
)

log = logging.getLogger("coursepay.gateway.card")

SIGNATURE_HEADER = "Stripe-Signature"

EVENT_OUTCOMES = {
    "payment_intent.succeeded": SUCCEEDED,
    "payment_intent.payment_failed": FAILED,
    "payment_intent.canceled": FAILED,
}


class StripeCardGateway(PaymentGateway):
    gateway_id = PaymentMethod.CARD.value

    def __init__(self, api_key: str | None = None, webhook_secret: str | None = None) -> None:
        self._api_key = api_key
        self._webhook_secret = webhook_secret

    @property
    def api_key(self) -> str:
        return self._api_key if self._api_key is not None else settings.stripe_secret_key

    @property
    def webhook_secret(self) -> str:
        return self._webhook_secret if self._webhook_secret is not None else settings.stripe_webhook_secret

    @retry_on_gateway_error()
    def _create_intent(self, order: Order):
        try:
            return stripe.PaymentIntent.create(
                amount=order.total_amount,
                currency=order.currency.lower(),
                metadata={
                    "order_code": order.code,
                    "user_id": str(order.user_id),
                    "coupon_code": order.coupon_code or "",
                    "items_count": str(len(order.items or [])),
                },
                automatic_payment_methods={"enabled": True},
                description=f"Payment for order {order.code}",
                # Re-initiating the same order returns the same intent
                idempotency_key=f"order-{order.code}",
                api_key=self.api_key,
            )
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            raise GatewayUnavailable(str(e)) from e
        except stripe.APIError as e:
            if (getattr(e, "http_status", None) or 500) >= 500:
                raise GatewayUnavailable(str(e)) from e
            raise

    def initiate(self, order: Order) -> PaymentHandle:
        if not self.api_key:
            raise ValidationError("Card payments are not configured.", ErrorCodes.PAYMENT_METHOD_UNAVAILABLE)
        try:
            intent = self._create_intent(order)
        except stripe.StripeError as e:
            # Non-transient (invalid request, auth): nothing to retry
            log.error("PaymentIntent creation rejected: order=%s error=%s", order.code, e)
            raise ValidationError(
                f"Card payment could not be started: {getattr(e, 'user_message', None) or str(e)[:80]}",
                ErrorCodes.PAYMENT_METHOD_UNAVAILABLE,
            ) from e
        log.info("PaymentIntent created: order=%s intent=%s", order.code, intent.id)
        return PaymentHandle(
            reference=intent.id,
            instructions={
                "method": PaymentMethod.CARD.value,
                "provider": "stripe",
                "payment_intent_id": intent.id,
                "client_secret": intent.client_secret,
                "amount": order.total_amount,
                "currency": order.currency,
            },
        )

    def parse_webhook(self, raw: RawWebhook) -> WebhookEvent:
        signature = raw.header(SIGNATURE_HEADER)
        if not self.webhook_secret:
            return WebhookEvent.rejected(self.gateway_id, "webhook secret not configured")
        if not signature:
            return WebhookEvent.rejected(self.gateway_id, "missing signature header")
        try:
            payload = raw.body.decode("utf-8")
            stripe.WebhookSignature.verify_header(payload, signature, self.webhook_secret, stripe.Webhook.DEFAULT_TOLERANCE)
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as e:
            log.warning("Card webhook signature rejected: %s", e)
            return WebhookEvent.rejected(self.gateway_id, "bad signature")
        try:
            event = json.loads(payload)
            event_id = str(event["id"])
            event_type = str(event.get("type") or "")
            intent = event.get("data", {}).get("object", {}) or {}
        except (ValueError, KeyError, AttributeError, TypeError):
            return WebhookEvent.rejected(self.gateway_id, "malformed payload")

        outcome = EVENT_OUTCOMES.get(event_type, IGNORED)
        if outcome == IGNORED:
            return WebhookEvent(
                gateway=self.gateway_id,
                verified=True,
                outcome=IGNORED,
                external_event_id=event_id,
                reason=f"event type {event_type or '?'} not handled",
            )
        metadata = intent.get("metadata") or {}
        amount = intent.get("amount_received") or intent.get("amount")
        return WebhookEvent(
            gateway=self.gateway_id,
            verified=True,
            outcome=outcome,
            external_event_id=event_id,
            order_reference=(metadata.get("order_code") or "").strip().upper() or None,
            amount_paid=int(amount) if amount is not None else None,
            currency=(intent.get("currency") or "").upper() or None,
        )
