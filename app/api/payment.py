"""
Gateway callbacks. Both routes read the raw body (signatures are computed over the exact bytes)
and hand it to the shared reconciler.

200: processed (or duplicate / ignored / queued for review)   400: bad signature
422: amount or currency does not match the order, the payment stays unverified
500: transient failure, the gateway should retry
"""
import logging

from fastapi import APIRouter, Depends, Request
from sqlmodel import Session

from app.core.config import is_card_configured, settings
from app.core.database import get_db
from app.core.errors import ErrorCodes, UnprocessableError, ValidationError, WebhookVerificationError
from app.core.rate_limit import client_ip
from app.models import PaymentMethod, SecurityLog
from app.schemas import CardConfigResponse, WebhookAck
from app.services.gateways import RawWebhook, get_gateway
from app.services.reconcile import reconcile_webhook

router = APIRouter(prefix="/payment", tags=["payment"])
log = logging.getLogger("coursepay.api.payment")


async def _handle_callback(request: Request, db: Session, method: PaymentMethod) -> WebhookAck:
    raw = RawWebhook(body=await request.body(), headers=dict(request.headers))
    gateway = get_gateway(method)
    try:
        result = reconcile_webhook(db, gateway, raw)
    except WebhookVerificationError as e:
        db.add(SecurityLog(event="bad_signature", ip=client_ip(request) or None, endpoint=request.url.path, detail=e.message[:500]))
        db.commit()
        raise
    if result.payment_unverified:
        raise UnprocessableError(
            f"Payment {result.external_event_id} flagged for manual review: {result.review_reason}.",
            ErrorCodes.PAYMENT_FLAGGED_FOR_REVIEW,
        )
    return WebhookAck(outcome=result.outcome, duplicate=result.duplicate, order_code=result.order_code)


@router.post("/card-webhook", response_model=WebhookAck)
async def card_webhook(request: Request, db: Session = Depends(get_db)):
    """Stripe events (payment_intent.*), verified with the Stripe-Signature header."""
    return await _handle_callback(request, db, PaymentMethod.CARD)


@router.post("/bank-transfer-callback", response_model=WebhookAck)
async def bank_transfer_callback(request: Request, db: Session = Depends(get_db)):
    """Bank processor notification for one incoming transfer; HMAC signature in the body."""
    return await _handle_callback(request, db, PaymentMethod.BANK_TRANSFER)


@router.get("/card-config", response_model=CardConfigResponse)
def card_config():
    """Publishable key for the client-side payment element."""
    if not is_card_configured() or not settings.stripe_publishable_key:
        raise ValidationError("Card payments are not configured.", ErrorCodes.PAYMENT_METHOD_UNAVAILABLE)
    return CardConfigResponse(publishable_key=settings.stripe_publishable_key, currency=settings.currency)
