"""
Webhook settlement.

    parse/verify -> record event (dedup) -> claim -> transition (+ coupon guard) -> grant -> outcome

The event row is inserted and committed first; its unique (gateway, external_event_id)
key is the dedup check. Everything after the claim runs in one transaction so the
transition, coupon reservation, enrollment and the final event outcome land together or
not at all. A crash leaves the event PENDING and the next delivery processes it again.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, func, select

from app.core.config import settings
from app.core.database import utcnow
from app.core.errors import ConflictError, ErrorCodes, NotFoundError, WebhookVerificationError
from app.models import (
    AuditLog,
    CancelReason,
    Order,
    OrderStatus,
    ReconciliationTask,
    ReviewReason,
    SettlementEvent,
    SettlementOutcome,
)
from app.services.coupon import reserve_coupon
from app.services.enrollment import grant_enrollment
from app.services.gateways.base import FAILED, IGNORED, SUCCEEDED, PaymentGateway, RawWebhook, WebhookEvent
from app.services.state_machine import transition

log = logging.getLogger("coursepay.reconcile")

IGNORED_OUTCOME = "ignored"

# The payment itself is in doubt; the gateway is told so instead of receiving a plain ack
UNVERIFIED_PAYMENT_REASONS = frozenset({ReviewReason.AMOUNT_MISMATCH, ReviewReason.CURRENCY_MISMATCH})


@dataclass(frozen=True)
class SettlementResult:
    outcome: str  # a SettlementOutcome value, or "ignored"
    duplicate: bool = False
    order_code: str | None = None
    external_event_id: str | None = None
    review_reason: str | None = None

    @property
    def flagged(self) -> bool:
        return self.outcome == SettlementOutcome.MANUAL_REVIEW.value

    @property
    def payment_unverified(self) -> bool:
        return self.flagged and self.review_reason in UNVERIFIED_PAYMENT_REASONS


def _coupon_guard(db: Session, order: Order) -> str | None:
    return reserve_coupon(db, order.coupon_code)


def _record_event(db: Session, event: WebhookEvent) -> tuple[int, SettlementOutcome, str | None, bool]:
    """Insert the dedup row; on unique violation return the existing one. (id, outcome, order_code, existed)."""
    record = SettlementEvent(
        gateway=event.gateway,
        external_event_id=event.external_event_id,
        order_code=event.order_reference,
    )
    db.add(record)
    try:
        db.commit()
        db.refresh(record)
        return record.id, record.outcome, record.order_code, False
    except IntegrityError:
        db.rollback()
    existing = db.exec(
        select(SettlementEvent).where(
            SettlementEvent.gateway == event.gateway,
            SettlementEvent.external_event_id == event.external_event_id,
        )
    ).one()
    values = existing.id, existing.outcome, existing.order_code, True
    # End the read transaction so the claim below starts with a write
    db.commit()
    return values


def flag_for_review(
    db: Session,
    event: WebhookEvent,
    reason: str,
    order_code: str | None = None,
) -> ReconciliationTask:
    """Queue a captured payment for a human (refund or manual settlement). Does not commit."""
    task = db.exec(
        select(ReconciliationTask).where(
            ReconciliationTask.gateway == event.gateway,
            ReconciliationTask.external_event_id == event.external_event_id,
            ReconciliationTask.reason == reason,
        )
    ).first()
    if task is None:
        task = ReconciliationTask(
            gateway=event.gateway,
            external_event_id=event.external_event_id,
            order_code=order_code,
            reason=reason,
            amount_paid=event.amount_paid,
        )
        db.add(task)
    log.warning(
        "Payment flagged for review: gateway=%s event=%s order=%s reason=%s amount=%s",
        event.gateway,
        event.external_event_id,
        order_code or "-",
        reason,
        event.amount_paid,
    )
    return task


def _review_reason(db: Session, event: WebhookEvent, outcome: str) -> str | None:
    if outcome != SettlementOutcome.MANUAL_REVIEW.value:
        return None
    return db.exec(
        select(ReconciliationTask.reason)
        .where(
            ReconciliationTask.gateway == event.gateway,
            ReconciliationTask.external_event_id == event.external_event_id,
        )
        .order_by(ReconciliationTask.id)
    ).first()


def _paid_by_other_event(db: Session, event: WebhookEvent, order_code: str) -> bool:
    other = db.exec(
        select(SettlementEvent.id).where(
            SettlementEvent.order_code == order_code,
            SettlementEvent.outcome == SettlementOutcome.COMPLETED,
            SettlementEvent.external_event_id != event.external_event_id,
        )
    ).first()
    return other is not None


def _settle_success(db: Session, event: WebhookEvent, order: Order) -> SettlementOutcome:
    if event.currency and event.currency.upper() != order.currency.upper():
        flag_for_review(db, event, ReviewReason.CURRENCY_MISMATCH, order.code)
        return SettlementOutcome.MANUAL_REVIEW
    if event.amount_paid != order.total_amount:
        flag_for_review(db, event, ReviewReason.AMOUNT_MISMATCH, order.code)
        return SettlementOutcome.MANUAL_REVIEW

    guard = _coupon_guard if order.coupon_code else None
    try:
        result = transition(db, order.code, OrderStatus.COMPLETED, guard=guard)
    except ConflictError:
        # Money captured for an order that was cancelled first
        flag_for_review(db, event, ReviewReason.ORDER_NOT_PAYABLE, order.code)
        return SettlementOutcome.CONFLICT

    if not result.applied:
        if _paid_by_other_event(db, event, order.code):
            flag_for_review(db, event, ReviewReason.ORDER_NOT_PAYABLE, order.code)
            return SettlementOutcome.CONFLICT
        return SettlementOutcome.COMPLETED

    if result.status == OrderStatus.CANCELLED:
        # Guard failed: coupon exhausted between checkout and payment; refund queue
        flag_for_review(db, event, result.reason or ReviewReason.COUPON_USAGE_LIMIT_EXCEEDED, order.code)
        return SettlementOutcome.CANCELLED

    paid = result.order
    if not paid.payment_reference:
        paid.payment_reference = event.external_event_id
        db.add(paid)
    grant_enrollment(db, paid)
    return SettlementOutcome.COMPLETED


def _settle_failure(db: Session, event: WebhookEvent, order: Order) -> SettlementOutcome:
    try:
        transition(db, order.code, OrderStatus.CANCELLED, reason=CancelReason.PAYMENT_FAILED)
    except ConflictError:
        log.warning(
            "Payment failure reported for completed order: order=%s event=%s", order.code, event.external_event_id
        )
        return SettlementOutcome.CONFLICT
    return SettlementOutcome.CANCELLED


def _process(db: Session, event: WebhookEvent) -> SettlementOutcome:
    order = None
    if event.order_reference:
        order = db.exec(select(Order).where(Order.code == event.order_reference)).first()
    if order is None:
        flag_for_review(db, event, ReviewReason.UNMATCHED_REFERENCE, event.order_reference)
        return SettlementOutcome.MANUAL_REVIEW
    if event.outcome == SUCCEEDED:
        return _settle_success(db, event, order)
    if event.outcome == FAILED:
        return _settle_failure(db, event, order)
    raise ValueError(f"Unsupported webhook outcome: {event.outcome}")


def reconcile_webhook(db: Session, gateway: PaymentGateway, raw: RawWebhook) -> SettlementResult:
    """
    Settle one gateway callback. Safe under duplicate, concurrent and out-of-order
    delivery: the order transition is a CAS and the event is claimed with one.
    Raises WebhookVerificationError for unverified input; nothing is persisted then.
    """
    event = gateway.parse_webhook(raw)
    if not event.verified:
        raise WebhookVerificationError(f"Webhook rejected: {event.reason or 'unverified'}.")
    if event.outcome == IGNORED or not event.external_event_id:
        log.info(
            "Webhook ignored: gateway=%s event=%s reason=%s",
            event.gateway,
            event.external_event_id or "-",
            event.reason or "-",
        )
        return SettlementResult(outcome=IGNORED_OUTCOME, external_event_id=event.external_event_id)

    event_id, stored_outcome, stored_order, existed = _record_event(db, event)
    if existed and stored_outcome != SettlementOutcome.PENDING:
        log.info("Duplicate webhook: gateway=%s event=%s outcome=%s", event.gateway, event.external_event_id, stored_outcome.value)
        return SettlementResult(
            outcome=stored_outcome.value,
            duplicate=True,
            order_code=stored_order,
            external_event_id=event.external_event_id,
            review_reason=_review_reason(db, event, stored_outcome.value),
        )

    try:
        claimed = db.execute(
            update(SettlementEvent)
            .where(SettlementEvent.id == event_id, SettlementEvent.outcome == SettlementOutcome.PENDING)
            .values(processed_at=utcnow())
            .execution_options(synchronize_session=False)
        ).rowcount == 1
        if not claimed:
            # A concurrent delivery finished first
            db.rollback()
            finished = db.get(SettlementEvent, event_id, populate_existing=True)
            return SettlementResult(
                outcome=finished.outcome.value,
                duplicate=True,
                order_code=finished.order_code,
                external_event_id=event.external_event_id,
                review_reason=_review_reason(db, event, finished.outcome.value),
            )

        outcome = _process(db, event)
        db.execute(
            update(SettlementEvent)
            .where(SettlementEvent.id == event_id)
            .values(outcome=outcome, order_code=event.order_reference, processed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except Exception:
        db.rollback()
        log.exception("Webhook processing failed: gateway=%s event=%s", event.gateway, event.external_event_id)
        raise

    log.info(
        "Webhook settled: gateway=%s event=%s order=%s outcome=%s",
        event.gateway,
        event.external_event_id,
        event.order_reference or "-",
        outcome.value,
    )
    return SettlementResult(
        outcome=outcome.value,
        order_code=event.order_reference,
        external_event_id=event.external_event_id,
        review_reason=_review_reason(db, event, outcome.value),
    )


def prune_settlement_events(db: Session, older_than_days: int | None = None) -> int:
    """Delete finished dedup rows past the retention window. PENDING rows are kept for reprocessing."""
    days = settings.settlement_event_retention_days if older_than_days is None else older_than_days
    cutoff = utcnow() - timedelta(days=days)
    deleted = db.execute(
        delete(SettlementEvent)
        .where(SettlementEvent.created_at < cutoff, SettlementEvent.outcome != SettlementOutcome.PENDING)
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()
    log.info("Pruned settlement events: deleted=%s older_than_days=%s", deleted, days)
    return deleted or 0


def list_reconciliation_tasks(
    db: Session,
    status: str | None = "open",
    page: int = 1,
    limit: int = 20,
) -> tuple[list[ReconciliationTask], int]:
    base = select(ReconciliationTask)
    count_stmt = select(func.count()).select_from(ReconciliationTask)
    if status:
        base = base.where(ReconciliationTask.status == status)
        count_stmt = count_stmt.where(ReconciliationTask.status == status)
    total = db.exec(count_stmt).one()
    rows = db.exec(
        base.order_by(ReconciliationTask.created_at.desc(), ReconciliationTask.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()
    return list(rows), int(total)


def resolve_reconciliation_task(db: Session, task_id: int, note: str | None = None) -> ReconciliationTask:
    task = db.get(ReconciliationTask, task_id)
    if not task:
        raise NotFoundError("Reconciliation task not found.", ErrorCodes.RECONCILIATION_TASK_NOT_FOUND)
    if task.status == "resolved":
        return task
    task.status = "resolved"
    task.note = note
    task.resolved_at = utcnow()
    db.add(task)
    db.add(AuditLog(event="reconciliation_resolved", detail=f"task={task.id} order={task.order_code} reason={task.reason}"))
    db.commit()
    db.refresh(task)
    return task
