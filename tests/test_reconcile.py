"""Webhook settlement: dedup, CAS transitions, coupon guard, review queue, crash recovery."""
from datetime import timedelta

import pytest
from sqlalchemy import event
from sqlmodel import select

from app.core.database import engine, utcnow
from app.core.errors import ErrorCodes, NotFoundError, WebhookVerificationError
from app.models import (
    AuditLog,
    CancelReason,
    Course,
    Enrollment,
    OrderStatus,
    PaymentMethod,
    ReconciliationTask,
    ReviewReason,
    SettlementEvent,
    SettlementOutcome,
)
from app.services import reconcile as reconcile_module
from app.services.enrollment import grant_enrollment
from app.services.gateways import BankTransferGateway, RawWebhook, StripeCardGateway
from app.services.order import cancel_order, create_order, get_order
from app.services.reconcile import (
    list_reconciliation_tasks,
    prune_settlement_events,
    reconcile_webhook,
    resolve_reconciliation_task,
)


@pytest.fixture
def bank():
    return BankTransferGateway()


@pytest.fixture
def card():
    return StripeCardGateway()


@pytest.fixture
def new_order(db, make_course):
    def _make(method=PaymentMethod.BANK_TRANSFER, coupon=None, user_id=1, price=500_000):
        course = make_course(f"Course for {user_id}", price)
        return create_order(db, user_id, [course.id], coupon, method)

    return _make


def _raw(pair) -> RawWebhook:
    body, headers = pair
    return RawWebhook(body=body, headers=headers)


def _events(db):
    return db.exec(select(SettlementEvent)).all()


def _tasks(db):
    return db.exec(select(ReconciliationTask)).all()


def test_scenario_c_duplicate_bank_callback(db, bank, new_order, bank_callback):
    order = new_order()
    raw = _raw(bank_callback(f"Payment {order.code} thanks", order.total_amount, transaction_id="TX100"))

    first = reconcile_webhook(db, bank, raw)
    second = reconcile_webhook(db, bank, raw)

    assert first.outcome == SettlementOutcome.COMPLETED.value
    assert not first.duplicate
    assert second.outcome == SettlementOutcome.COMPLETED.value
    assert second.duplicate
    db.expire_all()
    stored = get_order(db, order.code)
    assert stored.status == OrderStatus.COMPLETED
    assert stored.payment_reference == "TX100"
    assert len(db.exec(select(Enrollment).where(Enrollment.user_id == 1)).all()) == 1
    assert db.get(Course, order.course_ids[0]).sold == 1
    assert len(db.exec(select(AuditLog).where(AuditLog.event == "order_completed")).all()) == 1
    assert len(_events(db)) == 1


def test_scenario_d_corrupted_card_signature(db, card, new_order, card_event):
    order = new_order(PaymentMethod.CARD)
    body, headers = card_event(order.code, order.total_amount, event_id="evt_d")
    tampered = body.replace(b'"amount": ', b'"amount": 1')

    with pytest.raises(WebhookVerificationError) as info:
        reconcile_webhook(db, card, RawWebhook(body=tampered, headers=headers))
    assert info.value.error_code == ErrorCodes.INVALID_SIGNATURE
    assert _events(db) == []
    assert get_order(db, order.code).status == OrderStatus.PENDING

    # A correctly signed retry of the same event still settles
    result = reconcile_webhook(db, card, RawWebhook(body=body, headers=headers))
    assert result.outcome == SettlementOutcome.COMPLETED.value


def test_missing_signature_header_rejected(db, card, new_order, card_event):
    order = new_order(PaymentMethod.CARD)
    body, _ = card_event(order.code, order.total_amount)
    with pytest.raises(WebhookVerificationError):
        reconcile_webhook(db, card, RawWebhook(body=body, headers={}))


def test_wrong_bank_secret_rejected(db, bank, new_order, bank_callback):
    order = new_order()
    raw = _raw(bank_callback(order.code, order.total_amount, secret="not-the-secret"))
    with pytest.raises(WebhookVerificationError):
        reconcile_webhook(db, bank, raw)
    assert _events(db) == []


def test_card_success_with_coupon_consumes_one_use(db, card, new_order, make_coupon, card_event):
    coupon = make_coupon(max_uses=5)
    order = new_order(PaymentMethod.CARD, coupon="SAVE10")
    assert order.total_amount == 450_000

    result = reconcile_webhook(db, card, _raw(card_event(order.code, 450_000)))

    assert result.outcome == SettlementOutcome.COMPLETED.value
    db.refresh(coupon)
    assert coupon.used_count == 1


def test_coupon_exhausted_at_settlement_cancels_and_queues_refund(db, bank, new_order, make_coupon, bank_callback):
    coupon = make_coupon(max_uses=1)
    order = new_order(coupon="SAVE10")
    # Another order took the last slot after this one was created
    coupon.used_count = 1
    db.add(coupon)
    db.commit()

    result = reconcile_webhook(db, bank, _raw(bank_callback(order.code, order.total_amount)))

    assert result.outcome == SettlementOutcome.CANCELLED.value
    db.expire_all()
    stored = get_order(db, order.code)
    assert stored.status == OrderStatus.CANCELLED
    assert stored.cancel_reason == CancelReason.COUPON_USAGE_LIMIT_EXCEEDED
    assert db.exec(select(Enrollment)).all() == []
    [task] = _tasks(db)
    assert task.reason == ReviewReason.COUPON_USAGE_LIMIT_EXCEEDED
    assert task.amount_paid == order.total_amount
    db.refresh(coupon)
    assert coupon.used_count == 1


def test_card_failure_cancels_order(db, card, new_order, card_event):
    order = new_order(PaymentMethod.CARD)
    result = reconcile_webhook(db, card, _raw(card_event(order.code, order.total_amount, "payment_intent.payment_failed")))

    assert result.outcome == SettlementOutcome.CANCELLED.value
    db.expire_all()
    stored = get_order(db, order.code)
    assert stored.status == OrderStatus.CANCELLED
    assert stored.cancel_reason == CancelReason.PAYMENT_FAILED


def test_failure_after_completion_is_a_conflict(db, card, new_order, card_event):
    order = new_order(PaymentMethod.CARD)
    reconcile_webhook(db, card, _raw(card_event(order.code, order.total_amount)))
    late = reconcile_webhook(db, card, _raw(card_event(order.code, order.total_amount, "payment_intent.payment_failed")))

    assert late.outcome == SettlementOutcome.CONFLICT.value
    db.expire_all()
    assert get_order(db, order.code).status == OrderStatus.COMPLETED


def test_payment_for_cancelled_order_is_queued(db, bank, new_order, bank_callback):
    order = new_order()
    cancel_order(db, order.code, 1)

    result = reconcile_webhook(db, bank, _raw(bank_callback(order.code, order.total_amount)))

    assert result.outcome == SettlementOutcome.CONFLICT.value
    [task] = _tasks(db)
    assert task.reason == ReviewReason.ORDER_NOT_PAYABLE
    assert task.order_code == order.code
    db.expire_all()
    assert get_order(db, order.code).status == OrderStatus.CANCELLED


def test_second_payment_for_completed_order_is_queued(db, bank, new_order, bank_callback):
    order = new_order()
    reconcile_webhook(db, bank, _raw(bank_callback(order.code, order.total_amount, transaction_id="TX1")))
    again = reconcile_webhook(db, bank, _raw(bank_callback(order.code, order.total_amount, transaction_id="TX2")))

    assert again.outcome == SettlementOutcome.CONFLICT.value
    [task] = _tasks(db)
    assert task.external_event_id == "TX2"
    assert task.reason == ReviewReason.ORDER_NOT_PAYABLE
    db.expire_all()
    assert db.get(Course, order.course_ids[0]).sold == 1


def test_amount_mismatch_flagged_and_replay_is_stable(db, bank, new_order, bank_callback):
    order = new_order()
    raw = _raw(bank_callback(order.code, order.total_amount - 1, transaction_id="TXLOW"))

    first = reconcile_webhook(db, bank, raw)
    replay = reconcile_webhook(db, bank, raw)

    assert first.flagged and first.outcome == SettlementOutcome.MANUAL_REVIEW.value
    assert replay.flagged and replay.duplicate
    assert first.payment_unverified and replay.payment_unverified
    assert replay.review_reason == ReviewReason.AMOUNT_MISMATCH
    assert get_order(db, order.code).status == OrderStatus.PENDING
    [task] = _tasks(db)
    assert task.reason == ReviewReason.AMOUNT_MISMATCH
    assert task.amount_paid == order.total_amount - 1


def test_fractional_transfer_does_not_settle(db, bank, new_order, bank_callback):
    order = new_order()
    raw = _raw(bank_callback(order.code, order.total_amount + 0.9))

    with pytest.raises(WebhookVerificationError):
        reconcile_webhook(db, bank, raw)

    assert get_order(db, order.code).status == OrderStatus.PENDING
    assert _events(db) == []


def test_overpayment_is_also_a_mismatch(db, bank, new_order, bank_callback):
    order = new_order()
    result = reconcile_webhook(db, bank, _raw(bank_callback(order.code, order.total_amount + 1000)))
    assert result.flagged
    assert _tasks(db)[0].reason == ReviewReason.AMOUNT_MISMATCH


def test_currency_mismatch_flagged(db, card, new_order, card_event):
    order = new_order(PaymentMethod.CARD)
    result = reconcile_webhook(db, card, _raw(card_event(order.code, order.total_amount, currency="usd")))
    assert result.flagged
    assert result.payment_unverified
    assert _tasks(db)[0].reason == ReviewReason.CURRENCY_MISMATCH


@pytest.mark.parametrize(
    "description",
    [
        "no reference at all",
        "ORD00000000ZZZZZZ unknown order",
    ],
)
def test_unmatched_reference_flagged(db, bank, new_order, bank_callback, description):
    new_order()
    result = reconcile_webhook(db, bank, _raw(bank_callback(description, 500_000)))
    assert result.flagged
    assert result.review_reason == ReviewReason.UNMATCHED_REFERENCE
    assert not result.payment_unverified
    [task] = _tasks(db)
    assert task.reason == ReviewReason.UNMATCHED_REFERENCE


def test_ambiguous_description_flagged(db, bank, new_order, bank_callback):
    a = new_order(user_id=1)
    b = new_order(user_id=2)
    result = reconcile_webhook(db, bank, _raw(bank_callback(f"{a.code} {b.code}", a.total_amount)))
    assert result.flagged
    assert get_order(db, a.code).status == OrderStatus.PENDING
    assert get_order(db, b.code).status == OrderStatus.PENDING


def test_ignored_events_leave_no_record(db, card, bank, new_order, card_event, bank_callback):
    order = new_order()
    card_result = reconcile_webhook(db, card, _raw(card_event(order.code, 1, "charge.refunded")))
    bank_result = reconcile_webhook(db, bank, _raw(bank_callback(order.code, order.total_amount, transfer_type="out")))

    assert card_result.outcome == "ignored"
    assert bank_result.outcome == "ignored"
    assert _events(db) == []
    assert get_order(db, order.code).status == OrderStatus.PENDING


def test_pending_event_is_reprocessed(db, bank, new_order, bank_callback):
    order = new_order()
    # Left behind by a delivery that crashed before its settlement transaction committed
    db.add(SettlementEvent(gateway=bank.gateway_id, external_event_id="TXCRASH", order_code=order.code))
    db.commit()

    result = reconcile_webhook(db, bank, _raw(bank_callback(order.code, order.total_amount, transaction_id="TXCRASH")))

    assert result.outcome == SettlementOutcome.COMPLETED.value
    db.expire_all()
    assert get_order(db, order.code).status == OrderStatus.COMPLETED
    assert _events(db)[0].outcome == SettlementOutcome.COMPLETED


def test_unexpected_error_rolls_back_everything(db, bank, new_order, bank_callback, monkeypatch):
    order = new_order()
    raw = _raw(bank_callback(order.code, order.total_amount, transaction_id="TXBOOM"))

    def boom(session, o):
        raise RuntimeError("enrollment store down")

    original = reconcile_module.grant_enrollment
    monkeypatch.setattr(reconcile_module, "grant_enrollment", boom)
    with pytest.raises(RuntimeError):
        reconcile_webhook(db, bank, raw)

    db.expire_all()
    assert get_order(db, order.code).status == OrderStatus.PENDING
    [event] = _events(db)
    assert event.outcome == SettlementOutcome.PENDING

    monkeypatch.setattr(reconcile_module, "grant_enrollment", original)
    # Gateway retry after the outage
    result = reconcile_webhook(db, bank, raw)
    assert result.outcome == SettlementOutcome.COMPLETED.value
    db.expire_all()
    assert db.get(Course, order.course_ids[0]).sold == 1


def test_prune_keeps_recent_and_pending(db):
    old = utcnow() - timedelta(days=45)
    db.add(SettlementEvent(gateway="card", external_event_id="old-done", outcome=SettlementOutcome.COMPLETED, created_at=old))
    db.add(SettlementEvent(gateway="card", external_event_id="old-pending", created_at=old))
    db.add(SettlementEvent(gateway="card", external_event_id="new-done", outcome=SettlementOutcome.COMPLETED))
    db.commit()

    assert prune_settlement_events(db, 30) == 1
    assert {e.external_event_id for e in _events(db)} == {"old-pending", "new-done"}


def test_list_and_resolve_tasks(db, bank, new_order, bank_callback):
    order = new_order()
    reconcile_webhook(db, bank, _raw(bank_callback(order.code, 1)))

    rows, total = list_reconciliation_tasks(db)
    assert total == 1
    task = resolve_reconciliation_task(db, rows[0].id, note="refunded manually")
    assert task.status == "resolved"
    assert task.resolved_at is not None
    assert list_reconciliation_tasks(db)[1] == 0
    assert list_reconciliation_tasks(db, status=None)[1] == 1

    with pytest.raises(NotFoundError) as info:
        resolve_reconciliation_task(db, 999)
    assert info.value.error_code == ErrorCodes.RECONCILIATION_TASK_NOT_FOUND


def test_enrollment_bumps_sold_counters_in_id_order(db, make_course):
    courses = [make_course(f"Course {n}", 100_000) for n in range(3)]
    order = create_order(db, 5, [c.id for c in reversed(courses)], None, PaymentMethod.CARD)
    touched = []

    def record(conn, cursor, statement, parameters, context, executemany):
        if statement.startswith("UPDATE course"):
            touched.append(parameters[-1])

    event.listen(engine, "before_cursor_execute", record)
    try:
        grant_enrollment(db, order)
    finally:
        event.remove(engine, "before_cursor_execute", record)
    db.commit()

    assert touched == sorted(c.id for c in courses)
    assert [db.get(Course, c.id).sold for c in courses] == [1, 1, 1]
