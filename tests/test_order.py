"""Order factory, reads, cancellation and the PENDING -> terminal state machine."""
import re

import pytest
from sqlmodel import select

from app.core.errors import ConflictError, ErrorCodes, NotFoundError, ValidationError
from app.models import AuditLog, CancelReason, DiscountType, Enrollment, Order, OrderStatus, PaymentMethod
from app.services import order as order_service
from app.services.coupon import reserve_coupon
from app.services.order import cancel_order, create_order, generate_order_code, get_order, list_orders, list_user_orders
from app.services.state_machine import transition

CODE_RE = re.compile(r"^ORD\d{8}[A-Z0-9]{6}$")


def test_generate_order_code_format():
    codes = {generate_order_code() for _ in range(50)}
    assert all(CODE_RE.match(c) for c in codes)
    assert len(codes) == 50


def test_scenario_a_percent_coupon(db, make_course, make_coupon):
    c1 = make_course("Python", 300_000)
    c2 = make_course("SQL", 200_000)
    make_coupon(code="SAVE10", discount_type=DiscountType.PERCENT, discount_value=10, min_purchase_amount=100_000)

    order = create_order(db, 1, [c1.id, c2.id], "save10", PaymentMethod.BANK_TRANSFER)

    assert order.status == OrderStatus.PENDING
    assert order.sub_total == 500_000
    assert order.total_discount == 50_000
    assert order.total_amount == 450_000
    assert order.coupon_code == "SAVE10"
    assert CODE_RE.match(order.code)


def test_scenario_b_rejected_coupon_persists_nothing(db, make_course, make_coupon):
    course = make_course("Tiny", 50_000)
    make_coupon(code="BIG", discount_type=DiscountType.FIXED, discount_value=100_000, min_purchase_amount=100_000)

    with pytest.raises(ValidationError) as info:
        create_order(db, 1, [course.id], "BIG", PaymentMethod.CARD)

    assert info.value.error_code == ErrorCodes.COUPON_NOT_APPLICABLE
    assert db.exec(select(Order)).all() == []


@pytest.mark.parametrize(
    "discount_type, value, prices",
    [
        (DiscountType.FIXED, 1_000_000, [150_000]),
        (DiscountType.FIXED, 30_000, [150_000, 99_999]),
        (DiscountType.PERCENT, 100, [120_000, 80_000]),
        (DiscountType.PERCENT, 33, [99_999]),
    ],
)
def test_total_invariant(db, make_course, make_coupon, discount_type, value, prices):
    courses = [make_course(f"C{i}", p) for i, p in enumerate(prices)]
    make_coupon(code="ANY", discount_type=discount_type, discount_value=value)

    order = create_order(db, 1, [c.id for c in courses], "ANY", PaymentMethod.CARD)

    assert order.sub_total == sum(prices)
    assert order.total_amount == max(0, order.sub_total - order.total_discount)
    assert order.total_amount >= 0


def test_items_are_a_price_snapshot(db, make_course):
    course = make_course("Data", 400_000, old_price=600_000)
    order = create_order(db, 1, [course.id, course.id], None, PaymentMethod.CARD)

    course.price = 999_000
    db.add(course)
    db.commit()
    db.refresh(order)

    assert order.items == [{"course_id": course.id, "title": "Data", "price": 400_000, "old_price": 600_000}]
    assert order.total_amount == 400_000


def test_unknown_course_and_owned_course(db, make_course):
    course = make_course()
    with pytest.raises(NotFoundError) as info:
        create_order(db, 1, [course.id, 9999], None, PaymentMethod.CARD)
    assert info.value.error_code == ErrorCodes.COURSE_NOT_FOUND

    db.add(Enrollment(user_id=1, course_id=course.id))
    db.commit()
    with pytest.raises(ValidationError) as info:
        create_order(db, 1, [course.id], None, PaymentMethod.CARD)
    assert info.value.error_code == ErrorCodes.COURSE_ALREADY_OWNED


def test_draft_course_is_not_purchasable(db, make_course):
    course = make_course(status="draft")
    with pytest.raises(NotFoundError):
        create_order(db, 1, [course.id], None, PaymentMethod.CARD)


def test_blank_coupon_code_rejected(db, make_course):
    course = make_course()
    with pytest.raises(ValidationError) as info:
        create_order(db, 1, [course.id], "  ", PaymentMethod.CARD)
    assert info.value.error_code == ErrorCodes.INVALID_COUPON_CODE


def test_code_collision_is_retried(db, make_course, monkeypatch):
    course = make_course()
    taken = "ORD12345678AAAAAA"
    db.add(Order(code=taken, user_id=9, items=[], sub_total=0, total_amount=0, payment_method=PaymentMethod.CARD))
    db.commit()

    codes = iter([taken, taken, "ORD12345678BBBBBB"])
    monkeypatch.setattr(order_service, "generate_order_code", lambda: next(codes))

    order = create_order(db, 1, [course.id], None, PaymentMethod.CARD)
    assert order.code == "ORD12345678BBBBBB"


def test_code_collision_exhausted(db, make_course, monkeypatch):
    course = make_course()
    taken = "ORD12345678AAAAAA"
    db.add(Order(code=taken, user_id=9, items=[], sub_total=0, total_amount=0, payment_method=PaymentMethod.CARD))
    db.commit()
    monkeypatch.setattr(order_service, "generate_order_code", lambda: taken)

    with pytest.raises(ConflictError) as info:
        create_order(db, 1, [course.id], None, PaymentMethod.CARD)
    assert info.value.error_code == ErrorCodes.DUPLICATE_ENTRY
    assert len(db.exec(select(Order)).all()) == 1


def test_get_and_list_are_scoped_to_owner(db, make_course):
    c1, c2 = make_course("A"), make_course("B")
    mine = create_order(db, 1, [c1.id], None, PaymentMethod.CARD)
    create_order(db, 1, [c2.id], None, PaymentMethod.BANK_TRANSFER)
    create_order(db, 2, [c1.id], None, PaymentMethod.CARD)

    assert get_order(db, mine.code.lower(), 1).id == mine.id
    with pytest.raises(NotFoundError):
        get_order(db, mine.code, 2)

    rows, total = list_user_orders(db, 1, page=1, limit=1)
    assert total == 2
    assert len(rows) == 1
    rows, total = list_user_orders(db, 1, status=OrderStatus.COMPLETED)
    assert (rows, total) == ([], 0)

    rows, total = list_orders(db)
    assert total == 3
    assert {o.user_id for o in rows} == {1, 2}
    assert list_orders(db, user_id=2)[1] == 1


def test_buyer_cancel_is_idempotent(db, make_course):
    order = create_order(db, 1, [make_course().id], None, PaymentMethod.CARD)

    cancelled = cancel_order(db, order.code, 1)
    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.cancel_reason == CancelReason.BUYER_CANCELLED
    assert cancelled.cancelled_at is not None

    again = cancel_order(db, order.code, 1)
    assert again.status == OrderStatus.CANCELLED
    assert len(db.exec(select(AuditLog).where(AuditLog.event == "order_cancelled")).all()) == 1


def test_admin_cancel_and_foreign_buyer(db, make_course):
    order = create_order(db, 1, [make_course().id], None, PaymentMethod.CARD)
    with pytest.raises(NotFoundError):
        cancel_order(db, order.code, 2)
    cancelled = cancel_order(db, order.code, None, is_admin=True)
    assert cancelled.cancel_reason == CancelReason.ADMIN_CANCELLED


def test_completed_order_cannot_be_cancelled(db, make_course):
    order = create_order(db, 1, [make_course().id], None, PaymentMethod.CARD)
    transition(db, order.code, OrderStatus.COMPLETED)
    db.commit()
    with pytest.raises(ConflictError) as info:
        cancel_order(db, order.code, 1)
    assert info.value.error_code == ErrorCodes.ORDER_NOT_CANCELLABLE


def test_no_premature_coupon_consumption(db, make_course, make_coupon):
    coupon = make_coupon(max_uses=1)
    order = create_order(db, 1, [make_course().id], "SAVE10", PaymentMethod.BANK_TRANSFER)
    cancel_order(db, order.code, 1)
    db.refresh(coupon)
    assert coupon.used_count == 0


class TestTransition:
    def test_complete_then_idempotent(self, db, make_course):
        order = create_order(db, 1, [make_course().id], None, PaymentMethod.CARD)

        first = transition(db, order.code, OrderStatus.COMPLETED)
        db.commit()
        second = transition(db, order.code, OrderStatus.COMPLETED)

        assert first.applied and first.status == OrderStatus.COMPLETED
        assert first.order.completed_at is not None
        assert not second.applied and second.status == OrderStatus.COMPLETED

    def test_other_terminal_state_conflicts(self, db, make_course):
        order = create_order(db, 1, [make_course().id], None, PaymentMethod.CARD)
        transition(db, order.code, OrderStatus.CANCELLED, reason=CancelReason.PAYMENT_FAILED)
        db.commit()

        with pytest.raises(ConflictError) as info:
            transition(db, order.code, OrderStatus.COMPLETED)
        assert info.value.error_code == ErrorCodes.ORDER_STATE_CONFLICT
        db.rollback()
        assert get_order(db, order.code).status == OrderStatus.CANCELLED

    def test_missing_order(self, db):
        with pytest.raises(NotFoundError):
            transition(db, "ORD00000000NOPE00", OrderStatus.COMPLETED)

    def test_pending_is_not_a_target(self, db):
        with pytest.raises(ValueError):
            transition(db, "ORD00000000NOPE00", OrderStatus.PENDING)

    def test_guard_failure_cancels_instead(self, db, make_course, make_coupon):
        make_coupon(max_uses=1, used_count=1)
        order = create_order(db, 1, [make_course().id], None, PaymentMethod.CARD)

        result = transition(
            db,
            order.code,
            OrderStatus.COMPLETED,
            guard=lambda session, o: reserve_coupon(session, "SAVE10"),
        )
        db.commit()

        assert result.applied
        assert result.status == OrderStatus.CANCELLED
        assert result.reason == ErrorCodes.COUPON_USAGE_LIMIT_EXCEEDED
        stored = get_order(db, order.code)
        assert stored.status == OrderStatus.CANCELLED
        assert stored.cancel_reason == CancelReason.COUPON_USAGE_LIMIT_EXCEEDED
        assert stored.completed_at is None
