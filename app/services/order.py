"""Order creation (price snapshot, discount, unique code), reads and buyer/admin cancellation."""
import logging
import secrets
import string
import time

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, func, select

from app.core.config import settings
from app.core.errors import ConflictError, ErrorCodes, NotFoundError, ValidationError
from app.models import AuditLog, CancelReason, Order, OrderStatus, PaymentMethod
from app.services.catalog import dedupe_ids, ensure_not_owned, load_courses
from app.services.coupon import validate_coupon
from app.services.gateways import get_gateway
from app.services.state_machine import transition

log = logging.getLogger("coursepay.order")

CODE_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits
CODE_SUFFIX_LENGTH = 6
CODE_TIMESTAMP_DIGITS = 8


def generate_order_code() -> str:
    """<prefix> + last 8 digits of the ms timestamp + 6 random [A-Z0-9]; safe inside free text."""
    timestamp = str(int(time.time() * 1000))[-CODE_TIMESTAMP_DIGITS:]
    suffix = "".join(secrets.choice(CODE_SUFFIX_ALPHABET) for _ in range(CODE_SUFFIX_LENGTH))
    return f"{settings.order_code_prefix}{timestamp}{suffix}"


def create_order(
    db: Session,
    user_id: int,
    course_ids: list[int],
    coupon_code: str | None,
    payment_method: PaymentMethod,
) -> Order:
    """
    Snapshot current catalog prices into a new PENDING order.
    Coupon eligibility is checked read-only; its usage is consumed at settlement, not here.
    Nothing is persisted when validation fails.
    """
    course_ids = dedupe_ids(course_ids)
    if not course_ids:
        raise ValidationError("At least one course is required.")
    courses = load_courses(db, course_ids)
    ensure_not_owned(db, user_id, course_ids)

    items = [
        {"course_id": c.id, "title": c.title, "price": c.price, "old_price": c.old_price}
        for c in courses
    ]
    sub_total = sum(c.price for c in courses)
    total_discount = 0
    validated_coupon = None
    if coupon_code is not None and coupon_code.strip():
        quote = validate_coupon(db, coupon_code, sub_total, course_ids)
        total_discount = quote.discount
        validated_coupon = quote.code
    elif coupon_code is not None:
        raise ValidationError("Coupon code is empty.", ErrorCodes.INVALID_COUPON_CODE)
    total_amount = max(0, sub_total - total_discount)

    # Code uniqueness is enforced by the unique index; regenerate on collision
    for attempt in range(1, settings.order_code_max_attempts + 1):
        order = Order(
            code=generate_order_code(),
            user_id=user_id,
            items=items,
            coupon_code=validated_coupon,
            sub_total=sub_total,
            total_discount=total_discount,
            total_amount=total_amount,
            currency=settings.currency,
            payment_method=payment_method,
            status=OrderStatus.PENDING,
        )
        db.add(order)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            log.info("Order code collision on attempt %s/%s, regenerating", attempt, settings.order_code_max_attempts)
            continue
        db.refresh(order)
        log.info(
            "Order created: code=%s user_id=%s items=%s total=%s coupon=%s method=%s",
            order.code,
            user_id,
            len(items),
            total_amount,
            validated_coupon or "-",
            payment_method.value,
        )
        return order
    raise ConflictError("Could not allocate a unique order code.", ErrorCodes.DUPLICATE_ENTRY)


def get_order(db: Session, code: str, user_id: int | None = None) -> Order:
    """user_id given: only the owner's order is visible (others get ORDER_NOT_FOUND)."""
    stmt = select(Order).where(Order.code == code.strip().upper())
    if user_id is not None:
        stmt = stmt.where(Order.user_id == user_id)
    order = db.exec(stmt).first()
    if not order:
        raise NotFoundError("Order not found.", ErrorCodes.ORDER_NOT_FOUND)
    return order


def list_orders(
    db: Session,
    user_id: int | None = None,
    status: OrderStatus | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[Order], int]:
    """Newest first. user_id None lists every buyer (admin view)."""
    base = select(Order)
    count_stmt = select(func.count()).select_from(Order)
    if user_id is not None:
        base = base.where(Order.user_id == user_id)
        count_stmt = count_stmt.where(Order.user_id == user_id)
    if status is not None:
        base = base.where(Order.status == status)
        count_stmt = count_stmt.where(Order.status == status)
    total = db.exec(count_stmt).one()
    rows = db.exec(base.order_by(Order.created_at.desc(), Order.id.desc()).offset((page - 1) * limit).limit(limit)).all()
    return list(rows), int(total)


def list_user_orders(
    db: Session,
    user_id: int,
    status: OrderStatus | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[Order], int]:
    return list_orders(db, user_id=user_id, status=status, page=page, limit=limit)


def cancel_order(db: Session, code: str, user_id: int | None, is_admin: bool = False) -> Order:
    """Only legal while PENDING; cancelling an already cancelled order is a no-op."""
    order = get_order(db, code, None if is_admin else user_id)
    if order.status == OrderStatus.COMPLETED:
        raise ConflictError("Completed orders cannot be cancelled.", ErrorCodes.ORDER_NOT_CANCELLABLE)
    if order.status == OrderStatus.CANCELLED:
        return order
    reason = CancelReason.ADMIN_CANCELLED if is_admin else CancelReason.BUYER_CANCELLED
    result = transition(db, order.code, OrderStatus.CANCELLED, reason=reason)
    if result.applied:
        db.add(AuditLog(event="order_cancelled", user_id=order.user_id, detail=f"{order.code} {reason}"))
    db.commit()
    db.refresh(result.order)
    return result.order


def attach_payment_reference(db: Session, order: Order, reference: str | None) -> Order:
    if reference and order.payment_reference != reference:
        order.payment_reference = reference
        db.add(order)
        db.commit()
        db.refresh(order)
    return order


def initiate_payment(db: Session, order: Order) -> dict:
    """Ask the order's gateway for payment instructions. Safe to repeat while PENDING."""
    if order.status != OrderStatus.PENDING:
        raise ConflictError(f"Order {order.code} is {order.status.value}.", ErrorCodes.ORDER_NOT_PAYABLE)
    handle = get_gateway(order.payment_method).initiate(order)
    attach_payment_reference(db, order, handle.reference)
    return handle.instructions
