"""Coupon validation, discount computation and the single atomic usage reservation."""
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import or_, update
from sqlmodel import Session, select

from app.core.database import utcnow
from app.core.errors import ConflictError, ErrorCodes, NotFoundError, ValidationError
from app.models import AuditLog, Coupon, DiscountType
from app.services.catalog import dedupe_ids, load_courses

log = logging.getLogger("coursepay.coupon")


@dataclass(frozen=True)
class CouponQuote:
    code: str
    discount: int


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def compute_discount(coupon: Coupon, sub_total: int) -> int:
    """PERCENT rounds half up (integer math); FIXED never exceeds the subtotal."""
    if coupon.discount_type == DiscountType.PERCENT:
        discount = (sub_total * coupon.discount_value + 50) // 100
    else:
        discount = min(coupon.discount_value, sub_total)
    return max(0, min(discount, sub_total))


def validate_coupon(
    db: Session,
    code: str | None,
    sub_total: int,
    course_ids: list[int],
    now: datetime | None = None,
) -> CouponQuote:
    """
    Read-only eligibility check. Raises ValidationError/NotFoundError carrying one of the
    COUPON_* codes. The usage check here is best effort: the quota is only enforced by
    reserve_coupon at settlement.
    """
    code_upper = normalize_code(code)
    if not code_upper:
        raise ValidationError("Coupon code is empty.", ErrorCodes.INVALID_COUPON_CODE)
    coupon = db.exec(select(Coupon).where(Coupon.code == code_upper)).first()
    if not coupon:
        raise NotFoundError("Invalid coupon code.", ErrorCodes.COUPON_NOT_FOUND)

    now = now or utcnow()
    if not coupon.is_active:
        raise ValidationError("Coupon is not active.", ErrorCodes.COUPON_NOT_ACTIVE)
    if now < coupon.start_date:
        raise ValidationError("Coupon is not yet valid.", ErrorCodes.COUPON_NOT_ACTIVE)
    if coupon.end_date and now > coupon.end_date:
        raise ValidationError("Coupon has expired.", ErrorCodes.COUPON_EXPIRED)

    if sub_total < (coupon.min_purchase_amount or 0):
        raise ValidationError(
            f"Order subtotal must be at least {coupon.min_purchase_amount} to use this coupon.",
            ErrorCodes.COUPON_NOT_APPLICABLE,
        )
    allowed = coupon.course_id_set()
    if allowed and not set(course_ids) <= allowed:
        raise ValidationError(
            "Coupon is not applicable to the selected courses.",
            ErrorCodes.COUPON_NOT_APPLICABLE,
        )

    if coupon.max_uses is not None and coupon.used_count >= coupon.max_uses:
        raise ValidationError("Coupon usage limit exceeded.", ErrorCodes.COUPON_USAGE_LIMIT_EXCEEDED)

    return CouponQuote(code=coupon.code, discount=compute_discount(coupon, sub_total))


def reserve_coupon(db: Session, code: str) -> str | None:
    """
    Consume one usage slot: increment used_count only while it is below max_uses.
    Returns None on success, otherwise the failure code; never increments past the bound.
    Does not commit.
    """
    code_upper = normalize_code(code)
    stmt = (
        update(Coupon)
        .where(Coupon.code == code_upper)
        .where(or_(Coupon.max_uses.is_(None), Coupon.used_count < Coupon.max_uses))
        .values(used_count=Coupon.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    if db.execute(stmt).rowcount == 1:
        return None
    exists = db.exec(select(Coupon.id).where(Coupon.code == code_upper)).first()
    if exists is None:
        log.warning("Coupon reservation failed: coupon=%s no longer exists", code_upper)
        return ErrorCodes.COUPON_NOT_FOUND
    log.warning("Coupon reservation failed: coupon=%s usage limit reached", code_upper)
    return ErrorCodes.COUPON_USAGE_LIMIT_EXCEEDED


def create_coupon(
    db: Session,
    *,
    code: str,
    title: str,
    discount_type: DiscountType,
    discount_value: int,
    course_ids: list[int] | None = None,
    min_purchase_amount: int = 0,
    max_uses: int | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    is_active: bool = True,
) -> Coupon:
    code_clean = normalize_code(code)
    if not code_clean:
        raise ValidationError("Coupon code is empty.", ErrorCodes.INVALID_COUPON_CODE)
    if db.exec(select(Coupon).where(Coupon.code == code_clean)).first():
        raise ConflictError("Coupon code already exists.", ErrorCodes.COUPON_CODE_EXISTS)
    coupon = Coupon(
        code=code_clean,
        title=title,
        discount_type=discount_type,
        discount_value=discount_value,
        course_ids=",".join(str(c) for c in sorted(set(course_ids or []))) or None,
        min_purchase_amount=min_purchase_amount,
        max_uses=max_uses,
        start_date=start_date or utcnow(),
        end_date=end_date,
        is_active=is_active,
    )
    db.add(coupon)
    db.add(AuditLog(event="coupon_created", detail=code_clean))
    db.commit()
    db.refresh(coupon)
    return coupon


def get_coupon(db: Session, coupon_id: int) -> Coupon:
    coupon = db.get(Coupon, coupon_id)
    if not coupon:
        raise NotFoundError("Coupon not found.", ErrorCodes.COUPON_NOT_FOUND)
    return coupon


UPDATABLE_FIELDS = (
    "code",
    "title",
    "discount_type",
    "discount_value",
    "course_ids",
    "min_purchase_amount",
    "max_uses",
    "start_date",
    "end_date",
    "is_active",
)
NULLABLE_FIELDS = frozenset({"course_ids", "max_uses", "end_date"})


def update_coupon(db: Session, coupon_id: int, **fields) -> Coupon:
    """
    Partial update of an existing coupon. used_count is owned by reserve_coupon and is
    never written here. None clears only the optional limits (course list, max uses, end date).
    """
    coupon = get_coupon(db, coupon_id)
    changes = {
        k: v for k, v in fields.items() if k in UPDATABLE_FIELDS and (v is not None or k in NULLABLE_FIELDS)
    }
    if "code" in changes:
        code_clean = normalize_code(changes["code"])
        if not code_clean:
            raise ValidationError("Coupon code is empty.", ErrorCodes.INVALID_COUPON_CODE)
        taken = db.exec(select(Coupon.id).where(Coupon.code == code_clean, Coupon.id != coupon.id)).first()
        if taken is not None:
            raise ConflictError("Coupon code already exists.", ErrorCodes.COUPON_CODE_EXISTS)
        changes["code"] = code_clean
    if "course_ids" in changes:
        changes["course_ids"] = ",".join(str(c) for c in sorted(set(changes["course_ids"] or []))) or None

    for key, value in changes.items():
        setattr(coupon, key, value)
    if coupon.discount_type == DiscountType.PERCENT and coupon.discount_value > 100:
        db.rollback()
        raise ValidationError("Percent discount cannot exceed 100.")
    if coupon.end_date and coupon.end_date <= coupon.start_date:
        db.rollback()
        raise ValidationError("end_date must be after start_date.")

    db.add(coupon)
    db.add(AuditLog(event="coupon_updated", detail=f"{coupon.code} fields={','.join(sorted(changes))}"))
    db.commit()
    db.refresh(coupon)
    log.info("Coupon updated: id=%s code=%s fields=%s", coupon.id, coupon.code, sorted(changes))
    return coupon


def list_coupons(db: Session, is_active: bool | None = None) -> list[Coupon]:
    stmt = select(Coupon).order_by(Coupon.id.desc())
    if is_active is not None:
        stmt = stmt.where(Coupon.is_active == is_active)
    return list(db.exec(stmt).all())


def quote_for_courses(db: Session, code: str | None, course_ids: list[int]) -> tuple[int, CouponQuote]:
    """Checkout preview: (sub_total, quote) against current catalog prices. Nothing is reserved."""
    course_ids = dedupe_ids(course_ids)
    sub_total = sum(c.price for c in load_courses(db, course_ids))
    return sub_total, validate_coupon(db, code, sub_total, course_ids)
