"""Grant course access after settlement. Called only by the winning PENDING -> COMPLETED transition."""
import logging

from sqlalchemy import update
from sqlmodel import Session, select

from app.models import AuditLog, Course, Enrollment, Order

log = logging.getLogger("coursepay.enrollment")


def _enroll(db: Session, user_id: int, course_id: int, order_code: str) -> None:
    """Set-union insert: an existing (user, course) row is left alone."""
    dialect = db.get_bind().dialect.name
    values = {"user_id": user_id, "course_id": course_id, "order_code": order_code}
    if dialect in ("postgresql", "sqlite"):
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            from sqlalchemy.dialects.sqlite import insert
        db.execute(
            insert(Enrollment)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["user_id", "course_id"])
        )
        return
    exists = db.exec(
        select(Enrollment.id).where(Enrollment.user_id == user_id, Enrollment.course_id == course_id)
    ).first()
    if exists is None:
        db.add(Enrollment(**values))


def grant_enrollment(db: Session, order: Order) -> None:
    """
    Enroll the buyer in every purchased course, bump each course's sold counter by one and
    record the completion event for analytics. Does not commit; runs inside the settlement
    transaction.
    """
    # Ascending ids keep row-lock order identical across concurrent settlements
    for course_id in sorted(set(order.course_ids)):
        _enroll(db, order.user_id, course_id, order.code)
        db.execute(
            update(Course)
            .where(Course.id == course_id)
            .values(sold=Course.sold + 1)
            .execution_options(synchronize_session=False)
        )
    db.add(
        AuditLog(
            event="order_completed",
            user_id=order.user_id,
            detail=f"{order.code} total={order.total_amount} courses={len(order.course_ids)}",
        )
    )
    log.info("Enrollment granted: order=%s user_id=%s courses=%s", order.code, order.user_id, order.course_ids)
