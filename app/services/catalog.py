"""Read side of the course catalog used by checkout: published courses and ownership."""
from sqlmodel import Session, select

from app.core.errors import ErrorCodes, NotFoundError, ValidationError
from app.models import Course, Enrollment


def dedupe_ids(course_ids: list[int]) -> list[int]:
    """Drop repeated ids, keeping first-seen order."""
    return list(dict.fromkeys(course_ids))


def load_courses(db: Session, course_ids: list[int]) -> list[Course]:
    """Published courses in the requested order; unknown or draft ids -> COURSE_NOT_FOUND."""
    if not course_ids:
        return []
    rows = db.exec(select(Course).where(Course.id.in_(course_ids), Course.status == "published")).all()
    by_id = {c.id: c for c in rows}
    missing = [cid for cid in course_ids if cid not in by_id]
    if missing:
        raise NotFoundError(
            f"Courses not found or not available: {', '.join(str(m) for m in missing)}",
            ErrorCodes.COURSE_NOT_FOUND,
        )
    return [by_id[cid] for cid in course_ids]


def owned_course_ids(db: Session, user_id: int, course_ids: list[int]) -> set[int]:
    if not course_ids:
        return set()
    stmt = select(Enrollment.course_id).where(Enrollment.user_id == user_id, Enrollment.course_id.in_(course_ids))
    return set(db.exec(stmt).all())


def ensure_not_owned(db: Session, user_id: int, course_ids: list[int]) -> None:
    owned = owned_course_ids(db, user_id, course_ids)
    if owned:
        raise ValidationError(
            f"Courses already owned: {', '.join(str(c) for c in sorted(owned))}",
            ErrorCodes.COURSE_ALREADY_OWNED,
        )
