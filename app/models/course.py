"""Catalog-owned tables the checkout reads (price) and writes (sold counter, enrollment)."""
from datetime import datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from app.core.database import utcnow


class Course(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    title: str
    price: int  # minor units
    old_price: int | None = None
    status: str = "published"  # published | draft
    sold: int = 0


class Enrollment(SQLModel, table=True):
    """The buyer's enrolled-course set; one row per (user, course)."""

    __table_args__ = (UniqueConstraint("user_id", "course_id", name="uq_enrollment_user_course"),)

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    course_id: int = Field(index=True)
    order_code: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
