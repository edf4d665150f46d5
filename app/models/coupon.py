"""Discount coupon: percent/fixed, validity window, course restriction and usage quota."""
from datetime import datetime

from sqlmodel import Field, SQLModel

from app.core.database import utcnow
from app.models.enums import DiscountType


class Coupon(SQLModel, table=True):
    """Created by an admin, validated at order creation, reserved at settlement."""

    id: int | None = Field(default=None, primary_key=True)
    code: str = Field(unique=True, index=True, max_length=64)  # stored upper-case
    title: str = ""
    discount_type: DiscountType
    discount_value: int  # percent: 1-100, fixed: minor units
    # Restricted to these courses; empty = every course. E.g. "3,7,12"
    course_ids: str | None = Field(default=None, max_length=512)
    min_purchase_amount: int = 0
    max_uses: int | None = None  # null = unlimited
    used_count: int = 0  # only ever incremented by reserve_coupon
    start_date: datetime = Field(default_factory=utcnow)
    end_date: datetime | None = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    def course_id_set(self) -> set[int]:
        out: set[int] = set()
        for part in (self.course_ids or "").split(","):
            part = part.strip()
            if part.isdigit():
                out.add(int(part))
        return out
