from datetime import datetime, timezone
from typing import Annotated

from pydantic import AfterValidator, Field, field_validator, model_validator

from app.models import DiscountType

from .common import CamelModel


def _to_naive_utc(v: datetime) -> datetime:
    # Stored naive UTC
    if v.tzinfo is not None:
        return v.astimezone(timezone.utc).replace(tzinfo=None)
    return v


NaiveUTCDatetime = Annotated[datetime, AfterValidator(_to_naive_utc)]


class ValidateCouponRequest(CamelModel):
    code: str = Field(max_length=64)
    course_ids: list[int] = Field(min_length=1, max_length=50)


class CouponQuoteResponse(CamelModel):
    code: str
    sub_total: int
    discount: int
    total_amount: int


class CouponCreate(CamelModel):
    code: str = Field(min_length=1, max_length=64)
    title: str = ""
    discount_type: DiscountType
    discount_value: int = Field(gt=0)
    course_ids: list[int] = Field(default_factory=list)
    min_purchase_amount: int = Field(default=0, ge=0)
    max_uses: int | None = Field(default=None, ge=1)
    start_date: NaiveUTCDatetime | None = None
    end_date: NaiveUTCDatetime | None = None
    is_active: bool = True

    @model_validator(mode="after")
    def check_ranges(self):
        if self.discount_type == DiscountType.PERCENT and self.discount_value > 100:
            raise ValueError("Percent discount cannot exceed 100.")
        if self.start_date and self.end_date and self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date.")
        return self


class CouponUpdate(CamelModel):
    """Every field optional; only fields present in the body are changed."""

    code: str | None = Field(default=None, min_length=1, max_length=64)
    title: str | None = None
    discount_type: DiscountType | None = None
    discount_value: int | None = Field(default=None, gt=0)
    course_ids: list[int] | None = None
    min_purchase_amount: int | None = Field(default=None, ge=0)
    max_uses: int | None = Field(default=None, ge=1)
    start_date: NaiveUTCDatetime | None = None
    end_date: NaiveUTCDatetime | None = None
    is_active: bool | None = None

    @model_validator(mode="after")
    def check_ranges(self):
        if self.discount_type == DiscountType.PERCENT and (self.discount_value or 0) > 100:
            raise ValueError("Percent discount cannot exceed 100.")
        if self.start_date and self.end_date and self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date.")
        return self


class CouponResponse(CamelModel):
    id: int
    code: str
    title: str
    discount_type: DiscountType
    discount_value: int
    course_ids: list[int] = Field(default_factory=list)
    min_purchase_amount: int
    max_uses: int | None = None
    used_count: int
    start_date: datetime
    end_date: datetime | None = None
    is_active: bool

    @field_validator("course_ids", mode="before")
    @classmethod
    def split_course_ids(cls, v):
        # Stored as "3,7,12"
        if v is None:
            return []
        if isinstance(v, str):
            return [int(p) for p in v.split(",") if p.strip().isdigit()]
        return v
