"""Order: price snapshot + lifecycle. Status is mutated only by app/services/state_machine.py."""
from datetime import datetime

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from app.core.database import utcnow
from app.models.enums import OrderStatus, PaymentMethod


class Order(SQLModel, table=True):
    __tablename__ = "orders"

    id: int | None = Field(default=None, primary_key=True)
    # Human-matchable, embedded in bank-transfer descriptions: ORD2501938847QK2Z9A
    code: str = Field(unique=True, index=True, max_length=32)
    user_id: int = Field(index=True)
    # Snapshot at creation: [{"course_id", "title", "price", "old_price"}]; never re-derived from the catalog
    items: list[dict] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    coupon_code: str | None = Field(default=None, max_length=64)
    sub_total: int
    total_discount: int = 0
    total_amount: int  # max(0, sub_total - total_discount), minor units
    currency: str = Field(default="VND", max_length=8)
    payment_method: PaymentMethod
    status: OrderStatus = Field(default=OrderStatus.PENDING, index=True)
    cancel_reason: str | None = Field(default=None, max_length=64)
    payment_reference: str | None = Field(default=None, index=True)  # card intent id
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    @property
    def course_ids(self) -> list[int]:
        return [int(item["course_id"]) for item in self.items or []]
