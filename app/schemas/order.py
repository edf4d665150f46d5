from datetime import datetime

from pydantic import Field

from app.models import OrderStatus, PaymentMethod

from .common import CamelModel, PageMeta


class CreateOrderRequest(CamelModel):
    course_ids: list[int] = Field(min_length=1, max_length=50)
    coupon_code: str | None = Field(default=None, max_length=64)
    payment_method: PaymentMethod


class OrderItem(CamelModel):
    course_id: int
    title: str
    price: int
    old_price: int | None = None


class OrderResponse(CamelModel):
    code: str
    user_id: int
    items: list[OrderItem]
    coupon_code: str | None = None
    sub_total: int
    total_discount: int
    total_amount: int
    currency: str
    payment_method: PaymentMethod
    status: OrderStatus
    cancel_reason: str | None = None
    payment_reference: str | None = None
    created_at: datetime
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None


class PaymentInstructions(CamelModel):
    """Card: Stripe client secret for the payment element. Bank transfer: where to wire and what to write."""

    method: PaymentMethod
    amount: int
    currency: str
    provider: str | None = None
    payment_intent_id: str | None = None
    client_secret: str | None = None
    bank_name: str | None = None
    account_number: str | None = None
    account_name: str | None = None
    transfer_description: str | None = None
    note: str | None = None


class CreateOrderResponse(CamelModel):
    order: OrderResponse
    payment_instructions: PaymentInstructions


class OrderListResponse(CamelModel):
    items: list[OrderResponse]
    pagination: PageMeta
