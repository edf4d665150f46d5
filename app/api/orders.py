"""Checkout: create an order and get payment instructions; list, read, cancel, re-initiate payment."""
import logging

from fastapi import APIRouter, Depends, Query, Request
from sqlmodel import Session

from app.api.deps import Actor, get_actor, get_current_user_id
from app.core.database import get_db
from app.core.rate_limit import PAYMENT_INIT_RATE_LIMIT, limiter
from app.models import OrderStatus
from app.schemas import (
    CreateOrderRequest,
    CreateOrderResponse,
    OrderListResponse,
    OrderResponse,
    PageMeta,
    PaymentInstructions,
)
from app.services.order import cancel_order, create_order, get_order, initiate_payment, list_user_orders

router = APIRouter(prefix="/orders", tags=["orders"])
log = logging.getLogger("coursepay.api.orders")


@router.post("", status_code=201, response_model=CreateOrderResponse)
@limiter.limit(PAYMENT_INIT_RATE_LIMIT)
def create_order_endpoint(
    request: Request,
    body: CreateOrderRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    """
    Snapshot prices, apply the coupon (validated, not consumed) and open a PENDING order.
    If the gateway is down the order stays PENDING; POST /orders/{code}/payment retries.
    """
    order = create_order(db, user_id, body.course_ids, body.coupon_code, body.payment_method)
    instructions = initiate_payment(db, order)
    return CreateOrderResponse(
        order=OrderResponse.model_validate(order),
        payment_instructions=PaymentInstructions.model_validate(instructions),
    )


@router.get("", response_model=OrderListResponse)
def list_orders_endpoint(
    status: OrderStatus | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    rows, total = list_user_orders(db, user_id, status=status, page=page, limit=limit)
    return OrderListResponse(
        items=[OrderResponse.model_validate(o) for o in rows],
        pagination=PageMeta.build(page, limit, total),
    )


@router.get("/{code}", response_model=OrderResponse)
def get_order_endpoint(
    code: str,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    return OrderResponse.model_validate(get_order(db, code, user_id))


@router.put("/{code}/cancel", response_model=OrderResponse)
def cancel_order_endpoint(
    code: str,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    order = cancel_order(db, code, actor.user_id, is_admin=actor.is_admin)
    log.info("Order cancel requested: code=%s admin=%s status=%s", order.code, actor.is_admin, order.status.value)
    return OrderResponse.model_validate(order)


@router.post("/{code}/payment", response_model=PaymentInstructions)
@limiter.limit(PAYMENT_INIT_RATE_LIMIT)
def reinitiate_payment_endpoint(
    request: Request,
    code: str,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id),
):
    """Card intents are keyed by order code, so this returns the same intent on repeat."""
    order = get_order(db, code, user_id)
    return PaymentInstructions.model_validate(initiate_payment(db, order))
