"""Admin API: X-Admin-Secret only. Coupons, orders, the reconciliation queue and settlement log retention."""
from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from app.api.deps import require_admin
from app.core.config import settings
from app.core.database import get_db
from app.models import OrderStatus
from app.schemas import (
    CouponCreate,
    CouponResponse,
    CouponUpdate,
    OrderListResponse,
    OrderResponse,
    PageMeta,
    PruneResponse,
    ReconciliationTaskResponse,
    ResolveTaskRequest,
)
from app.services.coupon import create_coupon, get_coupon, list_coupons, update_coupon
from app.services.order import get_order, list_orders
from app.services.reconcile import list_reconciliation_tasks, prune_settlement_events, resolve_reconciliation_task

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.post("/coupons", status_code=201, response_model=CouponResponse)
def admin_create_coupon(body: CouponCreate, db: Session = Depends(get_db)):
    coupon = create_coupon(db, **body.model_dump())
    return CouponResponse.model_validate(coupon)


@router.get("/coupons", response_model=list[CouponResponse])
def admin_list_coupons(
    is_active: bool | None = Query(None),
    db: Session = Depends(get_db),
):
    return [CouponResponse.model_validate(c) for c in list_coupons(db, is_active=is_active)]


@router.get("/coupons/{coupon_id}", response_model=CouponResponse)
def admin_get_coupon(coupon_id: int, db: Session = Depends(get_db)):
    return CouponResponse.model_validate(get_coupon(db, coupon_id))


@router.put("/coupons/{coupon_id}", response_model=CouponResponse)
def admin_update_coupon(coupon_id: int, body: CouponUpdate, db: Session = Depends(get_db)):
    coupon = update_coupon(db, coupon_id, **body.model_dump(exclude_unset=True))
    return CouponResponse.model_validate(coupon)


@router.get("/orders", response_model=OrderListResponse)
def admin_list_orders(
    status: OrderStatus | None = Query(None),
    user_id: int | None = Query(None, ge=1),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
):
    rows, total = list_orders(db, user_id=user_id, status=status, page=page, limit=limit)
    return OrderListResponse(
        items=[OrderResponse.model_validate(o) for o in rows],
        pagination=PageMeta.build(page, limit, total),
    )


@router.get("/orders/{code}", response_model=OrderResponse)
def admin_get_order(code: str, db: Session = Depends(get_db)):
    return OrderResponse.model_validate(get_order(db, code))


@router.get("/reconciliation")
def admin_reconciliation(
    status: str | None = Query("open", description="open | resolved | empty for all"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
):
    """Captured payments that did not settle normally: refunds and manual decisions."""
    rows, total = list_reconciliation_tasks(db, status=status or None, page=page, limit=limit)
    return {
        "items": [ReconciliationTaskResponse.model_validate(t).model_dump(by_alias=True, mode="json") for t in rows],
        "pagination": PageMeta.build(page, limit, total).model_dump(by_alias=True),
    }


@router.post("/reconciliation/{task_id}/resolve", response_model=ReconciliationTaskResponse)
def admin_resolve_task(task_id: int, body: ResolveTaskRequest | None = None, db: Session = Depends(get_db)):
    task = resolve_reconciliation_task(db, task_id, note=body.note if body else None)
    return ReconciliationTaskResponse.model_validate(task)


@router.delete("/settlement-events", response_model=PruneResponse)
def admin_prune_settlement_events(
    older_than_days: int | None = Query(None, ge=1),
    db: Session = Depends(get_db),
):
    days = older_than_days or settings.settlement_event_retention_days
    return PruneResponse(deleted=prune_settlement_events(db, days), older_than_days=days)
