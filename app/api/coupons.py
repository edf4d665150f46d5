from fastapi import APIRouter, Depends, Request
from sqlmodel import Session

from app.core.database import get_db
from app.core.rate_limit import DEFAULT_RATE_LIMIT, limiter
from app.schemas import CouponQuoteResponse, ValidateCouponRequest
from app.services.coupon import quote_for_courses

router = APIRouter(prefix="/coupons", tags=["coupons"])


@router.post("/validate", response_model=CouponQuoteResponse)
@limiter.limit(DEFAULT_RATE_LIMIT)
def validate_coupon_endpoint(request: Request, body: ValidateCouponRequest, db: Session = Depends(get_db)):
    """Discount preview for a cart. Read-only: the usage slot is taken only when the order is paid."""
    sub_total, quote = quote_for_courses(db, body.code, body.course_ids)
    return CouponQuoteResponse(
        code=quote.code,
        sub_total=sub_total,
        discount=quote.discount,
        total_amount=max(0, sub_total - quote.discount),
    )
