from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"


class DiscountType(str, Enum):
    PERCENT = "percent"
    FIXED = "fixed"


class SettlementOutcome(str, Enum):
    PENDING = "pending"  # recorded, processing not finished (or crashed)
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    MANUAL_REVIEW = "manual_review"
    CONFLICT = "conflict"


class CancelReason:
    BUYER_CANCELLED = "BUYER_CANCELLED"
    ADMIN_CANCELLED = "ADMIN_CANCELLED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    EXPIRED = "EXPIRED"
    COUPON_USAGE_LIMIT_EXCEEDED = "COUPON_USAGE_LIMIT_EXCEEDED"
    COUPON_NOT_FOUND = "COUPON_NOT_FOUND"


class ReviewReason:
    """Why a payment landed in the manual reconciliation queue."""

    COUPON_USAGE_LIMIT_EXCEEDED = "COUPON_USAGE_LIMIT_EXCEEDED"
    COUPON_NOT_FOUND = "COUPON_NOT_FOUND"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    CURRENCY_MISMATCH = "CURRENCY_MISMATCH"
    UNMATCHED_REFERENCE = "UNMATCHED_REFERENCE"
    ORDER_NOT_PAYABLE = "ORDER_NOT_PAYABLE"
