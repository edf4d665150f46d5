from .coupon import Coupon
from .course import Course, Enrollment
from .enums import CancelReason, DiscountType, OrderStatus, PaymentMethod, ReviewReason, SettlementOutcome
from .logs import AuditLog, ErrorLog, SecurityLog
from .order import Order
from .settlement import ReconciliationTask, SettlementEvent

__all__ = [
    "AuditLog",
    "CancelReason",
    "Coupon",
    "Course",
    "DiscountType",
    "Enrollment",
    "ErrorLog",
    "Order",
    "OrderStatus",
    "PaymentMethod",
    "ReconciliationTask",
    "ReviewReason",
    "SecurityLog",
    "SettlementEvent",
    "SettlementOutcome",
]
