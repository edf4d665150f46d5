from .common import CamelModel, PageMeta
from .coupon import CouponCreate, CouponQuoteResponse, CouponResponse, CouponUpdate, ValidateCouponRequest
from .order import (
    CreateOrderRequest,
    CreateOrderResponse,
    OrderItem,
    OrderListResponse,
    OrderResponse,
    PaymentInstructions,
)
from .payment import (
    CardConfigResponse,
    PruneResponse,
    ReconciliationTaskResponse,
    ResolveTaskRequest,
    WebhookAck,
)

__all__ = [
    "CamelModel",
    "CardConfigResponse",
    "CouponCreate",
    "CouponQuoteResponse",
    "CouponResponse",
    "CouponUpdate",
    "CreateOrderRequest",
    "CreateOrderResponse",
    "OrderItem",
    "OrderListResponse",
    "OrderResponse",
    "PageMeta",
    "PaymentInstructions",
    "PruneResponse",
    "ReconciliationTaskResponse",
    "ResolveTaskRequest",
    "ValidateCouponRequest",
    "WebhookAck",
]
