"""Per-IP rate limiting (SlowAPI) behind a proxy (X-Forwarded-For aware)."""
from fastapi import Request

from slowapi import Limiter

from .config import settings

DEFAULT_RATE_LIMIT = f"{settings.rate_limit_per_minute}/minute"
# Payment initiation endpoints: blunt card testing
PAYMENT_INIT_RATE_LIMIT = f"{settings.rate_limit_orders_per_minute}/minute"


def client_ip(request: Request) -> str:
    xff = request.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"


limiter = Limiter(key_func=client_ip)
