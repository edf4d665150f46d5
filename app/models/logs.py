from datetime import datetime

from sqlmodel import Field, SQLModel

from app.core.database import utcnow


class AuditLog(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    event: str = Field(index=True)  # order_completed, order_cancelled, coupon_created, ...
    user_id: int | None = Field(default=None, index=True)
    detail: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class ErrorLog(SQLModel, table=True):
    """Filled by the global exception handler."""

    __tablename__ = "error_logs"
    id: int | None = Field(default=None, primary_key=True)
    request_id: str | None = None
    endpoint: str | None = None
    method: str | None = None
    error_message: str | None = None
    stack_trace: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class SecurityLog(SQLModel, table=True):
    """Rate limit hits and rejected webhook signatures."""

    __tablename__ = "security_logs"
    id: int | None = Field(default=None, primary_key=True)
    event: str = Field(index=True)  # rate_limit | bad_signature
    ip: str | None = None
    endpoint: str | None = None
    detail: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
