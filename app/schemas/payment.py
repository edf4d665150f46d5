from datetime import datetime

from pydantic import Field

from .common import CamelModel


class WebhookAck(CamelModel):
    success: bool = True
    outcome: str
    duplicate: bool = False
    order_code: str | None = None


class CardConfigResponse(CamelModel):
    publishable_key: str
    currency: str


class ReconciliationTaskResponse(CamelModel):
    id: int
    gateway: str
    external_event_id: str
    order_code: str | None = None
    reason: str
    amount_paid: int | None = None
    status: str
    note: str | None = None
    created_at: datetime
    resolved_at: datetime | None = None


class ResolveTaskRequest(CamelModel):
    note: str | None = Field(default=None, max_length=1000)


class PruneResponse(CamelModel):
    deleted: int
    older_than_days: int
