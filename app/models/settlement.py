"""Webhook dedup log and the manual reconciliation (refund/review) queue."""
from datetime import datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from app.core.database import utcnow
from app.models.enums import SettlementOutcome


class SettlementEvent(SQLModel, table=True):
    """One row per distinct gateway event; inserted before any state mutation."""

    __tablename__ = "settlement_event"
    __table_args__ = (UniqueConstraint("gateway", "external_event_id", name="uq_settlement_event_gateway_event"),)

    id: int | None = Field(default=None, primary_key=True)
    gateway: str = Field(max_length=32)
    external_event_id: str = Field(max_length=128)
    order_code: str | None = Field(default=None, index=True)
    outcome: SettlementOutcome = Field(default=SettlementOutcome.PENDING)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    processed_at: datetime | None = None


class ReconciliationTask(SQLModel, table=True):
    """Money captured but not settled normally: needs a refund or a human decision."""

    __tablename__ = "reconciliation_task"
    __table_args__ = (
        UniqueConstraint("gateway", "external_event_id", "reason", name="uq_reconciliation_task_event_reason"),
    )

    id: int | None = Field(default=None, primary_key=True)
    gateway: str = Field(max_length=32)
    external_event_id: str = Field(max_length=128)
    order_code: str | None = Field(default=None, index=True)
    reason: str = Field(max_length=64)
    amount_paid: int | None = None
    status: str = Field(default="open", index=True)  # open | resolved
    note: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: datetime | None = None
