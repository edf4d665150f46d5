"""checkout schema

Catalog read side, orders, coupons, the settlement dedup log, the reconciliation queue
and the audit/error/security logs.

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
import sqlmodel  # noqa: F401


revision: str = "0001_checkout_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ORDER_STATUS = sa.Enum("PENDING", "COMPLETED", "CANCELLED", name="orderstatus")
PAYMENT_METHOD = sa.Enum("CARD", "BANK_TRANSFER", name="paymentmethod")
DISCOUNT_TYPE = sa.Enum("PERCENT", "FIXED", name="discounttype")
SETTLEMENT_OUTCOME = sa.Enum("PENDING", "COMPLETED", "CANCELLED", "MANUAL_REVIEW", "CONFLICT", name="settlementoutcome")


def upgrade() -> None:
    op.create_table(
        "course",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("old_price", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("sold", sa.Integer(), nullable=False),
    )

    op.create_table(
        "enrollment",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("course_id", sa.Integer(), nullable=False),
        sa.Column("order_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "course_id", name="uq_enrollment_user_course"),
    )
    op.create_index("ix_enrollment_user_id", "enrollment", ["user_id"])
    op.create_index("ix_enrollment_course_id", "enrollment", ["course_id"])

    op.create_table(
        "coupon",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("discount_type", DISCOUNT_TYPE, nullable=False),
        sa.Column("discount_value", sa.Integer(), nullable=False),
        sa.Column("course_ids", sa.String(length=512), nullable=True),
        sa.Column("min_purchase_amount", sa.Integer(), nullable=False),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("used_count", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.DateTime(), nullable=False),
        sa.Column("end_date", sa.DateTime(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_coupon_code", "coupon", ["code"], unique=True)

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(length=32), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("items", sa.JSON(), nullable=False),
        sa.Column("coupon_code", sa.String(length=64), nullable=True),
        sa.Column("sub_total", sa.Integer(), nullable=False),
        sa.Column("total_discount", sa.Integer(), nullable=False),
        sa.Column("total_amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=8), nullable=False),
        sa.Column("payment_method", PAYMENT_METHOD, nullable=False),
        sa.Column("status", ORDER_STATUS, nullable=False),
        sa.Column("cancel_reason", sa.String(length=64), nullable=True),
        sa.Column("payment_reference", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_orders_code", "orders", ["code"], unique=True)
    op.create_index("ix_orders_user_id", "orders", ["user_id"])
    op.create_index("ix_orders_status", "orders", ["status"])
    op.create_index("ix_orders_payment_reference", "orders", ["payment_reference"])

    op.create_table(
        "settlement_event",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("gateway", sa.String(length=32), nullable=False),
        sa.Column("external_event_id", sa.String(length=128), nullable=False),
        sa.Column("order_code", sa.String(), nullable=True),
        sa.Column("outcome", SETTLEMENT_OUTCOME, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("gateway", "external_event_id", name="uq_settlement_event_gateway_event"),
    )
    op.create_index("ix_settlement_event_order_code", "settlement_event", ["order_code"])
    op.create_index("ix_settlement_event_created_at", "settlement_event", ["created_at"])

    op.create_table(
        "reconciliation_task",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("gateway", sa.String(length=32), nullable=False),
        sa.Column("external_event_id", sa.String(length=128), nullable=False),
        sa.Column("order_code", sa.String(), nullable=True),
        sa.Column("reason", sa.String(length=64), nullable=False),
        sa.Column("amount_paid", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("note", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("gateway", "external_event_id", "reason", name="uq_reconciliation_task_event_reason"),
    )
    op.create_index("ix_reconciliation_task_order_code", "reconciliation_task", ["order_code"])
    op.create_index("ix_reconciliation_task_status", "reconciliation_task", ["status"])

    op.create_table(
        "auditlog",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("detail", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_auditlog_event", "auditlog", ["event"])
    op.create_index("ix_auditlog_user_id", "auditlog", ["user_id"])

    op.create_table(
        "error_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("endpoint", sa.String(), nullable=True),
        sa.Column("method", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("stack_trace", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "security_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("ip", sa.String(), nullable=True),
        sa.Column("endpoint", sa.String(), nullable=True),
        sa.Column("detail", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_security_logs_event", "security_logs", ["event"])


def downgrade() -> None:
    op.drop_table("security_logs")
    op.drop_table("error_logs")
    op.drop_table("auditlog")
    op.drop_table("reconciliation_task")
    op.drop_table("settlement_event")
    op.drop_table("orders")
    op.drop_table("coupon")
    op.drop_table("enrollment")
    op.drop_table("course")
    bind = op.get_bind()
    for enum in (SETTLEMENT_OUTCOME, ORDER_STATUS, PAYMENT_METHOD, DISCOUNT_TYPE):
        enum.drop(bind, checkfirst=True)
