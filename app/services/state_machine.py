"""
Order lifecycle: PENDING -> COMPLETED | CANCELLED, both terminal.

Every transition is one conditional UPDATE (... WHERE status = PENDING). Concurrent or
duplicate callers all issue the same statement; exactly one sees PENDING and wins.
"""
import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import update
from sqlmodel import Session, select

from app.core.database import utcnow
from app.core.errors import ConflictError, ErrorCodes, NotFoundError
from app.models import Order, OrderStatus

log = logging.getLogger("coursepay.state_machine")

# Runs inside the winning PENDING -> COMPLETED transition; returns a failure reason or None
Guard = Callable[[Session, Order], str | None]

TERMINAL_STATES = (OrderStatus.COMPLETED, OrderStatus.CANCELLED)


@dataclass(frozen=True)
class TransitionResult:
    order: Order
    applied: bool  # True only for the call that moved the order out of PENDING
    status: OrderStatus
    reason: str | None = None


def _terminal_values(target: OrderStatus, reason: str | None) -> dict:
    now = utcnow()
    values = {"status": target, "updated_at": now}
    if target == OrderStatus.COMPLETED:
        values["completed_at"] = now
    else:
        values["cancelled_at"] = now
        values["cancel_reason"] = reason
    return values


def _load(db: Session, order_code: str) -> Order | None:
    stmt = select(Order).where(Order.code == order_code).execution_options(populate_existing=True)
    return db.exec(stmt).first()


def transition(
    db: Session,
    order_code: str,
    target: OrderStatus,
    guard: Guard | None = None,
    reason: str | None = None,
) -> TransitionResult:
    """
    Atomically move order_code from PENDING to target.

    - Already in target: idempotent success (applied=False).
    - Already in the other terminal state: ConflictError(ORDER_STATE_CONFLICT).
    - guard (COMPLETED only) runs after the update in the same transaction; if it returns
      a reason the order ends CANCELLED with that reason instead.

    Does not commit: the caller commits so guard and side effects land with the transition.
    """
    if target not in TERMINAL_STATES:
        raise ValueError(f"Invalid transition target: {target}")

    stmt = (
        update(Order)
        .where(Order.code == order_code, Order.status == OrderStatus.PENDING)
        .values(**_terminal_values(target, reason))
        .execution_options(synchronize_session=False)
    )
    applied = db.execute(stmt).rowcount == 1
    order = _load(db, order_code)
    if order is None:
        raise NotFoundError("Order not found.", ErrorCodes.ORDER_NOT_FOUND)

    if not applied:
        if order.status == target:
            log.info("Transition no-op: order=%s already %s", order_code, target.value)
            return TransitionResult(order=order, applied=False, status=order.status, reason=order.cancel_reason)
        log.warning(
            "Transition anomaly: order=%s requested=%s current=%s",
            order_code,
            target.value,
            order.status.value,
        )
        raise ConflictError(
            f"Order {order_code} is already {order.status.value}.",
            ErrorCodes.ORDER_STATE_CONFLICT,
        )

    if target == OrderStatus.COMPLETED and guard is not None:
        failure = guard(db, order)
        if failure:
            db.execute(
                update(Order)
                .where(Order.code == order_code)
                .values(**_terminal_values(OrderStatus.CANCELLED, failure), completed_at=None)
                .execution_options(synchronize_session=False)
            )
            order = _load(db, order_code)
            log.warning("Transition guard failed: order=%s reason=%s -> cancelled", order_code, failure)
            return TransitionResult(order=order, applied=True, status=OrderStatus.CANCELLED, reason=failure)

    log.info("Transition applied: order=%s -> %s", order_code, target.value)
    return TransitionResult(order=order, applied=True, status=target, reason=reason)
