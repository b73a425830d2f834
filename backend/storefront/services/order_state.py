# Overview: Order status transition table and the helper that applies a transition with its timestamp.

from __future__ import annotations

from ..constants import (
    ORDER_AWAITING_CONFIRMATION,
    ORDER_CANCELLED,
    ORDER_COMPLETED,
    ORDER_DRAFT,
    ORDER_PAID,
    ORDER_PENDING_PAYMENT,
    ORDER_PREPARING,
    ORDER_READY,
    ORDER_REFUNDED,
    PAYMENT_COMPLETED,
    PAYMENT_EXPIRED,
    PAYMENT_FAILED,
    PAYMENT_PARTIALLY_REFUNDED,
    PAYMENT_PENDING,
    PAYMENT_PROCESSING,
    PAYMENT_REFUNDED,
)
from ..errors import ConflictError
from ..time_utils import utcnow

# Forward-only graph. COMPLETED/CANCELLED/REFUNDED are terminal except the
# refund path out of COMPLETED.
ORDER_TRANSITIONS: dict[str, frozenset[str]] = {
    ORDER_DRAFT: frozenset({ORDER_PENDING_PAYMENT, ORDER_PAID, ORDER_CANCELLED}),
    ORDER_PENDING_PAYMENT: frozenset({ORDER_AWAITING_CONFIRMATION, ORDER_PAID, ORDER_CANCELLED}),
    ORDER_AWAITING_CONFIRMATION: frozenset({ORDER_PAID, ORDER_CANCELLED}),
    ORDER_PAID: frozenset({ORDER_PREPARING, ORDER_REFUNDED}),
    ORDER_PREPARING: frozenset({ORDER_READY, ORDER_REFUNDED}),
    ORDER_READY: frozenset({ORDER_COMPLETED, ORDER_REFUNDED}),
    ORDER_COMPLETED: frozenset({ORDER_REFUNDED}),
    ORDER_CANCELLED: frozenset(),
    ORDER_REFUNDED: frozenset(),
}

# Explicit re-open used only by payment retry
RETRY_REOPEN = (ORDER_CANCELLED, ORDER_PENDING_PAYMENT)

_TIMESTAMP_FIELDS = {
    ORDER_PAID: "paid_at",
    ORDER_PREPARING: "preparing_at",
    ORDER_READY: "ready_at",
    ORDER_COMPLETED: "completed_at",
    ORDER_CANCELLED: "cancelled_at",
    ORDER_REFUNDED: "refunded_at",
}


def can_transition(current: str, target: str) -> bool:
    """Same-status is a no-op, not a transition."""
    if current == target:
        return True
    return target in ORDER_TRANSITIONS.get(current, frozenset())


def apply_transition(order, target: str, *, reopen: bool = False, now=None) -> bool:
    """
    Move order.status to target, stamping the matching *_at column.

    Returns True when the status changed. Raises ConflictError for a move
    the graph does not allow (reopen=True additionally permits the retry
    re-open CANCELLED -> PENDING_PAYMENT).
    """
    current = order.status
    if current == target:
        return False
    allowed = can_transition(current, target) or (reopen and (current, target) == RETRY_REOPEN)
    if not allowed:
        raise ConflictError(
            f"Cannot move order from {current} to {target}",
            {"current_status": current, "requested_status": target},
        )
    order.status = target
    field = _TIMESTAMP_FIELDS.get(target)
    if field and getattr(order, field) is None:
        setattr(order, field, now or utcnow())
    if reopen and target == ORDER_PENDING_PAYMENT:
        order.cancelled_at = None
        order.cancellation_reason = None
    return True


# Payment statuses also only move forward; FAILED/EXPIRED go back to
# PENDING only through a payment retry, which opens a new attempt.
PAYMENT_TRANSITIONS: dict[str, frozenset[str]] = {
    PAYMENT_PENDING: frozenset({PAYMENT_PROCESSING, PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_EXPIRED}),
    PAYMENT_PROCESSING: frozenset({PAYMENT_COMPLETED, PAYMENT_FAILED, PAYMENT_EXPIRED}),
    PAYMENT_COMPLETED: frozenset({PAYMENT_REFUNDED, PAYMENT_PARTIALLY_REFUNDED}),
    PAYMENT_PARTIALLY_REFUNDED: frozenset({PAYMENT_PARTIALLY_REFUNDED, PAYMENT_REFUNDED}),
    PAYMENT_FAILED: frozenset(),
    PAYMENT_EXPIRED: frozenset(),
    PAYMENT_REFUNDED: frozenset(),
}


def can_move_payment(current: str, target: str) -> bool:
    if current == target:
        return True
    return target in PAYMENT_TRANSITIONS.get(current, frozenset())
