# Overview: Service-layer operations for payment retries; re-issues gateway tokens under a bounded retry budget.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from flask import current_app

from ..constants import (
    METHOD_CASH,
    ORDER_CANCELLED,
    ORDER_PENDING_PAYMENT,
    PAID_OR_LATER,
    PAYMENT_COMPLETED,
    PAYMENT_EXPIRED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    TXN_PAYMENT,
)
from ..errors import ConflictError, NotFoundError, RetryLimitError, UpstreamError
from ..extensions import db
from ..models import Order, Payment
from ..time_utils import to_utc_z
from .concurrency import begin_write_lock, lock_for_update, run_with_retry
from .events import ORDER_UPDATED, order_payload, publish_safely
from .order_service import customer_details, gateway_line_items, payment_callbacks
from .order_state import apply_transition
from .payment_gateway import GatewayError

RETRYABLE_ORDER_STATUSES = frozenset({ORDER_PENDING_PAYMENT, ORDER_CANCELLED})
RETRYABLE_PAYMENT_STATUSES = frozenset({PAYMENT_PENDING, PAYMENT_FAILED, PAYMENT_EXPIRED})


@dataclass(frozen=True)
class RetryResult:
    order_id: int
    order_number: str
    token: str
    redirect_url: str | None
    correlation_id: str
    retry_attempt: int
    max_retries: int
    expires_at: datetime | None

    @property
    def retries_remaining(self) -> int:
        return max(self.max_retries - self.retry_attempt, 0)

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "order_number": self.order_number,
            "token": self.token,
            "redirect_url": self.redirect_url,
            "correlation_id": self.correlation_id,
            "retry_attempt": self.retry_attempt,
            "max_retries": self.max_retries,
            "retries_remaining": self.retries_remaining,
            "expires_at": to_utc_z(self.expires_at),
        }


def retry_correlation_id(order_number: str, attempt: int) -> str:
    return f"{order_number}-R{attempt}"


class RetryManager:
    """
    Payment retry for gateway orders whose first token was abandoned,
    failed or expired.

    Each retry opens a NEW gateway transaction under "<order_number>-R<n>"
    (gateways refuse to reuse an order id). The webhook reconciler maps that
    id back to the order.
    """

    def __init__(self, *, gateway, events, config):
        self.gateway = gateway
        self.events = events
        self.config = config

    @property
    def max_retries(self) -> int:
        return int(self.config.get("PAYMENT_MAX_RETRIES", 5))

    def _check_eligible(self, order: Order | None, order_id: int) -> Order:
        if order is None or order.deleted_at is not None:
            raise NotFoundError(f"Order {order_id} not found")
        if order.payment_method == METHOD_CASH:
            raise ConflictError("Cash orders do not use online payment")
        if order.payment_status == PAYMENT_COMPLETED or order.status in PAID_OR_LATER:
            raise ConflictError("Order is already paid", {"status": order.status})
        if order.status not in RETRYABLE_ORDER_STATUSES or order.payment_status not in RETRYABLE_PAYMENT_STATUSES:
            raise ConflictError(
                "Payment cannot be retried for this order",
                {"status": order.status, "payment_status": order.payment_status},
            )
        if order.payment_retry_count >= self.max_retries:
            raise RetryLimitError(
                "Maximum payment retries reached",
                {"retry_count": order.payment_retry_count, "max_retries": self.max_retries},
            )
        return order

    def retry(self, order_id: int, *, actor_id: str | None = None) -> RetryResult:
        """
        Issue a fresh payment token for an unpaid order.

        Raises:
            NotFoundError: unknown or soft-deleted order
            ConflictError: order paid, cash, or in a non-retryable state
            RetryLimitError: retry budget exhausted (terminal)
            UpstreamError: gateway refused the new token (order unchanged)
        """
        order = self._check_eligible(db.session.get(Order, order_id), order_id)
        attempt = order.payment_retry_count + 1
        correlation_id = retry_correlation_id(order.order_number, attempt)

        try:
            token = self.gateway.create_token(
                amount_cents=order.total_cents,
                correlation_id=correlation_id,
                items=gateway_line_items(order),
                customer=customer_details(order),
                callbacks=payment_callbacks(order, self.config.get("APP_URL", "")),
                expiry_minutes=int(self.config.get("RETRY_TOKEN_EXPIRY_MINUTES", 10)),
            )
        except GatewayError as exc:
            current_app.logger.error("Retry token request failed for %s: %s", correlation_id, exc)
            raise UpstreamError("Failed to create payment token", {"order_id": order_id}) from exc
        finally:
            # release the read snapshot before taking the write lock
            db.session.rollback()

        def _op():
            begin_write_lock()
            locked = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
            # state may have moved while the gateway call was in flight
            self._check_eligible(locked, order_id)
            if locked.payment_retry_count + 1 != attempt:
                raise ConflictError("A concurrent retry is already in progress")

            was_cancelled = locked.status == ORDER_CANCELLED
            locked.payment_retry_count = attempt
            apply_transition(locked, ORDER_PENDING_PAYMENT, reopen=True)
            locked.payment_status = PAYMENT_PENDING
            locked.gateway_reference = correlation_id
            locked.payment_token = token.token
            locked.payment_redirect_url = token.redirect_url
            locked.payment_token_expires_at = token.expires_at

            # earlier attempts stay as they are; their tokens can still settle
            db.session.add(Payment(
                order_id=locked.id,
                payment_method=locked.payment_method,
                amount_cents=locked.total_cents,
                status=PAYMENT_PENDING,
                transaction_type=TXN_PAYMENT,
                gateway_name=self.gateway.name,
                reference_number=correlation_id,
                created_by_user_id=actor_id,
            ))
            db.session.commit()
            return locked, was_cancelled

        try:
            locked, was_cancelled = run_with_retry(_op)
        except Exception:
            db.session.rollback()
            raise

        if was_cancelled:
            publish_safely(self.events, ORDER_UPDATED, order_payload(locked), current_app.logger)

        return RetryResult(
            order_id=locked.id,
            order_number=locked.order_number,
            token=token.token,
            redirect_url=token.redirect_url,
            correlation_id=correlation_id,
            retry_attempt=attempt,
            max_retries=self.max_retries,
            expires_at=token.expires_at,
        )

    def retry_info(self, order_id: int) -> dict:
        order = db.session.get(Order, order_id)
        if order is None or order.deleted_at is not None:
            raise NotFoundError(f"Order {order_id} not found")
        try:
            self._check_eligible(order, order_id)
            can_retry, reason = True, None
        except ConflictError as exc:
            can_retry, reason = False, exc.message
        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "status": order.status,
            "payment_status": order.payment_status,
            "retry_count": order.payment_retry_count,
            "max_retries": self.max_retries,
            "retries_remaining": max(self.max_retries - order.payment_retry_count, 0),
            "can_retry": can_retry,
            "reason": reason,
            "payment_token_expires_at": to_utc_z(order.payment_token_expires_at),
            "payment_redirect_url": order.payment_redirect_url,
        }
