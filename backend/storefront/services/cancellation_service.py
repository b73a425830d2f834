# Overview: Service-layer operations for cancelling unpaid orders, gateway first, then locally.

from __future__ import annotations

from flask import current_app

from ..constants import (
    METHOD_CASH,
    ORDER_CANCELLED,
    PAID_OR_LATER,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_PROCESSING,
    TXN_PAYMENT,
)
from ..errors import ConflictError, NotFoundError, UpstreamError
from ..extensions import db
from ..models import Order
from ..time_utils import utcnow
from .concurrency import begin_write_lock, lock_for_update, run_with_retry
from .events import ORDER_UPDATED, order_payload, publish_safely
from .order_state import apply_transition
from .payment_gateway import GatewayError, GatewayNotFoundError

DEFAULT_CANCEL_REASON = "Cancelled by user"


class CancellationService:
    """
    Cancel an order that has not been paid.

    The gateway transaction is cancelled before the local state so a
    customer cannot pay a token for an order we already marked cancelled.
    A gateway that has never seen the transaction counts as cancelled.
    """

    def __init__(self, *, gateway, events, config):
        self.gateway = gateway
        self.events = events
        self.config = config

    @staticmethod
    def _reject_if_paid(order: Order) -> None:
        if order.payment_status == PAYMENT_COMPLETED or order.status in PAID_OR_LATER:
            raise ConflictError(
                "Cannot cancel a paid order",
                {"status": order.status, "payment_status": order.payment_status},
            )

    def cancel(self, order_id: int, *, reason: str | None = None, actor_id: str | None = None) -> Order:
        """
        Raises:
            NotFoundError: unknown order
            ConflictError: order already paid (409)
            UpstreamError: gateway refused the cancel; nothing changed locally
        """
        order = db.session.get(Order, order_id)
        if order is None or order.deleted_at is not None:
            raise NotFoundError(f"Order {order_id} not found")
        if order.status == ORDER_CANCELLED:
            return order
        self._reject_if_paid(order)

        if order.payment_method != METHOD_CASH and order.gateway_reference:
            try:
                self.gateway.cancel_transaction(order.gateway_reference)
            except GatewayNotFoundError:
                current_app.logger.info(
                    "Gateway has no transaction %s; cancelling locally", order.gateway_reference
                )
            except GatewayError as exc:
                current_app.logger.error("Gateway cancel failed for %s: %s", order.gateway_reference, exc)
                raise UpstreamError(
                    "Failed to cancel payment with the gateway",
                    {"order_id": order_id, "gateway_reference": order.gateway_reference},
                ) from exc
            finally:
                db.session.rollback()

        def _op():
            begin_write_lock()
            locked = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
            if locked.status == ORDER_CANCELLED:
                db.session.rollback()
                return locked, False
            # a settlement may have landed while the gateway call was in flight
            self._reject_if_paid(locked)

            now = utcnow()
            apply_transition(locked, ORDER_CANCELLED, now=now)
            locked.payment_status = PAYMENT_FAILED
            locked.cancellation_reason = reason or DEFAULT_CANCEL_REASON
            for payment in locked.payments:
                if payment.transaction_type == TXN_PAYMENT and payment.status in (PAYMENT_PENDING, PAYMENT_PROCESSING):
                    payment.status = PAYMENT_FAILED
                    payment.failed_at = now
                    payment.notes = locked.cancellation_reason
            db.session.commit()
            return locked, True

        try:
            locked, changed = run_with_retry(_op)
        except Exception:
            db.session.rollback()
            raise

        if changed:
            current_app.logger.info(
                "Order %s cancelled by %s: %s", locked.order_number, actor_id or "system", locked.cancellation_reason
            )
            publish_safely(self.events, ORDER_UPDATED, order_payload(locked), current_app.logger)
        return locked
