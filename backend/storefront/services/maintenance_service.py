# Overview: Service-layer operations for maintenance; resolves gateway orders whose webhook never arrived.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app

from ..constants import (
    ORDER_AWAITING_CONFIRMATION,
    ORDER_CANCELLED,
    ORDER_PENDING_PAYMENT,
    PAYMENT_EXPIRED,
    PAYMENT_PENDING,
    PAYMENT_PROCESSING,
    TXN_PAYMENT,
)
from ..errors import StorefrontError
from ..extensions import db
from ..models import Order
from ..time_utils import utcnow
from .concurrency import begin_write_lock, lock_for_update, run_with_retry
from .events import ORDER_UPDATED, order_payload, publish_safely
from .order_state import apply_transition
from .payment_gateway import GatewayError, GatewayNotFoundError

STRANDED_REASON = "Payment token was never issued"
EXPIRED_REASON = "Payment expired"


@dataclass
class SweepReport:
    reconciled: list[str] = field(default_factory=list)
    expired: list[str] = field(default_factory=list)
    compensated: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "reconciled": self.reconciled,
            "expired": self.expired,
            "compensated": self.compensated,
            "errors": self.errors,
        }


class PendingOrderSweeper:
    """
    Periodic safety net for lost notifications.

    Orders whose token expired more than STALE_PAYMENT_GRACE_MINUTES ago
    are re-queried and pushed through the webhook reconciler, so the
    outcome is applied exactly as a delivered notification would be.
    Gateway orders that never got a token (process died between commit
    and token request) are compensated after ORPHAN_ORDER_MINUTES.
    """

    def __init__(self, *, gateway, reconciler, order_service, events, config):
        self.gateway = gateway
        self.reconciler = reconciler
        self.order_service = order_service
        self.events = events
        self.config = config

    def sweep(self, now: datetime | None = None) -> SweepReport:
        now = now or utcnow()
        report = SweepReport()
        self._sweep_stale_tokens(now, report)
        self._sweep_stranded(now, report)
        current_app.logger.info(
            "Pending-order sweep: %s reconciled, %s expired, %s compensated, %s errors",
            len(report.reconciled),
            len(report.expired),
            len(report.compensated),
            len(report.errors),
        )
        return report

    def _sweep_stale_tokens(self, now: datetime, report: SweepReport) -> None:
        grace = timedelta(minutes=int(self.config.get("STALE_PAYMENT_GRACE_MINUTES", 10)))
        candidates = (
            db.session.query(Order.id, Order.order_number, Order.gateway_reference)
            .filter(
                Order.deleted_at.is_(None),
                Order.status.in_([ORDER_PENDING_PAYMENT, ORDER_AWAITING_CONFIRMATION]),
                Order.payment_status.in_([PAYMENT_PENDING, PAYMENT_PROCESSING]),
                Order.payment_token.isnot(None),
                Order.payment_token_expires_at < now - grace,
            )
            .order_by(Order.id)
            .all()
        )
        db.session.rollback()

        for order_id, order_number, gateway_reference in candidates:
            correlation_id = gateway_reference or order_number
            try:
                status = self.gateway.query_status(correlation_id)
            except GatewayNotFoundError:
                if self._expire_locally(order_id, correlation_id, now):
                    report.expired.append(order_number)
                continue
            except GatewayError as exc:
                current_app.logger.warning("Sweep status query failed for %s: %s", correlation_id, exc)
                report.errors.append(order_number)
                continue

            try:
                self.reconciler.reconcile(status)
            except StorefrontError as exc:
                current_app.logger.warning("Sweep could not reconcile %s: %s", correlation_id, exc.message)
                report.errors.append(order_number)
                continue
            report.reconciled.append(order_number)

    def _expire_locally(self, order_id: int, correlation_id: str, now: datetime) -> bool:
        """The gateway never saw the token being paid; treat it as expired."""

        def _op() -> Order | None:
            begin_write_lock()
            order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
            if order is None or order.status != ORDER_PENDING_PAYMENT:
                db.session.rollback()
                return None
            apply_transition(order, ORDER_CANCELLED, now=now)
            order.payment_status = PAYMENT_EXPIRED
            order.cancellation_reason = order.cancellation_reason or EXPIRED_REASON
            for payment in order.payments:
                if payment.transaction_type == TXN_PAYMENT and payment.status in (PAYMENT_PENDING, PAYMENT_PROCESSING):
                    payment.status = PAYMENT_EXPIRED
                    payment.expired_at = now
            db.session.commit()
            return order

        try:
            order = run_with_retry(_op)
        except Exception:
            db.session.rollback()
            current_app.logger.exception("Sweep failed to expire %s", correlation_id)
            return False
        if order is None:
            return False
        current_app.logger.info("Order %s expired locally; gateway has no transaction %s", order.order_number, correlation_id)
        publish_safely(self.events, ORDER_UPDATED, order_payload(order), current_app.logger)
        return True

    def _sweep_stranded(self, now: datetime, report: SweepReport) -> None:
        cutoff = now - timedelta(minutes=int(self.config.get("ORPHAN_ORDER_MINUTES", 5)))
        stranded = (
            db.session.query(Order.id, Order.order_number)
            .filter(
                Order.deleted_at.is_(None),
                Order.status == ORDER_PENDING_PAYMENT,
                Order.payment_token.is_(None),
                Order.payment_retry_count == 0,
                Order.created_at < cutoff,
            )
            .order_by(Order.id)
            .all()
        )
        db.session.rollback()

        for order_id, order_number in stranded:
            if self.order_service.compensate_failed_checkout(order_id, STRANDED_REASON):
                current_app.logger.warning("Compensated stranded order %s", order_number)
                report.compensated.append(order_number)
