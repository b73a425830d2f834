# Overview: Service-layer operations for gateway notifications; verifies, maps and applies payment status exactly once.

"""
Webhook Reconciler

WHY: Payment gateways deliver notifications at-least-once, possibly out of
order, over an unauthenticated endpoint. This service is the only place a
gateway outcome turns into order/payment state and (deferred) stock
deduction.

PROTOCOL (handle_notification):
1. Require order_id + transaction_status                     -> 400
2. Verify SHA-512 signature (constant-time)                  -> 401
3. Re-query the gateway for the authoritative status; fall back to the
   notification body if the query fails
4. Resolve the order by correlation id (order_number, gateway_reference,
   or the base number of a "-R<n>" retry id)                 -> 404
5. Map (transaction_status, fraud_status) through GATEWAY_STATUS_TABLE
6. Under the order row lock: record the attempt keyed by the gateway
   transaction id, apply forward-only transitions, and deduct stock the
   first time the order's payment becomes COMPLETED
7. Publish events after commit

IDEMPOTENCY: payments.gateway_transaction_id is UNIQUE and stock deduction is
guarded by orders.inventory_deducted_at, so re-running the handler for the
same delivery changes nothing. Unexpected failures surface as 500 so the
gateway redelivers.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..constants import (
    ORDER_AWAITING_CONFIRMATION,
    ORDER_CANCELLED,
    ORDER_PAID,
    ORDER_PENDING_PAYMENT,
    ORDER_REFUNDED,
    PAYMENT_COMPLETED,
    PAYMENT_EXPIRED,
    PAYMENT_FAILED,
    PAYMENT_PARTIALLY_REFUNDED,
    PAYMENT_PENDING,
    PAYMENT_PROCESSING,
    PAYMENT_REFUNDED,
    TXN_PARTIAL_REFUND,
    TXN_PAYMENT,
    TXN_REFUND,
)
from ..errors import (
    AuthenticityError,
    NotFoundError,
    StorefrontError,
    TransientProcessingError,
    ValidationError,
)
from ..extensions import db
from ..models import Order, Payment
from ..time_utils import parse_gateway_datetime, utcnow
from . import inventory_service
from .concurrency import begin_write_lock, lock_for_update, run_with_retry
from .events import (
    ORDER_UPDATED,
    PAYMENT_COMPLETED as PAYMENT_COMPLETED_EVENT,
    publish_safely,
    publish_stock_alerts,
)
from .order_state import apply_transition, can_move_payment, can_transition
from .payment_gateway import (
    GatewayError,
    GatewayTransactionStatus,
    gateway_amount_to_cents,
    method_for_payment_type,
    verify_notification_signature,
)

RETRY_SUFFIX = re.compile(r"^(?P<base>.+)-R(?P<attempt>\d+)$")


@dataclass(frozen=True)
class StatusOutcome:
    order_status: str | None  # None: leave the order status unchanged
    payment_status: str


# Keyed by (transaction_status, fraud_status); None matches any fraud flag.
GATEWAY_STATUS_TABLE: dict[tuple[str, str | None], StatusOutcome] = {
    ("capture", "accept"): StatusOutcome(ORDER_PAID, PAYMENT_COMPLETED),
    ("capture", "challenge"): StatusOutcome(ORDER_AWAITING_CONFIRMATION, PAYMENT_PROCESSING),
    ("capture", "deny"): StatusOutcome(ORDER_CANCELLED, PAYMENT_FAILED),
    ("settlement", None): StatusOutcome(ORDER_PAID, PAYMENT_COMPLETED),
    ("pending", None): StatusOutcome(ORDER_PENDING_PAYMENT, PAYMENT_PENDING),
    ("deny", None): StatusOutcome(ORDER_CANCELLED, PAYMENT_FAILED),
    ("expire", None): StatusOutcome(ORDER_CANCELLED, PAYMENT_EXPIRED),
    ("cancel", None): StatusOutcome(ORDER_CANCELLED, PAYMENT_FAILED),
    ("failure", None): StatusOutcome(ORDER_CANCELLED, PAYMENT_FAILED),
    ("refund", None): StatusOutcome(ORDER_REFUNDED, PAYMENT_REFUNDED),
    ("partial_refund", None): StatusOutcome(None, PAYMENT_PARTIALLY_REFUNDED),
}

UNRECOGNIZED_OUTCOME = StatusOutcome(None, PAYMENT_PROCESSING)

REFUND_STATUSES = {"refund": TXN_REFUND, "partial_refund": TXN_PARTIAL_REFUND}


def fit_column(model, column: str, value: str | None) -> str | None:
    """Clip a gateway-supplied string to the width of its column."""
    if value is None:
        return None
    length = model.__table__.c[column].type.length
    return str(value)[:length] if length else str(value)


def map_gateway_status(transaction_status: str, fraud_status: str | None) -> tuple[StatusOutcome, bool]:
    """Return (outcome, recognized)."""
    status = (transaction_status or "").lower()
    fraud = (fraud_status or "").lower() or None
    outcome = GATEWAY_STATUS_TABLE.get((status, fraud))
    if outcome is None and status != "capture":
        outcome = GATEWAY_STATUS_TABLE.get((status, None))
    if outcome is None:
        return UNRECOGNIZED_OUTCOME, False
    return outcome, True


@dataclass
class WebhookResult:
    order_id: int
    order_number: str
    order_status: str
    payment_status: str
    duplicate: bool = False
    inventory_deducted: bool = False
    blocked: bool = False
    recognized: bool = True
    status_changed: bool = False
    payment_completed: bool = False

    def to_dict(self) -> dict:
        return {
            "success": True,
            "order": {
                "id": self.order_id,
                "order_number": self.order_number,
                "status": self.order_status,
                "payment_status": self.payment_status,
            },
            "duplicate": self.duplicate,
            "inventory_deducted": self.inventory_deducted,
            "transition_blocked": self.blocked,
        }


def resolve_order(correlation_id: str) -> Order | None:
    """Find the order a gateway correlation id belongs to (soft-deleted included)."""
    if not correlation_id:
        return None
    order = db.session.query(Order).filter_by(order_number=correlation_id).first()
    if order:
        return order
    order = db.session.query(Order).filter_by(gateway_reference=correlation_id).first()
    if order:
        return order
    match = RETRY_SUFFIX.match(correlation_id)
    if match:
        return db.session.query(Order).filter_by(order_number=match.group("base")).first()
    return None


class WebhookReconciler:
    def __init__(self, *, gateway, events, config):
        self.gateway = gateway
        self.events = events
        self.config = config

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    def handle_notification(self, payload) -> WebhookResult:
        """
        Process one gateway notification (steps 1-7 above).

        Raises:
            ValidationError (400), AuthenticityError (401),
            NotFoundError (404), TransientProcessingError (500)
        """
        if not isinstance(payload, dict):
            raise ValidationError("Notification body must be a JSON object")
        if not payload.get("order_id") or not payload.get("transaction_status"):
            raise ValidationError("order_id and transaction_status are required")

        self._verify_signature(payload)

        notification = GatewayTransactionStatus.from_payload(payload)
        verified = self._verified_status(notification)
        return self.reconcile(verified, notification=notification)

    def reconcile(
        self,
        verified: GatewayTransactionStatus,
        *,
        notification: GatewayTransactionStatus | None = None,
    ) -> WebhookResult:
        """
        Apply an authoritative gateway status to its order. Also used by the
        pending-order sweep with a status it queried itself.
        """
        correlation_id = (notification or verified).order_id or verified.order_id
        order = resolve_order(correlation_id)
        if order is None:
            raise NotFoundError(f"Order for {correlation_id} not found")
        order_id = order.id

        outcome, recognized = map_gateway_status(verified.transaction_status, verified.fraud_status)
        if not recognized:
            current_app.logger.warning(
                "Unrecognized gateway status %r (fraud=%r) for %s",
                verified.transaction_status,
                verified.fraud_status,
                correlation_id,
            )

        attempts = 3
        try:
            for attempt in range(attempts):
                try:
                    result, mutations = run_with_retry(
                        lambda: self._apply(order_id, correlation_id, verified, notification, outcome, recognized)
                    )
                    break
                except IntegrityError:
                    # concurrent delivery inserted the same transaction id first
                    db.session.rollback()
                    if attempt >= attempts - 1:
                        raise
                    current_app.logger.info(
                        "Duplicate in-flight notification for %s; re-running as repeat delivery",
                        correlation_id,
                    )
        except StorefrontError:
            db.session.rollback()
            raise
        except Exception as exc:
            db.session.rollback()
            current_app.logger.exception("Webhook processing failed for %s", correlation_id)
            raise TransientProcessingError("Failed to process notification") from exc

        logger = current_app.logger
        if result.payment_completed:
            publish_safely(self.events, PAYMENT_COMPLETED_EVENT, {
                **order_payload_from_result(result),
                "transaction_id": verified.transaction_id,
                "payment_type": verified.payment_type,
            }, logger)
        if result.status_changed or result.payment_completed:
            publish_safely(self.events, ORDER_UPDATED, order_payload_from_result(result), logger)
        publish_stock_alerts(self.events, mutations, logger)
        return result

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    def _signature_bypass_enabled(self) -> bool:
        if not self.config.get("WEBHOOK_SIGNATURE_BYPASS"):
            return False
        return self.config.get("APP_ENV", "development") != "production"

    def _verify_signature(self, payload: dict) -> None:
        if self._signature_bypass_enabled():
            current_app.logger.warning(
                "Webhook signature check bypassed for %s (APP_ENV=%s)",
                payload.get("order_id"),
                self.config.get("APP_ENV"),
            )
            return
        if not verify_notification_signature(payload, self.config.get("MIDTRANS_SERVER_KEY", "")):
            current_app.logger.warning("Invalid webhook signature for %s", payload.get("order_id"))
            raise AuthenticityError("Invalid signature")

    def _verified_status(self, notification: GatewayTransactionStatus) -> GatewayTransactionStatus:
        try:
            verified = self.gateway.query_status(notification.order_id)
        except GatewayError as exc:
            current_app.logger.warning(
                "Status re-query failed for %s, using notification body: %s", notification.order_id, exc
            )
            return notification
        if not verified.transaction_status:
            return notification
        return verified

    # =========================================================================
    # APPLY
    # =========================================================================

    def _apply(
        self,
        order_id: int,
        correlation_id: str,
        verified: GatewayTransactionStatus,
        notification: GatewayTransactionStatus | None,
        outcome: StatusOutcome,
        recognized: bool,
    ):
        begin_write_lock()
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise NotFoundError(f"Order for {correlation_id} not found")

        now = utcnow()
        transaction_id = verified.transaction_id or (notification.transaction_id if notification else None)
        payment_key = transaction_id or correlation_id
        gateway_status = verified.transaction_status

        payment = db.session.query(Payment).filter_by(gateway_transaction_id=payment_key).first()
        duplicate = payment is not None
        if payment is None:
            payment = self._claim_or_create_payment(order, correlation_id, payment_key, verified)

        # Forward-only: decide whether the order accepts this outcome
        target_order_status = outcome.order_status or order.status
        blocked = not (
            can_transition(order.status, target_order_status)
            and can_move_payment(order.payment_status, outcome.payment_status)
        )
        # A non-success outcome for an attempt a retry has replaced only
        # touches that attempt's payment row
        current_reference = order.gateway_reference or order.order_number
        superseded = correlation_id != current_reference and outcome.payment_status in (
            PAYMENT_PENDING,
            PAYMENT_FAILED,
            PAYMENT_EXPIRED,
        )
        if superseded and not blocked:
            blocked = True
            current_app.logger.info(
                "Notification %s for superseded attempt %s of order %s recorded on payment only",
                gateway_status,
                correlation_id,
                order.order_number,
            )
        elif blocked:
            current_app.logger.warning(
                "Ignoring out-of-order %s for order %s (status=%s, payment_status=%s)",
                gateway_status,
                order.order_number,
                order.status,
                order.payment_status,
            )

        # Attempt row always records the snapshot
        previous_payment_row_status = payment.status
        payment.gateway_name = payment.gateway_name or self.gateway.name
        payment.gateway_status = fit_column(Payment, "gateway_status", gateway_status)
        payment.fraud_status = fit_column(Payment, "fraud_status", verified.fraud_status)
        payment.gateway_response = verified.raw or None
        if notification is not None:
            payment.gateway_callback_data = notification.raw
        if verified.payment_type:
            payment.payment_method = method_for_payment_type(verified.payment_type)
        if can_move_payment(payment.status, outcome.payment_status):
            payment.status = outcome.payment_status
            self._stamp_payment(payment, outcome.payment_status, verified, now)

        newly_completed = (
            outcome.payment_status == PAYMENT_COMPLETED
            and previous_payment_row_status != PAYMENT_COMPLETED
            and payment.status == PAYMENT_COMPLETED
        )

        status_changed = False
        payment_completed = False
        mutations = []
        if not blocked:
            previous_order_payment_status = order.payment_status
            if outcome.order_status:
                status_changed = apply_transition(order, outcome.order_status, now=now)
            order.payment_status = outcome.payment_status

            if outcome.order_status == ORDER_CANCELLED and not order.cancellation_reason:
                order.cancellation_reason = f"Payment {gateway_status}"

            if outcome.payment_status == PAYMENT_COMPLETED:
                if verified.payment_type:
                    order.payment_method = method_for_payment_type(verified.payment_type)
                payment_completed = previous_order_payment_status != PAYMENT_COMPLETED
                if payment_completed:
                    order.paid_amount_cents = verified.gross_amount_cents or order.total_cents
                    if order.paid_amount_cents != order.total_cents:
                        current_app.logger.warning(
                            "Gateway amount %s differs from order %s total %s",
                            order.paid_amount_cents,
                            order.order_number,
                            order.total_cents,
                        )

            if newly_completed and order.inventory_deducted_at is None:
                mutations = inventory_service.deduct_for_order(
                    order,
                    reason=f"Payment {payment_key} for order {order.order_number}",
                    allow_negative=bool(self.config.get("OVERSELL_ALLOW_NEGATIVE_STOCK", False)),
                )
            elif newly_completed:
                current_app.logger.warning(
                    "Order %s already settled; %s is an additional completed payment",
                    order.order_number,
                    payment_key,
                )

        if gateway_status in REFUND_STATUSES and not blocked:
            self._record_refund(order, payment, verified, REFUND_STATUSES[gateway_status], now)

        db.session.commit()

        result = WebhookResult(
            order_id=order.id,
            order_number=order.order_number,
            order_status=order.status,
            payment_status=order.payment_status,
            duplicate=duplicate,
            inventory_deducted=bool(mutations),
            blocked=blocked,
            recognized=recognized,
            status_changed=status_changed,
            payment_completed=payment_completed,
        )
        return result, mutations

    def _claim_or_create_payment(
        self,
        order: Order,
        correlation_id: str,
        payment_key: str,
        verified: GatewayTransactionStatus,
    ) -> Payment:
        placeholder = (
            db.session.query(Payment)
            .filter(
                Payment.order_id == order.id,
                Payment.reference_number == correlation_id,
                Payment.gateway_transaction_id.is_(None),
                Payment.transaction_type == TXN_PAYMENT,
            )
            .order_by(Payment.id.desc())
            .first()
        )
        if placeholder is not None:
            placeholder.gateway_transaction_id = payment_key
            db.session.flush()
            return placeholder

        payment = Payment(
            order_id=order.id,
            payment_method=method_for_payment_type(verified.payment_type),
            amount_cents=verified.gross_amount_cents or order.total_cents,
            status=PAYMENT_PENDING,
            transaction_type=TXN_PAYMENT,
            gateway_name=self.gateway.name,
            gateway_transaction_id=payment_key,
            reference_number=correlation_id,
        )
        db.session.add(payment)
        db.session.flush()
        return payment

    @staticmethod
    def _stamp_payment(payment: Payment, status: str, verified: GatewayTransactionStatus, now) -> None:
        if status == PAYMENT_COMPLETED and payment.paid_at is None:
            payment.paid_at = (
                parse_gateway_datetime(verified.settlement_time)
                or parse_gateway_datetime(verified.transaction_time)
                or now
            )
        elif status == PAYMENT_FAILED and payment.failed_at is None:
            payment.failed_at = now
        elif status == PAYMENT_EXPIRED and payment.expired_at is None:
            payment.expired_at = now
        elif status in (PAYMENT_REFUNDED, PAYMENT_PARTIALLY_REFUNDED):
            payment.refunded_at = now

    @staticmethod
    def _record_refund(order: Order, payment: Payment, verified: GatewayTransactionStatus, txn_type: str, now) -> None:
        """
        Append one refund row per (transaction, status, amount). Refund rows
        never add up to more than was paid, so a gateway refund that repeats
        an operator refund is not recorded twice.
        """
        raw = verified.raw or {}
        paid_cents = order.paid_amount_cents or order.total_cents
        amount_cents = None
        if raw.get("refund_amount") is not None:
            amount_cents = gateway_amount_to_cents(str(raw["refund_amount"]))
        if amount_cents is None:
            amount_cents = paid_cents

        reference = f"{payment.gateway_transaction_id}:{verified.transaction_status}:{amount_cents}"
        exists = (
            db.session.query(Payment.id)
            .filter_by(order_id=order.id, reference_number=reference, transaction_type=txn_type)
            .first()
        )
        if exists:
            return

        refunded_cents = (
            db.session.query(func.coalesce(func.sum(Payment.amount_cents), 0))
            .filter(
                Payment.order_id == order.id,
                Payment.transaction_type.in_((TXN_REFUND, TXN_PARTIAL_REFUND)),
            )
            .scalar()
        )
        remaining_cents = paid_cents - refunded_cents
        if remaining_cents <= 0:
            current_app.logger.info(
                "Refund %s for order %s already recorded in full; skipping",
                reference,
                order.order_number,
            )
            return
        if amount_cents > remaining_cents:
            current_app.logger.warning(
                "Refund %s for order %s exceeds the unrefunded %s; recording %s",
                reference,
                order.order_number,
                remaining_cents,
                remaining_cents,
            )
            amount_cents = remaining_cents
        db.session.add(Payment(
            order_id=order.id,
            payment_method=payment.payment_method,
            amount_cents=amount_cents,
            status=PAYMENT_REFUNDED if txn_type == TXN_REFUND else PAYMENT_PARTIALLY_REFUNDED,
            transaction_type=txn_type,
            gateway_name=payment.gateway_name,
            gateway_status=fit_column(Payment, "gateway_status", verified.transaction_status),
            gateway_response=raw or None,
            reference_number=reference,
            refunded_at=now,
        ))


def order_payload_from_result(result: WebhookResult) -> dict:
    return {
        "order_id": result.order_id,
        "order_number": result.order_number,
        "status": result.order_status,
        "payment_status": result.payment_status,
    }
