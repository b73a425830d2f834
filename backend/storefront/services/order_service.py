# Overview: Service-layer operations for orders; creation (cash and gateway paths), reads and status advancement.

"""
Order Service

WHY: Single entry point for turning a validated basket into an order and
routing it to the right payment path.

DESIGN:
- Cash orders are settled inline: stock is re-validated under lock and
  deducted in the same transaction that marks the order PAID.
- Gateway orders are committed as PENDING_PAYMENT first, then a hosted
  payment token is requested OUTSIDE the DB transaction. Stock is only
  deducted later, when the webhook reconciler sees a confirmed payment.
- A failed token request is compensated (order cancelled and soft-deleted)
  instead of rolled back, because the order row is already committed.
- Notifications are published after commit and never fail the operation.
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..constants import (
    METHOD_CASH,
    ORDER_CANCELLED,
    ORDER_DRAFT,
    ORDER_PAID,
    ORDER_PENDING_PAYMENT,
    ORDER_PREPARING,
    ORDER_READY,
    ORDER_COMPLETED,
    ORDER_REFUNDED,
    ORDER_STATUSES,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_REFUNDED,
    TAX_EXCLUSIVE,
    TXN_PAYMENT,
    TXN_REFUND,
)
from ..errors import ConflictError, NotFoundError, UpstreamError, ValidationError
from ..extensions import db
from ..models import Order, OrderItem, Payment, Product
from ..time_utils import utcnow
from ..validation import OrderInput, expected_total_cents, parse_order_input
from . import inventory_service
from .concurrency import begin_write_lock, lock_for_update, run_with_retry
from .events import ORDER_CREATED, ORDER_UPDATED, order_payload, publish_safely, publish_stock_alerts
from .order_numbers import allocate_order_number
from .order_state import apply_transition
from .payment_gateway import GatewayError

TOKEN_FAILURE_REASON = "Failed to create payment token"

# Statuses an operator may move an order to directly
MANUAL_STATUS_TARGETS = frozenset({ORDER_PREPARING, ORDER_READY, ORDER_COMPLETED, ORDER_REFUNDED})


@dataclass
class OrderCreationResult:
    order: Order
    payment_token: str | None = None
    payment_redirect_url: str | None = None

    @property
    def requires_payment(self) -> bool:
        return self.payment_token is not None

    def to_dict(self) -> dict:
        return {
            "order": self.order.to_dict(),
            "payment_token": self.payment_token,
            "payment_redirect_url": self.payment_redirect_url,
            "requires_payment": self.requires_payment,
        }


def gateway_line_items(order: Order) -> list[dict]:
    """
    Item breakdown for the hosted payment page. Fees, exclusive tax and
    discounts are separate lines so the lines sum to the order total.
    """
    lines = [
        {
            "id": item.product_id,
            "name": item.product_name,
            "price_cents": item.unit_price_cents,
            "quantity": item.quantity,
        }
        for item in order.items
    ]
    if order.delivery_fee_cents:
        lines.append({"id": "DELIVERY_FEE", "name": "Delivery Fee", "price_cents": order.delivery_fee_cents, "quantity": 1})
    if order.service_charge_cents:
        lines.append({"id": "SERVICE_CHARGE", "name": "Service Charge", "price_cents": order.service_charge_cents, "quantity": 1})
    if order.tax_type == TAX_EXCLUSIVE and order.tax_cents:
        lines.append({"id": "TAX", "name": "Tax", "price_cents": order.tax_cents, "quantity": 1})
    discount = order.discount_cents + sum(item.discount_cents for item in order.items)
    if discount:
        lines.append({"id": "DISCOUNT", "name": "Discount", "price_cents": -discount, "quantity": 1})
    return lines


def customer_details(order: Order) -> dict:
    return {
        "name": order.customer_name,
        "email": order.customer_email,
        "phone": order.customer_phone,
    }


def payment_callbacks(order: Order, app_url: str) -> dict:
    base = f"{app_url.rstrip('/')}/order/{order.id}"
    return {
        "finish": f"{base}?payment=finish",
        "error": f"{base}?payment=error",
        "pending": f"{base}?payment=pending",
    }


class OrderService:
    def __init__(self, *, gateway, events, config):
        self.gateway = gateway
        self.events = events
        self.config = config

    # =========================================================================
    # CREATE
    # =========================================================================

    def create_order(self, payload, *, actor_id: str | None = None) -> OrderCreationResult:
        """
        Create an order and route it to its payment path.

        Raises:
            ValidationError: malformed input or inconsistent totals
            NotFoundError: unknown product
            ConflictError: unavailable product, stale price or short stock
            UpstreamError: gateway could not issue a token (order compensated)
        """
        order_input = payload if isinstance(payload, OrderInput) else parse_order_input(payload)

        attempts = 3
        for attempt in range(attempts):
            try:
                order, mutations = run_with_retry(lambda: self._persist_order(order_input, actor_id))
                break
            except IntegrityError:
                # order number or sequence row taken by a concurrent checkout
                db.session.rollback()
                if attempt >= attempts - 1:
                    raise
                current_app.logger.warning("Order insert collided; retrying (attempt %s)", attempt + 1)
            except Exception:
                db.session.rollback()
                raise

        result = OrderCreationResult(order=order)
        if order.payment_method != METHOD_CASH:
            token = self._issue_token(order)
            result.payment_token = token.token
            result.payment_redirect_url = token.redirect_url

        logger = current_app.logger
        publish_safely(self.events, ORDER_CREATED, order_payload(order), logger)
        publish_stock_alerts(self.events, mutations, logger)
        return result

    def _priced_items(self, order_input: OrderInput, products: dict[int, Product]) -> list[OrderItem]:
        missing = sorted({i.product_id for i in order_input.items} - set(products))
        if missing:
            raise NotFoundError("Products not found", {"product_ids": missing})

        items = []
        for index, line in enumerate(order_input.items):
            product = products[line.product_id]
            if not product.is_sellable:
                raise ConflictError(f"Product {product.name} is not available", {"product_id": product.id})
            if line.unit_price_cents is not None and line.unit_price_cents != product.price_cents:
                raise ConflictError(
                    f"Price for {product.name} has changed",
                    {
                        "product_id": product.id,
                        "quoted_unit_price_cents": line.unit_price_cents,
                        "current_unit_price_cents": product.price_cents,
                    },
                )
            gross = product.price_cents * line.quantity
            if line.discount_cents > gross:
                raise ValidationError(f"items[{index}].discount_cents exceeds the line amount")
            subtotal = gross - line.discount_cents
            items.append(OrderItem(
                product_id=product.id,
                product_name=product.name,
                product_sku=product.sku,
                unit_price_cents=product.price_cents,
                quantity=line.quantity,
                discount_cents=line.discount_cents,
                subtotal_cents=subtotal,
                tax_cents=0,
                total_cents=subtotal,
                notes=line.notes,
            ))
        return items

    @staticmethod
    def _check_stock(items: list[OrderItem], products: dict[int, Product]) -> None:
        requested: dict[int, int] = {}
        for item in items:
            requested[item.product_id] = requested.get(item.product_id, 0) + item.quantity

        shortages = []
        for product_id, quantity in requested.items():
            product = products[product_id]
            if product.track_inventory and product.quantity < quantity:
                shortages.append({
                    "product_id": product_id,
                    "product_name": product.name,
                    "requested": quantity,
                    "current_stock": product.quantity,
                    "shortage": quantity - product.quantity,
                })
        if shortages:
            raise ConflictError("Insufficient stock", {"items": shortages})

    def _persist_order(self, order_input: OrderInput, actor_id: str | None):
        begin_write_lock()

        product_ids = sorted({i.product_id for i in order_input.items})
        query = db.session.query(Product).filter(Product.id.in_(product_ids)).order_by(Product.id)
        if order_input.is_cash:
            query = lock_for_update(query)
        products = {p.id: p for p in query.all()}

        items = self._priced_items(order_input, products)
        self._check_stock(items, products)

        subtotal = sum(item.subtotal_cents for item in items)
        if order_input.subtotal_cents is not None and order_input.subtotal_cents != subtotal:
            raise ValidationError(
                "subtotal_cents does not match the sum of item subtotals",
                {"subtotal_cents": order_input.subtotal_cents, "expected_subtotal_cents": subtotal},
            )
        if order_input.discount_cents > subtotal:
            raise ValidationError("discount_cents exceeds subtotal_cents")
        total = expected_total_cents(
            subtotal_cents=subtotal,
            discount_cents=order_input.discount_cents,
            tax_cents=order_input.tax_cents,
            tax_type=order_input.tax_type,
            service_charge_cents=order_input.service_charge_cents,
            delivery_fee_cents=order_input.delivery_fee_cents,
        )
        if order_input.total_cents is not None and order_input.total_cents != total:
            raise ValidationError(
                "total_cents does not match the computed total",
                {"total_cents": order_input.total_cents, "expected_total_cents": total},
            )

        order_number = allocate_order_number(
            order_input.order_source,
            max_attempts=self.config.get("ORDER_NUMBER_MAX_ATTEMPTS", 10),
        )
        order = Order(
            order_number=order_number,
            order_type=order_input.order_type,
            order_source=order_input.order_source,
            status=ORDER_DRAFT,
            payment_method=order_input.payment_method,
            payment_status=PAYMENT_PENDING,
            customer_name=order_input.customer_name,
            customer_phone=order_input.customer_phone,
            customer_email=order_input.customer_email,
            customer_address=order_input.customer_address,
            table_number=order_input.table_number,
            notes=order_input.notes,
            subtotal_cents=subtotal,
            discount_cents=order_input.discount_cents,
            tax_cents=order_input.tax_cents,
            tax_type=order_input.tax_type,
            service_charge_cents=order_input.service_charge_cents,
            delivery_fee_cents=order_input.delivery_fee_cents,
            total_cents=total,
            created_by_user_id=actor_id,
        )
        order.items = items
        db.session.add(order)
        db.session.flush()

        payment = Payment(
            order_id=order.id,
            payment_method=order_input.payment_method,
            amount_cents=total,
            status=PAYMENT_PENDING,
            transaction_type=TXN_PAYMENT,
            created_by_user_id=actor_id,
        )
        db.session.add(payment)

        mutations = []
        if order_input.is_cash:
            now = utcnow()
            mutations = inventory_service.deduct_for_order(
                order, reason=f"Order {order_number}", user_id=actor_id
            )
            apply_transition(order, ORDER_PAID, now=now)
            order.payment_status = PAYMENT_COMPLETED
            order.paid_amount_cents = total
            payment.status = PAYMENT_COMPLETED
            payment.reference_number = f"CASH-{order_number}"
            payment.paid_at = now
        else:
            apply_transition(order, ORDER_PENDING_PAYMENT)
            order.gateway_reference = order_number
            payment.gateway_name = self.gateway.name
            payment.reference_number = order_number

        db.session.commit()
        return order, mutations

    def _issue_token(self, order: Order):
        try:
            token = self.gateway.create_token(
                amount_cents=order.total_cents,
                correlation_id=order.order_number,
                items=gateway_line_items(order),
                customer=customer_details(order),
                callbacks=payment_callbacks(order, self.config.get("APP_URL", "")),
                expiry_minutes=self.config.get("PAYMENT_TOKEN_EXPIRY_MINUTES", 15),
            )
        except GatewayError as exc:
            current_app.logger.error("Payment token request failed for %s: %s", order.order_number, exc)
            self.compensate_failed_checkout(order.id, TOKEN_FAILURE_REASON)
            raise UpstreamError(
                TOKEN_FAILURE_REASON,
                {"order_id": order.id, "order_number": order.order_number},
            ) from exc

        def _op():
            locked = lock_for_update(db.session.query(Order).filter_by(id=order.id)).first()
            locked.payment_token = token.token
            locked.payment_redirect_url = token.redirect_url
            locked.payment_token_expires_at = token.expires_at
            db.session.commit()

        try:
            run_with_retry(_op)
        except Exception:
            db.session.rollback()
            raise
        return token

    def compensate_failed_checkout(self, order_id: int, reason: str) -> bool:
        """
        Undo a gateway checkout whose token was never issued: cancel,
        mark payment FAILED and soft-delete. Returns False if the
        compensation itself failed (logged; the pending-order sweep retries).
        """
        def _op() -> bool:
            begin_write_lock()
            order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
            if order is None or order.status != ORDER_PENDING_PAYMENT or order.payment_token:
                db.session.rollback()
                return False
            now = utcnow()
            apply_transition(order, ORDER_CANCELLED, now=now)
            order.payment_status = PAYMENT_FAILED
            order.cancellation_reason = reason
            order.deleted_at = now
            for payment in order.payments:
                if payment.status == PAYMENT_PENDING:
                    payment.status = PAYMENT_FAILED
                    payment.failed_at = now
                    payment.notes = reason
            db.session.commit()
            return True

        try:
            return run_with_retry(_op)
        except Exception:
            db.session.rollback()
            current_app.logger.exception("Compensation failed for order %s", order_id)
            return False

    # =========================================================================
    # READ
    # =========================================================================

    def get_order(self, order_id: int, *, include_deleted: bool = False) -> Order:
        order = db.session.get(Order, order_id)
        if order is None or (order.deleted_at is not None and not include_deleted):
            raise NotFoundError(f"Order {order_id} not found")
        return order

    def list_orders(
        self,
        *,
        status: str | None = None,
        order_type: str | None = None,
        order_source: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Order], int]:
        query = db.session.query(Order).filter(Order.deleted_at.is_(None))
        if status:
            query = query.filter(Order.status == status)
        if order_type:
            query = query.filter(Order.order_type == order_type)
        if order_source:
            query = query.filter(Order.order_source == order_source)
        total = query.count()
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        orders = (
            query.order_by(Order.created_at.desc(), Order.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return orders, total

    # =========================================================================
    # STATUS ADVANCE
    # =========================================================================

    def update_status(
        self,
        order_id: int,
        new_status: str,
        *,
        actor_id: str | None = None,
        restock: bool = False,
        reason: str | None = None,
    ) -> Order:
        """
        Operator-driven moves: PAID -> PREPARING -> READY -> COMPLETED, and
        refunds of paid orders. Payment outcomes come from the webhook and
        cancellations from CancellationService, not from here.
        """
        new_status = (new_status or "").upper()
        if new_status not in ORDER_STATUSES:
            raise ValidationError(f"Invalid status: {new_status}")
        if new_status not in MANUAL_STATUS_TARGETS:
            raise ConflictError(f"Orders cannot be moved to {new_status} directly")

        def _op():
            begin_write_lock()
            order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
            if order is None or order.deleted_at is not None:
                raise NotFoundError(f"Order {order_id} not found")

            mutations = []
            changed = apply_transition(order, new_status)
            if changed and new_status == ORDER_REFUNDED:
                now = utcnow()
                order.payment_status = PAYMENT_REFUNDED
                db.session.add(Payment(
                    order_id=order.id,
                    payment_method=order.payment_method or METHOD_CASH,
                    amount_cents=order.paid_amount_cents,
                    status=PAYMENT_REFUNDED,
                    transaction_type=TXN_REFUND,
                    reference_number=f"REFUND-{order.order_number}",
                    refunded_at=now,
                    notes=reason,
                    created_by_user_id=actor_id,
                ))
                if restock:
                    mutations = inventory_service.restore_for_order(
                        order, reason=f"Refund {order.order_number}", user_id=actor_id
                    )
            db.session.commit()
            return order, changed, mutations

        try:
            order, changed, mutations = run_with_retry(_op)
        except Exception:
            db.session.rollback()
            raise

        if changed:
            publish_safely(self.events, ORDER_UPDATED, order_payload(order), current_app.logger)
        publish_stock_alerts(self.events, mutations, current_app.logger)
        return order
