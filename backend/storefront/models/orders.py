from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z, utcnow


class Order(db.Model):
    """
    Customer order.

    WHY: The order is the aggregate every payment attempt, gateway
    notification and inventory movement hangs off. Its order_number doubles
    as the correlation id sent to the payment gateway.

    LIFECYCLE: status only moves forward along services.order_state. Orders
    are never hard-deleted; failed gateway sagas are soft-deleted via
    deleted_at so the audit trail stays intact.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.CheckConstraint("subtotal_cents >= 0", name="ck_orders_subtotal_nonneg"),
        db.CheckConstraint("discount_cents >= 0", name="ck_orders_discount_nonneg"),
        db.CheckConstraint("tax_cents >= 0", name="ck_orders_tax_nonneg"),
        db.CheckConstraint("service_charge_cents >= 0", name="ck_orders_service_nonneg"),
        db.CheckConstraint("delivery_fee_cents >= 0", name="ck_orders_delivery_nonneg"),
        db.CheckConstraint("total_cents >= 0", name="ck_orders_total_nonneg"),
        db.CheckConstraint("payment_retry_count >= 0", name="ck_orders_retry_nonneg"),
        db.Index("ix_orders_status_payment", "status", "payment_status"),
        db.Index("ix_orders_created", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable number, e.g. "CUST-20260115-00042"
    order_number = db.Column(db.String(64), nullable=False, unique=True)
    # Correlation id currently registered with the gateway ("...-R2" after retries)
    gateway_reference = db.Column(db.String(80), nullable=True, index=True)

    order_type = db.Column(db.String(16), nullable=False, default="TAKEAWAY")
    order_source = db.Column(db.String(16), nullable=False, default="CUSTOMER")
    status = db.Column(db.String(32), nullable=False, default="DRAFT", index=True)
    payment_method = db.Column(db.String(32), nullable=True)
    payment_status = db.Column(db.String(32), nullable=False, default="PENDING", index=True)

    customer_name = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(64), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)
    customer_address = db.Column(db.Text, nullable=True)
    table_number = db.Column(db.String(32), nullable=True)

    # Money (all amounts in cents)
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_type = db.Column(db.String(16), nullable=False, default="INCLUSIVE")
    service_charge_cents = db.Column(db.Integer, nullable=False, default=0)
    delivery_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)
    paid_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    notes = db.Column(db.Text, nullable=True)
    cancellation_reason = db.Column(db.String(255), nullable=True)

    # Gateway session
    payment_token = db.Column(db.String(255), nullable=True)
    payment_redirect_url = db.Column(db.String(512), nullable=True)
    payment_token_expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    payment_retry_count = db.Column(db.Integer, nullable=False, default=0)

    # Set exactly once, when stock for this order leaves the shelf
    inventory_deducted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    preparing_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ready_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by_user_id = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )
    payments = db.relationship("Payment", backref="order", lazy=True, order_by="Payment.id")

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_cash(self) -> bool:
        return self.payment_method == "CASH"

    def to_dict(self, *, include_items: bool = True, include_payments: bool = False) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "gateway_reference": self.gateway_reference,
            "order_type": self.order_type,
            "order_source": self.order_source,
            "status": self.status,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "customer_email": self.customer_email,
            "customer_address": self.customer_address,
            "table_number": self.table_number,
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "tax_type": self.tax_type,
            "service_charge_cents": self.service_charge_cents,
            "delivery_fee_cents": self.delivery_fee_cents,
            "total_cents": self.total_cents,
            "paid_amount_cents": self.paid_amount_cents,
            "notes": self.notes,
            "cancellation_reason": self.cancellation_reason,
            "payment_redirect_url": self.payment_redirect_url,
            "payment_token_expires_at": to_utc_z(self.payment_token_expires_at),
            "payment_retry_count": self.payment_retry_count,
            "inventory_deducted_at": to_utc_z(self.inventory_deducted_at),
            "paid_at": to_utc_z(self.paid_at),
            "preparing_at": to_utc_z(self.preparing_at),
            "ready_at": to_utc_z(self.ready_at),
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "refunded_at": to_utc_z(self.refunded_at),
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "deleted_at": to_utc_z(self.deleted_at),
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        if include_payments:
            data["payments"] = [payment.to_dict() for payment in self.payments]
        return data


class OrderItem(db.Model):
    """Line item; product name, SKU and price are snapshotted at order time."""
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_quantity_pos"),
        db.CheckConstraint("unit_price_cents >= 0", name="ck_order_items_price_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    product_name = db.Column(db.String(255), nullable=False)
    product_sku = db.Column(db.String(64), nullable=True)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    subtotal_cents = db.Column(db.Integer, nullable=False)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "product_sku": self.product_sku,
            "unit_price_cents": self.unit_price_cents,
            "quantity": self.quantity,
            "discount_cents": self.discount_cents,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "notes": self.notes,
        }


class OrderSequence(db.Model):
    """
    Atomic per-day order number sequences.

    WHY: Prevent two concurrent checkouts from being handed the same
    human-readable order number.
    """
    __tablename__ = "order_sequences"
    __table_args__ = (
        db.UniqueConstraint("prefix", "business_date", name="uq_order_sequences_prefix_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    prefix = db.Column(db.String(16), nullable=False)
    business_date = db.Column(db.String(8), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
