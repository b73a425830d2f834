from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z, utcnow


class Payment(db.Model):
    """
    One row per payment attempt (or refund) against an order.

    IDEMPOTENCY: gateway_transaction_id is UNIQUE once set. A webhook whose
    transaction id already has a row is a repeat delivery; the constraint
    turns a concurrent duplicate insert into an IntegrityError.

    reference_number is the correlation id the attempt was issued under
    (order_number, or order_number-R<n> for retries). It is indexed but not
    unique: refund rows reuse the original attempt's reference.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.CheckConstraint("amount_cents >= 0", name="ck_payments_amount_nonneg"),
        db.Index("ix_payments_order_status", "order_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    payment_method = db.Column(db.String(32), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(32), nullable=False, default="PENDING", index=True)
    transaction_type = db.Column(db.String(16), nullable=False, default="PAYMENT")

    gateway_name = db.Column(db.String(32), nullable=True)
    gateway_transaction_id = db.Column(db.String(128), nullable=True, unique=True)
    gateway_status = db.Column(db.String(32), nullable=True)
    fraud_status = db.Column(db.String(32), nullable=True)
    # Verified status snapshot and the raw notification that triggered it
    gateway_response = db.Column(db.JSON, nullable=True)
    gateway_callback_data = db.Column(db.JSON, nullable=True)

    reference_number = db.Column(db.String(128), nullable=True, index=True)
    notes = db.Column(db.Text, nullable=True)

    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expired_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by_user_id = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "payment_method": self.payment_method,
            "amount_cents": self.amount_cents,
            "status": self.status,
            "transaction_type": self.transaction_type,
            "gateway_name": self.gateway_name,
            "gateway_transaction_id": self.gateway_transaction_id,
            "gateway_status": self.gateway_status,
            "fraud_status": self.fraud_status,
            "reference_number": self.reference_number,
            "notes": self.notes,
            "paid_at": to_utc_z(self.paid_at),
            "failed_at": to_utc_z(self.failed_at),
            "expired_at": to_utc_z(self.expired_at),
            "refunded_at": to_utc_z(self.refunded_at),
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
