from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z, utcnow


class InventoryLog(db.Model):
    """
    Append-only stock ledger entry.

    `quantity` is the APPLIED signed delta (current_stock - previous_stock),
    not the requested one, so a deduction clamped at zero still sums
    correctly. requested_quantity keeps what the caller asked for.
    Rows are never updated or deleted; corrections are new entries.
    """
    __tablename__ = "inventory_logs"
    __table_args__ = (
        db.Index("ix_inventory_logs_product_created", "product_id", "created_at"),
        db.Index("ix_inventory_logs_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    # IN, OUT, ADJUSTMENT, DAMAGE, RETURN, TRANSFER, STOCK_TAKE
    movement_type = db.Column(db.String(16), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    requested_quantity = db.Column(db.Integer, nullable=False)
    previous_stock = db.Column(db.Integer, nullable=False)
    current_stock = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(255), nullable=True)
    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.String(64), nullable=True)
    user_id = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    product = db.relationship("Product", backref=db.backref("inventory_logs", lazy="dynamic"))

    @property
    def clamped(self) -> bool:
        return self.quantity != self.requested_quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "movement_type": self.movement_type,
            "quantity": self.quantity,
            "requested_quantity": self.requested_quantity,
            "previous_stock": self.previous_stock,
            "current_stock": self.current_stock,
            "clamped": self.clamped,
            "reason": self.reason,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "user_id": self.user_id,
            "created_at": to_utc_z(self.created_at),
        }
