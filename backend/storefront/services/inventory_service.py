# Overview: Service-layer operations for inventory; encapsulates the stock ledger and availability checks.

# backend/storefront/services/inventory_service.py
"""
Storefront Inventory Invariants (authoritative)

Stock model:
- Product.quantity is a cache; the ledger (InventoryLog) is the source of truth.
- Every stock change writes the product row AND appends one InventoryLog in
  the same DB transaction. Logs are append-only.
- InventoryLog.quantity is the APPLIED signed delta. For every tracked
  product: first_log.previous_stock + SUM(quantity) == Product.quantity.

Deductions:
- Order deductions never fail a confirmed payment. When stock is short they
  clamp at zero (or go negative when the caller allows it) and log an
  oversell warning. The clamp is visible in the ledger as
  quantity != requested_quantity.
- Manual adjustments are stricter: they may not drive stock below zero.
- Products with track_inventory=False are never written or logged.

Availability checks are plain reads; they do not reserve stock.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass

from flask import current_app
from sqlalchemy import func

from ..constants import (
    MOVE_OUT,
    MOVE_RETURN,
    MOVEMENT_TYPES,
    REFERENCE_MANUAL,
    REFERENCE_ORDER,
)
from ..errors import ConflictError, NotFoundError, ValidationError
from ..extensions import db
from ..models import InventoryLog, Product
from ..time_utils import utcnow
from .concurrency import begin_write_lock, lock_for_update, run_with_retry
from .events import EventSink, publish_stock_alerts


@dataclass(frozen=True)
class StockMutation:
    product_id: int
    product_name: str
    tracked: bool
    previous_stock: int
    new_stock: int
    requested_delta: int
    applied_delta: int
    low_stock_threshold: int | None = None
    log_id: int | None = None

    @property
    def clamped(self) -> bool:
        return self.applied_delta != self.requested_delta

    @property
    def became_out_of_stock(self) -> bool:
        return self.tracked and self.previous_stock > 0 and self.new_stock <= 0

    @property
    def became_low_stock(self) -> bool:
        threshold = self.low_stock_threshold
        if not self.tracked or threshold is None or self.new_stock <= 0:
            return False
        return self.previous_stock > threshold >= self.new_stock

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "tracked": self.tracked,
            "previous_stock": self.previous_stock,
            "new_stock": self.new_stock,
            "requested_delta": self.requested_delta,
            "applied_delta": self.applied_delta,
            "clamped": self.clamped,
            "log_id": self.log_id,
        }


# =============================================================================
# LEDGER WRITES
# =============================================================================

def mutate_stock(
    product_id: int,
    quantity_delta: int,
    *,
    movement_type: str,
    reason: str | None = None,
    reference_type: str | None = None,
    reference_id: str | None = None,
    user_id: str | None = None,
    allow_negative: bool = False,
) -> StockMutation:
    """
    Apply a signed stock change inside the caller's transaction.

    Locks the product row, computes the new stock (deductions clamp at zero
    unless allow_negative), writes the product and appends one ledger
    entry. Flushes but does not commit.
    """
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"Invalid movement type: {movement_type}")

    product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
    if not product:
        raise NotFoundError(f"Product {product_id} not found")

    previous = product.quantity or 0
    if not product.track_inventory:
        return StockMutation(
            product_id=product.id,
            product_name=product.name,
            tracked=False,
            previous_stock=previous,
            new_stock=previous,
            requested_delta=quantity_delta,
            applied_delta=0,
            low_stock_threshold=product.low_stock_threshold,
        )

    new_stock = previous + quantity_delta
    if quantity_delta < 0 and not allow_negative:
        # never push below zero, and never "repair" an already-negative level
        new_stock = max(new_stock, min(previous, 0))
    applied = new_stock - previous

    product.quantity = new_stock
    log = InventoryLog(
        product_id=product.id,
        movement_type=movement_type,
        quantity=applied,
        requested_quantity=quantity_delta,
        previous_stock=previous,
        current_stock=new_stock,
        reason=reason,
        reference_type=reference_type,
        reference_id=str(reference_id) if reference_id is not None else None,
        user_id=user_id,
        created_at=utcnow(),
    )
    db.session.add(log)
    db.session.flush()

    return StockMutation(
        product_id=product.id,
        product_name=product.name,
        tracked=True,
        previous_stock=previous,
        new_stock=new_stock,
        requested_delta=quantity_delta,
        applied_delta=applied,
        low_stock_threshold=product.low_stock_threshold,
        log_id=log.id,
    )


def _quantities_by_product(items) -> "OrderedDict[int, int]":
    totals: OrderedDict[int, int] = OrderedDict()
    # sorted so concurrent writers lock products in the same order
    for product_id, quantity in sorted((i.product_id, i.quantity) for i in items):
        totals[product_id] = totals.get(product_id, 0) + quantity
    return totals


def deduct_for_order(
    order,
    *,
    reason: str,
    user_id: str | None = None,
    allow_negative: bool = False,
) -> list[StockMutation]:
    """
    Deduct stock for every tracked item on an order, once.

    Runs inside the caller's transaction. Returns [] if the order has
    already been deducted. Short stock is clamped (see module notes) and
    logged as an oversell.
    """
    if order.inventory_deducted_at is not None:
        return []

    mutations = []
    for product_id, quantity in _quantities_by_product(order.items).items():
        mutation = mutate_stock(
            product_id,
            -quantity,
            movement_type=MOVE_OUT,
            reason=reason,
            reference_type=REFERENCE_ORDER,
            reference_id=order.id,
            user_id=user_id,
            allow_negative=allow_negative,
        )
        if mutation.tracked and mutation.previous_stock < quantity:
            current_app.logger.warning(
                "Oversell on order %s: product %s requested %s, had %s, now %s",
                order.order_number,
                product_id,
                quantity,
                mutation.previous_stock,
                mutation.new_stock,
            )
        mutations.append(mutation)

    order.inventory_deducted_at = utcnow()
    return mutations


def restore_for_order(order, *, reason: str, user_id: str | None = None) -> list[StockMutation]:
    """
    Put back exactly what an order's deduction removed (RETURN entries).

    Uses the applied deltas from the ledger, so clamped deductions restore
    only what actually left the shelf. Runs once per order.
    """
    if order.inventory_deducted_at is None:
        return []

    reference_id = str(order.id)
    already_restored = (
        db.session.query(InventoryLog.id)
        .filter_by(reference_type=REFERENCE_ORDER, reference_id=reference_id, movement_type=MOVE_RETURN)
        .first()
    )
    if already_restored:
        return []

    rows = (
        db.session.query(InventoryLog.product_id, func.sum(InventoryLog.quantity))
        .filter_by(reference_type=REFERENCE_ORDER, reference_id=reference_id, movement_type=MOVE_OUT)
        .group_by(InventoryLog.product_id)
        .order_by(InventoryLog.product_id)
        .all()
    )
    mutations = []
    for product_id, applied_total in rows:
        if not applied_total:
            continue
        mutations.append(
            mutate_stock(
                product_id,
                -applied_total,
                movement_type=MOVE_RETURN,
                reason=reason,
                reference_type=REFERENCE_ORDER,
                reference_id=reference_id,
                user_id=user_id,
            )
        )
    return mutations


def adjust_stock(
    *,
    product_id: int,
    movement_type: str,
    quantity_delta: int | None = None,
    counted_quantity: int | None = None,
    reason: str | None = None,
    user_id: str | None = None,
    events: EventSink | None = None,
) -> StockMutation:
    """
    Manual stock movement (receiving, damage, stock take...), committed.

    Pass quantity_delta for relative movements or counted_quantity for a
    stock take. Manual movements may not drive stock below zero.
    """
    if (quantity_delta is None) == (counted_quantity is None):
        raise ValidationError("Provide exactly one of quantity_delta or counted_quantity")
    if counted_quantity is not None and counted_quantity < 0:
        raise ValidationError("counted_quantity must be >= 0")
    if quantity_delta is not None and quantity_delta == 0:
        raise ValidationError("quantity_delta must be non-zero")

    def _op() -> StockMutation:
        begin_write_lock()
        product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
        if not product:
            raise NotFoundError(f"Product {product_id} not found")
        if not product.track_inventory:
            raise ConflictError(f"Product {product_id} does not track inventory")

        delta = quantity_delta if quantity_delta is not None else counted_quantity - product.quantity
        if product.quantity + delta < 0:
            raise ConflictError(
                "Adjustment would make stock negative",
                {"product_id": product_id, "current_stock": product.quantity, "quantity_delta": delta},
            )

        mutation = mutate_stock(
            product_id,
            delta,
            movement_type=movement_type,
            reason=reason,
            reference_type=REFERENCE_MANUAL,
            user_id=user_id,
        )
        db.session.commit()
        return mutation

    try:
        mutation = run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise

    if events is not None:
        publish_stock_alerts(events, [mutation], current_app.logger)
    return mutation


# =============================================================================
# READS
# =============================================================================

def _availability(product: Product, requested: int) -> dict:
    if not product.is_sellable:
        return {
            "product_id": product.id,
            "product_name": product.name,
            "available": False,
            "tracked": product.track_inventory,
            "current_stock": product.quantity if product.track_inventory else None,
            "requested": requested,
            "shortage": requested,
            "reason": "Product is not available",
        }
    if not product.track_inventory:
        return {
            "product_id": product.id,
            "product_name": product.name,
            "available": True,
            "tracked": False,
            "current_stock": None,
            "requested": requested,
            "shortage": 0,
        }
    shortage = max(requested - product.quantity, 0)
    return {
        "product_id": product.id,
        "product_name": product.name,
        "available": shortage == 0,
        "tracked": True,
        "current_stock": product.quantity,
        "requested": requested,
        "shortage": shortage,
    }


def check_availability(product_id: int, quantity: int) -> dict:
    """Point-in-time availability for one product. Not a reservation."""
    if quantity is None or quantity <= 0:
        raise ValidationError("quantity must be a positive integer")
    product = db.session.get(Product, product_id)
    if not product:
        raise NotFoundError(f"Product {product_id} not found")
    return _availability(product, quantity)


def check_bulk_availability(items: list[dict]) -> dict:
    """
    Availability for a basket: [{"product_id": 1, "quantity": 2}, ...].

    Quantities for the same product are summed before checking.
    """
    if not items:
        raise ValidationError("items must be a non-empty list")

    requested: OrderedDict[int, int] = OrderedDict()
    for item in items:
        product_id = item.get("product_id")
        quantity = item.get("quantity")
        if not isinstance(product_id, int) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("Each item needs an integer product_id and a positive quantity")
        requested[product_id] = requested.get(product_id, 0) + quantity

    products = {
        p.id: p for p in db.session.query(Product).filter(Product.id.in_(list(requested))).all()
    }
    missing = [pid for pid in requested if pid not in products]
    if missing:
        raise NotFoundError("Products not found", {"product_ids": missing})

    results = [_availability(products[pid], qty) for pid, qty in requested.items()]
    return {
        "all_available": all(r["available"] for r in results),
        "items": results,
    }


def list_inventory_logs(
    *,
    product_id: int | None = None,
    movement_type: str | None = None,
    reference_type: str | None = None,
    reference_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[InventoryLog]:
    query = db.session.query(InventoryLog)
    if product_id is not None:
        query = query.filter(InventoryLog.product_id == product_id)
    if movement_type:
        query = query.filter(InventoryLog.movement_type == movement_type)
    if reference_type:
        query = query.filter(InventoryLog.reference_type == reference_type)
    if reference_id is not None:
        query = query.filter(InventoryLog.reference_id == str(reference_id))
    return (
        query.order_by(InventoryLog.created_at.desc(), InventoryLog.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def get_low_stock_products() -> list[Product]:
    return (
        db.session.query(Product)
        .filter(
            Product.track_inventory.is_(True),
            Product.deleted_at.is_(None),
            Product.low_stock_threshold.isnot(None),
            Product.quantity <= Product.low_stock_threshold,
        )
        .order_by(Product.quantity.asc(), Product.id.asc())
        .all()
    )


def verify_ledger(product_id: int | None = None) -> list[dict]:
    """
    Re-derive stock from the ledger and compare with Product.quantity.

    A product is consistent when each entry starts where the previous one
    ended, each entry's delta matches its stock change, and the last entry
    ends at the cached quantity.
    """
    query = db.session.query(Product).filter(Product.track_inventory.is_(True))
    if product_id is not None:
        query = query.filter(Product.id == product_id)

    report = []
    for product in query.order_by(Product.id).all():
        logs = (
            db.session.query(InventoryLog)
            .filter_by(product_id=product.id)
            .order_by(InventoryLog.id.asc())
            .all()
        )
        breaks = []
        if logs:
            initial = logs[0].previous_stock
            expected = initial + sum(log.quantity for log in logs)
            for prev, log in zip([None] + logs[:-1], logs):
                if log.current_stock - log.previous_stock != log.quantity:
                    breaks.append({"log_id": log.id, "problem": "delta_mismatch"})
                if prev is not None and prev.current_stock != log.previous_stock:
                    breaks.append({"log_id": log.id, "problem": "chain_break"})
        else:
            initial = product.quantity
            expected = product.quantity

        report.append({
            "product_id": product.id,
            "sku": product.sku,
            "initial_stock": initial,
            "expected_stock": expected,
            "actual_stock": product.quantity,
            "entries": len(logs),
            "breaks": breaks,
            "consistent": expected == product.quantity and not breaks,
        })
    return report
