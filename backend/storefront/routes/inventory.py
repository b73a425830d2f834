# backend/storefront/routes/inventory.py
"""
Inventory routes.

Availability checks are point-in-time reads; they do not reserve stock.
Manual adjustments are written to the same ledger as order deductions.
"""
from flask import Blueprint, request, jsonify, g, current_app

from ..constants import (
    MOVE_ADJUSTMENT,
    MOVE_DAMAGE,
    MOVE_IN,
    MOVE_STOCK_TAKE,
    MOVE_TRANSFER,
    MOVEMENT_TYPES,
)
from ..decorators import with_actor
from ..errors import StorefrontError, ValidationError
from ..registry import get_services
from ..services import inventory_service
from ..validation import optional_str, require_int


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")

# OUT and RETURN entries are written by orders and refunds only
MANUAL_MOVEMENT_TYPES = (MOVE_IN, MOVE_ADJUSTMENT, MOVE_DAMAGE, MOVE_TRANSFER, MOVE_STOCK_TAKE)


@inventory_bp.get("/products/<int:product_id>/availability")
def product_availability_route(product_id: int):
    try:
        quantity = require_int(request.args.get("quantity", 1), "quantity", minimum=1)
        return jsonify(inventory_service.check_availability(product_id, quantity)), 200
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to check availability")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/availability")
def bulk_availability_route():
    """
    Check a whole basket.

    Request body: {"items": [{"product_id": 1, "quantity": 2}, ...]}
    """
    try:
        data = request.get_json(silent=True) or {}
        items = data.get("items")
        if not isinstance(items, list):
            raise ValidationError("items must be a list")
        return jsonify(inventory_service.check_bulk_availability(items)), 200
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to check availability")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/logs")
def inventory_logs_route():
    """
    Ledger entries, newest first.

    Query params: product_id, movement_type, reference_type, reference_id,
    limit (default 50, max 200), offset
    """
    try:
        product_id = request.args.get("product_id")
        movement_type = request.args.get("movement_type")
        if movement_type and movement_type not in MOVEMENT_TYPES:
            raise ValidationError(f"Invalid movement_type: {movement_type}")
        logs = inventory_service.list_inventory_logs(
            product_id=require_int(product_id, "product_id", minimum=1) if product_id else None,
            movement_type=movement_type,
            reference_type=request.args.get("reference_type"),
            reference_id=request.args.get("reference_id"),
            limit=require_int(request.args.get("limit", 50), "limit", minimum=1, maximum=200),
            offset=require_int(request.args.get("offset", 0), "offset", minimum=0),
        )
        return jsonify({"logs": [log.to_dict() for log in logs]}), 200
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list inventory logs")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/adjust")
@with_actor
def adjust_inventory_route():
    """
    Manual stock movement.

    Request body:
    {
        "product_id": 1,
        "movement_type": "IN",        (IN | ADJUSTMENT | DAMAGE | TRANSFER | STOCK_TAKE)
        "quantity_delta": 10,         (signed; all types except STOCK_TAKE)
        "counted_quantity": 42,       (STOCK_TAKE only)
        "reason": "Delivery #123"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        movement_type = data.get("movement_type")
        if movement_type not in MANUAL_MOVEMENT_TYPES:
            raise ValidationError(
                "movement_type must be one of: " + ", ".join(MANUAL_MOVEMENT_TYPES)
            )
        product_id = require_int(data.get("product_id"), "product_id", minimum=1)

        if movement_type == MOVE_STOCK_TAKE:
            kwargs = {"counted_quantity": require_int(data.get("counted_quantity"), "counted_quantity", minimum=0)}
        else:
            delta = require_int(data.get("quantity_delta"), "quantity_delta")
            if movement_type == MOVE_IN and delta <= 0:
                raise ValidationError("quantity_delta must be positive for IN")
            if movement_type == MOVE_DAMAGE and delta >= 0:
                raise ValidationError("quantity_delta must be negative for DAMAGE")
            kwargs = {"quantity_delta": delta}

        mutation = inventory_service.adjust_stock(
            product_id=product_id,
            movement_type=movement_type,
            reason=optional_str(data, "reason", 255),
            user_id=g.actor_id,
            events=get_services().events,
            **kwargs,
        )
        return jsonify({"mutation": mutation.to_dict()}), 201
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to adjust inventory")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/low-stock")
def low_stock_route():
    try:
        products = inventory_service.get_low_stock_products()
        return jsonify({"products": [p.to_dict() for p in products]}), 200
    except Exception:
        current_app.logger.exception("Failed to list low-stock products")
        return jsonify({"error": "Internal server error"}), 500
