# Overview: Flask API routes for orders; parses input and returns JSON responses.

# backend/storefront/routes/orders.py
"""
Order API Routes

WHY: Checkout entry point for every channel (customer app, cashier,
online, phone) plus the follow-up actions on an unpaid order.

DESIGN:
- Cash orders come back PAID with stock already deducted
- Gateway orders come back PENDING_PAYMENT with a payment token; stock is
  deducted when the payment notification confirms the payment
- Cancel and retry-payment only apply to unpaid orders
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..constants import ORDER_STATUSES
from ..decorators import with_actor
from ..errors import StorefrontError, ValidationError
from ..registry import get_services
from ..validation import optional_str, require_int


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


# =============================================================================
# ORDER CREATION
# =============================================================================

@orders_bp.post("")
@with_actor
def create_order_route():
    """
    Create an order.

    Request body:
    {
        "order_type": "TAKEAWAY",          (DINE_IN | TAKEAWAY | DELIVERY)
        "order_source": "CUSTOMER",        (CUSTOMER | CASHIER | ONLINE | PHONE)
        "payment_method": "QRIS",
        "items": [{"product_id": 1, "quantity": 2, "unit_price_cents": 1500}],
        "customer_name": "...", "customer_phone": "...", "customer_email": "...",
        "subtotal_cents": 3000, "discount_cents": 0, "tax_cents": 0,
        "tax_type": "INCLUSIVE", "service_charge_cents": 0,
        "delivery_fee_cents": 0, "total_cents": 3000
    }

    Returns:
        201: {order, payment_token, payment_redirect_url, requires_payment}
        400: Invalid input
        404: Unknown product
        409: Unavailable product, changed price or insufficient stock
        502: Payment gateway failed to issue a token (order cancelled)
    """
    try:
        data = request.get_json(silent=True)
        result = get_services().orders.create_order(data, actor_id=g.actor_id)
        return jsonify(result.to_dict()), 201

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# ORDER QUERIES
# =============================================================================

@orders_bp.get("")
def list_orders_route():
    """
    List orders, newest first.

    Query params: status, order_type, order_source, page (default 1),
    limit (default 20, max 100)
    """
    try:
        status = request.args.get("status")
        if status and status.upper() not in ORDER_STATUSES:
            raise ValidationError(f"Invalid status: {status}")
        page = require_int(request.args.get("page", 1), "page", minimum=1)
        limit = require_int(request.args.get("limit", 20), "limit", minimum=1, maximum=100)

        orders, total = get_services().orders.list_orders(
            status=status.upper() if status else None,
            order_type=request.args.get("order_type"),
            order_source=request.args.get("order_source"),
            page=page,
            limit=limit,
        )
        return jsonify({
            "orders": [o.to_dict(include_items=False) for o in orders],
            "pagination": {"page": page, "limit": limit, "total": total},
        }), 200

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    try:
        order = get_services().orders.get_order(order_id)
        return jsonify({"order": order.to_dict(include_payments=True)}), 200

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get order")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# ORDER ACTIONS
# =============================================================================

@orders_bp.patch("/<int:order_id>/status")
@with_actor
def update_order_status_route(order_id: int):
    """
    Advance a paid order (PREPARING, READY, COMPLETED) or refund it.

    Request body:
    {
        "status": "PREPARING",
        "restock": false,     (REFUNDED only: return items to stock)
        "reason": "..."       (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        if not data.get("status"):
            raise ValidationError("status is required")
        order = get_services().orders.update_status(
            order_id,
            data["status"],
            actor_id=g.actor_id,
            restock=bool(data.get("restock", False)),
            reason=optional_str(data, "reason", 255),
        )
        return jsonify({"order": order.to_dict()}), 200

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
@with_actor
def cancel_order_route(order_id: int):
    """
    Cancel an unpaid order.

    Returns:
        200: Cancelled (or already cancelled)
        404: Unknown order
        409: Order already paid
        502: Gateway refused to cancel the transaction (nothing changed)
    """
    try:
        data = request.get_json(silent=True) or {}
        order = get_services().cancellations.cancel(
            order_id,
            reason=optional_str(data, "reason", 255),
            actor_id=g.actor_id,
        )
        return jsonify({"order": order.to_dict()}), 200

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/retry-payment")
@with_actor
def retry_payment_route(order_id: int):
    """
    Issue a new payment token for an unpaid gateway order.

    Returns:
        200: {token, redirect_url, retry_attempt, retries_remaining, ...}
        409: Paid, cash, not retryable, or retry limit reached ("terminal": true)
        502: Gateway refused the token (order unchanged)
    """
    try:
        result = get_services().retries.retry(order_id, actor_id=g.actor_id)
        return jsonify(result.to_dict()), 200

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to retry payment")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>/retry-payment")
def retry_payment_info_route(order_id: int):
    try:
        return jsonify(get_services().retries.retry_info(order_id)), 200

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get retry info")
        return jsonify({"error": "Internal server error"}), 500
