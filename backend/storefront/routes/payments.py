# Overview: Flask API routes for payment gateway notifications.

# backend/storefront/routes/payments.py
"""
Payment Notification API Routes

WHY: The payment gateway reports every transaction change here. The
endpoint is unauthenticated; authenticity comes from the notification
signature, which the webhook reconciler checks.

RESPONSES (the gateway redelivers on anything but 2xx):
- 200: Applied, or recognised as a repeat delivery
- 400: Missing order_id / transaction_status
- 401: Bad signature
- 404: No order for the correlation id
- 500: Transient failure; safe to redeliver
"""

from flask import Blueprint, request, jsonify, current_app

from ..errors import StorefrontError
from ..registry import get_services
from ..time_utils import utcnow


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


@payments_bp.post("/notification")
def payment_notification_route():
    payload = request.get_json(silent=True)
    try:
        result = get_services().webhooks.handle_notification(payload)
        return jsonify(result.to_dict()), 200

    except StorefrontError as e:
        if e.status_code >= 500:
            current_app.logger.error("Notification failed, gateway will redeliver: %s", e.message)
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to process payment notification")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/notification")
def payment_notification_liveness_route():
    """Liveness probe used when registering the notification URL."""
    return jsonify({
        "status": "ok",
        "gateway": get_services().gateway.name,
        "server_time": utcnow().isoformat() + "Z",
    }), 200
