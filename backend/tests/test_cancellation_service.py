# Overview: Pytest coverage for cancelling unpaid orders at the gateway and locally.

import pytest

from storefront.errors import ConflictError, NotFoundError, UpstreamError
from storefront.extensions import db
from storefront.models import Order, Payment, Product
from storefront.services.payment_gateway import GatewayError, GatewayNotFoundError


@pytest.fixture
def pending_order(services, make_product, order_payload):
    latte = make_product(quantity=10)
    order = services.orders.create_order(order_payload((latte, 2))).order
    return order, latte


class TestCancel:
    """Gateway first, then local state."""

    def test_cancel_pending_order(self, services, pending_order, gateway, events):
        order, latte = pending_order
        events.clear()

        cancelled = services.cancellations.cancel(order.id, actor_id="customer")

        assert gateway.cancel_requests == [order.order_number]
        assert cancelled.status == "CANCELLED"
        assert cancelled.payment_status == "FAILED"
        assert cancelled.cancellation_reason == "Cancelled by user"
        assert cancelled.cancelled_at is not None
        payment = db.session.query(Payment).filter_by(order_id=order.id).one()
        assert payment.status == "FAILED"
        assert payment.failed_at is not None
        assert db.session.get(Product, latte.id).quantity == 10
        assert events.names() == ["order:updated"]

    def test_custom_reason(self, services, pending_order):
        order, _ = pending_order

        cancelled = services.cancellations.cancel(order.id, reason="Changed my mind")

        assert cancelled.cancellation_reason == "Changed my mind"

    def test_gateway_not_found_still_cancels(self, services, pending_order, gateway):
        order, _ = pending_order
        gateway.cancel_error = GatewayNotFoundError("Transaction doesn't exist.", status_code=404)

        cancelled = services.cancellations.cancel(order.id)

        assert cancelled.status == "CANCELLED"

    def test_gateway_failure_changes_nothing(self, services, pending_order, gateway):
        order, _ = pending_order
        gateway.cancel_error = GatewayError("Gateway timeout", status_code=504)

        with pytest.raises(UpstreamError):
            services.cancellations.cancel(order.id)

        refreshed = db.session.get(Order, order.id)
        assert refreshed.status == "PENDING_PAYMENT"
        assert refreshed.payment_status == "PENDING"

    def test_already_cancelled_is_idempotent(self, services, pending_order, gateway, events):
        order, _ = pending_order
        services.cancellations.cancel(order.id)
        events.clear()

        again = services.cancellations.cancel(order.id)

        assert again.status == "CANCELLED"
        assert len(gateway.cancel_requests) == 1
        assert events.names() == []

    def test_settlement_after_cancel_is_ignored(self, services, pending_order, notification):
        order, latte = pending_order
        services.cancellations.cancel(order.id)

        result = services.webhooks.handle_notification(notification(order, "settlement"))

        assert result.blocked is True
        assert result.order_status == "CANCELLED"
        assert db.session.get(Product, latte.id).quantity == 10


class TestCancelRejections:
    def test_paid_order(self, services, pending_order, notification, gateway):
        order, _ = pending_order
        services.webhooks.handle_notification(notification(order, "settlement"))

        with pytest.raises(ConflictError) as exc_info:
            services.cancellations.cancel(order.id)

        assert exc_info.value.message == "Cannot cancel a paid order"
        assert gateway.cancel_requests == []

    def test_cash_order_is_paid(self, services, make_product, order_payload):
        latte = make_product()
        order = services.orders.create_order(order_payload((latte, 1), payment_method="CASH")).order

        with pytest.raises(ConflictError):
            services.cancellations.cancel(order.id)

    def test_unknown_order(self, services):
        with pytest.raises(NotFoundError):
            services.cancellations.cancel(31337)
