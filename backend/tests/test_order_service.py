# Overview: Pytest coverage for order creation, order numbers and status advancement.

"""
Order Service Tests

Covers:
1. Cash checkout: stock deducted and order PAID in one transaction
2. Gateway checkout: PENDING_PAYMENT with a token, stock untouched
3. Rejections: unknown product, stale price, short stock, bad totals
4. Token failure compensation (cancel + soft delete)
5. Order numbers per source and business date
6. Operator status moves and refunds
"""

import re

import pytest

from storefront.errors import ConflictError, NotFoundError, UpstreamError, ValidationError
from storefront.extensions import db
from storefront.models import InventoryLog, Order, Payment, Product
from storefront.services.order_numbers import allocate_order_number
from storefront.services.order_service import gateway_line_items
from storefront.services.payment_gateway import GatewayError
from storefront.time_utils import business_date

FALLBACK_NUMBER = re.compile(r"^(CUST|POS)-\d{13}-[A-Z0-9]{5}$")


class TestCashCheckout:
    """Cash orders are paid on the spot."""

    def test_cash_order_is_paid_and_deducts_stock(self, services, make_product, order_payload, gateway, events):
        latte = make_product(quantity=10)

        result = services.orders.create_order(
            order_payload((latte, 3), payment_method="CASH"), actor_id="cashier-7"
        )

        order = result.order
        assert order.status == "PAID"
        assert order.payment_status == "COMPLETED"
        assert order.paid_amount_cents == 3 * 25000
        assert order.inventory_deducted_at is not None
        assert order.paid_at is not None
        assert result.requires_payment is False
        assert gateway.token_requests == []

        assert db.session.get(Product, latte.id).quantity == 7
        logs = db.session.query(InventoryLog).filter_by(product_id=latte.id).all()
        assert len(logs) == 1
        assert logs[0].movement_type == "OUT"
        assert logs[0].quantity == -3
        assert logs[0].reference_type == "ORDER"
        assert logs[0].reference_id == str(order.id)
        assert logs[0].user_id == "cashier-7"

        payment = db.session.query(Payment).filter_by(order_id=order.id).one()
        assert payment.status == "COMPLETED"
        assert payment.reference_number == f"CASH-{order.order_number}"
        assert "order:created" in events.names()

    def test_cash_order_merges_lines_for_same_product(self, services, make_product, order_payload):
        latte = make_product(quantity=10)

        services.orders.create_order(order_payload((latte, 2), (latte, 3), payment_method="CASH"))

        assert db.session.get(Product, latte.id).quantity == 5
        assert db.session.query(InventoryLog).filter_by(product_id=latte.id).count() == 1

    def test_untracked_product_never_touches_ledger(self, services, make_product, order_payload):
        bag = make_product(name="Paper Bag", price_cents=1000, quantity=0, track_inventory=False)

        result = services.orders.create_order(order_payload((bag, 4), payment_method="CASH"))

        assert result.order.status == "PAID"
        assert db.session.query(InventoryLog).count() == 0


class TestGatewayCheckout:
    """Non-cash orders wait for the payment notification."""

    def test_gateway_order_gets_token_and_keeps_stock(self, services, make_product, order_payload, gateway):
        latte = make_product(quantity=10)

        result = services.orders.create_order(order_payload((latte, 2)))

        order = result.order
        assert order.status == "PENDING_PAYMENT"
        assert order.payment_status == "PENDING"
        assert order.gateway_reference == order.order_number
        assert order.payment_token == "tok-1"
        assert order.payment_token_expires_at is not None
        assert order.inventory_deducted_at is None
        assert result.requires_payment is True
        assert result.payment_redirect_url.endswith(order.order_number)
        assert db.session.get(Product, latte.id).quantity == 10

        request = gateway.token_requests[0]
        assert request["correlation_id"] == order.order_number
        assert request["amount_cents"] == order.total_cents
        assert request["expiry_minutes"] == 15
        assert request["callbacks"]["finish"] == f"https://shop.example.test/order/{order.id}?payment=finish"

        payment = db.session.query(Payment).filter_by(order_id=order.id).one()
        assert payment.status == "PENDING"
        assert payment.reference_number == order.order_number
        assert payment.gateway_transaction_id is None

    def test_line_items_sum_to_total(self, services, make_product, order_payload):
        latte = make_product(price_cents=25000, quantity=10)
        body = order_payload(
            (latte, 2),
            subtotal_cents=50000,
            discount_cents=5000,
            tax_cents=4950,
            tax_type="EXCLUSIVE",
            service_charge_cents=2500,
            total_cents=52450,
        )

        order = services.orders.create_order(body).order
        lines = gateway_line_items(order)

        assert order.total_cents == 52450
        assert sum(line["price_cents"] * line["quantity"] for line in lines) == order.total_cents
        assert {line["id"] for line in lines} >= {"TAX", "SERVICE_CHARGE", "DISCOUNT"}

    def test_token_failure_cancels_and_soft_deletes(self, services, make_product, order_payload, gateway, events):
        latte = make_product(quantity=10)
        gateway.create_error = GatewayError("Snap unavailable", status_code=503)

        with pytest.raises(UpstreamError) as exc_info:
            services.orders.create_order(order_payload((latte, 1)))

        order_id = exc_info.value.details["order_id"]
        order = db.session.get(Order, order_id)
        assert order.status == "CANCELLED"
        assert order.payment_status == "FAILED"
        assert order.cancellation_reason == "Failed to create payment token"
        assert order.deleted_at is not None
        assert all(p.status == "FAILED" for p in order.payments)
        assert db.session.get(Product, latte.id).quantity == 10
        assert "order:created" not in events.names()

        with pytest.raises(NotFoundError):
            services.orders.get_order(order_id)
        assert services.orders.get_order(order_id, include_deleted=True).id == order_id


class TestCheckoutRejections:
    """Bad baskets never create orders."""

    def test_insufficient_stock(self, services, make_product, order_payload):
        latte = make_product(quantity=2)

        with pytest.raises(ConflictError) as exc_info:
            services.orders.create_order(order_payload((latte, 3), payment_method="CASH"))

        assert exc_info.value.message == "Insufficient stock"
        assert exc_info.value.details["items"][0]["shortage"] == 1
        assert db.session.query(Order).count() == 0
        assert db.session.get(Product, latte.id).quantity == 2

    def test_unknown_product(self, services, order_payload):
        body = order_payload()
        body["items"] = [{"product_id": 999999, "quantity": 1}]

        with pytest.raises(NotFoundError):
            services.orders.create_order(body)

    def test_stale_price(self, services, make_product, order_payload):
        latte = make_product(price_cents=25000)
        body = order_payload((latte, 1))
        body["items"][0]["unit_price_cents"] = 20000

        with pytest.raises(ConflictError) as exc_info:
            services.orders.create_order(body)

        assert exc_info.value.details["current_unit_price_cents"] == 25000

    def test_unavailable_product(self, services, make_product, order_payload):
        latte = make_product(is_available=False)

        with pytest.raises(ConflictError):
            services.orders.create_order(order_payload((latte, 1)))

    def test_total_must_match_components(self, services, make_product, order_payload):
        latte = make_product()

        with pytest.raises(ValidationError):
            services.orders.create_order(
                order_payload((latte, 1), subtotal_cents=25000, total_cents=30000)
            )

    def test_subtotal_must_match_items(self, services, make_product, order_payload):
        latte = make_product(price_cents=25000)

        with pytest.raises(ValidationError) as exc_info:
            services.orders.create_order(order_payload((latte, 2), subtotal_cents=40000))

        assert exc_info.value.details["expected_subtotal_cents"] == 50000
        assert db.session.query(Order).count() == 0

    def test_payment_method_required(self, services, make_product, order_payload):
        latte = make_product()
        body = order_payload((latte, 1))
        del body["payment_method"]

        with pytest.raises(ValidationError):
            services.orders.create_order(body)

    def test_delivery_needs_address(self, services, make_product, order_payload):
        latte = make_product()

        with pytest.raises(ValidationError):
            services.orders.create_order(order_payload((latte, 1), order_type="DELIVERY"))


class TestOrderNumbers:
    """PREFIX-YYYYMMDD-NNNNN, sequential per prefix and day."""

    def test_sequential_numbers_per_source(self, services, make_product, order_payload):
        latte = make_product(quantity=100)
        today = business_date()

        first = services.orders.create_order(order_payload((latte, 1), payment_method="CASH")).order
        second = services.orders.create_order(order_payload((latte, 1), payment_method="CASH")).order
        pos = services.orders.create_order(
            order_payload((latte, 1), payment_method="CASH", order_source="CASHIER")
        ).order

        assert first.order_number == f"CUST-{today}-00001"
        assert second.order_number == f"CUST-{today}-00002"
        assert pos.order_number == f"POS-{today}-00001"

    def test_existing_number_is_skipped(self, services, make_product, order_payload):
        latte = make_product(quantity=100)
        today = business_date()
        # a row the sequence table does not know about
        db.session.add(Order(
            order_number=f"CUST-{today}-00001",
            status="CANCELLED",
            payment_status="FAILED",
            total_cents=0,
        ))
        db.session.commit()

        order = services.orders.create_order(order_payload((latte, 1), payment_method="CASH")).order

        assert order.order_number == f"CUST-{today}-00002"

    def test_exhausted_sequence_falls_back(self, app, services, make_product, order_payload, monkeypatch):
        monkeypatch.setitem(app.config, "ORDER_NUMBER_MAX_ATTEMPTS", 2)
        latte = make_product(quantity=100)
        today = business_date()
        for n in (1, 2):
            db.session.add(Order(
                order_number=f"CUST-{today}-{n:05d}",
                status="CANCELLED",
                payment_status="FAILED",
                total_cents=0,
            ))
        db.session.commit()

        order = services.orders.create_order(order_payload((latte, 1), payment_method="CASH")).order

        assert FALLBACK_NUMBER.match(order.order_number)
        assert order.status == "PAID"

    def test_fallback_numbers_are_unique(self, services):
        numbers = {allocate_order_number("CASHIER", max_attempts=0) for _ in range(20)}

        assert len(numbers) == 20
        assert all(n.startswith("POS-") for n in numbers)
        assert all(FALLBACK_NUMBER.match(n) for n in numbers)


class TestStatusAdvance:
    """Operator-driven moves after payment."""

    def test_kitchen_flow(self, services, make_product, order_payload, events):
        latte = make_product()
        order = services.orders.create_order(order_payload((latte, 1), payment_method="CASH")).order

        for status in ("PREPARING", "READY", "COMPLETED"):
            order = services.orders.update_status(order.id, status, actor_id="barista")

        assert order.status == "COMPLETED"
        assert order.preparing_at and order.ready_at and order.completed_at
        assert events.names().count("order:updated") == 3

    def test_cannot_skip_or_go_back(self, services, make_product, order_payload):
        latte = make_product()
        order = services.orders.create_order(order_payload((latte, 1), payment_method="CASH")).order

        with pytest.raises(ConflictError):
            services.orders.update_status(order.id, "COMPLETED")

        services.orders.update_status(order.id, "PREPARING")
        with pytest.raises(ConflictError):
            services.orders.update_status(order.id, "PAID")

    def test_unpaid_order_cannot_be_prepared(self, services, make_product, order_payload):
        latte = make_product()
        order = services.orders.create_order(order_payload((latte, 1))).order

        with pytest.raises(ConflictError):
            services.orders.update_status(order.id, "PREPARING")

    def test_invalid_status(self, services, make_product, order_payload):
        latte = make_product()
        order = services.orders.create_order(order_payload((latte, 1), payment_method="CASH")).order

        with pytest.raises(ValidationError):
            services.orders.update_status(order.id, "SHIPPED")

    def test_refund_with_restock(self, services, make_product, order_payload):
        latte = make_product(quantity=10)
        order = services.orders.create_order(order_payload((latte, 3), payment_method="CASH")).order
        assert db.session.get(Product, latte.id).quantity == 7

        order = services.orders.update_status(
            order.id, "REFUNDED", actor_id="manager-1", restock=True, reason="Spilled"
        )

        assert order.status == "REFUNDED"
        assert order.payment_status == "REFUNDED"
        assert db.session.get(Product, latte.id).quantity == 10
        returns = db.session.query(InventoryLog).filter_by(movement_type="RETURN").all()
        assert [r.quantity for r in returns] == [3]
        refund = db.session.query(Payment).filter_by(order_id=order.id, transaction_type="REFUND").one()
        assert refund.amount_cents == order.paid_amount_cents
        assert refund.notes == "Spilled"

        # repeating the refund changes nothing
        services.orders.update_status(order.id, "REFUNDED", restock=True)
        assert db.session.get(Product, latte.id).quantity == 10
        assert db.session.query(Payment).filter_by(order_id=order.id, transaction_type="REFUND").count() == 1


class TestOrderQueries:
    def test_list_orders_filters_and_paginates(self, services, make_product, order_payload):
        latte = make_product(quantity=100)
        for _ in range(3):
            services.orders.create_order(order_payload((latte, 1), payment_method="CASH"))
        services.orders.create_order(order_payload((latte, 1)))

        paid, total_paid = services.orders.list_orders(status="PAID")
        page, total = services.orders.list_orders(page=2, limit=3)

        assert total_paid == 3
        assert all(o.status == "PAID" for o in paid)
        assert total == 4
        assert len(page) == 1
