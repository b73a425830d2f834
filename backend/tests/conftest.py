"""
Pytest fixtures for storefront backend tests.

Provides the application on an in-memory database, a scripted payment
gateway, a recording event sink, and product / order / notification
factories.
"""

import pytest

from datetime import timedelta

from storefront import create_app
from storefront.extensions import db
from storefront.models import Product
from storefront.registry import get_services
from storefront.services.events import EventSink
from storefront.services.payment_gateway import (
    GatewayNotFoundError,
    GatewayTransactionStatus,
    PaymentGatewayAdapter,
    PaymentToken,
    compute_notification_signature,
)
from storefront.time_utils import utcnow


SERVER_KEY = "SB-Mid-server-test-key"


class FakeGateway(PaymentGatewayAdapter):
    """
    Scriptable stand-in for the payment gateway.

    - create_token hands out tok-1, tok-2, ... unless create_error is set
    - query_status answers from `statuses` (keyed by correlation id) and
      raises GatewayNotFoundError for anything unscripted
    - cancel_transaction succeeds unless cancel_error is set
    Every call is recorded.
    """

    name = "fake"

    def __init__(self):
        self.reset()

    def reset(self):
        self.token_requests = []
        self.query_requests = []
        self.cancel_requests = []
        self.statuses = {}
        self.create_error = None
        self.query_error = None
        self.cancel_error = None

    def set_status(self, correlation_id, transaction_status, **fields):
        payload = {
            "order_id": correlation_id,
            "transaction_status": transaction_status,
            "status_code": "200",
        }
        payload.update(fields)
        self.statuses[correlation_id] = GatewayTransactionStatus.from_payload(payload)

    def create_token(self, *, amount_cents, correlation_id, items, customer, callbacks=None, expiry_minutes=15):
        self.token_requests.append({
            "amount_cents": amount_cents,
            "correlation_id": correlation_id,
            "items": items,
            "customer": customer,
            "callbacks": callbacks,
            "expiry_minutes": expiry_minutes,
        })
        if self.create_error is not None:
            raise self.create_error
        n = len(self.token_requests)
        return PaymentToken(
            token=f"tok-{n}",
            redirect_url=f"https://pay.example.test/snap/{correlation_id}",
            expires_at=utcnow() + timedelta(minutes=expiry_minutes),
            correlation_id=correlation_id,
        )

    def query_status(self, correlation_id):
        self.query_requests.append(correlation_id)
        if self.query_error is not None:
            raise self.query_error
        if correlation_id not in self.statuses:
            raise GatewayNotFoundError("Transaction not found", status_code=404)
        return self.statuses[correlation_id]

    def cancel_transaction(self, correlation_id):
        self.cancel_requests.append(correlation_id)
        if self.cancel_error is not None:
            raise self.cancel_error
        return {"status_code": "200", "transaction_status": "cancel", "order_id": correlation_id}


class RecordingEventSink(EventSink):
    """Keeps every published event in memory."""

    def __init__(self):
        self.events = []

    def publish(self, event, payload):
        self.events.append((event, payload))

    def names(self):
        return [name for name, _ in self.events]

    def clear(self):
        self.events = []


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'APP_ENV': 'test',
    'APP_URL': 'https://shop.example.test',
    'MIDTRANS_SERVER_KEY': SERVER_KEY,
    'WEBHOOK_SIGNATURE_BYPASS': False,
    'OVERSELL_ALLOW_NEGATIVE_STOCK': False,
    'PAYMENT_MAX_RETRIES': 5,
}


@pytest.fixture(scope='session')
def fake_gateway():
    return FakeGateway()


@pytest.fixture(scope='session')
def event_sink():
    return RecordingEventSink()


@pytest.fixture(scope='session')
def app(fake_gateway, event_sink):
    """Create application for testing."""
    app = create_app(dict(TEST_CONFIG), gateway=fake_gateway, event_sink=event_sink)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def gateway(fake_gateway):
    fake_gateway.reset()
    return fake_gateway


@pytest.fixture(scope='function')
def events(event_sink):
    event_sink.clear()
    return event_sink


@pytest.fixture(scope='function')
def services(app, db_session, gateway, events):
    """Service registry with a clean database, gateway and event log."""
    return get_services()


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory for products; initial stock is set directly (no ledger entry)."""
    counter = {"n": 0}

    def _make(
        name="Iced Latte",
        price_cents=25000,
        quantity=10,
        track_inventory=True,
        low_stock_threshold=None,
        is_available=True,
        sku=None,
    ):
        counter["n"] += 1
        product = Product(
            sku=sku or f"SKU-{counter['n']:04d}",
            name=name,
            price_cents=price_cents,
            quantity=quantity,
            track_inventory=track_inventory,
            low_stock_threshold=low_stock_threshold,
            is_available=is_available,
        )
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture(scope='function')
def order_payload():
    """Build a create-order request body."""

    def _build(*lines, payment_method="QRIS", **fields):
        body = {
            "order_type": "TAKEAWAY",
            "payment_method": payment_method,
            "customer_name": "Rina",
            "customer_email": "rina@example.test",
            "items": [
                {"product_id": product.id, "quantity": quantity}
                for product, quantity in lines
            ],
        }
        body.update(fields)
        return body

    return _build


@pytest.fixture(scope='function')
def notification():
    """Build a correctly signed gateway notification for an order."""

    def _build(
        order,
        transaction_status,
        *,
        correlation_id=None,
        transaction_id="txn-0001",
        fraud_status=None,
        payment_type="qris",
        gross_amount=None,
        status_code="200",
        server_key=SERVER_KEY,
        **extra,
    ):
        order_id = correlation_id or order.gateway_reference or order.order_number
        if gross_amount is None:
            gross_amount = f"{order.total_cents / 100:.2f}"
        payload = {
            "order_id": order_id,
            "transaction_status": transaction_status,
            "transaction_id": transaction_id,
            "status_code": status_code,
            "gross_amount": gross_amount,
            "payment_type": payment_type,
            "transaction_time": "2026-10-17 10:15:00",
            "signature_key": compute_notification_signature(order_id, status_code, gross_amount, server_key),
        }
        if fraud_status is not None:
            payload["fraud_status"] = fraud_status
        payload.update(extra)
        return payload

    return _build


@pytest.fixture(scope='function')
def app_factory():
    """
    Build a separate app on its own database URI (file-backed databases for
    multi-threaded tests). Returns (app, gateway, events).
    """
    created = []

    def _build(database_uri, *, event_sink=None, **overrides):
        config = dict(TEST_CONFIG)
        config["SQLALCHEMY_DATABASE_URI"] = database_uri
        config.update(overrides)
        gw = FakeGateway()
        sink = event_sink if event_sink is not None else RecordingEventSink()
        new_app = create_app(config, gateway=gw, event_sink=sink)
        with new_app.app_context():
            db.create_all()
        created.append(new_app)
        return new_app, gw, sink

    yield _build

    for built in created:
        with built.app_context():
            db.session.remove()
            db.drop_all()
            db.engine.dispose()
