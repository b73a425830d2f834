# Overview: Multi-threaded tests against a file-backed SQLite database (locks, idempotency under races).

"""
Concurrency Tests

Each worker runs in its own thread with its own app context (and so its
own session), the way concurrent requests do in production.
"""

import threading

import pytest

from storefront.extensions import db
from storefront.models import InventoryLog, Order, Payment, Product
from storefront.registry import get_services
from storefront.services.payment_gateway import compute_notification_signature


@pytest.fixture
def file_app(app_factory, tmp_path):
    return app_factory(f"sqlite:///{tmp_path / 'concurrency.db'}")


def run_workers(target, count):
    threads = [threading.Thread(target=target, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()


def seed_product(app, quantity):
    with app.app_context():
        product = Product(sku="CONCUR-1", name="Concurrent Latte", price_cents=25000,
                          quantity=quantity, track_inventory=True)
        db.session.add(product)
        db.session.commit()
        return product.id


def signed_settlement(order_number, total_cents, transaction_id, server_key):
    gross = f"{total_cents / 100:.2f}"
    return {
        "order_id": order_number,
        "transaction_status": "settlement",
        "transaction_id": transaction_id,
        "status_code": "200",
        "gross_amount": gross,
        "payment_type": "qris",
        "signature_key": compute_notification_signature(order_number, "200", gross, server_key),
    }


class TestConcurrentCheckout:
    def test_cash_orders_never_oversell(self, file_app):
        app, _, _ = file_app
        product_id = seed_product(app, quantity=5)
        created = []
        errors = []
        lock = threading.Lock()

        def worker(_):
            with app.app_context():
                try:
                    result = get_services().orders.create_order({
                        "payment_method": "CASH",
                        "items": [{"product_id": product_id, "quantity": 1}],
                    })
                    with lock:
                        created.append(result.order.order_number)
                except Exception as exc:
                    with lock:
                        errors.append(exc)
                finally:
                    db.session.remove()

        run_workers(worker, 10)

        assert len(created) == 5
        assert len(set(created)) == 5
        assert all(getattr(e, "message", None) == "Insufficient stock" for e in errors)
        with app.app_context():
            assert db.session.get(Product, product_id).quantity == 0
            assert db.session.query(InventoryLog).filter_by(product_id=product_id).count() == 5


class TestConcurrentNotifications:
    def test_duplicate_settlements_deduct_once(self, file_app):
        app, _, events = file_app
        product_id = seed_product(app, quantity=10)
        with app.app_context():
            order = get_services().orders.create_order({
                "payment_method": "QRIS",
                "items": [{"product_id": product_id, "quantity": 3}],
            }).order
            payload = signed_settlement(
                order.order_number, order.total_cents, "txn-race", app.config["MIDTRANS_SERVER_KEY"]
            )
            order_id = order.id

        results = []
        lock = threading.Lock()

        def worker(_):
            with app.app_context():
                try:
                    result = get_services().webhooks.handle_notification(dict(payload))
                    with lock:
                        results.append(result)
                except Exception as exc:
                    with lock:
                        results.append(exc)
                finally:
                    db.session.remove()

        run_workers(worker, 4)

        assert all(not isinstance(r, Exception) for r in results), results
        assert sum(1 for r in results if r.inventory_deducted) == 1
        assert events.names().count("payment:completed") == 1
        with app.app_context():
            assert db.session.get(Product, product_id).quantity == 7
            assert db.session.get(Order, order_id).status == "PAID"
            assert db.session.query(Payment).filter_by(order_id=order_id).count() == 1


class TestConcurrentRetries:
    def test_only_one_retry_wins(self, file_app):
        app, gateway, _ = file_app
        product_id = seed_product(app, quantity=10)
        with app.app_context():
            order_id = get_services().orders.create_order({
                "payment_method": "QRIS",
                "items": [{"product_id": product_id, "quantity": 1}],
            }).order.id

        # every worker has read retry_count=0 before any of them commits
        barrier = threading.Barrier(4, timeout=10)
        issue_token = gateway.create_token

        def create_token_after_barrier(**kwargs):
            barrier.wait()
            return issue_token(**kwargs)

        gateway.create_token = create_token_after_barrier
        outcomes = []
        lock = threading.Lock()

        def worker(_):
            with app.app_context():
                try:
                    result = get_services().retries.retry(order_id)
                    with lock:
                        outcomes.append(result.correlation_id)
                except Exception as exc:
                    with lock:
                        outcomes.append(exc)
                finally:
                    db.session.remove()

        run_workers(worker, 4)

        winners = [o for o in outcomes if isinstance(o, str)]
        assert len(winners) == 1
        assert winners[0].endswith("-R1")
        assert all(getattr(o, "message", None) == "A concurrent retry is already in progress"
                   for o in outcomes if not isinstance(o, str))
        with app.app_context():
            order = db.session.get(Order, order_id)
            assert order.payment_retry_count == 1
            assert order.gateway_reference == winners[0]
            assert db.session.query(Payment).filter_by(order_id=order_id).count() == 2
