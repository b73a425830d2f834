# Overview: Per-app wiring of the payment gateway, event sink and the services built on them.

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from .services.cancellation_service import CancellationService
from .services.events import EventSink
from .services.maintenance_service import PendingOrderSweeper
from .services.order_service import OrderService
from .services.payment_gateway import PaymentGatewayAdapter
from .services.retry_service import RetryManager
from .services.webhook_service import WebhookReconciler

EXTENSION_KEY = "storefront"


@dataclass
class Services:
    gateway: PaymentGatewayAdapter
    events: EventSink
    orders: OrderService
    webhooks: WebhookReconciler
    retries: RetryManager
    cancellations: CancellationService
    sweeper: PendingOrderSweeper


def build_services(config, *, gateway: PaymentGatewayAdapter, events: EventSink) -> Services:
    deps = {"gateway": gateway, "events": events, "config": config}
    orders = OrderService(**deps)
    webhooks = WebhookReconciler(**deps)
    return Services(
        gateway=gateway,
        events=events,
        orders=orders,
        webhooks=webhooks,
        retries=RetryManager(**deps),
        cancellations=CancellationService(**deps),
        sweeper=PendingOrderSweeper(reconciler=webhooks, order_service=orders, **deps),
    )


def get_services() -> Services:
    return current_app.extensions[EXTENSION_KEY]
