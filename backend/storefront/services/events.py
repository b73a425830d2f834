# Overview: Outbound notification port; services publish order/payment/inventory events through an injected sink.

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

ORDER_CREATED = "order:created"
ORDER_UPDATED = "order:updated"
PAYMENT_COMPLETED = "payment:completed"
INVENTORY_LOW_STOCK = "inventory:low-stock"
INVENTORY_OUT_OF_STOCK = "inventory:out-of-stock"


class EventSink(ABC):
    """
    Destination for fire-and-forget notifications (kitchen display,
    dashboards, customer push). Delivery mechanics live behind this port.
    """

    @abstractmethod
    def publish(self, event: str, payload: dict[str, Any]) -> None: ...


class NullEventSink(EventSink):
    def publish(self, event: str, payload: dict[str, Any]) -> None:
        return None


class LoggingEventSink(EventSink):
    """Default sink: writes each event to the application log."""

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger("storefront.events")

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        self.logger.info("event %s %s", event, payload)


def publish_safely(sink: EventSink, event: str, payload: dict[str, Any], logger: logging.Logger) -> None:
    """Publish without letting a sink failure reach the committed business operation."""
    try:
        sink.publish(event, payload)
    except Exception:
        logger.exception("Failed to publish %s", event)


def order_payload(order) -> dict[str, Any]:
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "payment_status": order.payment_status,
        "total_cents": order.total_cents,
    }


def publish_stock_alerts(sink: EventSink, mutations, logger: logging.Logger) -> None:
    """Emit low-stock / out-of-stock events for ledger mutations that crossed a threshold."""
    for mutation in mutations:
        payload = {
            "product_id": mutation.product_id,
            "product_name": mutation.product_name,
            "current_stock": mutation.new_stock,
            "low_stock_threshold": mutation.low_stock_threshold,
        }
        if mutation.became_out_of_stock:
            publish_safely(sink, INVENTORY_OUT_OF_STOCK, payload, logger)
        elif mutation.became_low_stock:
            publish_safely(sink, INVENTORY_LOW_STOCK, payload, logger)
