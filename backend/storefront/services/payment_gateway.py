# Overview: Payment gateway port plus the Midtrans (Snap + Core API) implementation over httpx.

"""
Payment Gateway Adapter

WHY: Order, retry, cancellation and webhook services only talk to the
gateway through PaymentGatewayAdapter, so tests can script a fake and a
second provider only needs a new adapter.

CONTRACT:
- create_token: open a hosted payment session for an amount + correlation id
- query_status: authoritative transaction status for a correlation id
- cancel_transaction: cancel a pending transaction
- Every failure raises GatewayError; "gateway has never heard of this
  transaction" raises GatewayNotFoundError so callers can treat it as done.

MONEY: the service stores minor units (cents). Midtrans takes integer
major units, so amounts are divided by 100 at this boundary only.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

import httpx

from ..constants import (
    METHOD_BANK_TRANSFER,
    METHOD_CREDIT_CARD,
    METHOD_DEBIT_CARD,
    METHOD_E_WALLET,
    METHOD_OTHER,
    METHOD_QRIS,
)
from ..time_utils import format_gateway_datetime, utcnow

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Raised when a gateway call fails or returns an error payload."""

    def __init__(self, message: str, *, status_code: int | None = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class GatewayNotFoundError(GatewayError):
    """The gateway has no transaction for the given correlation id."""


@dataclass(frozen=True)
class PaymentToken:
    token: str
    redirect_url: str | None
    expires_at: datetime | None
    correlation_id: str


@dataclass(frozen=True)
class GatewayTransactionStatus:
    """Normalized view of a gateway status (from a notification or a status query)."""
    order_id: str
    transaction_status: str
    transaction_id: str | None = None
    fraud_status: str | None = None
    status_code: str | None = None
    gross_amount: str | None = None
    payment_type: str | None = None
    transaction_time: str | None = None
    settlement_time: str | None = None
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict) -> "GatewayTransactionStatus":
        def _str(key):
            value = payload.get(key)
            return None if value is None or value == "" else str(value)

        fraud_status = _str("fraud_status")
        return cls(
            order_id=str(payload.get("order_id") or ""),
            transaction_status=str(payload.get("transaction_status") or "").lower(),
            transaction_id=_str("transaction_id"),
            fraud_status=fraud_status.lower() if fraud_status else None,
            status_code=_str("status_code"),
            gross_amount=_str("gross_amount"),
            payment_type=_str("payment_type"),
            transaction_time=_str("transaction_time"),
            settlement_time=_str("settlement_time"),
            raw=dict(payload),
        )

    @property
    def gross_amount_cents(self) -> int | None:
        return gateway_amount_to_cents(self.gross_amount)


# =============================================================================
# HELPERS
# =============================================================================

PAYMENT_TYPE_METHODS = {
    "qris": METHOD_QRIS,
    "gopay": METHOD_E_WALLET,
    "shopeepay": METHOD_E_WALLET,
    "bank_transfer": METHOD_BANK_TRANSFER,
    "bca_va": METHOD_BANK_TRANSFER,
    "bni_va": METHOD_BANK_TRANSFER,
    "bri_va": METHOD_BANK_TRANSFER,
    "permata_va": METHOD_BANK_TRANSFER,
    "echannel": METHOD_BANK_TRANSFER,
    "credit_card": METHOD_CREDIT_CARD,
    "debit_card": METHOD_DEBIT_CARD,
}


def method_for_payment_type(payment_type: str | None) -> str:
    """Map a gateway payment_type onto our payment method vocabulary."""
    if not payment_type:
        return METHOD_OTHER
    return PAYMENT_TYPE_METHODS.get(payment_type.lower(), METHOD_OTHER)


def cents_to_gateway_amount(amount_cents: int) -> int:
    # Half-up to whole major units
    return int((Decimal(amount_cents) / 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def gateway_amount_to_cents(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int((Decimal(str(value)) * 100).quantize(Decimal("1")))
    except (InvalidOperation, ValueError):
        return None


def compute_notification_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    raw = f"{order_id}{status_code}{gross_amount}{server_key}"
    return hashlib.sha512(raw.encode("utf-8")).hexdigest()


def verify_notification_signature(payload: dict, server_key: str) -> bool:
    """
    Check signature_key = SHA512(order_id + status_code + gross_amount + server_key).

    Missing fields or an empty server key never verify.
    """
    signature = payload.get("signature_key")
    if not signature or not server_key:
        return False
    expected = compute_notification_signature(
        str(payload.get("order_id") or ""),
        str(payload.get("status_code") or ""),
        str(payload.get("gross_amount") or ""),
        server_key,
    )
    return hmac.compare_digest(expected, str(signature).lower())


# =============================================================================
# PORT
# =============================================================================

class PaymentGatewayAdapter(ABC):
    name = "gateway"

    @abstractmethod
    def create_token(
        self,
        *,
        amount_cents: int,
        correlation_id: str,
        items: list[dict],
        customer: dict,
        callbacks: dict | None = None,
        expiry_minutes: int = 15,
    ) -> PaymentToken: ...

    @abstractmethod
    def query_status(self, correlation_id: str) -> GatewayTransactionStatus: ...

    @abstractmethod
    def cancel_transaction(self, correlation_id: str) -> dict: ...


# =============================================================================
# MIDTRANS
# =============================================================================

class MidtransGateway(PaymentGatewayAdapter):
    """Midtrans Snap (hosted checkout) + Core API (status, cancel)."""

    name = "midtrans"

    SNAP_URLS = {
        False: "https://app.sandbox.midtrans.com/snap/v1/transactions",
        True: "https://app.midtrans.com/snap/v1/transactions",
    }
    CORE_URLS = {
        False: "https://api.sandbox.midtrans.com",
        True: "https://api.midtrans.com",
    }

    def __init__(
        self,
        *,
        server_key: str,
        is_production: bool = False,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.server_key = server_key
        self.is_production = is_production
        self.snap_url = self.SNAP_URLS[bool(is_production)]
        self.core_url = self.CORE_URLS[bool(is_production)]
        self.client = httpx.Client(
            timeout=timeout,
            auth=(server_key, ""),
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            response = self.client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise GatewayError(f"Gateway request failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text}

        if response.status_code == 404:
            raise GatewayNotFoundError("Transaction not found", status_code=404, body=body)
        if response.status_code >= 400:
            messages = body.get("error_messages") if isinstance(body, dict) else None
            message = "; ".join(messages) if messages else f"Gateway returned HTTP {response.status_code}"
            raise GatewayError(message, status_code=response.status_code, body=body)
        return body if isinstance(body, dict) else {"data": body}

    @staticmethod
    def _check_core_status(body: dict) -> None:
        # Core API answers HTTP 200 and puts the real outcome in the body
        code = str(body.get("status_code") or "")
        if code == "404":
            raise GatewayNotFoundError(
                body.get("status_message") or "Transaction not found", status_code=404, body=body
            )
        if code and code[0] in {"4", "5"} and code != "407":
            raise GatewayError(
                body.get("status_message") or f"Gateway status_code {code}",
                status_code=int(code),
                body=body,
            )

    def create_token(
        self,
        *,
        amount_cents: int,
        correlation_id: str,
        items: list[dict],
        customer: dict,
        callbacks: dict | None = None,
        expiry_minutes: int = 15,
    ) -> PaymentToken:
        gross_amount = cents_to_gateway_amount(amount_cents)
        started_at = utcnow()
        params: dict[str, Any] = {
            "transaction_details": {
                "order_id": correlation_id,
                "gross_amount": gross_amount,
            },
            "customer_details": self._customer_details(customer),
            "expiry": {
                "start_time": format_gateway_datetime(started_at),
                "unit": "minutes",
                "duration": expiry_minutes,
            },
        }

        item_details = [
            {
                "id": str(item["id"]),
                "price": cents_to_gateway_amount(item["price_cents"]),
                "quantity": int(item["quantity"]),
                "name": str(item["name"])[:50],
            }
            for item in items
        ]
        # Snap rejects item lists that do not add up to gross_amount
        if item_details and sum(i["price"] * i["quantity"] for i in item_details) == gross_amount:
            params["item_details"] = item_details
        elif item_details:
            logger.warning(
                "Omitting item_details for %s: items do not sum to gross amount", correlation_id
            )

        if callbacks:
            params["callbacks"] = callbacks

        body = self._request("POST", self.snap_url, json=params)
        token = body.get("token")
        if not token:
            raise GatewayError("Gateway response did not include a token", body=body)
        return PaymentToken(
            token=token,
            redirect_url=body.get("redirect_url"),
            expires_at=started_at + timedelta(minutes=expiry_minutes),
            correlation_id=correlation_id,
        )

    @staticmethod
    def _customer_details(customer: dict) -> dict:
        details: dict[str, Any] = {"first_name": (customer.get("name") or "Customer")[:50]}
        email = customer.get("email")
        if email and "@" in email:
            details["email"] = email[:80]
        phone = customer.get("phone")
        if phone:
            details["phone"] = str(phone)[:19]
        return details

    def query_status(self, correlation_id: str) -> GatewayTransactionStatus:
        body = self._request("GET", f"{self.core_url}/v2/{correlation_id}/status")
        self._check_core_status(body)
        return GatewayTransactionStatus.from_payload(body)

    def cancel_transaction(self, correlation_id: str) -> dict:
        body = self._request("POST", f"{self.core_url}/v2/{correlation_id}/cancel")
        self._check_core_status(body)
        return body


def build_gateway(config) -> PaymentGatewayAdapter:
    """Construct the configured gateway adapter from a Flask config mapping."""
    return MidtransGateway(
        server_key=config.get("MIDTRANS_SERVER_KEY", ""),
        is_production=bool(config.get("MIDTRANS_IS_PRODUCTION", False)),
        timeout=float(config.get("GATEWAY_TIMEOUT_SECONDS", 10)),
    )
