# Overview: Pytest coverage for the Midtrans adapter over a mocked httpx transport.

import base64
import json

import httpx
import pytest

from storefront.services.payment_gateway import (
    GatewayError,
    GatewayNotFoundError,
    MidtransGateway,
    cents_to_gateway_amount,
    compute_notification_signature,
    gateway_amount_to_cents,
    method_for_payment_type,
    verify_notification_signature,
)

SERVER_KEY = "SB-Mid-server-abc"


def make_gateway(handler, *, is_production=False):
    return MidtransGateway(
        server_key=SERVER_KEY,
        is_production=is_production,
        transport=httpx.MockTransport(handler),
    )


class Recorder:
    """MockTransport handler that records requests and replays one response."""

    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self.body = body if body is not None else {}
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body)

    @property
    def last_json(self):
        return json.loads(self.requests[-1].content)


LINES = [
    {"id": "1", "name": "Iced Latte", "price_cents": 25000, "quantity": 2},
    {"id": "TAX", "name": "Tax", "price_cents": 5000, "quantity": 1},
]


class TestCreateToken:
    def test_snap_request(self):
        recorder = Recorder(201, {"token": "snap-tok", "redirect_url": "https://app.sandbox.midtrans.com/snap/v4/x"})
        gateway = make_gateway(recorder)

        token = gateway.create_token(
            amount_cents=55000,
            correlation_id="CUST-20261017-00001",
            items=LINES,
            customer={"name": "Rina", "email": "rina@example.test", "phone": "0812"},
            callbacks={"finish": "https://shop.example.test/order/1?payment=finish"},
            expiry_minutes=15,
        )

        request = recorder.requests[0]
        assert str(request.url) == "https://app.sandbox.midtrans.com/snap/v1/transactions"
        expected_auth = base64.b64encode(f"{SERVER_KEY}:".encode()).decode()
        assert request.headers["Authorization"] == f"Basic {expected_auth}"

        body = recorder.last_json
        assert body["transaction_details"] == {"order_id": "CUST-20261017-00001", "gross_amount": 550}
        assert [i["price"] for i in body["item_details"]] == [250, 50]
        assert body["customer_details"]["email"] == "rina@example.test"
        assert body["callbacks"]["finish"].endswith("payment=finish")
        assert body["expiry"]["duration"] == 15
        assert body["expiry"]["unit"] == "minutes"

        assert token.token == "snap-tok"
        assert token.correlation_id == "CUST-20261017-00001"
        assert token.expires_at is not None

    def test_item_details_omitted_when_they_do_not_sum(self):
        recorder = Recorder(201, {"token": "snap-tok"})
        gateway = make_gateway(recorder)

        gateway.create_token(amount_cents=99900, correlation_id="CUST-1", items=LINES, customer={})

        body = recorder.last_json
        assert "item_details" not in body
        assert body["customer_details"] == {"first_name": "Customer"}

    def test_error_messages_surface(self):
        gateway = make_gateway(Recorder(400, {"error_messages": ["transaction_details.gross_amount is not equal"]}))

        with pytest.raises(GatewayError) as exc_info:
            gateway.create_token(amount_cents=1000, correlation_id="CUST-1", items=[], customer={})

        assert "gross_amount" in str(exc_info.value)
        assert exc_info.value.status_code == 400

    def test_missing_token_is_an_error(self):
        gateway = make_gateway(Recorder(201, {"redirect_url": "https://x"}))

        with pytest.raises(GatewayError):
            gateway.create_token(amount_cents=1000, correlation_id="CUST-1", items=[], customer={})

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        gateway = make_gateway(handler)

        with pytest.raises(GatewayError):
            gateway.create_token(amount_cents=1000, correlation_id="CUST-1", items=[], customer={})

    def test_production_urls(self):
        recorder = Recorder(201, {"token": "t"})
        gateway = make_gateway(recorder, is_production=True)

        gateway.create_token(amount_cents=1000, correlation_id="CUST-1", items=[], customer={})

        assert str(recorder.requests[0].url) == "https://app.midtrans.com/snap/v1/transactions"
        assert gateway.core_url == "https://api.midtrans.com"


class TestStatusAndCancel:
    def test_query_status(self):
        recorder = Recorder(200, {
            "status_code": "200",
            "order_id": "CUST-1",
            "transaction_id": "abc-123",
            "transaction_status": "Settlement",
            "gross_amount": "550.00",
            "payment_type": "qris",
            "fraud_status": "ACCEPT",
        })
        gateway = make_gateway(recorder)

        status = gateway.query_status("CUST-1")

        assert str(recorder.requests[0].url) == "https://api.sandbox.midtrans.com/v2/CUST-1/status"
        assert recorder.requests[0].method == "GET"
        assert status.transaction_status == "settlement"
        assert status.fraud_status == "accept"
        assert status.gross_amount_cents == 55000
        assert status.raw["transaction_id"] == "abc-123"

    def test_not_found_in_body(self):
        gateway = make_gateway(Recorder(200, {"status_code": "404", "status_message": "Transaction doesn't exist."}))

        with pytest.raises(GatewayNotFoundError):
            gateway.query_status("CUST-1")

    def test_not_found_http(self):
        gateway = make_gateway(Recorder(404, {}))

        with pytest.raises(GatewayNotFoundError):
            gateway.query_status("CUST-1")

    def test_server_error_in_body(self):
        gateway = make_gateway(Recorder(200, {"status_code": "500", "status_message": "Internal"}))

        with pytest.raises(GatewayError) as exc_info:
            gateway.query_status("CUST-1")

        assert not isinstance(exc_info.value, GatewayNotFoundError)

    def test_cancel(self):
        recorder = Recorder(200, {"status_code": "200", "transaction_status": "cancel"})
        gateway = make_gateway(recorder)

        body = gateway.cancel_transaction("CUST-1-R1")

        assert recorder.requests[0].method == "POST"
        assert str(recorder.requests[0].url) == "https://api.sandbox.midtrans.com/v2/CUST-1-R1/cancel"
        assert body["transaction_status"] == "cancel"


class TestSignature:
    def _payload(self, **overrides):
        payload = {"order_id": "CUST-1", "status_code": "200", "gross_amount": "550.00"}
        payload.update(overrides)
        payload.setdefault(
            "signature_key",
            compute_notification_signature(payload["order_id"], payload["status_code"], payload["gross_amount"], SERVER_KEY),
        )
        return payload

    def test_valid(self):
        assert verify_notification_signature(self._payload(), SERVER_KEY) is True

    def test_uppercase_hex_accepted(self):
        payload = self._payload()
        payload["signature_key"] = payload["signature_key"].upper()

        assert verify_notification_signature(payload, SERVER_KEY) is True

    def test_tampered_amount(self):
        payload = self._payload()
        payload["gross_amount"] = "1.00"

        assert verify_notification_signature(payload, SERVER_KEY) is False

    def test_missing_signature_or_key(self):
        payload = self._payload()

        assert verify_notification_signature(payload, "") is False
        assert verify_notification_signature({"order_id": "CUST-1"}, SERVER_KEY) is False


class TestConversions:
    @pytest.mark.parametrize("cents,major", [(55000, 550), (55050, 551), (55049, 550), (0, 0)])
    def test_cents_to_gateway_amount_rounds_half_up(self, cents, major):
        assert cents_to_gateway_amount(cents) == major

    def test_gateway_amount_to_cents(self):
        assert gateway_amount_to_cents("550.00") == 55000
        assert gateway_amount_to_cents("550") == 55000
        assert gateway_amount_to_cents(None) is None
        assert gateway_amount_to_cents("n/a") is None

    def test_payment_type_mapping(self):
        assert method_for_payment_type("bca_va") == "BANK_TRANSFER"
        assert method_for_payment_type("GOPAY") == "E_WALLET"
        assert method_for_payment_type("cstore") == "OTHER"
        assert method_for_payment_type(None) == "OTHER"
