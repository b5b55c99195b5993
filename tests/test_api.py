"""
Tests for the HTTP endpoints.

Verifies status codes and response envelopes for each route, plus the
end-to-end checkout scenario: create -> verify -> duplicate webhook.
"""
from fastapi.concurrency import run_in_threadpool

from tap_payments.models.order import OrderStatus
from tap_payments.routers import payment as payment_router
from tests.helpers import payment_payload, refund_payload, sign_payment, sign_webhook, webhook_body

BASE = "/api/v1/payment"


def post_webhook(client, body, signature=None, event_id=None):
    headers = {"Content-Type": "application/json"}
    if signature:
        headers["X-Razorpay-Signature"] = signature
    if event_id:
        headers["X-Razorpay-Event-Id"] = event_id
    return client.post(f"{BASE}/webhook", content=body, headers=headers)


class TestCreateOrderEndpoint:

    def test_create_order(self, client, gateway):
        response = client.post(f"{BASE}/create-order", json={"amount": 50000, "currency": "INR", "metadata": {"email": "a@b.c"}})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["gatewayOrderId"] == gateway.created[0]["id"]
        assert data["amount"] == 50000
        assert data["currency"] == "INR"

    def test_invalid_amount_is_400(self, client, gateway):
        response = client.post(f"{BASE}/create-order", json={"amount": -5, "currency": "INR"})
        assert response.status_code == 400
        assert response.json()["success"] is False
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert gateway.created == []

    def test_malformed_body_is_400(self, client):
        response = client.post(f"{BASE}/create-order", content=b"{not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_gateway_failure_is_500_with_generic_message(self, client, gateway, test_settings):
        gateway.fail = True
        response = client.post(f"{BASE}/create-order", json={"amount": 50000, "currency": "INR"})

        assert response.status_code == 500
        data = response.json()
        assert data["success"] is False
        assert data["message"] == "Failed to create payment order"
        # Non-production builds include the gateway's own error text
        assert data["detail"] == "Authentication failed"

    def test_production_hides_internal_detail(self, client, gateway, test_settings):
        test_settings.ENVIRONMENT = "production"
        gateway.fail = True
        response = client.post(f"{BASE}/create-order", json={"amount": 50000, "currency": "INR"})

        assert response.status_code == 500
        assert "detail" not in response.json()

    def test_idempotency_key_header(self, client, gateway):
        headers = {"Idempotency-Key": "cart-7"}
        first = client.post(f"{BASE}/create-order", json={"amount": 100, "currency": "INR"}, headers=headers)
        second = client.post(f"{BASE}/create-order", json={"amount": 100, "currency": "INR"}, headers=headers)

        assert first.json()["gatewayOrderId"] == second.json()["gatewayOrderId"]
        assert len(gateway.created) == 1


class TestVerifyPaymentEndpoint:

    def test_missing_field_is_400(self, client):
        response = client.post(f"{BASE}/verify-payment", json={"gatewayOrderId": "order_X", "gatewayPaymentId": "pay_1"})
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_signature_mismatch_is_200_unsuccessful(self, client, service):
        gid = service.create_order(50000, "INR")["gatewayOrderId"]
        response = client.post(f"{BASE}/verify-payment", json={
            "gatewayOrderId": gid, "gatewayPaymentId": "pay_1", "signature": "0" * 64,
        })
        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_unknown_order_is_404(self, client):
        response = client.post(f"{BASE}/verify-payment", json={
            "gatewayOrderId": "order_NOPE", "gatewayPaymentId": "pay_1", "signature": sign_payment("order_NOPE", "pay_1"),
        })
        assert response.status_code == 404
        assert response.json()["code"] == "ORDER_NOT_FOUND"

    def test_accepts_razorpay_checkout_field_names(self, client, service):
        gid = service.create_order(50000, "INR")["gatewayOrderId"]
        response = client.post(f"{BASE}/verify-payment", json={
            "razorpay_order_id": gid,
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": sign_payment(gid, "pay_1"),
        })
        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_conflicting_payment_is_409(self, client, paid_order):
        gid = paid_order.gateway_order_id
        response = client.post(f"{BASE}/verify-payment", json={
            "gatewayOrderId": gid, "gatewayPaymentId": "pay_OTHER", "signature": sign_payment(gid, "pay_OTHER"),
        })
        assert response.status_code == 409


class TestWebhookEndpoint:

    def test_missing_signature_is_400(self, client):
        response = post_webhook(client, webhook_body("payment.captured", {}))
        assert response.status_code == 400

    def test_invalid_signature_is_400(self, client):
        response = post_webhook(client, webhook_body("payment.captured", {}), signature="f" * 64)
        assert response.status_code == 400
        assert response.json()["code"] == "SIGNATURE_INVALID"

    def test_unhandled_event_is_received(self, client):
        body = webhook_body("order.paid", {})
        response = post_webhook(client, body, sign_webhook(body))
        assert response.status_code == 200
        assert response.json() == {"received": True}

    def test_invalid_transition_is_acknowledged(self, client, service, store):
        gid = service.create_order(50000, "INR")["gatewayOrderId"]
        body = webhook_body("refund.created", refund_payload(gid, "pay_1", "rfnd_1"))

        response = post_webhook(client, body, sign_webhook(body))

        assert response.status_code == 200
        assert response.json() == {"received": True}
        order = store.get_by_gateway_order_id(gid)
        assert order.status == OrderStatus.CREATED
        assert order.needs_review is True

    def test_webhook_processing_runs_in_threadpool(self, client, service, store, monkeypatch):
        calls = []

        async def recording_threadpool(func, *args, **kwargs):
            calls.append(func.__name__)
            return await run_in_threadpool(func, *args, **kwargs)

        monkeypatch.setattr(payment_router, "run_in_threadpool", recording_threadpool)
        gid = service.create_order(50000, "INR")["gatewayOrderId"]
        body = webhook_body("payment.captured", payment_payload(gid, "pay_1"))

        response = post_webhook(client, body, sign_webhook(body))

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert calls == ["handle_webhook_event"]
        assert store.get_by_gateway_order_id(gid).status == OrderStatus.PAID

    def test_event_id_header_feeds_ledger(self, client, service, store):
        gid = service.create_order(50000, "INR")["gatewayOrderId"]
        body = webhook_body("payment.captured", payment_payload(gid, "pay_1"))

        post_webhook(client, body, sign_webhook(body), event_id="evt_abc")

        assert store.has_processed_event("evt_abc")


class TestOrderLookup:

    def test_get_order(self, client, paid_order):
        response = client.get(f"{BASE}/orders/{paid_order.gateway_order_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "paid"
        assert data["paymentStatus"] == "completed"
        assert data["gatewayPaymentId"] == "pay_123"
        assert [a["paymentId"] for a in data["attempts"]] == ["pay_123"]

    def test_unknown_order_is_404(self, client):
        assert client.get(f"{BASE}/orders/order_NOPE").status_code == 404


def test_checkout_end_to_end(client, gateway, store):
    gateway.next_order_id = "order_ABC"
    created = client.post(f"{BASE}/create-order", json={"amount": 50000, "currency": "INR"}).json()
    assert created["gatewayOrderId"] == "order_ABC"

    verified = client.post(f"{BASE}/verify-payment", json={
        "gatewayOrderId": "order_ABC",
        "gatewayPaymentId": "pay_123",
        "signature": sign_payment("order_ABC", "pay_123"),
    })
    assert verified.json()["success"] is True

    order = store.get_by_gateway_order_id("order_ABC")
    assert order.status == OrderStatus.PAID
    assert order.gateway_payment_id == "pay_123"
    paid_at = order.paid_at

    body = webhook_body("payment.captured", payment_payload("order_ABC", "pay_123"))
    response = post_webhook(client, body, sign_webhook(body))
    assert response.status_code == 200
    assert response.json() == {"received": True}

    order = store.get_by_gateway_order_id("order_ABC")
    assert order.status == OrderStatus.PAID
    assert order.paid_at == paid_at
    assert order.needs_review is False


def test_root(client):
    assert client.get("/").status_code == 200
