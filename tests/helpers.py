"""Test doubles and signing helpers built on hmac directly, independent of the code under test."""
import hashlib
import hmac
import json

import razorpay

from tap_payments.core.errors import GatewayError
from tap_payments.services.gateway import RazorpayGateway

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"


class FakeGateway(RazorpayGateway):
    """
    Records calls and returns Razorpay-shaped responses without network access.

    Signature checks are inherited, so they run through the real SDK client.
    """

    def __init__(self):
        super().__init__(razorpay.Client(auth=("rzp_test_key", KEY_SECRET)))
        self.created = []
        self.payments = {}
        self.fail = False
        self.next_order_id = None
        self._counter = 0

    def create_order(self, amount, currency, receipt, notes=None):
        if self.fail:
            raise GatewayError("Failed to create payment order", detail="Authentication failed")
        self._counter += 1
        order_id = self.next_order_id or f"order_TEST{self._counter:04d}"
        self.next_order_id = None
        order = {
            "id": order_id,
            "entity": "order",
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
            "status": "created",
        }
        self.created.append(order)
        return order

    def fetch_payment(self, gateway_payment_id):
        if self.fail:
            raise GatewayError("Failed to fetch payment details", detail="timeout")
        return self.payments[gateway_payment_id]


# ============================================================================
# SIGNING HELPERS
# ============================================================================

def sign_payment(gateway_order_id, gateway_payment_id, secret=KEY_SECRET):
    message = f"{gateway_order_id}|{gateway_payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def webhook_body(event, payload):
    return json.dumps({"entity": "event", "event": event, "payload": payload}).encode()


def sign_webhook(body, secret=WEBHOOK_SECRET):
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def payment_payload(gateway_order_id, payment_id, **extra):
    entity = {"id": payment_id, "entity": "payment", "order_id": gateway_order_id, "amount": 50000, "currency": "INR"}
    entity.update(extra)
    return {"payment": {"entity": entity}}


def refund_payload(gateway_order_id, payment_id, refund_id, amount=50000):
    return {
        "refund": {"entity": {"id": refund_id, "entity": "refund", "payment_id": payment_id, "amount": amount}},
        "payment": {"entity": {"id": payment_id, "order_id": gateway_order_id}},
    }


