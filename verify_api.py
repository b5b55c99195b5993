import hashlib
import hmac
import json
import os
import sys

import requests

BASE_URL = os.getenv("TAP_API_URL", "http://localhost:8002/api/v1/payment")
KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET", "rzp_secret_placeholder")
WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET", "webhook_secret")

def print_response(name, response):
    print(f"--- {name} ---")
    print(f"Status: {response.status_code}")
    try:
        print(json.dumps(response.json(), indent=2))
    except ValueError:
        print(response.text)
    print("\n")

def sign(secret, message):
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()

def run_verification():
    # 1. Create order (needs real Razorpay test keys on the server)
    print("1. Creating order...")
    resp = requests.post(f"{BASE_URL}/create-order", json={
        "amount": 50000,
        "currency": "INR",
        "metadata": {"orderType": "storybook", "source": "verify_api"}
    }, timeout=30)
    print_response("Create Order", resp)
    if resp.status_code != 200:
        print("Order creation failed, aborting.")
        sys.exit(1)
    order_id = resp.json()["gatewayOrderId"]

    # 2. Tampered signature must not verify
    print("2. Verifying with a forged signature (expected success=false)...")
    resp = requests.post(f"{BASE_URL}/verify-payment", json={
        "gatewayOrderId": order_id,
        "gatewayPaymentId": "pay_smoke_test",
        "signature": "0" * 64
    }, timeout=30)
    print_response("Verify Payment (forged)", resp)

    # 3. Signed verification, as the checkout callback would send it
    print("3. Verifying with a locally signed payment...")
    signature = sign(KEY_SECRET, f"{order_id}|pay_smoke_test".encode())
    resp = requests.post(f"{BASE_URL}/verify-payment", json={
        "razorpay_order_id": order_id,
        "razorpay_payment_id": "pay_smoke_test",
        "razorpay_signature": signature
    }, timeout=30)
    print_response("Verify Payment", resp)

    # 4. Duplicate webhook for the same payment
    print("4. Delivering payment.captured webhook (expected no-op)...")
    body = json.dumps({
        "entity": "event",
        "event": "payment.captured",
        "payload": {"payment": {"entity": {"id": "pay_smoke_test", "order_id": order_id}}}
    }).encode()
    resp = requests.post(f"{BASE_URL}/webhook", data=body, headers={
        "Content-Type": "application/json",
        "X-Razorpay-Signature": sign(WEBHOOK_SECRET, body)
    }, timeout=30)
    print_response("Webhook", resp)

    # 5. Final state
    print("5. Fetching order...")
    resp = requests.get(f"{BASE_URL}/orders/{order_id}", timeout=30)
    print_response("Order", resp)

if __name__ == "__main__":
    run_verification()
