import logging
from typing import Any, Dict, Optional

import razorpay
import requests
from razorpay.errors import (
    BadRequestError,
    GatewayError as RazorpayGatewayError,
    ServerError,
    SignatureVerificationError,
)

from tap_payments.core.config import Settings
from tap_payments.core.errors import GatewayError

logger = logging.getLogger(__name__)

SDK_ERRORS = (BadRequestError, ServerError, RazorpayGatewayError)


class TimeoutSession(requests.Session):
    """requests session that applies a default timeout to every gateway call."""

    def __init__(self, timeout: float):
        super().__init__()
        self.timeout = timeout

    def request(self, method, url, **kwargs):
        kwargs.setdefault("timeout", self.timeout)
        return super().request(method, url, **kwargs)


class RazorpayGateway:
    """
    Thin wrapper over the Razorpay SDK client.

    The client is built once at process start and handed to the reconciliation
    service, so tests can swap in any object with the same four methods.
    """

    def __init__(self, client: razorpay.Client):
        self.client = client

    @classmethod
    def from_settings(cls, config: Settings) -> "RazorpayGateway":
        client = razorpay.Client(
            session=TimeoutSession(config.GATEWAY_TIMEOUT_SECONDS),
            auth=(config.RAZORPAY_KEY_ID, config.RAZORPAY_KEY_SECRET),
        )
        return cls(client)

    def create_order(self, amount: int, currency: str, receipt: str, notes: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data = {
            "amount": amount,  # paise
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
            "payment_capture": 1,
        }
        try:
            order = self.client.order.create(data=data)
        except SDK_ERRORS as e:
            logger.error(f"Razorpay order creation rejected for receipt {receipt}: {e}")
            raise GatewayError("Failed to create payment order", detail=str(e)) from e
        except requests.RequestException as e:
            logger.error(f"Razorpay order creation failed for receipt {receipt}: {e}")
            raise GatewayError("Failed to create payment order", detail=str(e)) from e

        if not order or not order.get("id"):
            raise GatewayError("Failed to create payment order", detail="Gateway response carried no order id")
        return order

    def fetch_payment(self, gateway_payment_id: str) -> Dict[str, Any]:
        try:
            return self.client.payment.fetch(gateway_payment_id)
        except SDK_ERRORS as e:
            logger.error(f"Razorpay payment fetch rejected for {gateway_payment_id}: {e}")
            raise GatewayError("Failed to fetch payment details", detail=str(e)) from e
        except requests.RequestException as e:
            logger.error(f"Razorpay payment fetch failed for {gateway_payment_id}: {e}")
            raise GatewayError("Failed to fetch payment details", detail=str(e)) from e

    def verify_payment_signature(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> bool:
        # Signed with the key secret the client was built with
        if not signature.isascii():
            return False
        try:
            self.client.utility.verify_payment_signature({
                "razorpay_order_id": gateway_order_id,
                "razorpay_payment_id": gateway_payment_id,
                "razorpay_signature": signature,
            })
        except SignatureVerificationError:
            return False
        return True

    def verify_webhook_signature(self, raw_body: bytes, signature: str, secret: str) -> bool:
        # Always the raw bytes as received; re-serialized JSON would not match
        try:
            body = raw_body.decode("utf-8")
        except UnicodeDecodeError:
            return False
        if not signature.isascii():
            return False
        try:
            self.client.utility.verify_webhook_signature(body, signature, secret)
        except SignatureVerificationError:
            return False
        return True
