"""
Error kinds raised by the reconciliation core.

Each error carries the HTTP status the transports should answer with, a
machine readable ``code`` and a ``message`` that is safe to show a client.
``detail`` holds internal diagnostics (for example the gateway's error text)
and is only surfaced outside production.
"""
from typing import Optional


class PaymentError(Exception):
    status_code = 500
    code = "PAYMENT_ERROR"
    message = "Something went wrong while processing the payment"
    # Anomalies the gateway must still see acknowledged, or it retries forever.
    acknowledge_webhook = False

    def __init__(self, message: Optional[str] = None, detail: Optional[str] = None):
        if message:
            self.message = message
        self.detail = detail
        super().__init__(self.message)

    def to_response(self, include_detail: bool = False) -> dict:
        body = {"success": False, "message": self.message, "code": self.code}
        if include_detail and self.detail:
            body["detail"] = self.detail
        return body


class ValidationError(PaymentError):
    status_code = 400
    code = "VALIDATION_ERROR"
    message = "Invalid request"


class SignatureInvalid(PaymentError):
    status_code = 400
    code = "SIGNATURE_INVALID"
    message = "Invalid signature"


class OrderNotFound(PaymentError):
    status_code = 404
    code = "ORDER_NOT_FOUND"
    message = "Order not found"


class ConflictingPaymentId(PaymentError):
    status_code = 409
    code = "CONFLICTING_PAYMENT_ID"
    message = "Order is already paid with a different payment"
    acknowledge_webhook = True


class InvalidTransition(PaymentError):
    status_code = 409
    code = "INVALID_TRANSITION"
    message = "Order cannot move to the requested state"
    acknowledge_webhook = True


class GatewayError(PaymentError):
    status_code = 500
    code = "GATEWAY_ERROR"
    message = "Payment gateway request failed"


class StoreError(PaymentError):
    status_code = 500
    code = "STORE_ERROR"
    message = "Could not save order"
