"""
Serverless entry point (AWS Lambda / API Gateway proxy events).

Routes on the ``action`` query parameter the same way the storefront's
``/api/razorpay?action=...`` function does, and hands every action to the
shared ReconciliationService.
"""
import base64
import json
import logging
from functools import lru_cache
from typing import Any, Dict, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session

from tap_payments.core.config import Settings, settings
from tap_payments.core.errors import PaymentError, ValidationError
from tap_payments.core.logging_config import configure_logging
from tap_payments.db.session import build_engine, create_db_and_tables
from tap_payments.services.gateway import RazorpayGateway
from tap_payments.services.order_store import OrderStore
from tap_payments.services.reconciliation import ReconciliationService

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Idempotency-Key, X-Razorpay-Signature, X-Razorpay-Event-Id",
}


class ServerlessHandler:
    def __init__(self, config: Optional[Settings] = None, gateway=None, engine: Optional[Engine] = None):
        self.config = config or settings
        configure_logging(self.config.LOG_LEVEL)
        self.engine = engine or build_engine(self.config)
        create_db_and_tables(self.engine)
        self.gateway = gateway or RazorpayGateway.from_settings(self.config)

    def __call__(self, event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
        method = (event.get("httpMethod") or "").upper()
        if method == "OPTIONS":
            return self._respond(200, None)
        if method != "POST":
            return self._respond(405, {"error": "Method not allowed"})

        action = (event.get("queryStringParameters") or {}).get("action")
        headers = {k.lower(): v for k, v in (event.get("headers") or {}).items()}

        with Session(self.engine) as session:
            service = ReconciliationService(OrderStore(session), self.gateway, self.config)
            try:
                raw_body = self._raw_body(event)
                if action == "create-order":
                    body = self._json(raw_body)
                    result = service.create_order(
                        amount=body.get("amount"),
                        currency=body.get("currency"),
                        metadata=body.get("metadata"),
                        idempotency_key=body.get("idempotencyKey") or headers.get("idempotency-key"),
                    )
                elif action == "verify-payment":
                    body = self._json(raw_body)
                    result = service.verify_payment(
                        body.get("gatewayOrderId") or body.get("razorpay_order_id"),
                        body.get("gatewayPaymentId") or body.get("razorpay_payment_id"),
                        body.get("signature") or body.get("razorpay_signature"),
                    )
                elif action == "webhook":
                    service.handle_webhook_event(
                        raw_body,
                        headers.get("x-razorpay-signature"),
                        headers.get("x-razorpay-event-id"),
                    )
                    result = {"received": True}
                else:
                    return self._respond(400, {"success": False, "message": "Invalid action"})
            except PaymentError as e:
                if action == "webhook" and e.acknowledge_webhook:
                    logger.error(f"Webhook acknowledged with anomaly {e.code}: {e.detail}")
                    return self._respond(200, {"received": True})
                if e.status_code >= 500:
                    logger.error(f"Serverless {action} failed: {e.code} {e.detail}")
                return self._respond(e.status_code, e.to_response(include_detail=not self.config.is_production))

        return self._respond(200, result)

    def _raw_body(self, event: Dict[str, Any]) -> bytes:
        body = event.get("body") or ""
        if event.get("isBase64Encoded"):
            try:
                return base64.b64decode(body)
            except (ValueError, TypeError):
                raise ValidationError("Body is not valid base64")
        return body.encode("utf-8") if isinstance(body, str) else body

    def _json(self, raw_body: bytes) -> Dict[str, Any]:
        try:
            body = json.loads(raw_body.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ValidationError("Invalid request body")
        if not isinstance(body, dict):
            raise ValidationError("Invalid request body")
        return body

    def _respond(self, status_code: int, body: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "statusCode": status_code,
            "headers": dict(CORS_HEADERS, **{"Content-Type": "application/json"}),
            "body": json.dumps(body) if body is not None else "",
        }


@lru_cache(maxsize=1)
def get_handler() -> ServerlessHandler:
    # Created on cold start and reused for the life of the container
    return ServerlessHandler()


def lambda_handler(event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
    return get_handler()(event, context)
