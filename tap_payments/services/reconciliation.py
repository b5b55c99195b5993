"""
Order reconciliation: the single implementation behind every transport.

Flow:
    create_order          -> gateway mints an order id, then the Order is stored
    verify_payment        -> client reports a signed payment (checkout callback)
    handle_webhook_event  -> gateway reports payment/refund lifecycle events

verify_payment and the webhook race to mark the same order paid. Both go
through ``_mark_paid``, whose compare-and-set lets exactly one of them win;
the other sees ``paid`` with the same payment id and becomes a no-op.
"""
import json
import logging
import math
import secrets
import time
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Optional, Tuple

from tap_payments.core.config import Settings
from tap_payments.core.errors import (
    ConflictingPaymentId,
    GatewayError,
    InvalidTransition,
    OrderNotFound,
    PaymentError,
    SignatureInvalid,
    StoreError,
    ValidationError,
)
from tap_payments.models.order import Order, OrderStatus, PaymentStatus
from tap_payments.models.payment import AttemptOutcome, AttemptSource, PaymentAttempt
from tap_payments.services.order_store import DuplicateOrder, OrderStore

logger = logging.getLogger(__name__)

SUCCESS_EVENTS = {"payment.succeeded", "payment.captured", "payment.authorized"}
FAILURE_EVENT = "payment.failed"
REFUND_EVENT = "refund.created"

# Gateway payment states that count as money received
SETTLED_PAYMENT_STATES = {"captured", "authorized"}

# Compare-and-set retries before giving up on a contended order
MAX_TRANSITION_ATTEMPTS = 3


def generate_receipt() -> str:
    # Razorpay caps receipts at 40 characters
    return f"receipt_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class ReconciliationService:
    def __init__(self, store: OrderStore, gateway, config: Settings):
        self.store = store
        self.gateway = gateway
        self.config = config

    def create_order(
        self,
        amount: Any,
        currency: Any,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        amount = self._validate_amount(amount)
        currency = self._validate_currency(currency)
        if metadata is None:
            metadata = {}
        if not isinstance(metadata, dict):
            raise ValidationError("Metadata must be an object")
        if idempotency_key is not None and not isinstance(idempotency_key, str):
            raise ValidationError("Idempotency key must be a string")
        idempotency_key = (idempotency_key or "").strip() or None

        if idempotency_key:
            existing = self.store.get_by_idempotency_key(idempotency_key)
            if existing:
                return self._replay_creation(existing, amount, currency)

        receipt = generate_receipt()
        gateway_order = self.gateway.create_order(amount, currency, receipt, metadata)

        if gateway_order.get("amount", amount) != amount:
            logger.error(
                f"Gateway order {gateway_order.get('id')} echoed amount {gateway_order.get('amount')}, sent {amount}"
            )
            raise GatewayError(detail="Gateway order amount does not match the requested amount")

        order = Order(
            gateway_order_id=gateway_order["id"],
            receipt=receipt,
            idempotency_key=idempotency_key,
            amount=amount,
            currency=currency,
            notes=dict(metadata),
        )
        try:
            order = self.store.insert(order)
        except DuplicateOrder as e:
            if idempotency_key:
                winner = self.store.get_by_idempotency_key(idempotency_key)
                if winner:
                    logger.warning(
                        f"Concurrent create for key {idempotency_key}; gateway order {gateway_order['id']} left unused"
                    )
                    return self._replay_creation(winner, amount, currency)
            raise StoreError(detail=f"Order for gateway order {gateway_order['id']} collides: {e}") from e

        self._audit("order_created", order, receipt=receipt, amount=amount, currency=currency)
        return self._creation_result(order)

    def _replay_creation(self, order: Order, amount: int, currency: str) -> Dict[str, Any]:
        if order.amount != amount or order.currency != currency:
            raise ValidationError("Idempotency key was already used for a different amount or currency")
        logger.info(f"Returning existing order {order.gateway_order_id} for idempotency key {order.idempotency_key}")
        return self._creation_result(order)

    def _creation_result(self, order: Order) -> Dict[str, Any]:
        return {
            "success": True,
            "gatewayOrderId": order.gateway_order_id,
            "amount": order.amount,
            "currency": order.currency,
            "receipt": order.receipt,
        }

    def _validate_amount(self, amount: Any) -> int:
        error = ValidationError("Amount must be a positive integer in minor currency units")
        if amount is None or isinstance(amount, bool):
            raise error

        if isinstance(amount, int):
            value = amount
        elif isinstance(amount, float) and math.isfinite(amount) and amount.is_integer():
            value = int(amount)
        elif self.config.ALLOW_AMOUNT_ROUNDING and isinstance(amount, (float, Decimal)):
            try:
                exact = Decimal(str(amount))
            except InvalidOperation:
                raise error
            if not exact.is_finite():
                raise error
            value = int(exact.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        else:
            raise error

        if value <= 0:
            raise error
        return value

    def _validate_currency(self, currency: Any) -> str:
        if not isinstance(currency, str) or not currency.strip():
            raise ValidationError("Currency is required")
        return currency.strip().upper()

    def verify_payment(self, gateway_order_id: Any, gateway_payment_id: Any, signature: Any) -> Dict[str, Any]:
        fields = (
            ("gatewayOrderId", gateway_order_id),
            ("gatewayPaymentId", gateway_payment_id),
            ("signature", signature),
        )
        missing = [name for name, value in fields if not isinstance(value, str) or not value.strip()]
        if missing:
            raise ValidationError(
                f"All payment details (order id, payment id, signature) are required; missing {', '.join(missing)}"
            )

        if not self.gateway.verify_payment_signature(gateway_order_id, gateway_payment_id, signature):
            logger.warning(
                f"[SECURITY] Payment signature verification failed: order={gateway_order_id} payment={gateway_payment_id}"
            )
            return {"success": False, "message": "Invalid payment signature"}

        order = self.store.get_by_gateway_order_id(gateway_order_id)
        if order is None:
            raise OrderNotFound(detail=f"No order for gateway order {gateway_order_id}")

        if self.config.VERIFY_CROSS_CHECK_PAYMENT:
            problem = self._cross_check_payment(order, gateway_payment_id)
            if problem:
                logger.warning(
                    f"[SECURITY] Signed payment {gateway_payment_id} failed gateway cross-check for "
                    f"order {gateway_order_id}: {problem}"
                )
                return {"success": False, "message": "Payment could not be confirmed with the gateway"}

        order, _ = self._mark_paid(order, gateway_payment_id, AttemptSource.CLIENT)
        return {"success": True, "status": order.status.value}

    def _cross_check_payment(self, order: Order, gateway_payment_id: str) -> Optional[str]:
        payment = self.gateway.fetch_payment(gateway_payment_id)
        if payment.get("order_id") != order.gateway_order_id:
            return f"payment belongs to order {payment.get('order_id')}"
        if payment.get("amount") != order.amount:
            return f"amount {payment.get('amount')} != {order.amount}"
        if str(payment.get("currency", "")).upper() != order.currency:
            return f"currency {payment.get('currency')} != {order.currency}"
        if payment.get("status") not in SETTLED_PAYMENT_STATES:
            return f"status {payment.get('status')}"
        return None

    def handle_webhook_event(self, raw_body: bytes, signature: Optional[str], event_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Verify and apply one gateway webhook delivery.

        ``raw_body`` must be the exact request bytes. Returns
        ``{"received": True, "event": ..., "action": ...}`` for every accepted
        event, handled or not. Raises SignatureInvalid before touching any
        order, ValidationError for an unparseable body, and
        ConflictingPaymentId / InvalidTransition for integrity anomalies
        (already flagged on the order and safe to acknowledge).
        """
        if isinstance(raw_body, str):
            raw_body = raw_body.encode("utf-8")
        if not signature:
            logger.warning("[SECURITY] Webhook rejected: missing signature")
            raise SignatureInvalid("Missing webhook signature")
        if not self.gateway.verify_webhook_signature(raw_body, signature, self.config.RAZORPAY_WEBHOOK_SECRET):
            logger.warning("[SECURITY] Webhook rejected: signature mismatch")
            raise SignatureInvalid("Invalid webhook signature")

        event = self._parse_event(raw_body)
        event_type = event["event"]
        event_id = event_id or _text(event.get("event_id")) or _text(event.get("id"))
        logger.info(f"Webhook received: {event_type} (event_id: {event_id})")

        if event_id and self.store.has_processed_event(event_id):
            logger.info(f"Duplicate webhook event ignored: {event_id}")
            return {"received": True, "event": event_type, "action": "duplicate_event"}

        payload = event.get("payload") if isinstance(event.get("payload"), dict) else {}
        try:
            action = self._dispatch(event_type, payload)
        except PaymentError as e:
            if e.acknowledge_webhook and event_id:
                self.store.mark_event_processed(event_id, event_type)
            raise

        if event_id:
            self.store.mark_event_processed(event_id, event_type)
        return {"received": True, "event": event_type, "action": action}

    def _parse_event(self, raw_body: bytes) -> Dict[str, Any]:
        try:
            event = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error(f"Webhook JSON parse error: {e}")
            raise ValidationError("Invalid JSON payload")
        if not isinstance(event, dict) or not isinstance(event.get("event"), str) or not event["event"]:
            raise ValidationError("Webhook payload has no event type")
        return event

    def _dispatch(self, event_type: str, payload: Dict[str, Any]) -> str:
        if event_type in SUCCESS_EVENTS:
            gateway_order_id, payment_id, _, _ = _payment_details(payload)
            order = self._order_for_event(event_type, gateway_order_id)
            if order is None:
                return "order_not_found"
            if not payment_id:
                raise ValidationError(f"{event_type} event carries no payment id")
            _, action = self._mark_paid(order, payment_id, AttemptSource.WEBHOOK)
            return action

        if event_type == FAILURE_EVENT:
            gateway_order_id, payment_id, error_code, error_description = _payment_details(payload)
            order = self._order_for_event(event_type, gateway_order_id)
            if order is None:
                return "order_not_found"
            return self._mark_failed(order, payment_id, error_code, error_description)

        if event_type == REFUND_EVENT:
            gateway_order_id, payment_id, refund_id, amount = _refund_details(payload)
            order = self._order_for_event(event_type, gateway_order_id, payment_id)
            if order is None:
                return "order_not_found"
            if not refund_id:
                raise ValidationError("refund.created event carries no refund id")
            return self._mark_refunded(order, refund_id, amount)

        logger.warning(f"Unhandled webhook event: {event_type}")
        return "ignored"

    def _order_for_event(self, event_type: str, gateway_order_id: Optional[str], payment_id: Optional[str] = None) -> Optional[Order]:
        order = None
        if gateway_order_id:
            order = self.store.get_by_gateway_order_id(gateway_order_id)
        if order is None and payment_id:
            order = self.store.get_by_gateway_payment_id(payment_id)
        if order is None:
            logger.error(f"No matching order found for {event_type}: order={gateway_order_id} payment={payment_id}")
        return order

    def _mark_paid(self, order: Order, payment_id: str, source: AttemptSource) -> Tuple[Order, str]:
        for _ in range(MAX_TRANSITION_ATTEMPTS):
            if order.status in (OrderStatus.PAID, OrderStatus.REFUNDED):
                if order.gateway_payment_id == payment_id:
                    logger.info(f"Order {order.gateway_order_id} already {order.status.value} by {payment_id}; no-op")
                    return order, "already_paid"
                reason = (
                    f"{source.value} reported payment {payment_id} but order is "
                    f"{order.status.value} by {order.gateway_payment_id}"
                )
                self._flag(order, reason)
                raise ConflictingPaymentId(detail=reason)

            # created, or payment_failed being retried with a new attempt
            now = datetime.utcnow()
            updated = self.store.transition(
                order.id,
                expected=[order.status],
                values={
                    "status": OrderStatus.PAID,
                    "payment_status": PaymentStatus.COMPLETED,
                    "gateway_payment_id": payment_id,
                    "paid_at": now,
                },
                attempt=PaymentAttempt(
                    order_id=order.id,
                    gateway_payment_id=payment_id,
                    outcome=AttemptOutcome.COMPLETED,
                    source=source,
                ),
            )
            if updated is not None:
                self._audit("payment_completed", updated, payment_id=payment_id, source=source.value)
                return updated, "paid"
            order = self._reload(order)
        raise StoreError(detail=f"Order {order.gateway_order_id} kept changing while marking paid")

    def _mark_failed(self, order: Order, payment_id: Optional[str], error_code: Optional[str], error_description: Optional[str]) -> str:
        for _ in range(MAX_TRANSITION_ATTEMPTS):
            if order.status in (OrderStatus.PAID, OrderStatus.REFUNDED):
                # Failure delivered after success is stale and must not downgrade
                logger.info(
                    f"Stale payment.failed for {order.status.value} order {order.gateway_order_id} "
                    f"(payment {payment_id}) ignored"
                )
                return "stale_ignored"

            attempt = None
            if payment_id:
                attempt = PaymentAttempt(
                    order_id=order.id,
                    gateway_payment_id=payment_id,
                    outcome=AttemptOutcome.FAILED,
                    source=AttemptSource.WEBHOOK,
                    error_code=error_code,
                    error_description=error_description,
                )

            if order.status == OrderStatus.CREATED:
                values = {
                    "status": OrderStatus.PAYMENT_FAILED,
                    "payment_status": PaymentStatus.FAILED,
                    "failure_code": error_code,
                    "failure_reason": error_description,
                    "failed_at": datetime.utcnow(),
                }
                if payment_id:
                    values["gateway_payment_id"] = payment_id
                updated = self.store.transition(order.id, expected=[OrderStatus.CREATED], values=values, attempt=attempt)
                if updated is not None:
                    logger.warning(
                        f"Payment failed for order {order.gateway_order_id}: "
                        f"code={error_code} description={error_description}"
                    )
                    self._audit("payment_failed", updated, payment_id=payment_id, error_code=error_code)
                    return "payment_failed"
                order = self._reload(order)
                continue

            # Already payment_failed: a repeat delivery, or another failed retry
            if not payment_id or self._attempt_recorded(order, payment_id):
                logger.info(f"Duplicate payment.failed for order {order.gateway_order_id} ignored")
                return "already_failed"
            updated = self.store.transition(
                order.id,
                expected=[OrderStatus.PAYMENT_FAILED],
                values={"gateway_payment_id": payment_id},
                attempt=attempt,
            )
            if updated is not None:
                self._audit("payment_retry_failed", updated, payment_id=payment_id, error_code=error_code)
                return "failure_recorded"
            order = self._reload(order)
        raise StoreError(detail=f"Order {order.gateway_order_id} kept changing while marking failed")

    def _mark_refunded(self, order: Order, refund_id: str, amount: Optional[int]) -> str:
        if amount is None:
            logger.warning(f"Refund {refund_id} for {order.gateway_order_id} carries no amount; assuming full refund")
            amount = order.amount
        if amount > order.amount:
            reason = f"refund {refund_id} of {amount} exceeds order amount {order.amount}"
            self._flag(order, reason)
            raise InvalidTransition(detail=reason)

        for _ in range(MAX_TRANSITION_ATTEMPTS):
            if order.status == OrderStatus.REFUNDED and order.refund_id == refund_id:
                logger.info(f"Refund {refund_id} already applied to order {order.gateway_order_id}")
                return "already_refunded"
            if order.status != OrderStatus.PAID:
                reason = f"refund {refund_id} received for {order.status.value} order"
                self._flag(order, reason)
                raise InvalidTransition(detail=reason)

            updated = self.store.transition(
                order.id,
                expected=[OrderStatus.PAID],
                values={
                    "status": OrderStatus.REFUNDED,
                    "refund_id": refund_id,
                    "refund_amount": amount,
                    "refunded_at": datetime.utcnow(),
                },
            )
            if updated is not None:
                self._audit("refund_processed", updated, refund_id=refund_id, amount=amount)
                return "refunded"
            order = self._reload(order)
        raise StoreError(detail=f"Order {order.gateway_order_id} kept changing while refunding")

    def _attempt_recorded(self, order: Order, payment_id: str) -> bool:
        if order.gateway_payment_id == payment_id:
            return True
        return any(a.gateway_payment_id == payment_id for a in self.store.list_attempts(order.id))

    def _reload(self, order: Order) -> Order:
        fresh = self.store.get(order.id)
        if fresh is None:
            raise OrderNotFound(detail=f"Order {order.gateway_order_id} disappeared during update")
        return fresh

    def _flag(self, order: Order, reason: str) -> None:
        logger.error(f"[PAYMENT_ANOMALY] order={order.gateway_order_id}: {reason}")
        self.store.flag_for_review(order.id, reason)

    def _audit(self, action: str, order: Order, **metadata) -> None:
        logger.info(f"[PAYMENT_AUDIT] {action} | order={order.gateway_order_id} | status={order.status.value} | {metadata}")

    def get_order(self, gateway_order_id: str) -> Dict[str, Any]:
        order = self.store.get_by_gateway_order_id(gateway_order_id)
        if order is None:
            raise OrderNotFound(detail=f"No order for gateway order {gateway_order_id}")
        return {
            "gatewayOrderId": order.gateway_order_id,
            "amount": order.amount,
            "currency": order.currency,
            "status": order.status.value,
            "paymentStatus": order.payment_status.value,
            "gatewayPaymentId": order.gateway_payment_id,
            "failureCode": order.failure_code,
            "failureReason": order.failure_reason,
            "refund": order.refund,
            "createdAt": order.created_at.isoformat(),
            "paidAt": order.paid_at.isoformat() if order.paid_at else None,
            "failedAt": order.failed_at.isoformat() if order.failed_at else None,
            "refundedAt": order.refunded_at.isoformat() if order.refunded_at else None,
            "attempts": [
                {
                    "paymentId": a.gateway_payment_id,
                    "outcome": a.outcome.value,
                    "source": a.source.value,
                    "errorCode": a.error_code,
                    "createdAt": a.created_at.isoformat(),
                }
                for a in self.store.list_attempts(order.id)
            ],
        }


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _entity(payload: Dict[str, Any], key: str) -> Optional[Dict[str, Any]]:
    # Razorpay nests entities as payload[key]["entity"]
    wrapper = payload.get(key)
    if isinstance(wrapper, dict) and isinstance(wrapper.get("entity"), dict):
        return wrapper["entity"]
    return None


def _payment_details(payload: Dict[str, Any]) -> Tuple[Optional[str], Optional[str], Optional[str], Optional[str]]:
    """(gateway order id, payment id, error code, error description) from either payload shape."""
    entity = _entity(payload, "payment")
    if entity is not None:
        payment_id = _text(entity.get("id"))
    else:
        # Flat shape: {"order_id", "payment_id", "error_code", "error_description"}
        entity = payload
        payment_id = _text(entity.get("payment_id"))
    return (
        _text(entity.get("order_id")),
        payment_id,
        _text(entity.get("error_code")),
        _text(entity.get("error_description")),
    )


def _refund_details(payload: Dict[str, Any]) -> Tuple[Optional[str], Optional[str], Optional[str], Optional[int]]:
    """(gateway order id, payment id, refund id, amount in minor units) from either payload shape."""
    refund = _entity(payload, "refund")
    payment = _entity(payload, "payment") or {}
    if refund is not None:
        refund_id = _text(refund.get("id"))
        payment_id = _text(refund.get("payment_id")) or _text(payment.get("id"))
        gateway_order_id = _text(payment.get("order_id"))
        amount = refund.get("amount")
    else:
        refund_id = _text(payload.get("refund_id"))
        payment_id = _text(payload.get("payment_id"))
        gateway_order_id = _text(payload.get("order_id"))
        amount = payload.get("amount")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        amount = None
    return gateway_order_id, payment_id, refund_id, amount
