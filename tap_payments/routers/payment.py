import logging
from typing import Any, Dict, Optional
from fastapi import APIRouter, Request, Depends, Header
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, Field
from sqlmodel import Session

from tap_payments.core.config import Settings, get_settings
from tap_payments.core.errors import PaymentError
from tap_payments.db.session import get_session
from tap_payments.services.order_store import OrderStore
from tap_payments.services.reconciliation import ReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter()

# Fields stay loosely typed so the service, not FastAPI, decides what is invalid
class CreateOrderRequest(BaseModel):
    amount: Any = None
    currency: Any = None
    metadata: Optional[Dict[str, Any]] = None
    idempotency_key: Optional[str] = Field(
        None, validation_alias=AliasChoices("idempotencyKey", "idempotency_key")
    )

class VerifyPaymentRequest(BaseModel):
    gateway_order_id: Any = Field(None, validation_alias=AliasChoices("gatewayOrderId", "razorpay_order_id"))
    gateway_payment_id: Any = Field(None, validation_alias=AliasChoices("gatewayPaymentId", "razorpay_payment_id"))
    signature: Any = Field(None, validation_alias=AliasChoices("signature", "razorpay_signature"))

def get_gateway(request: Request):
    # Built once in the app lifespan
    return request.app.state.gateway

def get_reconciliation_service(
    session: Session = Depends(get_session),
    gateway=Depends(get_gateway),
    config: Settings = Depends(get_settings),
) -> ReconciliationService:
    return ReconciliationService(OrderStore(session), gateway, config)

@router.post("/create-order")
def create_payment_order(
    order_in: CreateOrderRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    return service.create_order(
        amount=order_in.amount,
        currency=order_in.currency,
        metadata=order_in.metadata,
        idempotency_key=order_in.idempotency_key or idempotency_key,
    )

@router.post("/verify-payment")
def verify_payment(
    payment_in: VerifyPaymentRequest,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    return service.verify_payment(
        payment_in.gateway_order_id,
        payment_in.gateway_payment_id,
        payment_in.signature,
    )

@router.post("/webhook")
async def payment_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None),
    x_razorpay_event_id: Optional[str] = Header(None),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    # Signature is computed over the exact bytes received
    body = await request.body()
    try:
        # Blocking database work stays off the event loop
        await run_in_threadpool(service.handle_webhook_event, body, x_razorpay_signature, x_razorpay_event_id)
    except PaymentError as e:
        if not e.acknowledge_webhook:
            raise
        logger.error(f"Webhook acknowledged with anomaly {e.code}: {e.detail}")
    return {"received": True}

@router.get("/orders/{gateway_order_id}")
def get_payment_order(
    gateway_order_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    return service.get_order(gateway_order_id)

def payment_error_response(exc: PaymentError, config: Settings) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response(include_detail=not config.is_production),
    )
