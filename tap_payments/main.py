from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from tap_payments.core.config import settings, get_settings
from tap_payments.core.errors import PaymentError
from tap_payments.core.logging_config import configure_logging
from tap_payments.db.session import create_db_and_tables
from tap_payments.routers import payment
from tap_payments.services.gateway import RazorpayGateway

logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.LOG_LEVEL)
    create_db_and_tables()
    # One gateway client per process, shared by every request
    if getattr(app.state, "gateway", None) is None:
        app.state.gateway = RazorpayGateway.from_settings(settings)
    logger.info(f"{settings.PROJECT_NAME} started ({settings.ENVIRONMENT})")
    yield
    app.state.gateway = None

app = FastAPI(
    title=settings.PROJECT_NAME,
    version="1.0.0",
    lifespan=lifespan,
    description="Payment order reconciliation API for the TAP storybook store"
)

@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    config = request.app.dependency_overrides.get(get_settings, get_settings)()
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.detail}")
    return payment.payment_error_response(exc, config)

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Invalid request body", "code": "VALIDATION_ERROR"},
    )

@app.get("/")
def read_root():
    return {"message": f"Welcome to {settings.PROJECT_NAME}. Visit /docs for Swagger UI."}

app.include_router(payment.router, prefix="/api/v1/payment", tags=["payment"])

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
