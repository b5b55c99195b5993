"""
pytest configuration and fixtures for the reconciliation service.

Provides:
- An in-memory SQLite database shared across sessions
- A fake payment gateway standing in for the Razorpay client
- Service, store and FastAPI client wired to both
"""
import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine
from sqlmodel.pool import StaticPool

import tap_payments.models  # noqa: F401
from tap_payments.core.config import Settings, get_settings
from tap_payments.db.session import get_session
from tap_payments.main import app
from tap_payments.routers.payment import get_gateway
from tap_payments.services.order_store import OrderStore
from tap_payments.services.reconciliation import ReconciliationService
from tests.helpers import KEY_SECRET, WEBHOOK_SECRET, FakeGateway, sign_payment


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def test_settings():
    return Settings(
        ENVIRONMENT="test",
        DATABASE_URL="sqlite://",
        RAZORPAY_KEY_ID="rzp_test_key",
        RAZORPAY_KEY_SECRET=KEY_SECRET,
        RAZORPAY_WEBHOOK_SECRET=WEBHOOK_SECRET,
    )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def store(session):
    return OrderStore(session)


@pytest.fixture
def service(store, gateway, test_settings):
    return ReconciliationService(store, gateway, test_settings)


@pytest.fixture
def paid_order(service, store):
    """An order for 50000 paise already paid by pay_123."""
    gateway_order_id = service.create_order(50000, "INR")["gatewayOrderId"]
    service.verify_payment(gateway_order_id, "pay_123", sign_payment(gateway_order_id, "pay_123"))
    return store.get_by_gateway_order_id(gateway_order_id)


@pytest.fixture
def client(session, gateway, test_settings):
    app.dependency_overrides[get_session] = lambda: session
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_settings] = lambda: test_settings
    yield TestClient(app)
    app.dependency_overrides.clear()
