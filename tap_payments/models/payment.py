from typing import Optional
from datetime import datetime
from sqlmodel import Field, SQLModel, Column
from sqlalchemy import Enum as SAEnum
from enum import Enum

class AttemptOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"

class AttemptSource(str, Enum):
    CLIENT = "client"
    WEBHOOK = "webhook"

class PaymentAttempt(SQLModel, table=True):
    """Audit trail of every gateway payment attempt applied to an order."""
    id: Optional[int] = Field(default=None, primary_key=True)

    # References
    order_id: int = Field(foreign_key="order.id", index=True)

    # Payment Gateway Info
    gateway_payment_id: str = Field(index=True)
    outcome: AttemptOutcome = Field(
        sa_column=Column(SAEnum(AttemptOutcome, values_callable=lambda x: [e.value for e in x]), nullable=False)
    )
    source: AttemptSource = Field(
        sa_column=Column(SAEnum(AttemptSource, values_callable=lambda x: [e.value for e in x]), nullable=False)
    )

    # Metadata
    error_code: Optional[str] = None  # For failed payments
    error_description: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)

class ProcessedWebhookEvent(SQLModel, table=True):
    # Razorpay sends a unique id per event in the X-Razorpay-Event-Id header
    event_id: str = Field(primary_key=True)
    event_type: str
    processed_at: datetime = Field(default_factory=datetime.utcnow)
