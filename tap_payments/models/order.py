from typing import Optional
from datetime import datetime
from sqlmodel import Field, SQLModel, Column
from sqlalchemy import JSON, Enum as SAEnum
from enum import Enum
from pydantic import computed_field

class OrderStatus(str, Enum):
    CREATED = "created"
    PAID = "paid"
    PAYMENT_FAILED = "payment_failed"
    REFUNDED = "refunded"

class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

class Order(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)

    # Gateway correlation
    gateway_order_id: str = Field(unique=True, index=True)
    receipt: str = Field(unique=True)
    idempotency_key: Optional[str] = Field(default=None, unique=True, index=True)

    # Amount in minor units (paise); never changes after creation
    amount: int
    currency: str = Field(default="INR")
    notes: dict = Field(default_factory=dict, sa_column=Column(JSON))

    # Lifecycle
    status: OrderStatus = Field(
        default=OrderStatus.CREATED,
        sa_column=Column(SAEnum(OrderStatus, values_callable=lambda x: [e.value for e in x]), nullable=False)
    )
    payment_status: PaymentStatus = Field(
        default=PaymentStatus.PENDING,
        sa_column=Column(SAEnum(PaymentStatus, values_callable=lambda x: [e.value for e in x]), nullable=False)
    )

    # Payment Gateway Info
    gateway_payment_id: Optional[str] = None
    failure_code: Optional[str] = None
    failure_reason: Optional[str] = None
    refund_id: Optional[str] = None
    refund_amount: Optional[int] = None

    # Operator review flag for integrity anomalies
    needs_review: bool = Field(default=False)
    review_reason: Optional[str] = None

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    paid_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @computed_field
    @property
    def refund(self) -> Optional[dict]:
        if not self.refund_id:
            return None
        return {
            "refund_id": self.refund_id,
            "amount_refunded": (self.refund_amount or 0) / 100,  # paise to rupees
            "refunded_at": self.refunded_at,
        }
