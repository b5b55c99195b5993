# Import all models to register them with SQLModel
from tap_payments.models.order import Order, OrderStatus, PaymentStatus
from tap_payments.models.payment import PaymentAttempt, AttemptOutcome, AttemptSource, ProcessedWebhookEvent

__all__ = [
    "Order",
    "OrderStatus",
    "PaymentStatus",
    "PaymentAttempt",
    "AttemptOutcome",
    "AttemptSource",
    "ProcessedWebhookEvent",
]
