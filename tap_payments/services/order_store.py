import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from tap_payments.core.errors import StoreError
from tap_payments.models.order import Order, OrderStatus
from tap_payments.models.payment import PaymentAttempt, ProcessedWebhookEvent

logger = logging.getLogger(__name__)


class DuplicateOrder(Exception):
    """Raised when an insert collides with an existing unique key."""


class OrderStore:
    """
    Persistence for orders, payment attempts and the webhook event ledger.

    Status changes only go through ``transition``, which is a single
    ``UPDATE ... WHERE status IN (...)`` so concurrent writers cannot interleave.
    """

    def __init__(self, session: Session):
        self.session = session

    def get(self, order_id: int) -> Optional[Order]:
        try:
            order = self.session.get(Order, order_id)
            if order is not None:
                self.session.refresh(order)
            return order
        except SQLAlchemyError as e:
            self._fail("load order", e)

    def get_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Order]:
        try:
            return self.session.exec(
                select(Order).where(Order.gateway_order_id == gateway_order_id)
            ).first()
        except SQLAlchemyError as e:
            self._fail("look up order", e)

    def get_by_gateway_payment_id(self, gateway_payment_id: str) -> Optional[Order]:
        try:
            return self.session.exec(
                select(Order).where(Order.gateway_payment_id == gateway_payment_id)
            ).first()
        except SQLAlchemyError as e:
            self._fail("look up order", e)

    def get_by_idempotency_key(self, idempotency_key: str) -> Optional[Order]:
        try:
            return self.session.exec(
                select(Order).where(Order.idempotency_key == idempotency_key)
            ).first()
        except SQLAlchemyError as e:
            self._fail("look up order", e)

    def insert(self, order: Order) -> Order:
        try:
            self.session.add(order)
            self.session.commit()
            self.session.refresh(order)
            return order
        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateOrder(str(e.orig)) from e
        except SQLAlchemyError as e:
            self._fail("save order", e)

    def transition(
        self,
        order_id: int,
        expected: Iterable[OrderStatus],
        values: Dict[str, Any],
        attempt: Optional[PaymentAttempt] = None,
    ) -> Optional[Order]:
        """
        Compare-and-set: apply ``values`` only if the order is still in one of
        the ``expected`` states. Returns the updated order, or None when
        another writer got there first.
        """
        values = dict(values, updated_at=datetime.utcnow())
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.status.in_(list(expected)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
            if result.rowcount != 1:
                self.session.rollback()
                return None
            if attempt is not None:
                self.session.add(attempt)
            self.session.commit()
        except SQLAlchemyError as e:
            self._fail("update order", e)
        return self.get(order_id)

    def list_attempts(self, order_id: int) -> List[PaymentAttempt]:
        try:
            return list(self.session.exec(
                select(PaymentAttempt)
                .where(PaymentAttempt.order_id == order_id)
                .order_by(PaymentAttempt.id)
            ).all())
        except SQLAlchemyError as e:
            self._fail("load payment attempts", e)

    def flag_for_review(self, order_id: int, reason: str) -> None:
        # Touches only the review columns, never status
        stmt = (
            update(Order)
            .where(Order.id == order_id)
            .values(needs_review=True, review_reason=reason, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        try:
            self.session.execute(stmt)
            self.session.commit()
        except SQLAlchemyError as e:
            self._fail("flag order for review", e)

    def has_processed_event(self, event_id: str) -> bool:
        try:
            return self.session.get(ProcessedWebhookEvent, event_id) is not None
        except SQLAlchemyError as e:
            self._fail("read webhook ledger", e)

    def mark_event_processed(self, event_id: str, event_type: str) -> None:
        try:
            self.session.add(ProcessedWebhookEvent(event_id=event_id, event_type=event_type))
            self.session.commit()
        except IntegrityError:
            # A concurrent delivery of the same event already wrote the ledger row
            self.session.rollback()
            logger.info(f"Webhook event {event_id} already in ledger")
        except SQLAlchemyError as e:
            self._fail("write webhook ledger", e)

    def _fail(self, action: str, error: SQLAlchemyError):
        self.session.rollback()
        logger.error(f"Order store failed to {action}: {error}")
        raise StoreError(detail=f"Failed to {action}: {error}") from error
