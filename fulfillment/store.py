"""
Order persistence.

Every state change is a single-row conditional UPDATE guarded by the state
the caller expects the row to be in. The row count tells us whether we won;
when we did not, the row is re-read to work out why.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy import or_, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import selectinload

from fulfillment.exceptions import InvalidState, NotFound, StoreUnavailable
from fulfillment.models import Order, OrderItem, OrderState, utcnow

logger = structlog.get_logger(__name__)


class OrderStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    @contextmanager
    def _session(self):
        # Loaded orders outlive the session, so nothing is expired on commit
        db = self._session_factory(expire_on_commit=False)
        try:
            yield db
        except OperationalError as e:
            db.rollback()
            logger.error("order_store_unavailable", error_message=str(e.orig))
            raise StoreUnavailable("Order database is unavailable") from e
        finally:
            db.close()

    def _conditional_update(self, order_id: str, *conditions, **values) -> bool:
        with self._session() as db:
            result = db.execute(
                update(Order).where(Order.id == order_id, *conditions).values(**values)
            )
            db.commit()
            return result.rowcount == 1

    def get(self, order_id: str) -> Order:
        with self._session() as db:
            order = (
                db.query(Order)
                .options(selectinload(Order.items).selectinload(OrderItem.product))
                .filter_by(id=order_id)
                .first()
            )
        if order is None:
            raise NotFound(f"Order {order_id} not found", order_id=order_id)
        return order

    def find_by_intent(self, intent_id: str) -> Optional[Order]:
        with self._session() as db:
            return db.query(Order).filter_by(payment_intent_id=intent_id).first()

    def find_outstanding(self, store_id: str) -> List[Order]:
        with self._session() as db:
            return (
                db.query(Order)
                .options(selectinload(Order.items).selectinload(OrderItem.product))
                .filter_by(store_id=store_id, is_paid=True, has_been_dispatched=False)
                .order_by(Order.created_at, Order.id)
                .all()
            )

    def attach_intent(self, order_id: str, intent_id: str, reader_id: Optional[str]) -> None:
        attached = self._conditional_update(
            order_id,
            Order.status == OrderState.PENDING_PAYMENT.value,
            payment_intent_id=intent_id,
            reader_id=reader_id,
        )
        if not attached:
            order = self.get(order_id)
            raise InvalidState(
                f"Order {order_id} is {order.status}; a payment can only be held on a pending order",
                order_id=order_id,
            )

    def claim(self, order_id: str, stale_before: Optional[datetime] = None, intent_id: Optional[str] = None) -> bool:
        """Move a pending order to processing. False when someone else holds it.

        A processing claim older than ``stale_before`` is taken over; without
        it, only pending orders can be claimed. ``intent_id`` is recorded on
        the order so the processor's webhook can find it, and the claim fails
        if the order is already held by a different intent.
        """
        claimable = Order.status == OrderState.PENDING_PAYMENT.value
        if stale_before is not None:
            claimable = or_(
                claimable,
                (Order.status == OrderState.PROCESSING.value) & (Order.claimed_at < stale_before),
            )
        conditions = [claimable]
        values = {"status": OrderState.PROCESSING.value, "claimed_at": utcnow()}
        if intent_id:
            conditions.append(or_(Order.payment_intent_id.is_(None), Order.payment_intent_id == intent_id))
            values["payment_intent_id"] = intent_id
        return self._conditional_update(order_id, *conditions, **values)

    def release(self, order_id: str, payment_intent_id: Optional[str]) -> None:
        """Hand a claimed order back as pending, holding ``payment_intent_id``."""
        self._conditional_update(
            order_id,
            Order.status == OrderState.PROCESSING.value,
            status=OrderState.PENDING_PAYMENT.value,
            claimed_at=None,
            payment_intent_id=payment_intent_id,
        )

    def mark_paid(self, order_id: str, payment_intent_id: str) -> Order:
        paid = self._conditional_update(
            order_id,
            Order.status.in_([OrderState.PENDING_PAYMENT.value, OrderState.PROCESSING.value]),
            status=OrderState.CAPTURED.value,
            is_paid=True,
            payment_intent_id=payment_intent_id,
            claimed_at=None,
        )
        order = self.get(order_id)
        if paid:
            logger.info("order_marked_paid", order_id=order_id, intent_id=payment_intent_id)
            return order
        if order.is_paid and order.payment_intent_id == payment_intent_id:
            return order
        raise InvalidState(
            f"Order {order_id} is {order.status} and cannot be paid with {payment_intent_id}",
            order_id=order_id,
        )

    def mark_canceled(self, order_id: str) -> Order:
        canceled = self._conditional_update(
            order_id,
            Order.status.in_([OrderState.PENDING_PAYMENT.value, OrderState.PROCESSING.value]),
            status=OrderState.CANCELED.value,
            claimed_at=None,
        )
        order = self.get(order_id)
        if canceled or order.state is OrderState.CANCELED:
            return order
        raise InvalidState(f"Order {order_id} is {order.status} and cannot be canceled", order_id=order_id)

    def mark_dispatched(self, order_id: str) -> Order:
        dispatched = self._conditional_update(
            order_id,
            Order.is_paid.is_(True),
            Order.status == OrderState.CAPTURED.value,
            status=OrderState.DISPATCHED.value,
            has_been_dispatched=True,
        )
        order = self.get(order_id)
        if dispatched:
            logger.info("order_marked_dispatched", order_id=order_id)
            return order
        if order.state is OrderState.DISPATCHED:
            return order
        if not order.is_paid:
            raise InvalidState(f"Order {order_id} has not been paid", order_id=order_id)
        raise InvalidState(f"Order {order_id} is {order.status} and cannot be dispatched", order_id=order_id)
