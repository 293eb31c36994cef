"""
Order fulfillment state machine.

    pending_payment --capture--> captured --dispatch--> dispatched
          |
          +--cancel--> canceled

The processor's payment intent is the record of truth for money; the order
row follows it. Concurrent callers on one order are serialized by the
store's conditional claim, never by a lock held in this process.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

import structlog
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from fulfillment.exceptions import FulfillmentError, InvalidState, NoActiveAction, ReaderBusy, StoreUnavailable
from fulfillment.gateway import IntentStatus, PaymentGateway, PaymentIntent
from fulfillment.models import Order, OrderState, utcnow
from fulfillment.store import OrderStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class FulfillmentResult:
    order_id: str
    state: OrderState
    is_paid: bool
    has_been_dispatched: bool
    payment_intent_id: Optional[str] = None

    @classmethod
    def from_order(cls, order: Order) -> "FulfillmentResult":
        return cls(
            order_id=order.id,
            state=order.state,
            is_paid=order.is_paid,
            has_been_dispatched=order.has_been_dispatched,
            payment_intent_id=order.payment_intent_id,
        )


class FulfillmentWorkflow:
    def __init__(
        self,
        store: OrderStore,
        gateway: PaymentGateway,
        mark_paid_attempts: int = 3,
        claim_timeout: int = 120,
        mark_paid_wait=None,
    ):
        self.store = store
        self.gateway = gateway
        self.mark_paid_attempts = mark_paid_attempts
        self.claim_timeout = timedelta(seconds=claim_timeout)
        self.mark_paid_wait = mark_paid_wait or wait_exponential(multiplier=0.5, min=0.5, max=4)

    def list_outstanding(self, store_id: str) -> List[Order]:
        return self.store.find_outstanding(store_id)

    def hold_payment(self, order_id: str, reader_id: str, amount: int, currency: str) -> FulfillmentResult:
        """Put the order's amount on a terminal reader and remember which intent holds it.

        A previous hold on the same order is canceled first, so an order never
        has two live intents. If that earlier intent was already paid, the
        payment is recorded and the new hold is refused.
        """
        order = self.store.get(order_id)
        if order.state is not OrderState.PENDING_PAYMENT:
            raise InvalidState(f"Order {order_id} is {order.status}; nothing to hold", order_id=order_id)

        if order.payment_intent_id:
            previous = self.gateway.cancel_intent(order.payment_intent_id, order_id)
            if previous.status is IntentStatus.CAPTURED:
                self._mark_paid(order_id, previous.id)
                raise InvalidState(f"Order {order_id} was already paid with {previous.id}", order_id=order_id)
            logger.info("previous_hold_canceled", order_id=order_id, intent_id=previous.id)

        intent = self.gateway.create_terminal_intent(
            amount, currency, reader_id, metadata={"order_id": order_id, "store_id": order.store_id}
        )
        try:
            self.store.attach_intent(order_id, intent.id, reader_id)
        except FulfillmentError:
            self.gateway.cancel_intent(intent.id, order_id)
            raise
        return FulfillmentResult.from_order(self.store.get(order_id))

    def _claim(self, order: Order, intent_id: Optional[str] = None, take_over_stale: bool = True) -> Optional[Order]:
        """Claim a pending order. Returns the order when it is already paid with ``intent_id``.

        Only capture takes over a stale claim: the claim may belong to a
        capture that went through at the processor but was never recorded.
        """
        if order.is_paid and intent_id and order.payment_intent_id == intent_id:
            return order
        if order.state not in (OrderState.PENDING_PAYMENT, OrderState.PROCESSING):
            raise InvalidState(f"Order {order.id} is {order.status}", order_id=order.id)

        stale_before = utcnow() - self.claim_timeout if take_over_stale else None
        if self.store.claim(order.id, stale_before=stale_before, intent_id=intent_id):
            return None

        order = self.store.get(order.id)
        if order.is_paid and intent_id and order.payment_intent_id == intent_id:
            return order
        if order.state is OrderState.PROCESSING:
            raise ReaderBusy(f"Order {order.id} is already being processed", order_id=order.id)
        raise InvalidState(f"Order {order.id} is {order.status} and cannot be claimed", order_id=order.id)

    def start_capture(self, order_id: str, intent_id: str) -> FulfillmentResult:
        order = self.store.get(order_id)
        if order.payment_intent_id and order.payment_intent_id != intent_id:
            raise InvalidState(
                f"Order {order_id} is held by payment {order.payment_intent_id}, not {intent_id}",
                order_id=order_id,
            )

        existing = self._claim(order, intent_id)
        if existing is not None:
            logger.info("capture_already_recorded", order_id=order_id, intent_id=intent_id)
            return FulfillmentResult.from_order(existing)

        try:
            intent = self.gateway.capture_intent(intent_id, order_id)
        except FulfillmentError as e:
            # A transient failure may still have captured; the order keeps the intent for the webhook
            self.store.release(order_id, intent_id if e.transient else order.payment_intent_id)
            raise

        order = self._mark_paid(order_id, intent.id)
        logger.info("order_captured", order_id=order_id, intent_id=intent.id)
        return FulfillmentResult.from_order(order)

    def _mark_paid(self, order_id: str, intent_id: str) -> Order:
        # Capture already happened; only the bookkeeping is retried
        for attempt in Retrying(
            retry=retry_if_exception_type(StoreUnavailable),
            stop=stop_after_attempt(self.mark_paid_attempts),
            wait=self.mark_paid_wait,
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "mark_paid_retry",
                        order_id=order_id,
                        intent_id=intent_id,
                        attempt=attempt.retry_state.attempt_number,
                    )
                return self.store.mark_paid(order_id, intent_id)

    def _cancel_at_processor(self, order: Order, reader_id: str) -> Optional[PaymentIntent]:
        try:
            return self.gateway.cancel_reader_action(reader_id, order_id=order.id, intent_id=order.payment_intent_id)
        except NoActiveAction:
            logger.info("cancel_without_active_action", order_id=order.id, reader_id=reader_id)
        if order.payment_intent_id:
            # The reader is done with it but the hold may still be live
            return self.gateway.cancel_intent(order.payment_intent_id, order.id)
        return None

    def cancel(self, order_id: str, reader_id: str) -> FulfillmentResult:
        order = self.store.get(order_id)
        if order.state is OrderState.CANCELED:
            return FulfillmentResult.from_order(order)
        if order.reader_id and order.reader_id != reader_id:
            raise InvalidState(
                f"Order {order_id} is held on reader {order.reader_id}, not {reader_id}",
                order_id=order_id,
            )

        self._claim(order, take_over_stale=False)
        try:
            intent = self._cancel_at_processor(order, reader_id)
        except FulfillmentError:
            self.store.release(order_id, order.payment_intent_id)
            raise

        if intent is not None and intent.status is IntentStatus.CAPTURED:
            # The customer finished paying before the cancel reached the reader
            self._mark_paid(order_id, intent.id)
            raise InvalidState(
                f"Payment {intent.id} was captured before it could be canceled",
                order_id=order_id,
            )

        order = self.store.mark_canceled(order_id)
        logger.info("order_canceled", order_id=order_id, reader_id=reader_id)
        return FulfillmentResult.from_order(order)

    def dispatch(self, order_id: str) -> FulfillmentResult:
        return FulfillmentResult.from_order(self.store.mark_dispatched(order_id))

    def record_processor_capture(self, intent_id: str) -> Optional[FulfillmentResult]:
        """Webhook path: the processor reports an intent as succeeded."""
        order = self.store.find_by_intent(intent_id)
        if order is None:
            logger.warning("captured_intent_without_order", intent_id=intent_id)
            return None
        return FulfillmentResult.from_order(self._mark_paid(order.id, intent_id))
