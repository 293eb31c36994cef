"""
Payment gateway client.

``PaymentGateway`` is the contract the workflow talks to; ``StripeGateway``
implements it on top of the Stripe SDK (PaymentIntents and Terminal).

Every POST carries an idempotency key derived from the identifier it acts
on, so a retry at the network layer can never capture or cancel twice.
Each reader runs at most one action at a time; a second call on the same
reader while one is outstanding raises ``ReaderBusy``.

Intents are tagged with ``metadata.order_id`` when they are created. When a
caller names the order it is acting for, an intent tagged for another order
is refused with ``InvalidState`` before anything is captured or canceled.

Stripe resources are read by attribute only; recent SDK releases no longer
make them dicts.
"""
import abc
import enum
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

import stripe
import structlog

from fulfillment.config import Settings
from fulfillment.exceptions import (
    GatewayError,
    InvalidState,
    NoActiveAction,
    NotCapturable,
    ReaderBusy,
    UpstreamUnavailable,
)

logger = structlog.get_logger(__name__)


class IntentStatus(str, enum.Enum):
    REQUIRES_CAPTURE = "requires_capture"
    CAPTURED = "captured"
    CANCELED = "canceled"
    FAILED = "failed"


# Stripe status -> our status. Anything not listed has not reached a capturable hold.
_STRIPE_STATUSES = {
    "requires_capture": IntentStatus.REQUIRES_CAPTURE,
    "succeeded": IntentStatus.CAPTURED,
    "canceled": IntentStatus.CANCELED,
}


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    amount: int
    status: IntentStatus
    reader_id: Optional[str] = None
    order_id: Optional[str] = None


@dataclass(frozen=True)
class Reader:
    id: str
    label: Optional[str] = None
    status: Optional[str] = None
    device_type: Optional[str] = None
    location: Optional[str] = None


class PaymentGateway(abc.ABC):
    """Operations the fulfillment workflow needs from the payment processor."""

    @abc.abstractmethod
    def create_connection_token(self, location: Optional[str] = None) -> str:
        ...

    @abc.abstractmethod
    def list_readers(self, location: Optional[str] = None):
        ...

    @abc.abstractmethod
    def capture_intent(self, intent_id: str, order_id: Optional[str] = None) -> PaymentIntent:
        ...

    @abc.abstractmethod
    def cancel_reader_action(
        self,
        reader_id: str,
        order_id: Optional[str] = None,
        intent_id: Optional[str] = None,
    ) -> PaymentIntent:
        """Cancel what the reader is doing and the intent it was processing.

        With ``intent_id`` the reader must be processing exactly that intent.
        Without it, ``order_id`` must match the intent's order tag.
        """

    @abc.abstractmethod
    def cancel_intent(self, intent_id: str, order_id: Optional[str] = None) -> PaymentIntent:
        """Cancel an intent that is no longer on a reader. Captured intents are returned as they are."""

    @abc.abstractmethod
    def create_terminal_intent(
        self,
        amount: int,
        currency: str,
        reader_id: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> PaymentIntent:
        ...


class ReaderPages:
    """Lazy view over the account's readers. Each iteration re-queries Stripe."""

    def __init__(self, gateway: "StripeGateway", location: Optional[str] = None, page_size: int = 100):
        self._gateway = gateway
        self._location = location
        self._page_size = page_size

    def __iter__(self) -> Iterator[Reader]:
        params: Dict[str, Any] = {"limit": self._page_size}
        if self._location:
            params["location"] = self._location
        try:
            page = stripe.terminal.Reader.list(**self._gateway._request_options(), **params)
            for reader in page.auto_paging_iter():
                yield to_reader(reader)
        except stripe.StripeError as e:
            raise self._gateway._translate(e, "list_readers")


def _metadata(intent: Any, key: str) -> Optional[str]:
    return getattr(getattr(intent, "metadata", None), key, None)


def to_intent(intent: Any, reader_id: Optional[str] = None) -> PaymentIntent:
    return PaymentIntent(
        id=intent.id,
        amount=getattr(intent, "amount", None) or 0,
        status=_STRIPE_STATUSES.get(intent.status, IntentStatus.FAILED),
        reader_id=reader_id or _metadata(intent, "reader_id"),
        order_id=_metadata(intent, "order_id"),
    )


def to_reader(reader: Any) -> Reader:
    return Reader(
        id=reader.id,
        label=getattr(reader, "label", None),
        status=getattr(reader, "status", None),
        device_type=getattr(reader, "device_type", None),
        location=getattr(reader, "location", None),
    )


def check_owner(intent_id: str, tagged_order: Optional[str], order_id: Optional[str], strict: bool = False) -> None:
    """Refuse an intent tagged for another order. ``strict`` also refuses untagged intents."""
    if order_id is None or tagged_order == order_id or (tagged_order is None and not strict):
        return
    raise InvalidState(
        f"Payment intent {intent_id} does not belong to order {order_id}",
        intent_id=intent_id,
        order_id=order_id,
    )


class StripeGateway(PaymentGateway):
    def __init__(self, settings: Settings):
        if not settings.stripe_secret_key:
            raise RuntimeError("STRIPE_SECRET_KEY is not set. Check your .env file.")
        self._api_key = settings.stripe_secret_key
        self._api_version = settings.stripe_api_version
        self._busy_readers = set()
        self._busy_lock = threading.Lock()

    def _request_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {"api_key": self._api_key}
        if self._api_version:
            options["stripe_version"] = self._api_version
        return options

    @contextmanager
    def _reader_action(self, reader_id: str):
        with self._busy_lock:
            if reader_id in self._busy_readers:
                raise ReaderBusy(f"Reader {reader_id} already has an action in progress", reader_id=reader_id)
            self._busy_readers.add(reader_id)
        try:
            yield
        finally:
            with self._busy_lock:
                self._busy_readers.discard(reader_id)

    def _translate(self, error: stripe.StripeError, operation: str, **context: Any) -> Exception:
        logger.error(
            "stripe_api_error",
            operation=operation,
            error_type=type(error).__name__,
            error_code=getattr(error, "code", None),
            error_message=str(error),
            **context,
        )
        if isinstance(error, (stripe.APIConnectionError, stripe.APIError, stripe.RateLimitError)):
            return UpstreamUnavailable(f"Payment processor unavailable during {operation}", **context)
        return GatewayError(str(error), **context)

    def create_connection_token(self, location: Optional[str] = None) -> str:
        params: Dict[str, Any] = {"idempotency_key": f"connection-token-{uuid.uuid4()}"}
        if location:
            params["location"] = location
        try:
            token = stripe.terminal.ConnectionToken.create(**self._request_options(), **params)
        except stripe.StripeError as e:
            raise self._translate(e, "create_connection_token")
        return token.secret

    def list_readers(self, location: Optional[str] = None) -> ReaderPages:
        return ReaderPages(self, location=location)


    def _retrieve_intent(self, intent_id: str) -> Any:
        try:
            return stripe.PaymentIntent.retrieve(intent_id, **self._request_options())
        except stripe.StripeError as e:
            raise self._translate(e, "retrieve_payment_intent", intent_id=intent_id)

    def _cancel_intent(self, intent: Any) -> Any:
        if intent.status in ("canceled", "succeeded"):
            return intent
        try:
            return stripe.PaymentIntent.cancel(
                intent.id,
                idempotency_key=f"cancel-{intent.id}",
                **self._request_options(),
            )
        except stripe.StripeError as e:
            raise self._translate(e, "cancel_payment_intent", intent_id=intent.id)

    def capture_intent(self, intent_id: str, order_id: Optional[str] = None) -> PaymentIntent:
        intent = self._retrieve_intent(intent_id)
        check_owner(intent_id, _metadata(intent, "order_id"), order_id)
        reader_id = _metadata(intent, "reader_id")

        with self._reader_action(reader_id or intent_id):
            if intent.status == "succeeded":
                logger.info("payment_intent_already_captured", intent_id=intent_id)
                return to_intent(intent)
            if intent.status != "requires_capture":
                raise NotCapturable(
                    f"Payment intent {intent_id} is {intent.status} and cannot be captured",
                    intent_id=intent_id,
                )

            try:
                captured = stripe.PaymentIntent.capture(
                    intent_id,
                    idempotency_key=f"capture-{intent_id}",
                    **self._request_options(),
                )
            except stripe.InvalidRequestError as e:
                logger.warning("payment_intent_not_capturable", intent_id=intent_id, error_message=str(e))
                raise NotCapturable(str(e), intent_id=intent_id)
            except stripe.StripeError as e:
                raise self._translate(e, "capture_payment_intent", intent_id=intent_id)

        logger.info("payment_intent_captured", intent_id=intent_id, status=captured.status)
        return to_intent(captured)

    def cancel_reader_action(
        self,
        reader_id: str,
        order_id: Optional[str] = None,
        intent_id: Optional[str] = None,
    ) -> PaymentIntent:
        with self._reader_action(reader_id):
            try:
                reader = stripe.terminal.Reader.retrieve(reader_id, **self._request_options())
            except stripe.StripeError as e:
                raise self._translate(e, "retrieve_reader", reader_id=reader_id)

            action = getattr(reader, "action", None)
            if not action or getattr(action, "status", None) != "in_progress":
                raise NoActiveAction(reader_id)
            action_intent_id = getattr(getattr(action, "process_payment_intent", None), "payment_intent", None)

            if intent_id and action_intent_id != intent_id:
                raise InvalidState(
                    f"Reader {reader_id} is not processing payment {intent_id}",
                    reader_id=reader_id,
                    intent_id=intent_id,
                )
            if action_intent_id and order_id:
                intent = self._retrieve_intent(action_intent_id)
                check_owner(action_intent_id, _metadata(intent, "order_id"), order_id, strict=intent_id is None)

            try:
                stripe.terminal.Reader.cancel_action(
                    reader_id,
                    idempotency_key=f"cancel-action-{reader_id}-{action_intent_id or getattr(action, 'type', None)}",
                    **self._request_options(),
                )
            except stripe.InvalidRequestError as e:
                # Stripe refuses once the action finished between our retrieve and the cancel
                raise NoActiveAction(reader_id, str(e))
            except stripe.StripeError as e:
                raise self._translate(e, "cancel_reader_action", reader_id=reader_id)

            if not action_intent_id:
                raise NoActiveAction(reader_id, f"Reader {reader_id} was not processing a payment")

            # Re-read: the customer may have paid before the cancel landed
            intent = self._cancel_intent(self._retrieve_intent(action_intent_id))

        logger.info("reader_action_canceled", reader_id=reader_id, intent_id=action_intent_id, status=intent.status)
        return to_intent(intent, reader_id=reader_id)

    def cancel_intent(self, intent_id: str, order_id: Optional[str] = None) -> PaymentIntent:
        intent = self._retrieve_intent(intent_id)
        check_owner(intent_id, _metadata(intent, "order_id"), order_id)

        with self._reader_action(_metadata(intent, "reader_id") or intent_id):
            intent = self._cancel_intent(intent)

        logger.info("payment_intent_canceled", intent_id=intent_id, status=intent.status)
        return to_intent(intent)

    def _discard_intent(self, intent_id: str) -> None:
        # The caller is already failing; a leftover intent is only logged
        try:
            stripe.PaymentIntent.cancel(
                intent_id,
                idempotency_key=f"cancel-{intent_id}",
                **self._request_options(),
            )
        except stripe.StripeError as e:
            logger.error("orphan_payment_intent", intent_id=intent_id, error_message=str(e))

    def create_terminal_intent(
        self,
        amount: int,
        currency: str,
        reader_id: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> PaymentIntent:
        with self._reader_action(reader_id):
            try:
                intent = stripe.PaymentIntent.create(
                    amount=amount,
                    currency=currency.lower(),
                    payment_method_types=["card_present"],
                    capture_method="manual",
                    metadata={**(metadata or {}), "reader_id": reader_id},
                    idempotency_key=f"terminal-intent-{uuid.uuid4()}",
                    **self._request_options(),
                )
            except stripe.StripeError as e:
                raise self._translate(e, "create_payment_intent", reader_id=reader_id)

            try:
                stripe.terminal.Reader.process_payment_intent(
                    reader_id,
                    payment_intent=intent.id,
                    idempotency_key=f"process-{reader_id}-{intent.id}",
                    **self._request_options(),
                )
            except stripe.StripeError as e:
                error = self._translate(e, "process_payment_intent", reader_id=reader_id, intent_id=intent.id)
                self._discard_intent(intent.id)
                raise error

        logger.info("terminal_payment_started", reader_id=reader_id, intent_id=intent.id, amount=amount)
        return to_intent(intent, reader_id=reader_id)
