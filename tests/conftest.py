import os
import tempfile
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

# Settings are read once at import time, so these must be set first
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(tempfile.gettempdir(), 'fulfillment_app.db')}")
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from fulfillment.database import Base
from fulfillment.exceptions import InvalidState, NoActiveAction, NotCapturable, ReaderBusy
from fulfillment.gateway import IntentStatus, PaymentGateway, PaymentIntent, Reader, check_owner
from fulfillment.models import Color, Order, OrderItem, OrderState, Product, Store
from fulfillment.store import OrderStore
from fulfillment.workflow import FulfillmentWorkflow
from tenacity import wait_none


class FakeGateway(PaymentGateway):
    """In-memory payment processor with the same contract as StripeGateway."""

    def __init__(self):
        self.intents = {}
        self.reader_actions = {}
        self.readers = [Reader(id="tmr_1", label="Till 1", status="online")]
        self.capture_calls = []
        self.capture_started = threading.Event()
        self.release_capture = threading.Event()
        self.release_capture.set()
        self._busy = set()
        self._lock = threading.Lock()

    def add_intent(self, intent_id, amount=1000, status=IntentStatus.REQUIRES_CAPTURE, reader_id=None, order_id=None):
        self.intents[intent_id] = PaymentIntent(
            id=intent_id, amount=amount, status=status, reader_id=reader_id, order_id=order_id
        )
        if reader_id:
            self.reader_actions[reader_id] = intent_id
        return self.intents[intent_id]

    def _claim(self, key):
        with self._lock:
            if key in self._busy:
                raise ReaderBusy(f"Reader {key} busy")
            self._busy.add(key)

    def _free(self, key):
        with self._lock:
            self._busy.discard(key)

    def _cancel(self, intent_id):
        intent = self.intents[intent_id]
        if intent.status is IntentStatus.REQUIRES_CAPTURE:
            intent = self.intents[intent_id] = replace(intent, status=IntentStatus.CANCELED)
        return intent

    def create_connection_token(self, location=None):
        return "pst_test_secret"

    def list_readers(self, location=None):
        return [r for r in self.readers if location is None or r.location == location]

    def capture_intent(self, intent_id, order_id=None):
        intent = self.intents[intent_id]
        check_owner(intent_id, intent.order_id, order_id)
        key = intent.reader_id or intent_id
        self._claim(key)
        try:
            self.capture_calls.append(intent_id)
            self.capture_started.set()
            self.release_capture.wait(5)
            if intent.status is IntentStatus.CAPTURED:
                return intent
            if intent.status is not IntentStatus.REQUIRES_CAPTURE:
                raise NotCapturable(f"{intent_id} is {intent.status.value}")
            self.intents[intent_id] = replace(intent, status=IntentStatus.CAPTURED)
            return self.intents[intent_id]
        finally:
            self._free(key)

    def cancel_reader_action(self, reader_id, order_id=None, intent_id=None):
        self._claim(reader_id)
        try:
            action_intent_id = self.reader_actions.get(reader_id)
            if action_intent_id is None:
                raise NoActiveAction(reader_id)
            if intent_id and action_intent_id != intent_id:
                raise InvalidState(f"Reader {reader_id} is not processing {intent_id}")
            check_owner(action_intent_id, self.intents[action_intent_id].order_id, order_id, strict=intent_id is None)
            del self.reader_actions[reader_id]
            return self._cancel(action_intent_id)
        finally:
            self._free(reader_id)

    def cancel_intent(self, intent_id, order_id=None):
        check_owner(intent_id, self.intents[intent_id].order_id, order_id)
        for reader_id, pending in list(self.reader_actions.items()):
            if pending == intent_id:
                del self.reader_actions[reader_id]
        return self._cancel(intent_id)

    def create_terminal_intent(self, amount, currency, reader_id, metadata=None):
        self._claim(reader_id)
        try:
            intent_id = f"pi_fake_{len(self.intents) + 1}"
            order_id = (metadata or {}).get("order_id")
            return self.add_intent(intent_id, amount=amount, reader_id=reader_id, order_id=order_id)
        finally:
            self._free(reader_id)


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'orders.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def order_store(session_factory):
    return OrderStore(session_factory)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def workflow(order_store, gateway):
    return FulfillmentWorkflow(order_store, gateway, mark_paid_attempts=3, mark_paid_wait=wait_none())


@pytest.fixture
def make_order(session_factory):
    created = {"count": 0}

    def _make_order(order_id, store_id="store-1", paid=False, dispatched=False, status=None, **fields):
        created["count"] += 1
        if status is None:
            if dispatched:
                status = OrderState.DISPATCHED
            elif paid:
                status = OrderState.CAPTURED
            else:
                status = OrderState.PENDING_PAYMENT

        db = session_factory()
        if db.get(Store, store_id) is None:
            db.add(Store(id=store_id, name=store_id, currency="gbp"))
        product = Product(id=f"prod-{order_id}", store_id=store_id, name=f"Jacket {order_id}", our_price=Decimal("45.00"))
        order = Order(
            id=order_id,
            store_id=store_id,
            is_paid=paid,
            has_been_dispatched=dispatched,
            status=status.value,
            created_at=datetime(2024, 6, 1, tzinfo=timezone.utc) + timedelta(minutes=created["count"]),
            **fields,
        )
        order.items.append(OrderItem(product=product, quantity=1, product_amount=Decimal("45.00")))
        db.add(order)
        db.commit()
        db.close()
        return order_id

    return _make_order


@pytest.fixture
def make_colored_product(session_factory):
    def _make(product_id, store_id, color_name):
        db = session_factory()
        color_id = f"color-{store_id}-{color_name}"
        if db.get(Color, color_id) is None:
            db.add(Color(id=color_id, store_id=store_id, name=color_name))
        db.add(Product(id=product_id, store_id=store_id, name=product_id, our_price=Decimal("10.00"), color_id=color_id))
        db.commit()
        db.close()
        return product_id

    return _make
