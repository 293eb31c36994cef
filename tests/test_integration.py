import pytest
import stripe
from fastapi.testclient import TestClient

import fulfillment.auth
import fulfillment.routes
from fulfillment.config import Settings
from fulfillment.gateway import StripeGateway
from fulfillment.main import app as fastapi_app
from fulfillment.models import Order


def stripe_intent(status, order_id="ORDER-INT-001", intent_id="pi_integration_test_123"):
    return stripe.PaymentIntent.construct_from(
        {
            "id": intent_id,
            "object": "payment_intent",
            "amount": 4500,
            "status": status,
            "metadata": {"reader_id": "tmr_integration", "order_id": order_id},
        },
        "sk_test_integration",
    )


@pytest.fixture
def stripe_gateway():
    return StripeGateway(Settings(database_url="sqlite://", stripe_secret_key="sk_test_integration"))


@pytest.fixture
def client(monkeypatch, session_factory, stripe_gateway, mocker):
    # Mock SessionLocal everywhere in the application to use the test database
    monkeypatch.setattr("fulfillment.routes.SessionLocal", session_factory)

    # Bypass auth verification for tests
    fastapi_app.dependency_overrides[fulfillment.auth.verify_token] = lambda: {"stores": ["store-1"]}
    fastapi_app.dependency_overrides[fulfillment.routes.get_gateway] = lambda: stripe_gateway
    fastapi_app.dependency_overrides[fulfillment.routes.get_marketing] = lambda: mocker.Mock()

    with TestClient(fastapi_app) as c:
        yield c

    # Cleanup dependencies
    fastapi_app.dependency_overrides.clear()


def test_full_terminal_payment_lifecycle(client, make_order, session_factory, mocker):
    """
    Test the full lifecycle:
    1. Hold payment on a reader (API -> Stripe mocked -> DB)
    2. Capture (API -> Stripe mocked -> DB)
    3. Dispatch (API -> DB), after which nothing is outstanding
    """
    make_order("ORDER-INT-001")

    # --- 1. HOLD ---
    mocker.patch("stripe.PaymentIntent.create", return_value=stripe_intent("requires_payment_method"))
    process = mocker.patch("stripe.terminal.Reader.process_payment_intent", return_value=mocker.Mock())

    response = client.post("/store-1/orders/ORDER-INT-001/hold", json={"reader_id": "tmr_integration", "amount": 4500})

    assert response.status_code == 200
    assert response.json()["payment_intent_id"] == "pi_integration_test_123"
    assert process.call_args.kwargs["payment_intent"] == "pi_integration_test_123"

    # --- 2. CAPTURE ---
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=stripe_intent("requires_capture"))
    capture = mocker.patch("stripe.PaymentIntent.capture", return_value=stripe_intent("succeeded"))

    response = client.post(
        "/store-1/orders/ORDER-INT-001/capture", json={"payment_intent_id": "pi_integration_test_123"}
    )

    assert response.status_code == 200
    assert response.json()["state"] == "captured"
    assert capture.call_args.kwargs["idempotency_key"] == "capture-pi_integration_test_123"

    outstanding = client.get("/store-1/orders/outstanding").json()
    assert [o["id"] for o in outstanding] == ["ORDER-INT-001"]

    # --- 3. DISPATCH ---
    response = client.post("/store-1/orders/ORDER-INT-001/dispatch")

    assert response.status_code == 200
    assert client.get("/store-1/orders/outstanding").json() == []

    db = session_factory()
    order = db.get(Order, "ORDER-INT-001")
    assert order.is_paid is True
    assert order.has_been_dispatched is True
    assert order.reader_id == "tmr_integration"
    db.close()


def test_capture_retry_after_network_loss_does_not_recapture(client, make_order, mocker):
    """A retried capture whose first attempt already went through at Stripe is recorded once."""
    make_order("ORDER-INT-002")
    mocker.patch(
        "stripe.PaymentIntent.retrieve",
        side_effect=[stripe_intent("requires_capture", "ORDER-INT-002"), stripe_intent("succeeded", "ORDER-INT-002")],
    )
    capture = mocker.patch("stripe.PaymentIntent.capture", side_effect=stripe.APIConnectionError("reset"))

    first = client.post("/store-1/orders/ORDER-INT-002/capture", json={"payment_intent_id": "pi_integration_test_123"})
    assert first.status_code == 503
    assert first.json()["error"] == "upstream_unavailable"

    second = client.post("/store-1/orders/ORDER-INT-002/capture", json={"payment_intent_id": "pi_integration_test_123"})
    assert second.status_code == 200
    assert second.json()["state"] == "captured"
    assert capture.call_count == 1


def test_cancel_at_reader(client, make_order, mocker):
    make_order("ORDER-INT-003")
    reader = stripe.terminal.Reader.construct_from(
        {
            "id": "tmr_integration",
            "object": "terminal.reader",
            "action": {
                "type": "process_payment_intent",
                "status": "in_progress",
                "process_payment_intent": {"payment_intent": "pi_integration_test_123"},
            },
        },
        "sk_test_integration",
    )
    mocker.patch("stripe.terminal.Reader.retrieve", return_value=reader)
    mocker.patch("stripe.terminal.Reader.cancel_action", return_value=reader)
    held = stripe_intent("requires_payment_method", "ORDER-INT-003")
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=held)
    mocker.patch("stripe.PaymentIntent.cancel", return_value=stripe_intent("canceled", "ORDER-INT-003"))

    response = client.post("/store-1/orders/ORDER-INT-003/cancel", json={"reader_id": "tmr_integration"})

    assert response.status_code == 200
    assert response.json()["state"] == "canceled"


def test_connection_token_upstream_down(client, mocker):
    mocker.patch("stripe.terminal.ConnectionToken.create", side_effect=stripe.APIConnectionError("timeout"))

    response = client.get("/store-1/stripe/connection_token")

    assert response.status_code == 503


def test_capture_of_another_orders_payment_is_refused(client, make_order, mocker):
    make_order("ORDER-INT-004")
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=stripe_intent("requires_capture", "ORDER-INT-001"))
    capture = mocker.patch("stripe.PaymentIntent.capture")

    response = client.post(
        "/store-1/orders/ORDER-INT-004/capture", json={"payment_intent_id": "pi_integration_test_123"}
    )

    assert response.status_code == 409
    assert response.json()["error"] == "invalid_state"
    capture.assert_not_called()
