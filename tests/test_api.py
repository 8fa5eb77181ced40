import pytest
import stripe
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from conftest import load_order, signed_event
from marketplace.auth import issue_token
from marketplace.checkout import Role
from marketplace.main import create_app
from marketplace.stripe_service import StripeGateway


@pytest.fixture
def client(settings, stripe_client, seed):
    app = create_app(settings, gateway=StripeGateway(settings, client=stripe_client))
    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth(settings):
    def _auth(user_id, role):
        return {"Authorization": f"Bearer {issue_token(settings.jwt_secret, user_id, role)}"}
    return _auth


@pytest.fixture
def as_client(auth):
    return auth("client-1", Role.CLIENT)


@pytest.fixture
def as_provider(auth):
    return auth("provider-1", Role.PROVIDER)


def _create(client, headers, listing_id=1):
    return client.post("/orders", json={"listing_id": listing_id, "client_note": "Chapter 4"}, headers=headers)


def test_create_order_success(client, as_client):
    response = _create(client, as_client)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "pending_payment"
    assert body["price_at_order"] == "50.00"
    assert body["provider_id"] == "provider-1"
    assert body["transactions"] == []


def test_create_order_own_listing(client, auth):
    response = _create(client, auth("provider-1", Role.CLIENT))

    assert response.status_code == 409
    assert response.json()["code"] == "precondition_failed"


def test_invalid_token(client):
    response = client.post("/orders", json={"listing_id": 1}, headers={"Authorization": "Bearer nope"})

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing token"


def test_initiate_payment_success(client, as_client):
    order_id = _create(client, as_client).json()["id"]

    response = client.post(f"/orders/{order_id}/payment", headers=as_client)

    assert response.status_code == 200
    assert response.json() == {
        "order_id": order_id,
        "payment_intent_id": "pi_123",
        "client_secret": "secret_123",
        "publishable_key": "pk_test_fake",
        "amount": "50.00",
        "platform_fee": "5.00",
        "currency": "usd",
    }


def test_initiate_payment_twice(client, as_client):
    order_id = _create(client, as_client).json()["id"]
    client.post(f"/orders/{order_id}/payment", headers=as_client)

    response = client.post(f"/orders/{order_id}/payment", headers=as_client)

    assert response.status_code == 409
    assert response.json()["code"] == "payment_already_in_flight"


def test_initiate_payment_gateway_down(client, as_client, stripe_client, session_factory):
    order_id = _create(client, as_client).json()["id"]
    stripe_client.v1.payment_intents.create.side_effect = stripe.APIConnectionError("Connection reset by peer")

    response = client.post(f"/orders/{order_id}/payment", headers=as_client)

    assert response.status_code == 502
    assert "Connection reset" not in response.json()["detail"]
    assert load_order(session_factory, order_id).status.value == "payment_failed"


def test_complete_before_payment_confirmed(client, as_client, as_provider):
    order_id = _create(client, as_client).json()["id"]

    response = client.post(f"/orders/{order_id}/status", json={"status": "completed"}, headers=as_provider)

    assert response.status_code == 409
    assert response.json()["code"] == "payment_not_confirmed"


def test_get_order_permissions(client, as_client, auth):
    order_id = _create(client, as_client).json()["id"]

    assert client.get(f"/orders/{order_id}", headers=as_client).status_code == 200
    assert client.get(f"/orders/{order_id}", headers=auth("client-2", Role.CLIENT)).status_code == 403
    assert client.get("/orders/999", headers=as_client).status_code == 404


def test_storage_unavailable(client, as_client, mocker):
    mocker.patch(
        "sqlalchemy.orm.Session.commit",
        side_effect=OperationalError("COMMIT", {}, Exception("database is locked")),
    )

    response = _create(client, as_client)

    assert response.status_code == 503
    assert response.json()["code"] == "storage_unavailable"
    assert "locked" not in response.json()["detail"]


def test_stripe_webhook_success(client, as_client, session_factory, mocker):
    order_id = _create(client, as_client).json()["id"]
    client.post(f"/orders/{order_id}/payment", headers=as_client)

    mock_event = {
        "type": "payment_intent.succeeded",
        "data": {
            "object": {
                "id": "pi_123"
            }
        }
    }
    mocker.patch("stripe.Webhook.construct_event", return_value=mock_event)

    response = client.post(
        "/webhook",
        content="raw_payload",
        headers={"stripe-signature": "fake_sig"}
    )

    assert response.status_code == 200
    assert response.json() == {"ok": True, "outcome": "applied"}
    assert load_order(session_factory, order_id).status.value == "confirmed"


def test_stripe_webhook_invalid_signature(client, mocker):
    mocker.patch("stripe.Webhook.construct_event", side_effect=stripe.SignatureVerificationError("Invalid", "sig"))

    response = client.post(
        "/webhook",
        headers={"stripe-signature": "invalid_sig"}
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid signature"


def test_stripe_webhook_missing_signature(client):
    response = client.post("/webhook", content="raw_payload")

    assert response.status_code == 400


def test_webhook_non_existent_payment(client, mocker):
    """Events for intents we never opened are acknowledged so Stripe stops retrying."""
    mock_event = {
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_unknown"}}
    }
    mocker.patch("stripe.Webhook.construct_event", return_value=mock_event)

    response = client.post("/webhook", headers={"stripe-signature": "test"})

    assert response.status_code == 200
    assert response.json()["outcome"] == "unmatched"


def test_signed_webhook_confirms_the_order(client, as_client, session_factory):
    order_id = _create(client, as_client).json()["id"]
    client.post(f"/orders/{order_id}/payment", headers=as_client)
    body, header = signed_event("payment_intent.succeeded", {"id": "pi_123", "object": "payment_intent"})

    response = client.post("/webhook", content=body, headers={"stripe-signature": header})

    assert response.status_code == 200
    assert response.json() == {"ok": True, "outcome": "applied"}
    assert load_order(session_factory, order_id).status.value == "confirmed"


def test_order_listings(client, as_client, as_provider, auth):
    first = _create(client, as_client).json()["id"]
    second = _create(client, as_client).json()["id"]

    mine = client.get("/orders", headers=as_client)
    incoming = client.get("/orders/incoming", headers=as_provider)

    assert [o["id"] for o in mine.json()] == [second, first]
    assert {o["id"] for o in incoming.json()} == {first, second}
    assert client.get("/orders", headers=auth("client-2", Role.CLIENT)).json() == []
    assert client.get("/orders/incoming", headers=as_client).status_code == 403


def test_checkout_return_and_abandon(client, as_client, stripe_client):
    returned = _create(client, as_client).json()["id"]
    abandoned = _create(client, as_client).json()["id"]
    client.post(f"/orders/{returned}/payment", headers=as_client)
    stripe_client.v1.payment_intents.create.return_value.id = "pi_456"
    client.post(f"/orders/{abandoned}/payment", headers=as_client)

    response = client.post(
        f"/orders/{returned}/payment/return", json={"redirect_status": "succeeded"}, headers=as_client
    )
    assert response.status_code == 200
    assert response.json()["status"] == "payment_processing"

    response = client.post(f"/orders/{abandoned}/payment/abandon", headers=as_client)
    assert response.status_code == 200
    assert response.json()["status"] == "payment_failed"
    stripe_client.v1.payment_intents.cancel.assert_called_once_with("pi_456")
