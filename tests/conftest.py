import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest

from marketplace.config import Settings
from marketplace.database import Base, make_engine, make_session_factory
from marketplace.ledger import LedgerStore
from marketplace.lifecycle import OrderLifecycle
from marketplace.models import Listing, Order, PaymentTransaction, ProviderAccount
from marketplace.stripe_service import StripeGateway

WEBHOOK_SECRET = "whsec_test"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        stripe_secret_key="sk_test_fake",
        stripe_publishable_key="pk_test_fake",
        stripe_webhook_secret=WEBHOOK_SECRET,
        jwt_secret="test-jwt-secret",
        log_level="DEBUG",
    )


@pytest.fixture
def engine(settings):
    engine = make_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def store(session_factory):
    return LedgerStore(session_factory)


@pytest.fixture
def stripe_client(mocker):
    client = mocker.Mock()
    intent = mocker.Mock()
    intent.id = "pi_123"
    intent.client_secret = "secret_123"
    client.v1.payment_intents.create.return_value = intent
    return client


@pytest.fixture
def gateway(settings, stripe_client):
    return StripeGateway(settings, client=stripe_client)


@pytest.fixture
def lifecycle(store, gateway, settings):
    return OrderLifecycle(store, gateway, settings)


@pytest.fixture
def seed(session_factory):
    """Two providers (one payment-ready), and listings for each."""
    db = session_factory()
    db.add_all([
        ProviderAccount(
            id="provider-1",
            email="ada@example.com",
            connected_account_id="acct_provider1",
            onboarding_complete=True,
            details_submitted=True,
        ),
        ProviderAccount(
            id="provider-2",
            email="grace@example.com",
            connected_account_id="acct_provider2",
            onboarding_complete=False,
            details_submitted=False,
        ),
        Listing(id=1, title="Calculus tutoring", price=Decimal("50.00"), provider_id="provider-1", is_active=True),
        Listing(id=2, title="Logo design", price=Decimal("80.00"), provider_id="provider-2", is_active=True),
        Listing(id=3, title="Retired listing", price=Decimal("20.00"), provider_id="provider-1", is_active=False),
    ])
    db.commit()
    db.close()


@pytest.fixture
def deliver(lifecycle, mocker):
    """Feed a Stripe event through reconciliation with signature checking mocked out."""

    def _deliver(event_type, obj, event_id="evt_1"):
        event = {"id": event_id, "type": event_type, "data": {"object": obj}}
        mocker.patch("stripe.Webhook.construct_event", return_value=event)
        return lifecycle.reconcile_webhook(b"raw_stripe_payload", "t=1,v1=test_signature")

    return _deliver


def load_order(session_factory, order_id):
    db = session_factory()
    order = db.get(Order, order_id)
    db.close()
    return order


def load_transactions(session_factory, order_id):
    db = session_factory()
    txs = db.query(PaymentTransaction).filter_by(order_id=order_id).order_by(PaymentTransaction.id).all()
    db.close()
    return txs


def sign(payload: str, secret: str = WEBHOOK_SECRET) -> str:
    """Stripe-Signature header for ``payload``, computed the way Stripe does."""
    timestamp = int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def signed_event(event_type, obj, event_id="evt_signed"):
    payload = json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    })
    return payload.encode("utf-8"), sign(payload)
