import json
import os
# Ensure the app factory picks the Testing config
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

import pytest
from tokenledger import create_app
from tokenledger.extensions import db
from tokenledger.models import User, Plan, TokenTopup


@pytest.fixture(scope="session")
def app(tmp_path_factory):
    # File-backed SQLite so threads get their own connections
    db_path = tmp_path_factory.mktemp("db") / "tokenledger-test.db"
    app = create_app(overrides={
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
        "APP_BASE_URL": "http://example.test",
        "WTF_CSRF_ENABLED": False,
        "RATELIMIT_ENABLED": False,
        "STRIPE_SECRET_KEY": "sk_test_x",
        "STRIPE_WEBHOOK_SECRET": "whsec_test_x",
        "COMPOSITOR_URL": "http://compositor.test/stage",
        "INTERNAL_API_KEY": "svc_test_key",
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()


def _login(client, user_id: int):
    # Simulate Flask-Login session
    with client.session_transaction() as sess:
        sess["_user_id"] = str(user_id)


@pytest.fixture()
def make_user(app):
    def _make(email="user@example.com", password="pw"):
        with app.app_context():
            u = User(email=email, is_active=True)
            u.set_password(password)
            db.session.add(u)
            db.session.commit()
            return u.id
    return _make


@pytest.fixture()
def seed_catalog(app):
    """beta plan (100 tokens/month) and two top-up packs."""
    with app.app_context():
        db.session.add(Plan(id="beta", name="Beta", stripe_price_id="price_beta", monthly_tokens=100))
        db.session.add(TokenTopup(stripe_price_id="price_pack_50", name="50 pack", tokens=50))
        db.session.add(TokenTopup(stripe_price_id="price_pack_old", name="Retired", tokens=20, is_active=False))
        db.session.commit()


class _FakeSubscriptions:
    def __init__(self, store):
        self._store = store

    def retrieve(self, sub_id):
        return dict(self._store.subscriptions[sub_id])


class _FakeLineItemList:
    def __init__(self, data):
        self.data = data


class _FakeLineItems:
    def __init__(self, store):
        self._store = store

    def list(self, session_id, params=None):
        return _FakeLineItemList(self._store.line_items.get(session_id, []))


class _FakeSessions:
    def __init__(self, store):
        self.line_items = _FakeLineItems(store)


class _FakeCheckout:
    def __init__(self, store):
        self.sessions = _FakeSessions(store)


class FakeStripe:
    """Stand-in for the Stripe API: subscriptions and checkout line items by id."""

    def __init__(self):
        self.subscriptions = {}
        self.line_items = {}

    def client_class(self):
        store = self

        class _FakeClient:
            def __init__(self, key):
                self.subscriptions = _FakeSubscriptions(store)
                self.checkout = _FakeCheckout(store)

        return _FakeClient


@pytest.fixture()
def fake_stripe(monkeypatch):
    import stripe

    def _fake_construct_event(payload, sig_header, secret, tolerance=300, **kwargs):
        return json.loads(payload)
    monkeypatch.setattr(stripe.Webhook, "construct_event", staticmethod(_fake_construct_event))

    fake = FakeStripe()
    monkeypatch.setattr("tokenledger.services.billing.StripeClient", fake.client_class())
    return fake


def post_event(client, event: dict):
    return client.post(
        "/webhooks/stripe",
        data=json.dumps(event),
        headers={"Stripe-Signature": "t=1,v1=fake", "Content-Type": "application/json"},
    )
