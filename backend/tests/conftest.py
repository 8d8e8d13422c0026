import os
from dataclasses import replace
from datetime import datetime

# app.core.database builds its engine at import time; keep it off Postgres.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.base import Base
from app.core.config import get_settings

# Import models so they register with SQLAlchemy metadata.
from app.models.billing_info import BillingInfo
from app.models.payment_request import PaymentRequest, PaymentRequestStatus
from app.models.stripe_event import StripeWebhookEvent  # noqa: F401
from app.models.subscription import Subscription, SubscriptionStatus

from app.core.database import get_db
from app.services.rate_limiter import reset_rate_limiter

WEBHOOK_SECRET = "whsec_test"
CRON_SECRET = "cron_test_secret"
INTERNAL_TOKEN = "internal_test_token"


def stripe_signature_header(secret: str, timestamp: int, body: bytes) -> str:
    # Same scheme Stripe uses: HMAC-SHA256 over "{t}.{body}", hex encoded.
    signed = f"{timestamp}.".encode("utf-8") + body
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture(scope="session")
def db_engine():
    # In-memory SQLite for fast, isolated tests.
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def db_session(db_engine):
    # Important: because we use an in-memory SQLite DB with StaticPool, the DB
    # persists across tests. Reset schema per test to avoid cross-test coupling.
    Base.metadata.drop_all(bind=db_engine)
    Base.metadata.create_all(bind=db_engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def _fresh_rate_limiter():
    reset_rate_limiter()
    yield
    reset_rate_limiter()


@pytest.fixture()
def test_settings():
    return replace(
        get_settings(),
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        CRON_SECRET=CRON_SECRET,
        INTERNAL_API_TOKEN=INTERNAL_TOKEN,
        SUBSCRIPTION_GRACE_PERIOD_DAYS=30,
        RATE_LIMIT_ENABLED=False,
    )


@pytest.fixture()
def app(db_session, test_settings):
    from app.main import app as fastapi_app

    def override_get_db():
        yield db_session

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_settings] = lambda: test_settings
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def signed_post(client):
    """
    POST a Stripe event to the webhook with a valid signature over the exact bytes sent.

    Usage:
        resp = signed_post(event_dict)
    """

    def _post(event: dict, *, secret: str = WEBHOOK_SECRET, timestamp: int = 1700000000):
        body = json.dumps(event).encode("utf-8")
        header = stripe_signature_header(secret, timestamp, body)
        return client.post("/stripe/webhook", content=body, headers={"stripe-signature": header})

    return _post


@pytest.fixture()
def sign_payload():
    """Build a Stripe-Signature header for raw bytes: sign_payload(body, secret=..., timestamp=...)."""

    def _sign(body: bytes, *, secret: str = WEBHOOK_SECRET, timestamp: int = 1700000000) -> str:
        return stripe_signature_header(secret, timestamp, body)

    return _sign


@pytest.fixture()
def make_payment(db_session):
    def _make(request_id: str = "pr_1", *, status: str = PaymentRequestStatus.PENDING_PAYMENT.value, **metadata):
        payment = PaymentRequest(
            id=request_id,
            org_id="org_1",
            amount_cents=5000,
            currency="usd",
            status=status,
            request_metadata=dict(metadata),
        )
        db_session.add(payment)
        db_session.commit()
        return payment

    return _make


@pytest.fixture()
def make_subscription(db_session):
    def _make(
        org_id: str = "org_1",
        *,
        status: str = SubscriptionStatus.ACTIVE.value,
        stripe_subscription_id: str | None = "sub_1",
        stripe_customer_id: str | None = "cus_1",
        trial_end: datetime | None = None,
        current_period_end: datetime | None = None,
        link_customer: bool = True,
    ):
        subscription = Subscription(
            org_id=org_id,
            status=status,
            stripe_subscription_id=stripe_subscription_id,
            stripe_customer_id=stripe_customer_id,
            trial_end=trial_end,
            current_period_end=current_period_end,
            cancel_at_period_end=False,
            subscription_metadata={},
        )
        db_session.add(subscription)
        if link_customer and stripe_customer_id:
            db_session.add(BillingInfo(org_id=org_id, stripe_customer_id=stripe_customer_id))
        db_session.commit()
        return subscription

    return _make
