"""Pytest fixtures: test client, in-memory SQLite, catalog/coupon factories, signed gateway callbacks."""
import hashlib
import hmac
import json
import os
import time
import uuid
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

# Must be set before app is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ADMIN_SECRET", "test-admin-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_PUBLISHABLE_KEY", "pk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_dummy")
os.environ.setdefault("BANK_TRANSFER_SECRET", "bank-test-secret")
os.environ.setdefault("BANK_TRANSFER_BANK_NAME", "Test Bank")
os.environ.setdefault("BANK_TRANSFER_ACCOUNT_NUMBER", "0123456789")
os.environ.setdefault("BANK_TRANSFER_ACCOUNT_NAME", "COURSEPAY LTD")
os.environ.setdefault("GATEWAY_RETRY_BASE_DELAY", "0")
# High enough that only test_rate_limit.py trips it
os.environ.setdefault("RATE_LIMIT_ORDERS_PER_MINUTE", "20")

import stripe  # noqa: E402
from sqlmodel import Session, SQLModel  # noqa: E402

from app.core.config import settings  # noqa: E402
from app.core.database import engine  # noqa: E402
from app.core.rate_limit import limiter  # noqa: E402
from app.core.security import create_access_token  # noqa: E402
from app.main import app  # noqa: E402
from app.models import Coupon, Course, DiscountType  # noqa: E402
from app.services.gateways import reset_gateways  # noqa: E402
from app.services.gateways.bank_transfer import sign_payload  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_state():
    """Empty tables, rate limiter and gateway registry for every test."""
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    limiter.reset()
    reset_gateways()
    yield
    reset_gateways()


@pytest.fixture(autouse=True)
def stripe_calls(monkeypatch):
    """No network: PaymentIntent.create returns a deterministic intent per idempotency key."""
    calls = []

    def fake_create(**kwargs):
        calls.append(kwargs)
        key = kwargs.get("idempotency_key", "x")
        return SimpleNamespace(id=f"pi_{key}", client_secret=f"pi_{key}_secret_test")

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    return calls


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    with Session(engine) as session:
        yield session


@pytest.fixture
def make_course(db):
    def _make(title: str = "Course", price: int = 500_000, **kwargs) -> Course:
        course = Course(title=title, price=price, **kwargs)
        db.add(course)
        db.commit()
        db.refresh(course)
        return course

    return _make


@pytest.fixture
def make_coupon(db):
    def _make(
        code: str = "SAVE10",
        discount_type: DiscountType = DiscountType.PERCENT,
        discount_value: int = 10,
        **kwargs,
    ) -> Coupon:
        coupon = Coupon(code=code.upper(), discount_type=discount_type, discount_value=discount_value, **kwargs)
        db.add(coupon)
        db.commit()
        db.refresh(coupon)
        return coupon

    return _make


def bearer(user_id: int) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': str(user_id)})}"}


@pytest.fixture
def auth_headers():
    """Buyer with user id 1."""
    return bearer(1)


@pytest.fixture
def user_headers():
    """Factory for other buyers."""
    return bearer


@pytest.fixture
def admin_headers():
    return {"X-Admin-Secret": settings.admin_secret}


@pytest.fixture
def card_event():
    """Signed Stripe event -> (body, headers)."""

    def _build(
        order_code: str | None,
        amount: int,
        event_type: str = "payment_intent.succeeded",
        event_id: str | None = None,
        currency: str | None = None,
        secret: str | None = None,
    ) -> tuple[bytes, dict]:
        metadata = {"order_code": order_code} if order_code else {}
        payload = json.dumps(
            {
                "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
                "object": "event",
                "type": event_type,
                "data": {
                    "object": {
                        "id": f"pi_{uuid.uuid4().hex[:12]}",
                        "object": "payment_intent",
                        "amount": amount,
                        "amount_received": amount if event_type == "payment_intent.succeeded" else 0,
                        "currency": (currency or settings.currency).lower(),
                        "metadata": metadata,
                    }
                },
            }
        )
        ts = int(time.time())
        signature = hmac.new(
            (secret or settings.stripe_webhook_secret).encode("utf-8"),
            f"{ts}.{payload}".encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return payload.encode("utf-8"), {"Stripe-Signature": f"t={ts},v1={signature}", "Content-Type": "application/json"}

    return _build


@pytest.fixture
def bank_callback():
    """Signed bank-transfer notification -> (body, headers)."""

    def _build(
        description: str,
        amount: int,
        transaction_id: str | int | None = None,
        transfer_type: str | None = "in",
        secret: str | None = None,
    ) -> tuple[bytes, dict]:
        tx_id = transaction_id if transaction_id is not None else f"TX{uuid.uuid4().hex[:10].upper()}"
        timestamp = str(int(time.time()))
        body = {
            "id": tx_id,
            "amount": amount,
            "description": description,
            "timestamp": timestamp,
            "signature": sign_payload(secret or settings.bank_transfer_secret, tx_id, amount, description, timestamp),
        }
        if transfer_type is not None:
            body["transferType"] = transfer_type
        return json.dumps(body).encode("utf-8"), {"Content-Type": "application/json"}

    return _build
