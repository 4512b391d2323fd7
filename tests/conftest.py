from __future__ import annotations

import hashlib
import hmac
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-long-enough-for-hs256-signing")
os.environ.setdefault("CELERY_BROKER_URL", "redis://localhost:6379/15")

import pytest
from fastapi.testclient import TestClient

from app.core.auth.models import User
from app.core.billing import models as billing_models  # noqa: F401
from app.core.billing.currency import LocaleSignal
from app.core.billing.errors import GatewayError
from app.core.billing.gateway import (
    SIGNATURE_MISMATCH,
    GatewayResult,
    payment_signature,
)
from app.core.billing.services import BillingService, get_billing_service
from app.core.security import create_access_token
from app.database.base import Base
from app.database.session import SessionLocal, engine
from app.utils import redis_client


START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
INR = LocaleSignal(preferred_currency="INR")


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeRedis:
    def __init__(self) -> None:
        self.store: Dict[str, str] = {}

    def ping(self) -> bool:
        return True

    def get(self, key: str):
        return self.store.get(key)

    def setex(self, key: str, ttl: int, value: str) -> None:
        self.store[key] = value

    def delete(self, key: str) -> int:
        return 1 if self.store.pop(key, None) is not None else 0


class FakeGateway:
    """In-memory stand-in for Razorpay with the same signing rules."""

    public_key = "rzp_test_key"
    key_secret = "rzp_test_secret"
    webhook_secret = "whsec_test"

    def __init__(self) -> None:
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.payments: Dict[str, List[Dict[str, Any]]] = {}
        self.unreachable: set[str] = set()
        self.fail_create = False
        self.created: List[Dict[str, Any]] = []

    def create_order(self, amount, currency, *, receipt, notes) -> GatewayResult:
        if self.fail_create:
            return GatewayResult(
                success=False,
                data={"error": {"code": "BAD_REQUEST_ERROR"}},
                error="BAD_REQUEST_ERROR",
            )
        order_id = f"order_test{len(self.orders) + 1:04d}"
        order = {
            "id": order_id,
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": notes,
            "status": "created",
        }
        self.orders[order_id] = order
        self.created.append(order)
        return GatewayResult(success=True, data=dict(order))

    def verify_payment(self, payment_id, order_id, signature) -> GatewayResult:
        expected = payment_signature(self.key_secret, order_id, payment_id)
        if not hmac.compare_digest(expected, signature or ""):
            return GatewayResult(success=False, error=SIGNATURE_MISMATCH)
        return GatewayResult(
            success=True, data={"order_id": order_id, "payment_id": payment_id}
        )

    def get_order(self, order_id) -> Dict[str, Any]:
        if order_id in self.unreachable:
            raise GatewayError("gateway unreachable: ConnectError")
        return dict(self.orders.get(order_id, {"id": order_id, "status": "created"}))

    def get_order_payments(self, order_id) -> List[Dict[str, Any]]:
        if order_id in self.unreachable:
            raise GatewayError("gateway unreachable: ConnectError")
        return list(self.payments.get(order_id, []))

    def verify_webhook_signature(self, body: bytes, signature: str) -> bool:
        return hmac.compare_digest(self.sign_webhook(body), signature or "")

    def sign(self, order_id: str, payment_id: str) -> str:
        return payment_signature(self.key_secret, order_id, payment_id)

    def sign_webhook(self, body: bytes) -> str:
        return hmac.new(
            self.webhook_secret.encode("utf-8"), body, hashlib.sha256
        ).hexdigest()

    def mark_paid(self, order_id: str, payment_id: str) -> None:
        self.orders.setdefault(order_id, {"id": order_id})["status"] = "paid"
        self.payments[order_id] = [
            {"id": payment_id, "order_id": order_id, "status": "captured"}
        ]


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch) -> FakeRedis:
    fake = FakeRedis()
    monkeypatch.setattr(redis_client, "_redis_client", fake)
    return fake


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def service(gateway, clock) -> BillingService:
    return BillingService(
        gateway=gateway,
        clock=clock,
        payments_enabled=True,
        server_url="http://testserver",
        fallback_currency="USD",
    )


@pytest.fixture
def make_user(db):
    def _make(**kwargs: Any) -> User:
        values: Dict[str, Any] = {
            "email": f"learner{db.query(User).count() + 1}@example.com",
            "name": "Test Learner",
        }
        values.update(kwargs)
        user = User(**values)
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def user(make_user) -> User:
    return make_user(preferred_currency="INR")


@pytest.fixture
def admin(make_user) -> User:
    return make_user(email="admin@example.com", is_superuser=True)


@pytest.fixture
def auth_headers():
    def _headers(account: User) -> Dict[str, str]:
        token = create_access_token(user_id=account.id)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def client(db, service):
    from app.main import app

    app.dependency_overrides[get_billing_service] = lambda: service
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def buy(db, service, gateway):
    """Create an order for `plan_id` and confirm its payment."""

    counter = {"n": 0}

    def _buy(account: User, plan_id: str, *, locale: LocaleSignal = INR):
        created = service.create_order(db, user=account, plan_id=plan_id, locale=locale)
        db.commit()
        counter["n"] += 1
        payment_id = f"pay_test{counter['n']:04d}"
        gateway_order_id = created.order.gateway_order_id
        return service.verify_payment(
            db,
            user=account,
            gateway_order_id=gateway_order_id,
            gateway_payment_id=payment_id,
            signature=gateway.sign(gateway_order_id, payment_id),
        )

    return _buy
