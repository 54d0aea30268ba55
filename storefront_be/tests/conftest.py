import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("ALGORITHM", "HS256")
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["RATE_LIMIT_BACKEND"] = "memory"

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from storefront.main import app
from storefront.models.user import Base, SessionLocal, engine, Role, User
from storefront.models.store import Store
from storefront.models.order import Order, OrderStatus, PaymentMethod
from storefront.models.return_request import ReturnRequest  # noqa: F401  (registers the table)
from storefront.models.refund import Refund  # noqa: F401
from storefront.models.rate_limit import RateLimitHit  # noqa: F401
from storefront.services.authorization import Caller
from storefront.services.errors import GatewayFailure
from storefront.services.payment_gateway import PaymentGateway, RefundReceipt, get_payment_gateway
from storefront.utils.rate_limit import InMemoryRateLimiter, get_rate_limiter
from storefront.utils.security import create_access_token


class FakeGateway(PaymentGateway):
    """Records every call; answers repeated idempotency keys with the first receipt."""

    def __init__(self):
        self.calls = []
        self.fail_with = None
        self._issued = {}
        # called before answering; lets a test commit a competing change mid-refund
        self.on_issue = None

    def issue_refund(self, payment_reference, amount_minor_units, reason, idempotency_key):
        self.calls.append(
            {
                "payment_reference": payment_reference,
                "amount_minor_units": amount_minor_units,
                "reason": reason,
                "idempotency_key": idempotency_key,
            }
        )
        if self.on_issue is not None:
            self.on_issue()
        if self.fail_with is not None:
            raise self.fail_with
        if idempotency_key not in self._issued:
            self._issued[idempotency_key] = RefundReceipt(
                refund_id=f"re_{len(self._issued) + 1}",
                amount_minor_units=amount_minor_units,
                status="succeeded",
            )
        return self._issued[idempotency_key]

    def time_out(self):
        self.fail_with = GatewayFailure("Payment gateway did not respond; refund outcome unknown")

    def recover(self):
        self.fail_with = None


class FakeClock:
    def __init__(self, start=1_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


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
def gateway():
    return FakeGateway()


@pytest.fixture
def limiter():
    return InMemoryRateLimiter()


@pytest.fixture
def client(db, gateway, limiter):
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def _make_user(db, role, email):
    user = User(first_name=role.value.title(), last_name="Tester", email=email, role=role)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def customer(db):
    return _make_user(db, Role.CUSTOMER, "customer@example.com")


@pytest.fixture
def other_customer(db):
    return _make_user(db, Role.CUSTOMER, "other@example.com")


@pytest.fixture
def seller(db):
    return _make_user(db, Role.STORE_OWNER, "seller@example.com")


@pytest.fixture
def other_seller(db):
    return _make_user(db, Role.STORE_OWNER, "other-seller@example.com")


@pytest.fixture
def admin(db):
    return _make_user(db, Role.ADMIN, "admin@example.com")


@pytest.fixture
def store(db, seller):
    s = Store(user_id=seller.id, name="Seller Goods", is_active=True)
    db.add(s)
    db.commit()
    db.refresh(s)
    return s


@pytest.fixture
def other_store(db, other_seller):
    s = Store(user_id=other_seller.id, name="Elsewhere", is_active=True)
    db.add(s)
    db.commit()
    db.refresh(s)
    return s


@pytest.fixture
def make_order(db, customer, store):
    def _make(
        status=OrderStatus.ORDER_PLACED,
        total=120.0,
        paid=True,
        payment_method=PaymentMethod.GATEWAY,
        delivered_days_ago=None,
        user=None,
        order_store=None,
    ):
        order = Order(
            user_id=(user or customer).id,
            store_id=(order_store or store).id,
            total=total,
            payment_method=payment_method,
            is_paid=paid,
            payment_reference="pi_test_123" if paid else None,
            status=status,
        )
        if delivered_days_ago is not None:
            order.delivered_at = datetime.utcnow() - timedelta(days=delivered_days_ago)
        db.add(order)
        db.commit()
        db.refresh(order)
        return order

    return _make


def caller_for(user) -> Caller:
    return Caller(user_id=user.id, role=user.role)


def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}
