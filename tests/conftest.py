"""
Shared fixtures: in-memory database, plans, a controllable clock and the
mock payment gateway.
"""

import hashlib
import hmac
import json
import os
from datetime import datetime, timedelta

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("PAYSTACK_SECRET_KEY", "test-paystack-secret")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from sqlmodel import SQLModel, Session, create_engine
from sqlmodel.pool import StaticPool

import apps.db.models  # noqa: F401
from apps.core.config import PlanType, SubscriptionStatus
from apps.db.models import SubscriptionPlan, Subscription
from tests.mocks import MockPaymentGateway, TEST_SECRET

# Test database configuration
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


class FakeClock:
    """Callable clock that tests move forward explicitly."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(scope="function")
def setup_test_database():
    """Setup test database for each test."""
    SQLModel.metadata.create_all(test_engine)

    yield test_engine

    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def session(setup_test_database):
    """Get database session for testing."""
    with Session(setup_test_database) as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 10, 0, 0))


@pytest.fixture
def gateway():
    return MockPaymentGateway()


@pytest.fixture
def preset_plan(session):
    """12kg preset plan offering every recurring cadence."""
    plan = SubscriptionPlan(
        name="Family 12kg",
        type=PlanType.PRESET.value,
        base_size=12,
        price_per_kg=1500.0,
        additional_fee_per_kg=100.0,
        delivery_frequencies=["Daily", "Weekly", "Bi-weekly", "Monthly"],
        subscription_periods=[1, 3, 6, 12],
    )
    session.add(plan)
    session.commit()
    session.refresh(plan)
    return plan


@pytest.fixture
def one_time_plan(session):
    plan = SubscriptionPlan(
        name="Single Refill",
        type=PlanType.ONE_TIME.value,
        price_per_kg=1500.0,
        delivery_frequencies=["One-Time"],
        cylinder_sizes=[6, 12, 25],
    )
    session.add(plan)
    session.commit()
    session.refresh(plan)
    return plan


def make_subscription(session, plan, **overrides) -> Subscription:
    """Insert a subscription directly, bypassing checkout."""
    start = overrides.pop("start_date", datetime(2024, 1, 1, 10, 0, 0))
    values = dict(
        owner_id="user-1",
        owner_email="user1@example.com",
        plan_id=plan.id,
        plan_name=plan.name,
        size=12,
        frequency="Weekly",
        subscription_period=1,
        price=19200.0,
        status=SubscriptionStatus.ACTIVE.value,
        start_date=start,
        end_date=start + timedelta(days=28),
        payment_reference="REF-TEST",
    )
    values.update(overrides)
    subscription = Subscription(**values)
    session.add(subscription)
    session.commit()
    session.refresh(subscription)
    return subscription


def sign(payload: str, secret: str = TEST_SECRET) -> str:
    """Signature the gateway would send for a raw body."""
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha512).hexdigest()


def charge_event(reference: str, metadata: dict, event: str = "charge.success", amount: int = 0) -> str:
    return json.dumps({
        "event": event,
        "data": {
            "reference": reference,
            "amount": amount,
            "status": "success" if event == "charge.success" else "failed",
            "metadata": metadata,
        },
    })
