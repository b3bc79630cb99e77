"""Shared pytest fixtures for licensing tests.

Provides database fixtures, factories for users, devices and subscriptions,
a Stripe gateway double, and helper utilities for both unit and
integration tests.
"""

import os
import tempfile

# CRITICAL: Set configuration BEFORE any other imports that might use config
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["REGISTER_RATE_LIMIT"] = "1000/minute"
os.environ["DATABASE_URL"] = os.environ.get(
    "TEST_DATABASE_URL",
    "sqlite:///" + os.path.join(tempfile.mkdtemp(prefix="license-tests-"), "test.db"),
)

from datetime import datetime, timedelta
from typing import Callable, Generator, Optional
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import Session, sessionmaker

import models  # noqa: F401
from database import Base, engine, get_db, utcnow
from models.app_version import AppVersion, Channel, Platform
from models.billing import PlanName, Subscription, SubscriptionStatus
from models.device import Device, DeviceUser
from models.user import User
from services.abuse_policy import AbusePolicy
from services.billing_gateway import BillingGateway
from services.plans import get_plan, seed_plans
from services.trial_service import TRIAL_DURATION
from tests.fixtures.test_data import DEVICE_HASH, TEST_EMAIL, WEBHOOK_SECRET


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture(scope="session")
def test_engine():
    """Engine for the test database, with tables created and plans seeded.

    Uses TEST_DATABASE_URL when set (e.g. a PostgreSQL test database),
    otherwise a throwaway SQLite file.
    """
    Base.metadata.create_all(bind=engine)

    with Session(bind=engine) as session:
        seed_plans(session)
        session.commit()

    yield engine

    # Cleanup: drop all tables after test session
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="session")
def session_factory(test_engine) -> sessionmaker:
    """Session factory for tests that need several independent sessions
    (e.g. one per thread in concurrency tests)."""
    return sessionmaker(bind=test_engine, autocommit=False, autoflush=False)


def _empty_tables(test_engine) -> None:
    # Plans are reference data and survive between tests
    with test_engine.begin() as connection:
        for table in reversed(Base.metadata.sorted_tables):
            if table.name != "plans":
                connection.execute(table.delete())


@pytest.fixture(scope="function")
def db_session(test_engine, session_factory) -> Generator[Session, None, None]:
    """Create a database session for integration tests.

    The services under test commit and roll back on their own, so instead
    of wrapping the test in an outer transaction every table except plans
    is emptied after the test.
    """
    session = session_factory()

    yield session

    session.rollback()
    session.close()
    _empty_tables(test_engine)


# ============================================================================
# Policy Fixtures
# ============================================================================

@pytest.fixture
def block_policy() -> AbusePolicy:
    """Default thresholds, everything enforced."""
    return AbusePolicy()


# ============================================================================
# Factories
# ============================================================================

@pytest.fixture
def make_user(db_session: Session) -> Callable[..., User]:
    """Factory creating committed users."""

    def _make_user(email: str = TEST_EMAIL, max_devices: Optional[int] = None) -> User:
        user = User(email=email, max_devices=max_devices)
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def make_device(db_session: Session) -> Callable[..., Device]:
    """Factory creating committed devices, optionally with a trial already started."""

    def _make_device(
        device_hash: str = DEVICE_HASH,
        trial_started_at: Optional[datetime] = None,
        user: Optional[User] = None,
        linked_at: Optional[datetime] = None,
    ) -> Device:
        device = Device(
            device_hash=device_hash,
            first_seen_at=utcnow(),
            trial_started_at=trial_started_at,
            trial_ended_at=trial_started_at + TRIAL_DURATION if trial_started_at else None,
            trial_consumed=trial_started_at is not None,
        )
        db_session.add(device)
        db_session.flush()
        if user is not None:
            db_session.add(
                DeviceUser(user_id=user.id, device_id=device.id, created_at=linked_at or utcnow())
            )
        db_session.commit()
        db_session.refresh(device)
        return device

    return _make_device


@pytest.fixture
def make_subscription(db_session: Session) -> Callable[..., Subscription]:
    """Factory creating committed subscriptions."""

    def _make_subscription(
        user: User,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        plan: Optional[PlanName] = PlanName.BASIC,
        external_subscription_id: Optional[str] = "sub_test_1",
        external_customer_id: Optional[str] = "cus_test_1",
        current_period_end: Optional[datetime] = None,
        canceled_at: Optional[datetime] = None,
    ) -> Subscription:
        plan_row = get_plan(db_session, plan) if plan else None
        subscription = Subscription(
            user_id=user.id,
            plan_id=plan_row.id if plan_row else None,
            status=status,
            external_subscription_id=external_subscription_id,
            external_customer_id=external_customer_id,
            current_period_end=current_period_end,
            canceled_at=canceled_at,
        )
        db_session.add(subscription)
        db_session.commit()
        db_session.refresh(subscription)
        return subscription

    return _make_subscription


@pytest.fixture
def make_app_version(db_session: Session) -> Callable[..., AppVersion]:
    """Factory creating committed app versions; defaults to a universal stable mac build."""

    def _make_app_version(build_number: int = 124, **overrides) -> AppVersion:
        fields = {
            "platform": Platform.MAC,
            "arch": None,
            "version": f"1.2.{build_number}",
            "download_url": f"https://downloads.example.com/app-{build_number}.dmg",
            "channel": Channel.STABLE,
        }
        fields.update(overrides)
        version = AppVersion(build_number=build_number, **fields)
        db_session.add(version)
        db_session.commit()
        db_session.refresh(version)
        return version

    return _make_app_version


# ============================================================================
# Billing Fixtures
# ============================================================================

@pytest.fixture
def mock_gateway() -> MagicMock:
    """BillingGateway double; configure retrieve_*/list_subscriptions per test."""
    gateway = MagicMock(spec=BillingGateway)
    gateway.retrieve_subscription.return_value = {}
    gateway.retrieve_customer.return_value = {"id": "cus_test_1", "metadata": {}}
    gateway.list_subscriptions.return_value = iter([])
    return gateway


@pytest.fixture
def webhook_gateway() -> BillingGateway:
    """Real gateway verifying signatures with the test secret; provider calls mocked."""
    gateway = BillingGateway(api_key="", webhook_secret=WEBHOOK_SECRET)
    gateway.retrieve_subscription = MagicMock(return_value={})
    gateway.retrieve_customer = MagicMock(return_value={"id": "cus_test_1", "metadata": {}})
    return gateway


# ============================================================================
# FastAPI Test Client
# ============================================================================

@pytest.fixture
def client(db_session: Session, session_factory, webhook_gateway: BillingGateway) -> TestClient:
    """Create FastAPI test client with overridden dependencies.

    Every request gets its own session from the test database, like the
    real get_db dependency.
    """
    # Import app here to avoid loading it for unit tests
    from main import app
    from routers.auth import limiter
    from services.billing_gateway import get_billing_gateway

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_billing_gateway] = lambda: webhook_gateway
    limiter.reset()

    with TestClient(app) as test_client:
        yield test_client

    # Clean up
    app.dependency_overrides.clear()


# ============================================================================
# Helper Functions
# ============================================================================

def create_lease_jwt(
    device_id: int,
    *,
    license_status: str = "trial",
    token_type: str = "lease",
    expires_in: timedelta = timedelta(hours=1),
    secret_key: str = "test-secret-key",
) -> str:
    """Helper to create lease tokens with arbitrary claims."""
    payload = {
        "device_id": device_id,
        "license_status": license_status,
        "expires_at": None,
        "exp": utcnow() + expires_in,
        "type": token_type,
    }
    return jwt.encode(payload, secret_key, algorithm="HS256")
