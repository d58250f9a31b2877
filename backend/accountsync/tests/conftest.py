"""Pytest configuration for accountsync integration tests

WHAT: Provides shared fixtures for service, HTTP endpoint and worker tests
WHY: Ensures consistent test setup, database isolation and a controllable clock
REFERENCES:
    - accountsync/main.py: FastAPI application
    - accountsync/models.py: Account record store
    - accountsync/deps.py: Dependency injection
    - accountsync/services/reconciler.py: Reconciler
"""

import asyncio
import base64
import os
from datetime import datetime, timedelta, timezone
from typing import Generator, Optional
from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# Ensure backend is in path
import sys
from pathlib import Path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")

from accountsync.clock import FixedClock  # noqa: E402
from accountsync.deps import Settings  # noqa: E402
from accountsync.models import (  # noqa: E402
    Base,
    BillingCustomer,
    BillingStatusEnum,
    BillingSubscription,
    TrialRecord,
    TrialStatusEnum,
    User,
)

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

ADMIN_SECRET = "test-admin-secret"
STRIPE_WEBHOOK_SECRET = "whsec_test_stripe"
CLERK_WEBHOOK_SECRET = "whsec_" + base64.b64encode(b"test-clerk-signing-key").decode()


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine(tmp_path):
    """File-backed SQLite engine.

    In-memory SQLite is per-connection; the reconciler and sweeper open their
    own sessions, so every session must see the same database file.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'accountsync.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)


@pytest.fixture
def test_db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Lifecycle Fixtures
# ============================================================================

@pytest.fixture
def clock():
    return FixedClock(T0)


@pytest.fixture
def settings():
    return Settings(
        TRIAL_LENGTH_DAYS=7,
        EXPIRY_GRACE_PERIOD_DAYS=1,
        DELETION_GRACE_PERIOD_DAYS=1,
        EXTERNAL_CALL_TIMEOUT_SECONDS=0.5,
        SWEEPER_MAX_WORKERS=2,
        RECONCILE_MAX_RETRIES=3,
        ADMIN_SECRET=ADMIN_SECRET,
        STRIPE_WEBHOOK_SECRET=STRIPE_WEBHOOK_SECRET,
        CLERK_WEBHOOK_SECRET=CLERK_WEBHOOK_SECRET,
    )


@pytest.fixture
def reconciler(session_factory, clock, settings):
    from accountsync.services.reconciler import Reconciler

    return Reconciler(session_factory, clock=clock, settings=settings)


@pytest.fixture
def metrics_reporter(session_factory, clock, settings):
    from accountsync.services.metrics_reporter import MetricsReporter

    return MetricsReporter(session_factory, clock=clock, settings=settings)


class FakeWorkspaceClient:
    """Records delete calls; behaviour per user is configurable."""

    def __init__(self):
        self.deleted = []
        self.fail_for = set()
        self.hang_for = set()

    async def delete_account(self, user_id):
        from accountsync.exceptions import ExternalServiceError
        from accountsync.services.workspace_client import DeleteOutcome

        if user_id in self.hang_for:
            await asyncio.sleep(60)
        if user_id in self.fail_for:
            raise ExternalServiceError("workspace unavailable", user_id=user_id, service="workspace")
        self.deleted.append(user_id)
        return DeleteOutcome.deleted


class FakeIdentityDeleter:
    def __init__(self, result: bool = True):
        self.result = result
        self.calls = []

    async def __call__(self, clerk_id: str) -> bool:
        self.calls.append(clerk_id)
        return self.result


@pytest.fixture
def workspace_client():
    return FakeWorkspaceClient()


@pytest.fixture
def identity_deleter():
    return FakeIdentityDeleter()


@pytest.fixture
def sweeper(session_factory, clock, settings, workspace_client, identity_deleter):
    from accountsync.services.deletion_sweeper import DeletionSweeper

    return DeletionSweeper(
        session_factory,
        workspace_client,
        identity_deleter=identity_deleter,
        clock=clock,
        settings=settings,
    )


# ============================================================================
# Model Factories
# ============================================================================

@pytest.fixture
def make_user(session_factory, clock):
    """Insert a user with an optional trial row.

    Example:
        user_id = make_user(trial_status=TrialStatusEnum.expired,
                            trial_end=T0 - timedelta(days=3))
    """

    def _make(
        user_id: Optional[UUID] = None,
        email: Optional[str] = None,
        clerk_id: Optional[str] = None,
        trial_status: Optional[TrialStatusEnum] = TrialStatusEnum.active,
        trial_end: Optional[datetime] = None,
        deletion_scheduled_at: Optional[datetime] = None,
    ) -> UUID:
        user_id = user_id or uuid4()
        db = session_factory()
        try:
            db.add(
                User(
                    id=user_id,
                    email=email or f"{user_id.hex[:8]}@example.com",
                    clerk_id=clerk_id,
                    created_at=clock.now(),
                )
            )
            db.flush()
            if trial_status is not None:
                end = trial_end or clock.now() + timedelta(days=7)
                db.add(
                    TrialRecord(
                        user_id=user_id,
                        trial_start_date=end - timedelta(days=7),
                        trial_end_date=end,
                        trial_status=trial_status,
                        deletion_scheduled_at=deletion_scheduled_at,
                    )
                )
            db.commit()
        finally:
            db.close()
        return user_id

    return _make


@pytest.fixture
def add_subscription(session_factory):
    """Attach a billing customer + subscription with the given status."""

    def _add(
        user_id: UUID,
        status: BillingStatusEnum,
        subscription_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> str:
        customer_id = customer_id or f"cus_{user_id.hex[:12]}"
        subscription_id = subscription_id or f"sub_{uuid4().hex[:12]}"
        db = session_factory()
        try:
            if db.query(BillingCustomer).filter(BillingCustomer.customer_id == customer_id).first() is None:
                db.add(BillingCustomer(user_id=user_id, customer_id=customer_id))
                db.flush()
            db.add(
                BillingSubscription(
                    customer_id=customer_id,
                    subscription_id=subscription_id,
                    status=status,
                )
            )
            db.commit()
        finally:
            db.close()
        return subscription_id

    return _add


@pytest.fixture
def set_subscription_status(session_factory):
    def _set(subscription_id: str, status: BillingStatusEnum) -> None:
        db = session_factory()
        try:
            db.query(BillingSubscription).filter(
                BillingSubscription.subscription_id == subscription_id
            ).update({BillingSubscription.status: status})
            db.commit()
        finally:
            db.close()

    return _set


@pytest.fixture
def get_trial(session_factory):
    def _get(user_id: UUID) -> Optional[TrialRecord]:
        db = session_factory()
        try:
            trial = db.query(TrialRecord).filter(TrialRecord.user_id == user_id).first()
            if trial is not None:
                db.expunge(trial)
            return trial
        finally:
            db.close()

    return _get


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(session_factory, settings, reconciler, metrics_reporter, sweeper):
    """Create FastAPI test application with every dependency bound to the test DB."""
    from accountsync.database import get_db
    from accountsync.deps import get_metrics_reporter, get_reconciler, get_settings
    from accountsync.main import create_app
    from accountsync.routers.admin import get_deletion_sweeper

    test_app = create_app()

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_settings] = lambda: settings
    test_app.dependency_overrides[get_reconciler] = lambda: reconciler
    test_app.dependency_overrides[get_metrics_reporter] = lambda: metrics_reporter
    test_app.dependency_overrides[get_deletion_sweeper] = lambda: sweeper

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)


@pytest.fixture
def admin_headers():
    return {"X-Admin-Secret": ADMIN_SECRET}


# ============================================================================
# Authentication Fixtures
# ============================================================================

@pytest.fixture
def make_token():
    """Session JWT for a user id (HS256, JWT_SECRET)."""
    from jose import jwt

    def _make(user_id: UUID) -> str:
        data = {
            "sub": str(user_id),
            "exp": datetime.now(timezone.utc) + timedelta(hours=1),
        }
        return jwt.encode(data, os.environ.get("JWT_SECRET", "test-jwt-secret"), algorithm="HS256")

    return _make
