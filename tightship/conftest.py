# tightship/conftest.py
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from tightship.core.clock import utc_now
from tightship.core.config import settings
from tightship.core.rate_limit import FixedWindowLimiter
from tightship.core.tasks import InlineTaskRunner
from tightship.features.audit.service import clear_buffered_audit_events
from tightship.features.enforcement.service import EnforcementService
from tightship.features.entitlements.service import SubscriptionService
from tightship.features.grace_period.service import GracePeriodService
from tightship.features.plans.service import get_plan, seed_plans
from tightship.features.store.memory import InMemoryRepository
from tightship.features.subscriptions.service import SubscriptionManagementService, new_subscription_id
from tightship.features.usage.service import UsageLedger
from tightship.models.plan import PlanTier
from tightship.models.subscription import SubscriptionRecord, SubscriptionStatus

ADMIN_KEY = "test-admin-key"
JWT_SECRET = "test-jwt-secret"


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """Deterministic settings for every test; audit events stay in memory."""
    monkeypatch.setattr(settings, "ENV", "development")
    monkeypatch.setattr(settings, "ADMIN_KEY", ADMIN_KEY)
    monkeypatch.setattr(settings, "JWT_SECRET", JWT_SECRET)
    monkeypatch.setattr(settings, "RATE_LIMIT_ENABLED", False)
    monkeypatch.setattr(settings, "AUDIT_ENABLED", True)
    monkeypatch.setattr(settings, "DATABASE_URL", None)
    monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
    clear_buffered_audit_events()
    yield settings
    clear_buffered_audit_events()


@pytest.fixture
def now():
    return datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def repo():
    repository = InMemoryRepository()
    seed_plans(repository)
    return repository


@pytest.fixture
def tasks():
    return InlineTaskRunner()


@pytest.fixture
def limiter():
    return FixedWindowLimiter(window_seconds=60)


@pytest.fixture
def ledger(repo):
    return UsageLedger(repo)


@pytest.fixture
def subscriptions(repo, ledger):
    return SubscriptionService(repo, ledger=ledger)


@pytest.fixture
def grace(subscriptions, tasks):
    return GracePeriodService(subscriptions, tasks=tasks)


@pytest.fixture
def management(repo, tasks):
    return SubscriptionManagementService(repo, tasks=tasks)


@pytest.fixture
def enforcement(subscriptions, tasks, limiter):
    return EnforcementService(subscriptions, tasks=tasks, limiter=limiter)


@pytest.fixture
def make_org(repo):
    """
    Factory: organization + owner user + (optionally) a stored subscription.

    Periods default to the wall clock so HTTP tests, which evaluate at the
    real current time, see a live subscription.
    """
    counter = {"n": 0}

    def _make(
        tier: Optional[PlanTier] = PlanTier.STARTER,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        user_id: Optional[str] = None,
    ) -> str:
        counter["n"] += 1
        organization_id = f"org_{counter['n']}"
        repo.create_organization(organization_id, f"Organization {counter['n']}")
        repo.create_user(user_id or f"user_{counter['n']}", organization_id=organization_id)
        if tier is not None:
            start = period_start or utc_now() - timedelta(days=1)
            repo.create_subscription(
                SubscriptionRecord(
                    subscription_id=new_subscription_id(),
                    organization_id=organization_id,
                    plan_id=get_plan(repo, tier).plan_id,
                    status=status,
                    current_period_start=start,
                    current_period_end=period_end or start + timedelta(days=30),
                )
            )
        return organization_id

    return _make


@pytest.fixture
def app(repo, tasks, limiter):
    from tightship.api.deps import get_limiter, get_repository, get_tasks
    from tightship.main import create_app

    application = create_app()
    application.dependency_overrides[get_repository] = lambda: repo
    application.dependency_overrides[get_tasks] = lambda: tasks
    application.dependency_overrides[get_limiter] = lambda: limiter
    return application


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}


@pytest.fixture
def sql_repo(tmp_path):
    """SqlRepository on a throwaway SQLite file, plans seeded."""
    from tightship.core.database import build_engine, create_all_tables, drop_all_tables
    from tightship.features.store.sql import SqlRepository

    engine = build_engine(f"sqlite:///{tmp_path / 'tightship.db'}")
    create_all_tables(engine)
    repository = SqlRepository(sessionmaker(autocommit=False, autoflush=False, bind=engine))
    seed_plans(repository)
    yield repository
    drop_all_tables(engine)
    engine.dispose()
