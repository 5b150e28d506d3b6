"""Plan catalog: seeding, ordering, tier comparisons."""
import pytest

from tightship.core.errors import PlanNotFoundError
from tightship.features.plans.service import (
    get_default_plan,
    get_plan,
    get_rate_limit_for_tier,
    get_variant_limit,
    is_downgrade,
    is_upgrade,
    list_plans,
    seed_plans,
)
from tightship.features.store.memory import InMemoryRepository
from tightship.models.plan import UNLIMITED, LimitType, PlanTier


def test_seed_plans_creates_one_plan_per_tier(repo):
    plans = list_plans(repo)
    assert [p.tier for p in plans] == [PlanTier.FREE, PlanTier.STARTER, PlanTier.PROFESSIONAL, PlanTier.ENTERPRISE]
    assert [p.plan_id for p in plans] == ["free-plan", "starter-plan", "professional-plan", "enterprise-plan"]


def test_seed_plans_is_idempotent(repo):
    before = {p.tier: p.plan_id for p in list_plans(repo)}
    seed_plans(repo)
    seed_plans(repo)
    after = list_plans(repo)
    assert len(after) == 4
    assert {p.tier: p.plan_id for p in after} == before


def test_reseeding_keeps_existing_plan_ids(repo):
    starter = get_plan(repo, PlanTier.STARTER)
    repo.upsert_plan(starter.model_copy(update={"plan_id": "some-other-id", "name": "Starter v2"}))

    refreshed = get_plan(repo, PlanTier.STARTER)
    assert refreshed.plan_id == "starter-plan"
    assert refreshed.name == "Starter v2"


def test_default_catalog_values(repo):
    free = get_default_plan(repo)
    assert free.tier == PlanTier.FREE
    assert free.limits.get(LimitType.RESTAURANTS) == 1
    assert free.limits.get(LimitType.PRODUCTS) == 50
    assert free.limits.get(LimitType.API_CALLS) == 1000

    enterprise = get_plan(repo, PlanTier.ENTERPRISE)
    assert enterprise.price_monthly is None
    assert all(enterprise.limits.get(t) == UNLIMITED for t in LimitType)


def test_get_plan_missing_tier_raises():
    with pytest.raises(PlanNotFoundError):
        get_plan(InMemoryRepository(), PlanTier.FREE)


def test_tier_comparisons():
    assert is_upgrade(PlanTier.FREE, PlanTier.STARTER)
    assert is_downgrade(PlanTier.PROFESSIONAL, PlanTier.STARTER)
    assert not is_upgrade(PlanTier.STARTER, PlanTier.STARTER)
    assert not is_downgrade(PlanTier.STARTER, PlanTier.STARTER)
    # No current tier compares as FREE
    assert is_upgrade(None, PlanTier.STARTER)
    assert not is_downgrade(None, PlanTier.FREE)


def test_variant_and_rate_limits_per_tier():
    assert get_variant_limit(PlanTier.FREE) == 3
    assert get_variant_limit(PlanTier.STARTER) == 5
    assert get_variant_limit(PlanTier.PROFESSIONAL) == UNLIMITED
    assert get_rate_limit_for_tier(PlanTier.ENTERPRISE) == 1000
    assert get_rate_limit_for_tier(None) == get_rate_limit_for_tier(PlanTier.FREE)
