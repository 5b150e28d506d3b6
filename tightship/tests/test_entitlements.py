"""
Tests for the entitlement evaluator: subscription views, limit checks,
feature flags and derived status.
"""
from datetime import timedelta

import pytest

from tightship.core.errors import PlanNotFoundError, ValidationError
from tightship.features.enforcement.policy import LimitRequirement, SubscriptionPolicy
from tightship.features.entitlements.service import SubscriptionService, days_until
from tightship.features.plans.service import get_plan
from tightship.features.store.memory import InMemoryRepository
from tightship.features.subscriptions.service import new_subscription_id
from tightship.models.menu import ProductType
from tightship.models.plan import UNLIMITED, LimitType, PlanTier
from tightship.models.subscription import (
    PersistedSubscriptionView,
    SubscriptionRecord,
    SubscriptionStatus,
    VirtualSubscriptionView,
)
from tightship.models.usage import MetricType


def _live(make_org, now, tier=PlanTier.STARTER, status=SubscriptionStatus.ACTIVE):
    return make_org(tier=tier, status=status, period_start=now - timedelta(days=1), period_end=now + timedelta(days=29))


def test_org_without_subscription_gets_virtual_free_trial(repo, subscriptions, make_org):
    org = make_org(tier=None)

    view = subscriptions.get_subscription(org)
    assert isinstance(view, VirtualSubscriptionView)
    assert view.plan.tier == PlanTier.FREE
    assert view.status == SubscriptionStatus.TRIALING
    assert view.current_period_end is None
    assert not hasattr(view, "subscription_id")


def test_persisted_view_carries_subscription_id(subscriptions, make_org, now):
    org = _live(make_org, now)

    view = subscriptions.get_subscription(org)
    assert isinstance(view, PersistedSubscriptionView)
    assert view.subscription_id.startswith("sub_")
    assert view.plan.tier == PlanTier.STARTER


def test_missing_free_plan_is_an_error():
    service = SubscriptionService(InMemoryRepository())
    with pytest.raises(PlanNotFoundError):
        service.get_subscription("org_without_catalog")


def test_dangling_plan_reference_fails_closed(repo, subscriptions, now):
    repo.create_subscription(
        SubscriptionRecord(
            subscription_id=new_subscription_id(),
            organization_id="org_dangling",
            plan_id="retired-plan",
            status=SubscriptionStatus.ACTIVE,
            current_period_start=now,
            current_period_end=now + timedelta(days=30),
        )
    )
    with pytest.raises(PlanNotFoundError):
        subscriptions.check_limit("org_dangling", LimitType.RESTAURANTS)


def test_restaurant_limit_counts_active_rows(repo, subscriptions, make_org, now):
    org = _live(make_org, now)
    for i in range(3):
        repo.create_restaurant(org, f"Diner {i}")
    repo.create_restaurant(org, "Closed diner", is_active=False)

    result = subscriptions.check_limit(org, LimitType.RESTAURANTS, 1, now=now)
    assert not result.allowed
    assert result.current_usage == 3
    assert result.limit == 3
    assert result.message == "restaurants limit exceeded. Current: 3, Limit: 3, Requested: 1"


def test_zero_amount_at_limit_is_allowed(repo, subscriptions, make_org, now):
    org = _live(make_org, now)
    for i in range(3):
        repo.create_restaurant(org, f"Diner {i}")

    result = subscriptions.check_limit(org, LimitType.RESTAURANTS, 0, now=now)
    assert result.allowed
    assert result.message is None


def test_product_count_ignores_variants_and_inactive_restaurants(repo, subscriptions, make_org, now):
    org = _live(make_org, now)
    open_restaurant = repo.create_restaurant(org, "Open")
    closed_restaurant = repo.create_restaurant(org, "Closed", is_active=False)

    parent = repo.create_product(open_restaurant.restaurant_id, "Pizza", product_type=ProductType.PARENT)
    repo.create_product(
        open_restaurant.restaurant_id, "Large", product_type=ProductType.VARIANT, parent_product_id=parent.product_id
    )
    repo.create_product(open_restaurant.restaurant_id, "Soda")
    repo.create_product(open_restaurant.restaurant_id, "Old special", is_active=False)
    repo.create_product(closed_restaurant.restaurant_id, "Hidden")

    result = subscriptions.check_limit(org, LimitType.PRODUCTS, 0, now=now)
    assert result.current_usage == 2


def test_unlimited_limit_skips_usage_lookup(repo, subscriptions, make_org, now):
    org = _live(make_org, now, tier=PlanTier.PROFESSIONAL)

    result = subscriptions.check_limit(org, LimitType.PRODUCTS, 10_000, now=now)
    assert result.allowed
    assert result.limit == UNLIMITED
    assert result.current_usage is None


def test_api_calls_limit_reads_current_month_ledger(subscriptions, ledger, make_org, now):
    org = _live(make_org, now)
    ledger.track_usage(org, MetricType.API_CALLS, 9_999, now=now)
    # Last month's usage does not count
    ledger.track_usage(org, MetricType.API_CALLS, 500, now=now - timedelta(days=31))

    assert subscriptions.check_limit(org, LimitType.API_CALLS, 1, now=now).allowed
    result = subscriptions.check_limit(org, LimitType.API_CALLS, 2, now=now)
    assert not result.allowed
    assert result.current_usage == 9_999


def test_negative_requested_amount_is_rejected(subscriptions, make_org, now):
    org = _live(make_org, now)
    with pytest.raises(ValidationError):
        subscriptions.check_limit(org, LimitType.RESTAURANTS, -1, now=now)


def test_has_feature_is_strict(subscriptions, make_org, now):
    org = _live(make_org, now)
    assert subscriptions.has_feature(org, "priceSync") is True
    assert subscriptions.has_feature(org, "bulkOperations") is False
    assert subscriptions.has_feature(org, "noSuchFeature") is False


def test_status_view_for_live_subscription(subscriptions, make_org, now):
    org = make_org(period_start=now - timedelta(days=28), period_end=now + timedelta(hours=36))

    status = subscriptions.get_subscription_status(org, now=now)
    assert status.is_active
    assert not status.is_expired
    assert status.days_until_expiry == 2


def test_status_view_for_ended_period(subscriptions, make_org, now):
    org = make_org(period_start=now - timedelta(days=40), period_end=now - timedelta(days=10))

    status = subscriptions.get_subscription_status(org, now=now)
    # Status is still ACTIVE until the sweep runs; the derived flag tells the truth
    assert status.status == SubscriptionStatus.ACTIVE
    assert status.is_active
    assert status.is_expired
    assert status.days_until_expiry == -10


def test_status_view_for_virtual_subscription(subscriptions, make_org, now):
    org = make_org(tier=None)

    status = subscriptions.get_subscription_status(org, now=now)
    assert status.is_active
    assert not status.is_expired
    assert status.days_until_expiry is None


def test_days_until_rounds_up(now):
    assert days_until(now + timedelta(hours=1), now) == 1
    assert days_until(now + timedelta(days=3), now) == 3
    assert days_until(None, now) is None


def test_usage_stats_snapshot(repo, subscriptions, ledger, make_org, now):
    org = _live(make_org, now)
    repo.create_restaurant(org, "Diner")
    ledger.track_usage(org, MetricType.API_CALLS, 42, now=now)

    stats = subscriptions.get_usage_stats(org, now=now)
    assert stats.plan.tier == PlanTier.STARTER
    assert stats.restaurants.current_usage == 1
    assert stats.products.current_usage == 0
    assert stats.api_calls.current_usage == 42
    assert all(c.requested_amount == 0 for c in (stats.restaurants, stats.products, stats.api_calls))


def test_track_api_call_increments_ledger(subscriptions, ledger, make_org, now):
    org = _live(make_org, now)
    subscriptions.track_api_call(org, now=now)
    subscriptions.track_api_call(org, now=now)
    assert ledger.get_current_usage(org, MetricType.API_CALLS, now=now) == 2


def test_variant_limit_by_tier(repo, subscriptions, make_org, now):
    org = _live(make_org, now, tier=PlanTier.FREE)
    restaurant = repo.create_restaurant(org, "Diner")
    parent = repo.create_product(restaurant.restaurant_id, "Burger", product_type=ProductType.PARENT)
    for size in ("S", "M", "L"):
        repo.create_product(
            restaurant.restaurant_id, size, product_type=ProductType.VARIANT, parent_product_id=parent.product_id
        )

    result = subscriptions.check_variant_limit(org, parent.product_id)
    assert not result.allowed
    assert result.message == "Variant limit exceeded for FREE plan. Current: 3, Limit: 3, Requested: 1"


def test_rate_limit_follows_tier(subscriptions, make_org, now):
    assert subscriptions.get_rate_limit(_live(make_org, now, tier=PlanTier.STARTER)) == 30
    assert subscriptions.get_rate_limit(make_org(tier=None)) == 10


def test_missing_row_matches_explicit_free_trial(repo, subscriptions, enforcement, ledger, make_org, now):
    virtual = make_org(tier=None)
    explicit = _live(make_org, now, tier=PlanTier.FREE, status=SubscriptionStatus.TRIALING)
    for org in (virtual, explicit):
        restaurant = repo.create_restaurant(org, "Diner")
        repo.create_product(restaurant.restaurant_id, "Soup")
        repo.create_product(restaurant.restaurant_id, "Salad")
        ledger.track_usage(org, MetricType.API_CALLS, 5, now=now)

    for limit_type in (LimitType.RESTAURANTS, LimitType.PRODUCTS, LimitType.API_CALLS):
        for amount in (0, 1):
            assert subscriptions.check_limit(virtual, limit_type, amount, now=now) == subscriptions.check_limit(
                explicit, limit_type, amount, now=now
            )

    for feature in list(get_plan(repo, PlanTier.FREE).features) + ["notAFeature"]:
        assert subscriptions.has_feature(virtual, feature) == subscriptions.has_feature(explicit, feature)

    policies = (
        SubscriptionPolicy(allow_trial=True),
        SubscriptionPolicy(allow_trial=True, require_limit=LimitRequirement(LimitType.RESTAURANTS)),
        SubscriptionPolicy(allow_trial=True, require_limit=LimitRequirement(LimitType.PRODUCTS)),
        SubscriptionPolicy(allow_trial=True, require_feature="bulkOperations", operation="write"),
    )
    for policy in policies:
        assert enforcement.evaluate(virtual, policy, now=now).denial == enforcement.evaluate(
            explicit, policy, now=now
        ).denial
