"""
Enforcement service: evaluation order, grace-aware policies, rate limiting
and api-call tracking.
"""
from datetime import timedelta

import pytest

from tightship.core.errors import PlanNotFoundError, RateLimitError
from tightship.core.rate_limit import FixedWindowLimiter
from tightship.features.enforcement.denials import (
    EntitlementDeniedError,
    Expired,
    FeatureDenied,
    GracePeriodRestricted,
    Inactive,
    LimitExceeded,
    NoOrganization,
    Unauthenticated,
)
from tightship.features.enforcement.policy import LimitRequirement, SubscriptionPolicy
from tightship.features.enforcement.service import EnforcementService
from tightship.features.subscriptions.service import new_subscription_id
from tightship.models.plan import LimitType, PlanTier
from tightship.models.subscription import SubscriptionRecord, SubscriptionStatus
from tightship.models.usage import MetricType

CREATE_RESTAURANT = SubscriptionPolicy(require_limit=LimitRequirement(LimitType.RESTAURANTS))


def _org(make_org, now, tier=PlanTier.STARTER, status=SubscriptionStatus.ACTIVE, ended_days_ago=None):
    if ended_days_ago is None:
        return make_org(tier=tier, status=status, period_start=now - timedelta(days=1), period_end=now + timedelta(days=29))
    end = now - timedelta(days=ended_days_ago)
    return make_org(tier=tier, status=status, period_start=end - timedelta(days=30), period_end=end)


def _denial(enforcement, user_id, policy, now):
    with pytest.raises(EntitlementDeniedError) as exc:
        enforcement.authorize(user_id, policy, now=now)
    return exc.value.denial


def test_missing_user_is_unauthenticated(enforcement, now):
    assert isinstance(_denial(enforcement, None, SubscriptionPolicy(), now), Unauthenticated)


def test_user_without_organization(repo, enforcement, now):
    repo.create_user("drifter")
    assert isinstance(_denial(enforcement, "drifter", SubscriptionPolicy(), now), NoOrganization)


def test_active_subscription_passes(enforcement, make_org, now):
    org = _org(make_org, now)

    ctx = enforcement.authorize("user_1", CREATE_RESTAURANT, now=now)
    assert ctx.organization_id == org
    assert ctx.status.plan.tier == PlanTier.STARTER


@pytest.mark.parametrize("status", [SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELLED])
def test_non_active_status_is_inactive(enforcement, make_org, now, status):
    _org(make_org, now, status=status)

    denial = _denial(enforcement, "user_1", SubscriptionPolicy(), now)
    assert denial == Inactive(status=status)


def test_allow_trial_accepts_trialing(enforcement, make_org, now):
    _org(make_org, now, status=SubscriptionStatus.TRIALING)
    assert enforcement.authorize("user_1", SubscriptionPolicy(allow_trial=True), now=now).organization_id


def test_virtual_subscription_needs_allow_trial(enforcement, make_org, now):
    make_org(tier=None)
    assert isinstance(_denial(enforcement, "user_1", SubscriptionPolicy(), now), Inactive)
    assert enforcement.authorize("user_1", SubscriptionPolicy(allow_trial=True), now=now)


def test_ended_active_period_is_expired(enforcement, make_org, now):
    _org(make_org, now, ended_days_ago=2)

    denial = _denial(enforcement, "user_1", SubscriptionPolicy(), now)
    assert isinstance(denial, Expired)
    assert denial.expired_at == now - timedelta(days=2)
    assert denial.grace_period.in_grace_period


def test_grace_window_lets_allowed_operations_through(enforcement, make_org, now):
    _org(make_org, now, ended_days_ago=2)

    assert enforcement.authorize("user_1", SubscriptionPolicy(operation="read"), now=now)
    denial = _denial(enforcement, "user_1", SubscriptionPolicy(operation="write"), now)
    assert isinstance(denial, GracePeriodRestricted)
    assert denial.grace_period.days_remaining == 5


def test_operation_policy_after_grace_is_expired(enforcement, make_org, now):
    _org(make_org, now, ended_days_ago=10)
    assert isinstance(_denial(enforcement, "user_1", SubscriptionPolicy(operation="read"), now), Expired)


def test_past_due_read_policy_follows_grace_window(enforcement, make_org, now):
    read_anyway = SubscriptionPolicy(allow_trial=True, operation="read")

    make_org(tier=PlanTier.STARTER, status=SubscriptionStatus.PAST_DUE,
             period_start=now - timedelta(days=32), period_end=now - timedelta(days=2), user_id="in_grace")
    assert enforcement.authorize("in_grace", read_anyway, now=now)

    make_org(tier=PlanTier.STARTER, status=SubscriptionStatus.PAST_DUE,
             period_start=now - timedelta(days=40), period_end=now - timedelta(days=10), user_id="swept")
    denial = _denial(enforcement, "swept", read_anyway, now)
    assert isinstance(denial, Expired)
    assert not denial.grace_period.in_grace_period


def test_feature_check_runs_before_limit_check(repo, enforcement, make_org, now):
    org = _org(make_org, now)
    for i in range(3):
        repo.create_restaurant(org, f"Diner {i}")
    policy = SubscriptionPolicy(require_feature="bulkOperations", require_limit=LimitRequirement(LimitType.RESTAURANTS))

    denial = _denial(enforcement, "user_1", policy, now)
    assert denial == FeatureDenied(feature="bulkOperations", current_plan="Starter")


def test_limit_exceeded(repo, enforcement, make_org, now):
    org = _org(make_org, now)
    for i in range(3):
        repo.create_restaurant(org, f"Diner {i}")

    denial = _denial(enforcement, "user_1", CREATE_RESTAURANT, now)
    assert denial == LimitExceeded(limit_type=LimitType.RESTAURANTS, current_usage=3, limit=3, requested_amount=1)


def test_requested_amount_is_part_of_the_check(enforcement, make_org, now):
    _org(make_org, now)
    policy = SubscriptionPolicy(require_limit=LimitRequirement(LimitType.RESTAURANTS, amount=4))
    assert _denial(enforcement, "user_1", policy, now).requested_amount == 4


def test_evaluate_has_no_side_effects(enforcement, ledger, make_org, now):
    org = _org(make_org, now)
    decision = enforcement.evaluate(org, SubscriptionPolicy(track_api_call=True), now=now)
    assert decision.allowed
    assert ledger.get_current_usage(org, MetricType.API_CALLS, now=now) == 0


def test_store_errors_fail_closed(repo, enforcement, now):
    repo.create_user("user_x", organization_id="org_x")
    repo.create_subscription(
        SubscriptionRecord(
            subscription_id=new_subscription_id(),
            organization_id="org_x",
            plan_id="retired-plan",
            status=SubscriptionStatus.ACTIVE,
            current_period_start=now - timedelta(days=1),
            current_period_end=now + timedelta(days=29),
        )
    )
    with pytest.raises(PlanNotFoundError):
        enforcement.authorize("user_x", SubscriptionPolicy(), now=now)


def test_rate_limit_by_tier(subscriptions, tasks, make_org, now, test_settings, monkeypatch):
    monkeypatch.setattr(test_settings, "RATE_LIMIT_ENABLED", True)
    clock = {"t": 0.0}
    service = EnforcementService(subscriptions, tasks=tasks, limiter=FixedWindowLimiter(time_fn=lambda: clock["t"]))
    _org(make_org, now, tier=PlanTier.FREE)

    for _ in range(10):
        service.authorize("user_1", SubscriptionPolicy(), now=now)
    with pytest.raises(RateLimitError):
        service.authorize("user_1", SubscriptionPolicy(), now=now)

    clock["t"] += 60
    assert service.authorize("user_1", SubscriptionPolicy(), now=now)


def test_rate_limit_fails_open(enforcement, subscriptions, make_org, now, monkeypatch):
    org = _org(make_org, now)

    def broken(organization_id):
        raise RuntimeError("tier lookup failed")

    monkeypatch.setattr(subscriptions, "get_rate_limit", broken)
    enforcement.check_rate_limit(org)


def test_record_api_call_is_detached(enforcement, subscriptions, ledger, tasks, make_org, now, monkeypatch):
    org = _org(make_org, now)

    enforcement.record_api_call(org)
    assert tasks.submitted == ["track_api_call"]
    assert ledger.get_current_usage(org, MetricType.API_CALLS) == 1

    def broken(organization_id, now=None):
        raise RuntimeError("ledger down")

    monkeypatch.setattr(subscriptions, "track_api_call", broken)
    enforcement.record_api_call(org)
    assert ledger.get_current_usage(org, MetricType.API_CALLS) == 1
