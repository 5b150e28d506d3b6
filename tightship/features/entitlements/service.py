"""
tightship/features/entitlements/service.py

Entitlement evaluator.

SubscriptionService answers the three questions every gated entry point
asks: is the subscription active, is a feature on the plan, and does a
requested increment fit a limit. get_subscription_status() is the single
place the active/expired flags are derived; enforcement and UI both read it.

Limit sources:
- restaurants, products: live count of active rows
- apiCalls: current month's ledger row

Nothing here catches store errors. A failed read during a limit or feature
check propagates to the caller and is never turned into an allow.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from tightship.core.clock import normalize_now
from tightship.core.errors import PlanNotFoundError, ValidationError
from tightship.features.plans.service import (
    get_default_plan,
    get_rate_limit_for_tier,
    get_variant_limit,
)
from tightship.features.store.repository import SubscriptionRepository
from tightship.features.usage.service import UsageLedger
from tightship.models.plan import UNLIMITED, LimitType
from tightship.models.subscription import (
    ACTIVE_STATUSES,
    PersistedSubscriptionView,
    StatusView,
    SubscriptionStatus,
    SubscriptionView,
    VirtualSubscriptionView,
)
from tightship.models.usage import LimitCheckResult, MetricType, UsageStats, VariantLimitResult

logger = logging.getLogger("tightship.entitlements")

ONE_DAY = timedelta(days=1)


def limit_exceeded_message(limit_type: LimitType, current_usage: int, limit: int, requested_amount: int) -> str:
    return (
        f"{LimitType(limit_type).value} limit exceeded. "
        f"Current: {current_usage}, Limit: {limit}, Requested: {requested_amount}"
    )


def days_until(period_end: Optional[datetime], now: datetime) -> Optional[int]:
    """Ceiling of the day difference; negative once the period has ended."""
    if period_end is None:
        return None
    return math.ceil((normalize_now(period_end) - now) / ONE_DAY)


class SubscriptionService:
    def __init__(self, repository: SubscriptionRepository, ledger: Optional[UsageLedger] = None):
        self.repository = repository
        self.ledger = ledger or UsageLedger(repository)

    def get_subscription(self, organization_id: str) -> SubscriptionView:
        """
        The organization's subscription.

        Without a stored row the organization gets a virtual FREE/TRIALING
        view with no period bounds. If the FREE plan itself is missing,
        PlanNotFoundError is raised rather than inventing limits.
        """
        record = self.repository.get_subscription(organization_id)
        if record is None:
            return VirtualSubscriptionView(
                organization_id=organization_id,
                status=SubscriptionStatus.TRIALING,
                plan=get_default_plan(self.repository),
            )

        plan = self.repository.get_plan_by_id(record.plan_id)
        if plan is None:
            logger.error(
                "[entitlements] subscription references unknown plan",
                extra={"organization_id": organization_id, "plan_id": record.plan_id},
            )
            raise PlanNotFoundError(f"Subscription references unknown plan {record.plan_id}")

        return PersistedSubscriptionView(
            subscription_id=record.subscription_id,
            organization_id=record.organization_id,
            status=record.status,
            plan=plan,
            current_period_start=record.current_period_start,
            current_period_end=record.current_period_end,
            cancel_at_period_end=record.cancel_at_period_end,
        )

    def check_limit(
        self,
        organization_id: str,
        limit_type: LimitType,
        requested_amount: int = 1,
        now: Optional[datetime] = None,
    ) -> LimitCheckResult:
        """
        Check whether `requested_amount` more units fit the plan limit.

        requested_amount=0 reads current usage without changing the decision.
        """
        limit_type = LimitType(limit_type)
        if requested_amount < 0:
            raise ValidationError("requested_amount must be non-negative")

        subscription = self.get_subscription(organization_id)
        limit = subscription.limits.get(limit_type)

        if limit == UNLIMITED:
            return LimitCheckResult(
                limit_type=limit_type,
                allowed=True,
                requested_amount=requested_amount,
                limit=UNLIMITED,
            )

        current_usage = self._current_usage(organization_id, limit_type, now)
        allowed = current_usage + requested_amount <= limit
        return LimitCheckResult(
            limit_type=limit_type,
            allowed=allowed,
            requested_amount=requested_amount,
            current_usage=current_usage,
            limit=limit,
            message=None if allowed else limit_exceeded_message(limit_type, current_usage, limit, requested_amount),
        )

    def _current_usage(self, organization_id: str, limit_type: LimitType, now: Optional[datetime]) -> int:
        if limit_type == LimitType.API_CALLS:
            return self.ledger.get_current_usage(organization_id, MetricType.API_CALLS, now=now)
        return self.repository.count_active(limit_type, organization_id)

    def has_feature(self, organization_id: str, feature: str) -> bool:
        """Strict flag lookup: a missing key is False."""
        subscription = self.get_subscription(organization_id)
        return subscription.features.get(feature) is True

    def get_subscription_status(self, organization_id: str, now: Optional[datetime] = None) -> StatusView:
        current = normalize_now(now)
        subscription = self.get_subscription(organization_id)
        period_end = subscription.current_period_end
        return StatusView(
            subscription=subscription,
            is_active=subscription.status in ACTIVE_STATUSES,
            is_expired=period_end is not None and normalize_now(period_end) < current,
            days_until_expiry=days_until(period_end, current),
        )

    def track_api_call(self, organization_id: str, now: Optional[datetime] = None) -> int:
        return self.ledger.track_usage(organization_id, MetricType.API_CALLS, 1, now=now)

    def get_usage_stats(self, organization_id: str, now: Optional[datetime] = None) -> UsageStats:
        """Zero-amount limit checks for every limit, plus the plan."""
        subscription = self.get_subscription(organization_id)
        return UsageStats(
            restaurants=self.check_limit(organization_id, LimitType.RESTAURANTS, 0, now=now),
            products=self.check_limit(organization_id, LimitType.PRODUCTS, 0, now=now),
            api_calls=self.check_limit(organization_id, LimitType.API_CALLS, 0, now=now),
            plan=subscription.plan,
        )

    def check_variant_limit(
        self, organization_id: str, parent_product_id: str, requested_amount: int = 1
    ) -> VariantLimitResult:
        if requested_amount < 0:
            raise ValidationError("requested_amount must be non-negative")
        tier = self.get_subscription(organization_id).plan.tier
        limit = get_variant_limit(tier)
        if limit == UNLIMITED:
            return VariantLimitResult(allowed=True, limit=UNLIMITED)

        current = self.repository.count_active_variants(parent_product_id)
        allowed = current + requested_amount <= limit
        return VariantLimitResult(
            allowed=allowed,
            current_variants=current,
            limit=limit,
            message=None
            if allowed
            else (
                f"Variant limit exceeded for {tier.value} plan. "
                f"Current: {current}, Limit: {limit}, Requested: {requested_amount}"
            ),
        )

    def get_rate_limit(self, organization_id: str) -> int:
        """Requests per minute allowed for the organization's tier."""
        return get_rate_limit_for_tier(self.get_subscription(organization_id).plan.tier)
