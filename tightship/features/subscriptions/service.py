"""
tightship/features/subscriptions/service.py

Subscription lifecycle: onboarding, plan changes, cancellation and
reactivation. Payment collection happens elsewhere; a manual plan change puts
the subscription in TRIALING until billing confirms it.

Downgrades are validated against live restaurant and product counts before
anything is written, so a rejected change leaves the subscription untouched.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import uuid4

from tightship.core.clock import normalize_now
from tightship.core.config import settings
from tightship.core.errors import NotFoundError, PlanChangeError, ValidationError
from tightship.core.tasks import TaskRunner
from tightship.features.audit.service import emit_audit_event
from tightship.features.plans.service import get_plan, is_downgrade, is_upgrade, list_plans
from tightship.features.store.repository import SubscriptionRepository
from tightship.models.plan import UNLIMITED, LimitType, Plan, PlanTier
from tightship.models.subscription import (
    PlanOption,
    SubscriptionChangeResult,
    SubscriptionOptions,
    SubscriptionRecord,
    SubscriptionStatus,
)

logger = logging.getLogger("tightship.subscriptions")


def new_subscription_id() -> str:
    return f"sub_{uuid4().hex}"


class SubscriptionManagementService:
    def __init__(self, repository: SubscriptionRepository, tasks: Optional[TaskRunner] = None):
        self.repository = repository
        self.tasks = tasks

    def _require(self, organization_id: str) -> SubscriptionRecord:
        record = self.repository.get_subscription(organization_id)
        if record is None:
            raise NotFoundError("No subscription found")
        return record

    def create_initial_subscription(
        self,
        organization_id: str,
        tier: PlanTier = PlanTier.FREE,
        now: Optional[datetime] = None,
    ) -> SubscriptionRecord:
        """
        Start an organization on `tier` with a trial period.

        Raises:
            PlanNotFoundError: If the tier is not in the catalog
            ConflictError: If the organization already has a subscription
        """
        current = normalize_now(now)
        plan = get_plan(self.repository, tier)
        record = self.repository.create_subscription(
            SubscriptionRecord(
                subscription_id=new_subscription_id(),
                organization_id=organization_id,
                plan_id=plan.plan_id,
                status=SubscriptionStatus.TRIALING,
                current_period_start=current,
                current_period_end=current + timedelta(days=settings.TRIAL_PERIOD_DAYS),
            )
        )
        logger.info(
            "[subscriptions] initial subscription created",
            extra={"organization_id": organization_id, "tier": plan.tier.value, "subscription_id": record.subscription_id},
        )
        self._audit("subscription.created", record, {"tier": plan.tier.value})
        return record

    def validate_change(self, organization_id: str, current_plan: Optional[Plan], new_plan: Plan) -> None:
        """
        Reject a downgrade the organization's live usage does not fit.

        Raises:
            PlanChangeError: Naming the current count and the new plan's limit
        """
        current_tier = current_plan.tier if current_plan else None
        if not is_downgrade(current_tier, new_plan.tier):
            return

        for limit_type in (LimitType.RESTAURANTS, LimitType.PRODUCTS):
            limit = new_plan.limits.get(limit_type)
            if limit == UNLIMITED:
                continue
            count = self.repository.count_active(limit_type, organization_id)
            if count > limit:
                raise PlanChangeError(
                    f"Cannot downgrade: You have {count} {limit_type.value} "
                    f"but the {new_plan.name} plan only allows {limit}"
                )

    def change_subscription(
        self,
        organization_id: str,
        new_plan_id: str,
        effective_date: Optional[datetime] = None,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> SubscriptionChangeResult:
        """
        Move the organization to another plan.

        The new plan starts a fresh trial-length period at `effective_date`
        (default now) in TRIALING status.
        """
        record = self._require(organization_id)
        new_plan = self.repository.get_plan_by_id(new_plan_id)
        if new_plan is None or not new_plan.is_active:
            raise ValidationError("Invalid plan selected")
        current_plan = self.repository.get_plan_by_id(record.plan_id)

        try:
            self.validate_change(organization_id, current_plan, new_plan)
        except PlanChangeError as exc:
            logger.warning(
                "[subscriptions] plan change rejected",
                extra={"organization_id": organization_id, "new_plan_id": new_plan_id, "reason": exc.message},
            )
            raise

        start = normalize_now(effective_date)
        updated = self.repository.update_subscription(
            organization_id,
            plan_id=new_plan.plan_id,
            current_period_start=start,
            current_period_end=start + timedelta(days=settings.TRIAL_PERIOD_DAYS),
            status=SubscriptionStatus.TRIALING,
        )
        logger.info(
            "[subscriptions] subscription changed",
            extra={
                "organization_id": organization_id,
                "old_tier": current_plan.tier.value if current_plan else None,
                "new_tier": new_plan.tier.value,
                "reason": reason,
            },
        )
        self._audit(
            "subscription.plan_changed",
            updated,
            {"old_plan_id": record.plan_id, "new_plan_id": new_plan.plan_id, "reason": reason},
            actor=actor,
        )
        return SubscriptionChangeResult(
            subscription=updated,
            message=f"Successfully changed to {new_plan.name} plan",
        )

    def cancel_subscription(
        self,
        organization_id: str,
        cancel_at_period_end: bool = True,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> SubscriptionChangeResult:
        """
        Cancel now (CANCELLED) or at period end (stays ACTIVE, flag set).
        """
        record = self._require(organization_id)
        status = SubscriptionStatus.ACTIVE if cancel_at_period_end else SubscriptionStatus.CANCELLED
        updated = self.repository.update_subscription(
            organization_id, cancel_at_period_end=cancel_at_period_end, status=status
        )
        logger.info(
            "[subscriptions] cancellation requested",
            extra={"organization_id": organization_id, "cancel_at_period_end": cancel_at_period_end, "reason": reason},
        )
        self._audit(
            "subscription.cancelled",
            updated,
            {"cancel_at_period_end": cancel_at_period_end, "reason": reason},
            actor=actor,
        )
        if cancel_at_period_end:
            message = (
                "Your subscription will be cancelled at the end of your billing period "
                f"({record.current_period_end.strftime('%a %b %d %Y')})"
            )
        else:
            message = "Your subscription has been cancelled immediately"
        return SubscriptionChangeResult(subscription=updated, message=message)

    def reactivate_subscription(self, organization_id: str, actor: Optional[str] = None) -> SubscriptionChangeResult:
        """
        Undo a cancellation.

        Raises:
            ValidationError: If the subscription is neither cancelled nor pending cancellation
        """
        record = self._require(organization_id)
        if record.status != SubscriptionStatus.CANCELLED and not record.cancel_at_period_end:
            raise ValidationError("Subscription is not cancelled")

        updated = self.repository.update_subscription(
            organization_id, cancel_at_period_end=False, status=SubscriptionStatus.ACTIVE
        )
        logger.info("[subscriptions] reactivated", extra={"organization_id": organization_id})
        self._audit("subscription.reactivated", updated, None, actor=actor)
        return SubscriptionChangeResult(subscription=updated, message="Your subscription has been reactivated")

    def get_subscription_options(self, organization_id: str) -> SubscriptionOptions:
        """Active plans flagged relative to the organization's current tier."""
        record = self.repository.get_subscription(organization_id)
        current_tier = None
        if record is not None:
            current_plan = self.repository.get_plan_by_id(record.plan_id)
            current_tier = current_plan.tier if current_plan else None

        options = [
            PlanOption(
                plan=plan,
                is_current=plan.tier == current_tier,
                is_upgrade=is_upgrade(current_tier, plan.tier),
                is_downgrade=is_downgrade(current_tier, plan.tier),
            )
            for plan in list_plans(self.repository)
        ]
        return SubscriptionOptions(current_subscription=record, available_plans=options)

    def _audit(self, action: str, record: SubscriptionRecord, payload, actor: Optional[str] = None) -> None:
        emit_audit_event(
            self.tasks,
            action=action,
            organization_id=record.organization_id,
            actor=actor,
            target_type="subscription",
            target_id=record.subscription_id,
            payload=payload,
        )
