"""
Subscription account API.

Read and manage the caller's own subscription. These routes only require an
identity and an organization; they are how a restricted organization gets
back to a paid state, so no subscription policy gates them.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from tightship.api.deps import (
    get_current_organization_id,
    get_grace_period_service,
    get_management_service,
    get_repository,
    get_subscription_service,
    get_usage_ledger,
)
from tightship.core.auth import get_current_user_id
from tightship.features.entitlements.service import SubscriptionService
from tightship.features.grace_period.service import GracePeriodService
from tightship.features.plans.service import list_plans
from tightship.features.store.repository import SubscriptionRepository
from tightship.features.subscriptions.service import SubscriptionManagementService
from tightship.features.usage.service import UsageLedger
from tightship.models.usage import MetricType

router = APIRouter(prefix="/api/subscription", tags=["subscription"])


class ChangePlanRequest(BaseModel):
    plan_id: str = Field(..., min_length=1)
    reason: Optional[str] = None


class CancelRequest(BaseModel):
    cancel_at_period_end: bool = True
    reason: Optional[str] = None


@router.get("/plans")
def get_plans(repository: SubscriptionRepository = Depends(get_repository)):
    """Active plans, cheapest first."""
    return {"plans": list_plans(repository)}


@router.get("/status")
def get_status(
    organization_id: str = Depends(get_current_organization_id),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
):
    status = subscriptions.get_subscription_status(organization_id)
    return {
        "subscription": status.subscription,
        "isActive": status.is_active,
        "isExpired": status.is_expired,
        "daysUntilExpiry": status.days_until_expiry,
    }


@router.get("/usage")
def get_usage(
    organization_id: str = Depends(get_current_organization_id),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
):
    return subscriptions.get_usage_stats(organization_id)


@router.get("/usage/history")
def get_usage_history(
    metric: Optional[MetricType] = Query(None),
    months: int = Query(12, ge=1, le=36),
    organization_id: str = Depends(get_current_organization_id),
    ledger: UsageLedger = Depends(get_usage_ledger),
):
    return {"history": ledger.get_usage_history(organization_id, metric_type=metric, months=months)}


@router.get("/alerts")
def get_alerts(
    organization_id: str = Depends(get_current_organization_id),
    subscriptions: SubscriptionService = Depends(get_subscription_service),
):
    return {"alerts": subscriptions.ledger.get_usage_alerts(organization_id, subscriptions)}


@router.get("/warnings")
def get_warnings(
    organization_id: str = Depends(get_current_organization_id),
    grace: GracePeriodService = Depends(get_grace_period_service),
):
    return {
        "warnings": grace.get_subscription_warnings(organization_id),
        "gracePeriod": grace.is_in_grace_period(organization_id),
    }


@router.get("/options")
def get_options(
    organization_id: str = Depends(get_current_organization_id),
    management: SubscriptionManagementService = Depends(get_management_service),
):
    return management.get_subscription_options(organization_id)


@router.post("/change")
def change_plan(
    body: ChangePlanRequest,
    user_id: str = Depends(get_current_user_id),
    organization_id: str = Depends(get_current_organization_id),
    management: SubscriptionManagementService = Depends(get_management_service),
):
    return management.change_subscription(
        organization_id, body.plan_id, reason=body.reason, actor=f"user:{user_id}"
    )


@router.post("/cancel")
def cancel(
    body: CancelRequest,
    user_id: str = Depends(get_current_user_id),
    organization_id: str = Depends(get_current_organization_id),
    management: SubscriptionManagementService = Depends(get_management_service),
):
    return management.cancel_subscription(
        organization_id,
        cancel_at_period_end=body.cancel_at_period_end,
        reason=body.reason,
        actor=f"user:{user_id}",
    )


@router.post("/reactivate")
def reactivate(
    user_id: str = Depends(get_current_user_id),
    organization_id: str = Depends(get_current_organization_id),
    management: SubscriptionManagementService = Depends(get_management_service),
):
    return management.reactivate_subscription(organization_id, actor=f"user:{user_id}")
