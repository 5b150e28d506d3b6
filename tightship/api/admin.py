"""
Admin API routes for subscription operations.

All routes require the X-Admin-Key header.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from tightship.api.deps import (
    get_grace_period_service,
    get_management_service,
    get_repository,
    get_usage_ledger,
)
from tightship.core.admin_auth import AdminActor, require_admin
from tightship.features.audit.service import get_buffered_audit_events
from tightship.features.grace_period.service import GracePeriodService
from tightship.features.plans.service import seed_plans
from tightship.features.store.repository import SubscriptionRepository
from tightship.features.subscriptions.service import SubscriptionManagementService
from tightship.features.usage.service import UsageLedger
from tightship.models.plan import PlanTier

logger = logging.getLogger("tightship.admin")

router = APIRouter(prefix="/api/admin", tags=["admin"])


class OnboardRequest(BaseModel):
    organization_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    owner_user_id: str = Field(..., min_length=1)
    owner_email: Optional[str] = None
    tier: PlanTier = PlanTier.FREE


class CleanupRequest(BaseModel):
    retention_months: Optional[int] = Field(None, ge=1)
    dry_run: bool = False


@router.post("/plans/seed")
def seed_plan_catalog(
    actor: AdminActor = Depends(require_admin),
    repository: SubscriptionRepository = Depends(get_repository),
):
    plans = seed_plans(repository)
    logger.info("[admin] plans seeded", extra={"actor": actor.actor_id, "count": len(plans)})
    return {"plans": plans}


@router.post("/organizations", status_code=201)
def onboard_organization(
    body: OnboardRequest,
    actor: AdminActor = Depends(require_admin),
    repository: SubscriptionRepository = Depends(get_repository),
    management: SubscriptionManagementService = Depends(get_management_service),
):
    """Create an organization, its owner and the initial trial subscription."""
    repository.create_organization(body.organization_id, body.name)
    repository.create_user(body.owner_user_id, organization_id=body.organization_id, email=body.owner_email)
    subscription = management.create_initial_subscription(body.organization_id, tier=body.tier)
    logger.info(
        "[admin] organization onboarded",
        extra={"actor": actor.actor_id, "organization_id": body.organization_id},
    )
    return {"organization_id": body.organization_id, "subscription": subscription}


@router.post("/subscriptions/process-expired")
def process_expired(
    actor: AdminActor = Depends(require_admin),
    grace: GracePeriodService = Depends(get_grace_period_service),
):
    return grace.process_expired_subscriptions()


@router.post("/subscriptions/{organization_id}/restore")
def restore_access(
    organization_id: str,
    actor: AdminActor = Depends(require_admin),
    grace: GracePeriodService = Depends(get_grace_period_service),
):
    """Reactivate after payment was collected outside this service."""
    return {"subscription": grace.restore_access(organization_id, actor=actor.actor_id)}


@router.post("/usage/cleanup")
def cleanup_usage(
    body: CleanupRequest,
    actor: AdminActor = Depends(require_admin),
    ledger: UsageLedger = Depends(get_usage_ledger),
):
    return ledger.cleanup_usage(retention_months=body.retention_months, dry_run=body.dry_run)


@router.post("/usage/{organization_id}/reset")
def reset_usage(
    organization_id: str,
    actor: AdminActor = Depends(require_admin),
    ledger: UsageLedger = Depends(get_usage_ledger),
):
    return {"deleted": ledger.reset_usage(organization_id)}


@router.get("/audit/buffered")
def buffered_audit_events(actor: AdminActor = Depends(require_admin)):
    """Audit events held in memory because no database was reachable."""
    events = get_buffered_audit_events()
    return {"count": len(events), "events": events}
