"""
Service providers for the API layer.

Every route and RPC procedure reaches the store through get_repository(), so
tests swap the whole stack with one `app.dependency_overrides` entry (plus
get_tasks for a synchronous runner).
"""
from functools import lru_cache
from typing import Any, Dict

from fastapi import Depends

from tightship.core.auth import get_current_user_id
from tightship.core.errors import ValidationError
from tightship.core.rate_limit import FixedWindowLimiter, get_tier_limiter
from tightship.core.tasks import TaskRunner, get_task_runner
from tightship.features.enforcement.service import EnforcementService
from tightship.features.entitlements.service import SubscriptionService
from tightship.features.grace_period.service import GracePeriodService
from tightship.features.store.repository import SubscriptionRepository
from tightship.features.store.sql import SqlRepository
from tightship.features.subscriptions.service import SubscriptionManagementService
from tightship.features.usage.service import UsageLedger


@lru_cache(maxsize=1)
def _default_repository() -> SqlRepository:
    return SqlRepository()


def get_repository() -> SubscriptionRepository:
    return _default_repository()


def get_tasks() -> TaskRunner:
    return get_task_runner()


def get_limiter() -> FixedWindowLimiter:
    return get_tier_limiter()


def get_usage_ledger(repository: SubscriptionRepository = Depends(get_repository)) -> UsageLedger:
    return UsageLedger(repository)


def get_subscription_service(ledger: UsageLedger = Depends(get_usage_ledger)) -> SubscriptionService:
    return SubscriptionService(ledger.repository, ledger=ledger)


def get_grace_period_service(
    subscriptions: SubscriptionService = Depends(get_subscription_service),
    tasks: TaskRunner = Depends(get_tasks),
) -> GracePeriodService:
    return GracePeriodService(subscriptions, tasks=tasks)


def get_management_service(
    repository: SubscriptionRepository = Depends(get_repository),
    tasks: TaskRunner = Depends(get_tasks),
) -> SubscriptionManagementService:
    return SubscriptionManagementService(repository, tasks=tasks)


def get_enforcement_service(
    subscriptions: SubscriptionService = Depends(get_subscription_service),
    tasks: TaskRunner = Depends(get_tasks),
    limiter: FixedWindowLimiter = Depends(get_limiter),
) -> EnforcementService:
    return EnforcementService(subscriptions, tasks=tasks, limiter=limiter)


def get_current_organization_id(
    user_id: str = Depends(get_current_user_id),
    repository: SubscriptionRepository = Depends(get_repository),
) -> str:
    """The caller's organization for ungated account routes."""
    organization_id = repository.get_user_organization(user_id)
    if not organization_id:
        raise ValidationError("No organization found. Please create an organization first.")
    return organization_id


def get_rpc_context_values(
    enforcement: EnforcementService = Depends(get_enforcement_service),
) -> Dict[str, Any]:
    return {"enforcement": enforcement, "repository": enforcement.repository}
