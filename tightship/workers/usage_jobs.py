"""
RQ jobs for detached side effects.

RqTaskRunner enqueues "tightship.workers.usage_jobs.<task name>", so every
task name submitted through core.tasks needs a module-level function here.
Run a worker with:

    rq worker usage --url $REDIS_URL
"""
import logging
from functools import lru_cache
from typing import Any

from tightship.features.audit import service as audit_service
from tightship.features.entitlements.service import SubscriptionService
from tightship.features.store.sql import SqlRepository

logger = logging.getLogger("tightship.workers.usage")


@lru_cache(maxsize=1)
def _subscriptions() -> SubscriptionService:
    return SubscriptionService(SqlRepository())


def track_api_call(organization_id: str) -> int:
    count = _subscriptions().track_api_call(organization_id)
    logger.debug("[usage_jobs] api call tracked", extra={"organization_id": organization_id, "count": count})
    return count


def record_audit_event(**fields: Any) -> None:
    audit_service.record_audit_event(**fields)
