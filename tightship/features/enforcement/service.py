"""
tightship/features/enforcement/service.py

Transport-independent enforcement of a SubscriptionPolicy.

Evaluation order (first failing step wins):
    1. caller identity and organization
    2. status: non-ACTIVE is denied unless the policy allows trials
    3. ACTIVE with an ended period is expired; with `operation` set, the
       grace allow-list decides while the grace window lasts
    4. required feature flag
    5. required limit headroom
Rate limiting and api-call tracking only happen after an allow.

Limit checks and the later create are not atomic, so two concurrent requests
can both pass a live-count check. Limits on restaurants and products are
therefore soft by up to the request concurrency of one organization.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from tightship.core.clock import normalize_now
from tightship.core.config import settings
from tightship.core.errors import RateLimitError
from tightship.core.rate_limit import FixedWindowLimiter
from tightship.core.tasks import TaskRunner, run_detached
from tightship.features.enforcement.denials import (
    Denial,
    EntitlementDeniedError,
    Expired,
    FeatureDenied,
    GracePeriodRestricted,
    Inactive,
    LimitExceeded,
    NoOrganization,
    Unauthenticated,
)
from tightship.features.enforcement.policy import SubscriptionPolicy
from tightship.features.entitlements.service import SubscriptionService
from tightship.features.grace_period.service import ALLOWED_OPERATIONS, grace_period_for
from tightship.models.subscription import StatusView, SubscriptionStatus

logger = logging.getLogger("tightship.enforcement")


@dataclass(frozen=True)
class EnforcementContext:
    """What a handler behind a passed policy gets to see."""
    user_id: str
    organization_id: str
    status: StatusView


@dataclass(frozen=True)
class Decision:
    status: StatusView
    denial: Optional[Denial] = None

    @property
    def allowed(self) -> bool:
        return self.denial is None


class EnforcementService:
    def __init__(
        self,
        subscriptions: SubscriptionService,
        tasks: Optional[TaskRunner] = None,
        limiter: Optional[FixedWindowLimiter] = None,
    ):
        self.subscriptions = subscriptions
        self.repository = subscriptions.repository
        self.tasks = tasks
        self.limiter = limiter

    def resolve_organization(self, user_id: str) -> Optional[str]:
        return self.repository.get_user_organization(user_id)

    def evaluate(self, organization_id: str, policy: SubscriptionPolicy, now: Optional[datetime] = None) -> Decision:
        """
        Run steps 2-5 for an already resolved organization.

        Store errors propagate; a failed read never becomes an allow.
        """
        current = normalize_now(now)
        status = self.subscriptions.get_subscription_status(organization_id, now=current)

        if not policy.allow_trial and status.status != SubscriptionStatus.ACTIVE:
            return Decision(status, Inactive(status=status.status))

        # An operation policy applies the grace window whatever the status,
        # so a swept (PAST_DUE) organization stays suspended after grace.
        if status.is_expired and (status.status == SubscriptionStatus.ACTIVE or policy.operation is not None):
            denial = self._expired_denial(status, policy, current)
            if denial is not None:
                return Decision(status, denial)

        if policy.require_feature and not self.subscriptions.has_feature(organization_id, policy.require_feature):
            return Decision(
                status,
                FeatureDenied(feature=policy.require_feature, current_plan=status.plan.name),
            )

        requirement = policy.require_limit
        if requirement is not None:
            check = self.subscriptions.check_limit(
                organization_id, requirement.type, requirement.amount, now=current
            )
            if not check.allowed:
                return Decision(
                    status,
                    LimitExceeded(
                        limit_type=check.limit_type,
                        current_usage=check.current_usage or 0,
                        limit=check.limit,
                        requested_amount=check.requested_amount,
                    ),
                )

        return Decision(status)

    def _expired_denial(self, status: StatusView, policy: SubscriptionPolicy, now: datetime) -> Optional[Denial]:
        grace = grace_period_for(status.current_period_end, now)
        if policy.operation is None or not grace.in_grace_period:
            return Expired(expired_at=status.current_period_end, grace_period=grace)
        if policy.operation.lower() in ALLOWED_OPERATIONS:
            return None
        return GracePeriodRestricted(
            operation=policy.operation,
            reason=(
                f"Operation '{policy.operation}' is not allowed during grace period. "
                "Please update your billing information."
            ),
            grace_period=grace,
        )

    def authorize(
        self,
        user_id: Optional[str],
        policy: SubscriptionPolicy,
        now: Optional[datetime] = None,
    ) -> EnforcementContext:
        """
        Apply `policy` to a caller.

        Raises:
            EntitlementDeniedError: Carrying the first failing denial
            RateLimitError: When rate limiting is on and the tier ceiling is hit
        """
        if not user_id:
            self._deny(None, Unauthenticated())

        organization_id = self.resolve_organization(user_id)
        if not organization_id:
            self._deny(None, NoOrganization())

        decision = self.evaluate(organization_id, policy, now=now)
        if not decision.allowed:
            self._deny(organization_id, decision.denial)

        if settings.RATE_LIMIT_ENABLED:
            self.check_rate_limit(organization_id)

        return EnforcementContext(user_id=user_id, organization_id=organization_id, status=decision.status)

    def _deny(self, organization_id: Optional[str], denial: Denial):
        logger.info(
            "[enforcement] denied",
            extra={"organization_id": organization_id, "denial": denial.kind.value},
        )
        raise EntitlementDeniedError(denial)

    def check_rate_limit(self, organization_id: str) -> None:
        """
        Per-organization requests-per-minute ceiling from the plan tier.

        Fails open: if the ceiling cannot be read the request proceeds.
        """
        if self.limiter is None:
            return
        try:
            ceiling = self.subscriptions.get_rate_limit(organization_id)
        except Exception as exc:
            logger.warning(
                "[enforcement] rate limit lookup failed, allowing",
                extra={"organization_id": organization_id, "error": str(exc)},
            )
            return
        if not self.limiter.allow(organization_id, ceiling):
            logger.info(
                "[enforcement] rate limited",
                extra={"organization_id": organization_id, "limit_per_minute": ceiling},
            )
            raise RateLimitError("Rate limit exceeded. Please slow down.")

    def record_api_call(self, organization_id: str) -> None:
        """Count one api call off the request path."""
        if self.tasks is None:
            run_detached("track_api_call", self.subscriptions.track_api_call, organization_id)
            return
        self.tasks.submit("track_api_call", self.subscriptions.track_api_call, organization_id)
