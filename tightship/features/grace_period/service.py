"""
tightship/features/grace_period/service.py

Grace period policy.

A subscription whose period has ended keeps restricted access for
GRACE_PERIOD_DAYS. The window is computed from current_period_end and the
evaluation time; nothing about it is stored.

    now <= period_end                       not expired
    period_end < now <= period_end + 7d     in grace (read/export/billing only)
    now > period_end + 7d                   grace ended, treat as suspended

process_expired_subscriptions() is the only place elapsed time changes a
stored status (ACTIVE -> PAST_DUE once grace has ended).
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from tightship.core.clock import add_months, normalize_now
from tightship.core.config import settings
from tightship.core.errors import NotFoundError
from tightship.core.tasks import TaskRunner
from tightship.features.audit.service import emit_audit_event
from tightship.features.entitlements.service import SubscriptionService, days_until
from tightship.models.grace_period import GracePeriodInfo, OperationDecision, SubscriptionWarning
from tightship.models.subscription import SubscriptionRecord, SubscriptionStatus

logger = logging.getLogger("tightship.grace_period")

GRACE_PERIOD_DAYS = 7
ALLOWED_OPERATIONS = ("read", "export", "billing")
WARNING_THRESHOLDS = (7, 3, 1)

# Statuses that still receive expiry notices
WARNED_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
})

ONE_DAY = timedelta(days=1)


def format_date(value: datetime) -> str:
    """Render like 'Tue Mar 05 2024'."""
    return value.strftime("%a %b %d %Y")


def grace_period_for(period_end: Optional[datetime], now: datetime) -> GracePeriodInfo:
    """Pure grace window computation for a period end and evaluation time."""
    if period_end is None:
        return GracePeriodInfo(in_grace_period=False)

    period_end = normalize_now(period_end)
    if now <= period_end:
        return GracePeriodInfo(in_grace_period=False)

    grace_end = period_end + timedelta(days=GRACE_PERIOD_DAYS)
    if now <= grace_end:
        return GracePeriodInfo(
            in_grace_period=True,
            days_remaining=math.ceil((grace_end - now) / ONE_DAY),
            expired_date=period_end,
            grace_period_end=grace_end,
        )

    return GracePeriodInfo(
        in_grace_period=False,
        days_remaining=0,
        expired_date=period_end,
        grace_period_end=grace_end,
    )


def _expiry_warning(days_left: int, period_end: datetime) -> SubscriptionWarning:
    if days_left <= 1:
        warning_type = "critical"
        message = "Your subscription expires tomorrow. Update your billing information to avoid service interruption."
    else:
        warning_type = "urgent" if days_left <= 3 else "warning"
        message = f"Your subscription expires on {format_date(period_end)}. Please update your billing information."
    return SubscriptionWarning(
        type=warning_type,
        title=f"Subscription expires in {days_left} day{'' if days_left == 1 else 's'}",
        message=message,
        days_until_expiry=days_left,
        expiry_date=period_end,
        action_url=settings.BILLING_URL,
    )


class GracePeriodService:
    def __init__(self, subscriptions: SubscriptionService, tasks: Optional[TaskRunner] = None):
        self.subscriptions = subscriptions
        self.repository = subscriptions.repository
        self.tasks = tasks

    def is_in_grace_period(self, organization_id: str, now: Optional[datetime] = None) -> GracePeriodInfo:
        current = normalize_now(now)
        subscription = self.subscriptions.get_subscription(organization_id)
        return grace_period_for(subscription.current_period_end, current)

    def is_operation_allowed(
        self, organization_id: str, operation: str, now: Optional[datetime] = None
    ) -> OperationDecision:
        """
        Decide whether `operation` may run given the grace window.

        Outside the window the normal status applies: an ended period denies.
        Inside it only ALLOWED_OPERATIONS pass. If the subscription cannot be
        read the answer is a denial.
        """
        current = normalize_now(now)
        try:
            status = self.subscriptions.get_subscription_status(organization_id, now=current)
        except Exception as exc:
            logger.error(
                "[grace_period] operation check failed",
                extra={"organization_id": organization_id, "operation": operation, "error": str(exc)},
            )
            return OperationDecision(allowed=False, reason="Unable to verify subscription status")

        grace = grace_period_for(status.current_period_end, current)
        if not grace.in_grace_period:
            if status.is_expired:
                return OperationDecision(
                    allowed=False,
                    reason="Subscription has expired and grace period has ended",
                    grace_period=grace,
                )
            return OperationDecision(allowed=True)

        if operation.lower() in ALLOWED_OPERATIONS:
            return OperationDecision(allowed=True, grace_period=grace)
        return OperationDecision(
            allowed=False,
            reason=(
                f"Operation '{operation}' is not allowed during grace period. "
                "Please update your billing information."
            ),
            grace_period=grace,
        )

    def get_subscription_warnings(
        self, organization_id: str, now: Optional[datetime] = None
    ) -> List[SubscriptionWarning]:
        """
        At most one expiry notice, plus an expired notice once the period ended.

        The expiry notice type follows the nearest threshold reached:
        <=7 days warning, <=3 urgent, <=1 critical.
        """
        current = normalize_now(now)
        status = self.subscriptions.get_subscription_status(organization_id, now=current)
        period_end = status.current_period_end
        if period_end is None or status.status not in WARNED_STATUSES:
            return []

        period_end = normalize_now(period_end)
        days_left = days_until(period_end, current)
        warnings: List[SubscriptionWarning] = []

        for threshold in WARNING_THRESHOLDS:
            if 0 < days_left <= threshold:
                warnings.append(_expiry_warning(days_left, period_end))
                break

        if days_left <= 0:
            grace = grace_period_for(period_end, current)
            if grace.in_grace_period:
                warnings.append(
                    SubscriptionWarning(
                        type="critical",
                        title="Subscription Expired - Grace Period Active",
                        message=(
                            f"Your subscription expired on {format_date(period_end)}. "
                            f"You have {grace.days_remaining} days remaining in your grace period. "
                            "Some features may be limited."
                        ),
                        days_until_expiry=grace.days_remaining or 0,
                        expiry_date=grace.grace_period_end,
                        action_url=settings.BILLING_URL,
                        is_grace_period=True,
                    )
                )
            else:
                warnings.append(
                    SubscriptionWarning(
                        type="critical",
                        title="Subscription Suspended",
                        message=(
                            "Your subscription has expired and the grace period has ended. "
                            "Please update your billing information to restore access."
                        ),
                        days_until_expiry=0,
                        expiry_date=period_end,
                        action_url=settings.BILLING_URL,
                        is_suspended=True,
                    )
                )

        return warnings

    def process_expired_subscriptions(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Sweep ACTIVE subscriptions whose period has ended.

        Inside the grace window nothing changes; past it the status moves to
        PAST_DUE. A failure on one subscription is logged and counted, and the
        sweep continues.
        """
        current = normalize_now(now)
        expired = self.repository.list_subscriptions(
            status=SubscriptionStatus.ACTIVE, period_end_before=current
        )
        logger.info("[grace_period] processing expired subscriptions", extra={"count": len(expired)})

        summary = {"processed": 0, "in_grace_period": 0, "suspended": 0, "errors": 0}
        for record in expired:
            summary["processed"] += 1
            try:
                if self._process_one(record, current):
                    summary["suspended"] += 1
                else:
                    summary["in_grace_period"] += 1
            except Exception as exc:
                summary["errors"] += 1
                logger.error(
                    "[grace_period] failed to process expired subscription",
                    extra={
                        "organization_id": record.organization_id,
                        "subscription_id": record.subscription_id,
                        "error": str(exc),
                    },
                )

        logger.info("[grace_period] sweep complete", extra=summary)
        return summary

    def _process_one(self, record: SubscriptionRecord, now: datetime) -> bool:
        """Returns True when the subscription was suspended."""
        grace = grace_period_for(record.current_period_end, now)
        if grace.in_grace_period:
            logger.info(
                "[grace_period] organization in grace period",
                extra={"organization_id": record.organization_id, "days_remaining": grace.days_remaining},
            )
            return False

        self.repository.update_subscription(record.organization_id, status=SubscriptionStatus.PAST_DUE)
        logger.info("[grace_period] subscription suspended", extra={"organization_id": record.organization_id})
        emit_audit_event(
            self.tasks,
            action="subscription.suspended",
            organization_id=record.organization_id,
            target_type="subscription",
            target_id=record.subscription_id,
            payload={"expired_date": grace.expired_date, "grace_period_end": grace.grace_period_end},
        )
        return True

    def restore_access(
        self, organization_id: str, now: Optional[datetime] = None, actor: Optional[str] = None
    ) -> SubscriptionRecord:
        """
        Reactivate after an external payment.

        Sets ACTIVE, starts a one-calendar-month period at `now`, and clears
        cancel_at_period_end.

        Raises:
            NotFoundError: If the organization has no subscription
        """
        current = normalize_now(now)
        if self.repository.get_subscription(organization_id) is None:
            raise NotFoundError("No subscription found")

        record = self.repository.update_subscription(
            organization_id,
            status=SubscriptionStatus.ACTIVE,
            current_period_start=current,
            current_period_end=add_months(current, 1),
            cancel_at_period_end=False,
        )
        logger.info("[grace_period] access restored", extra={"organization_id": organization_id})
        emit_audit_event(
            self.tasks,
            action="subscription.restored",
            organization_id=organization_id,
            actor=actor,
            target_type="subscription",
            target_id=record.subscription_id,
            payload={"current_period_end": record.current_period_end},
        )
        return record
