"""
tightship/features/usage/service.py

Usage ledger service.

Handles:
- Atomic per-month counters (api_calls, menu_syncs, integrations)
- Current-month reads and historical aggregation
- Approaching-limit alerts
- Retention cleanup (the only deletion path)

Every ledger row covers one calendar month in UTC. Increments go through the
store's atomic upsert; nothing here reads a count and writes it back.
"""

import calendar
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from tightship.core.clock import add_months, normalize_now
from tightship.core.config import settings
from tightship.core.errors import PermissionError, ValidationError
from tightship.features.store.repository import SubscriptionRepository
from tightship.models.plan import UNLIMITED, LimitType
from tightship.models.usage import (
    MetricType,
    MetricUsageSummary,
    UsageAlert,
    UsagePeriod,
    UsageRecord,
)

logger = logging.getLogger("tightship.usage")

ALERT_WARNING_PERCENT = 80.0
ALERT_CRITICAL_PERCENT = 95.0


def month_period(now: Optional[datetime] = None) -> Tuple[date, date]:
    """First and last calendar day of the month containing `now` (UTC)."""
    current = normalize_now(now)
    last_day = calendar.monthrange(current.year, current.month)[1]
    return (
        date(current.year, current.month, 1),
        date(current.year, current.month, last_day),
    )


class UsageLedger:
    def __init__(self, repository: SubscriptionRepository):
        self.repository = repository

    def track_usage(
        self,
        organization_id: str,
        metric_type: MetricType,
        amount: int = 1,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Add `amount` to the current month's counter and return the new count.

        Counters are monotonic within a period, so negative amounts are
        rejected. Store errors propagate; callers that must not fail run this
        through a detached task.
        """
        if amount < 0:
            raise ValidationError("Usage amount must be non-negative")
        metric_type = MetricType(metric_type)
        period_start, period_end = month_period(now)
        count = self.repository.increment_usage(
            organization_id, metric_type, period_start, period_end, amount
        )
        logger.debug(
            "[usage] tracked",
            extra={
                "organization_id": organization_id,
                "metric_type": metric_type.value,
                "amount": amount,
                "count": count,
                "metadata": metadata,
            },
        )
        return count

    def get_current_usage(
        self, organization_id: str, metric_type: MetricType, now: Optional[datetime] = None
    ) -> int:
        period_start, _ = month_period(now)
        record = self.repository.get_usage_record(organization_id, MetricType(metric_type), period_start)
        return record.count if record else 0

    def get_usage_stats(
        self,
        organization_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, MetricUsageSummary]:
        """
        Aggregate ledger rows per metric between `start` and `end`.

        Defaults to the current month. Periods are listed newest first.
        """
        default_start, default_end = month_period(now)
        records = self.repository.list_usage_records(
            organization_id, since=start or default_start, until=end or default_end
        )
        grouped: Dict[str, List[UsageRecord]] = {}
        for record in records:
            grouped.setdefault(record.metric_type.value, []).append(record)
        return {
            metric: MetricUsageSummary(
                total=sum(r.count for r in rows),
                periods=[
                    UsagePeriod(period_start=r.period_start, period_end=r.period_end, count=r.count)
                    for r in sorted(rows, key=lambda r: r.period_start, reverse=True)
                ],
            )
            for metric, rows in grouped.items()
        }

    def get_usage_history(
        self,
        organization_id: str,
        metric_type: Optional[MetricType] = None,
        months: int = 12,
        now: Optional[datetime] = None,
    ) -> List[UsageRecord]:
        """Ledger rows from `months` months back up to now, newest first."""
        current_start, _ = month_period(now)
        since = add_months(current_start, -months)
        records = self.repository.list_usage_records(
            organization_id,
            metric_type=MetricType(metric_type) if metric_type else None,
            since=since,
        )
        return sorted(records, key=lambda r: (-r.period_start.toordinal(), r.metric_type.value))

    def get_usage_alerts(self, organization_id: str, subscriptions, now: Optional[datetime] = None) -> List[UsageAlert]:
        """
        Alerts for every finite limit at or above 80% usage.

        `subscriptions` is the SubscriptionService; its zero-amount limit
        checks supply the same usage numbers enforcement sees.
        """
        stats = subscriptions.get_usage_stats(organization_id, now=now)
        alerts = []
        for check in (stats.restaurants, stats.products, stats.api_calls):
            if check.limit is None or check.limit == UNLIMITED or check.limit <= 0:
                continue
            current = check.current_usage or 0
            percentage = current / check.limit * 100
            if percentage >= ALERT_CRITICAL_PERCENT:
                alert_type = "critical"
            elif percentage >= ALERT_WARNING_PERCENT:
                alert_type = "warning"
            else:
                continue
            alerts.append(
                UsageAlert(
                    type=alert_type,
                    metric=LimitType(check.limit_type),
                    current_usage=current,
                    limit=check.limit,
                    percentage=round(percentage, 1),
                    message=f"{LimitType(check.limit_type).value} usage is at {percentage:.1f}% of your limit",
                )
            )
        return alerts

    def reset_usage(self, organization_id: str) -> int:
        """Delete an organization's ledger rows. Development only."""
        if settings.ENV != "development":
            raise PermissionError("Reset usage is only available in development")
        deleted = self.repository.delete_usage_records(organization_id=organization_id)
        logger.info("[usage] reset", extra={"organization_id": organization_id, "deleted": deleted})
        return deleted

    def cleanup_usage(
        self,
        retention_months: Optional[int] = None,
        now: Optional[datetime] = None,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """
        Delete ledger rows whose month started more than `retention_months` ago.

        With dry_run only the candidates are counted.
        """
        months = retention_months if retention_months is not None else settings.USAGE_RETENTION_MONTHS
        if months < 1:
            raise ValidationError("retention_months must be at least 1")
        current_start, _ = month_period(now)
        cutoff = add_months(current_start, -months)
        candidates = self.repository.count_usage_records(before=cutoff)
        deleted = 0
        if not dry_run and candidates:
            deleted = self.repository.delete_usage_records(before=cutoff)
        summary = {
            "retention_months": months,
            "cutoff": cutoff.isoformat(),
            "dry_run": dry_run,
            "candidates": candidates,
            "deleted": deleted,
        }
        logger.info("[usage] retention cleanup", extra=summary)
        return summary
