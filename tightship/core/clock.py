"""
UTC time helpers.

All timestamps handled by the services are timezone-aware UTC. Naive values
coming from callers or from SQLite are interpreted as UTC.
"""

import calendar
from datetime import date, datetime, timezone
from typing import Optional, TypeVar

D = TypeVar("D", date, datetime)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_now(now: Optional[datetime] = None) -> datetime:
    if now is None:
        return utc_now()
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def add_months(value: D, months: int) -> D:
    """Shift by calendar months, clamping the day (Jan 31 + 1 month = Feb 28/29)."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)
