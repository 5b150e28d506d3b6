"""
tightship/models/usage.py

Usage ledger and limit-check models.
"""

from datetime import date
from enum import Enum
from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field

from tightship.models.plan import LimitType, Plan


class MetricType(str, Enum):
    """
    Ledger metrics, counted per organization per calendar month.

    Restaurant and product usage is never read from the ledger; those limits
    use live counts.
    """
    API_CALLS = "api_calls"
    MENU_SYNCS = "menu_syncs"
    INTEGRATIONS = "integrations"


class UsageRecord(BaseModel):
    """
    One row per (organization_id, metric_type, period_start).

    period_start is the first day of a month, period_end the last day.
    """
    model_config = ConfigDict(frozen=True)

    organization_id: str
    metric_type: MetricType
    period_start: date
    period_end: date
    count: int = 0


class LimitCheckResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    limit_type: LimitType
    allowed: bool
    requested_amount: int
    current_usage: Optional[int] = None
    limit: Optional[int] = None
    message: Optional[str] = None


class VariantLimitResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    current_variants: Optional[int] = None
    limit: Optional[int] = None
    message: Optional[str] = None


class UsageStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    restaurants: LimitCheckResult
    products: LimitCheckResult
    api_calls: LimitCheckResult
    plan: Plan


class UsageAlert(BaseModel):
    """Raised when a finite limit is at or above 80% (warning) or 95% (critical)."""
    model_config = ConfigDict(frozen=True)

    type: Literal["warning", "critical"]
    metric: LimitType
    current_usage: int
    limit: int
    percentage: float
    message: str


class UsagePeriod(BaseModel):
    model_config = ConfigDict(frozen=True)

    period_start: date
    period_end: date
    count: int


class MetricUsageSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int = 0
    periods: List[UsagePeriod] = Field(default_factory=list)
