"""
tightship/models/grace_period.py

Grace period and warning models. Nothing here is persisted; every value is
derived from a subscription's current_period_end and the evaluation time.
"""

from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict


class GracePeriodInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    in_grace_period: bool
    days_remaining: Optional[int] = None
    expired_date: Optional[datetime] = None
    grace_period_end: Optional[datetime] = None

    @property
    def has_ended(self) -> bool:
        """Period ended and the grace window is over too."""
        return not self.in_grace_period and self.grace_period_end is not None


class OperationDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: Optional[str] = None
    grace_period: Optional[GracePeriodInfo] = None


class SubscriptionWarning(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["warning", "urgent", "critical"]
    title: str
    message: str
    days_until_expiry: int
    expiry_date: Optional[datetime] = None
    action_url: str
    is_grace_period: bool = False
    is_suspended: bool = False
