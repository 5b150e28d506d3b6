"""
tightship/models/subscription.py

Subscription models.

SubscriptionRecord is the persisted row. SubscriptionView is what the
entitlement layer hands out: either backed by a row (PersistedSubscriptionView)
or synthesized for organizations without one (VirtualSubscriptionView). Only
the persisted variant carries a subscription_id.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field

from tightship.models.plan import Plan, PlanLimits


class SubscriptionStatus(str, Enum):
    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


ACTIVE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


class SubscriptionRecord(BaseModel):
    """
    SubscriptionRecord represents an organization's stored subscription.

    Constraint: at most one record per organization.
    """
    model_config = ConfigDict(frozen=True)

    subscription_id: str
    organization_id: str
    plan_id: str
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class _SubscriptionViewBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    organization_id: str
    status: SubscriptionStatus
    plan: Plan
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False

    @property
    def limits(self) -> PlanLimits:
        return self.plan.limits

    @property
    def features(self) -> Dict[str, bool]:
        return self.plan.features


class PersistedSubscriptionView(_SubscriptionViewBase):
    kind: Literal["persisted"] = "persisted"
    subscription_id: str


class VirtualSubscriptionView(_SubscriptionViewBase):
    """Implicit FREE/TRIALING subscription for an organization without a row."""
    kind: Literal["virtual"] = "virtual"


SubscriptionView = Annotated[
    Union[PersistedSubscriptionView, VirtualSubscriptionView],
    Field(discriminator="kind"),
]


class StatusView(BaseModel):
    """Subscription plus the derived flags every caller must use."""
    model_config = ConfigDict(frozen=True)

    subscription: SubscriptionView
    is_active: bool
    is_expired: bool
    days_until_expiry: Optional[int] = None

    @property
    def organization_id(self) -> str:
        return self.subscription.organization_id

    @property
    def status(self) -> SubscriptionStatus:
        return self.subscription.status

    @property
    def plan(self) -> Plan:
        return self.subscription.plan

    @property
    def current_period_end(self) -> Optional[datetime]:
        return self.subscription.current_period_end


class SubscriptionChangeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    subscription: SubscriptionRecord
    message: str


class PlanOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan: Plan
    is_current: bool
    is_upgrade: bool
    is_downgrade: bool


class SubscriptionOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    current_subscription: Optional[SubscriptionRecord] = None
    available_plans: List[PlanOption]
