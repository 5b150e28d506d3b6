"""
Entitlement denial reasons.

A denial is one of a closed set of variants. Message text, the semantic
payload and the transport status are pure functions of the variant, so both
the HTTP and the RPC boundary render the same denial identically apart from
the wire-level status.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict

from tightship.core.config import settings
from tightship.core.errors import AppError
from tightship.features.entitlements.service import limit_exceeded_message
from tightship.models.grace_period import GracePeriodInfo
from tightship.models.plan import LimitType
from tightship.models.subscription import SubscriptionStatus


class DenialKind(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    NO_ORGANIZATION = "no_organization"
    INACTIVE = "subscription_inactive"
    EXPIRED = "subscription_expired"
    GRACE_PERIOD_RESTRICTED = "grace_period_restricted"
    FEATURE_DENIED = "feature_not_entitled"
    LIMIT_EXCEEDED = "limit_exceeded"


class _DenialBase(BaseModel):
    model_config = ConfigDict(frozen=True)


class Unauthenticated(_DenialBase):
    kind: ClassVar[DenialKind] = DenialKind.UNAUTHENTICATED


class NoOrganization(_DenialBase):
    kind: ClassVar[DenialKind] = DenialKind.NO_ORGANIZATION


class Inactive(_DenialBase):
    status: SubscriptionStatus
    kind: ClassVar[DenialKind] = DenialKind.INACTIVE


class Expired(_DenialBase):
    expired_at: Optional[datetime]
    grace_period: Optional[GracePeriodInfo] = None
    kind: ClassVar[DenialKind] = DenialKind.EXPIRED


class GracePeriodRestricted(_DenialBase):
    operation: str
    reason: str
    grace_period: GracePeriodInfo
    kind: ClassVar[DenialKind] = DenialKind.GRACE_PERIOD_RESTRICTED


class FeatureDenied(_DenialBase):
    feature: str
    current_plan: Optional[str]
    kind: ClassVar[DenialKind] = DenialKind.FEATURE_DENIED


class LimitExceeded(_DenialBase):
    limit_type: LimitType
    current_usage: int
    limit: int
    requested_amount: int
    kind: ClassVar[DenialKind] = DenialKind.LIMIT_EXCEEDED


Denial = Union[
    Unauthenticated,
    NoOrganization,
    Inactive,
    Expired,
    GracePeriodRestricted,
    FeatureDenied,
    LimitExceeded,
]


def denial_message(denial: Denial) -> str:
    if isinstance(denial, Unauthenticated):
        return "Unauthorized"
    if isinstance(denial, NoOrganization):
        return "No organization found. Please create an organization first."
    if isinstance(denial, Inactive):
        return "Active subscription required"
    if isinstance(denial, Expired):
        return "Subscription has expired"
    if isinstance(denial, GracePeriodRestricted):
        return denial.reason
    if isinstance(denial, FeatureDenied):
        return f"This feature ({denial.feature}) requires a higher subscription tier"
    if isinstance(denial, LimitExceeded):
        return limit_exceeded_message(denial.limit_type, denial.current_usage, denial.limit, denial.requested_amount)
    raise TypeError(f"Unknown denial: {denial!r}")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def grace_period_payload(info: GracePeriodInfo) -> Dict[str, Any]:
    return {
        "inGracePeriod": info.in_grace_period,
        "daysRemaining": info.days_remaining,
        "expiredDate": _iso(info.expired_date),
        "gracePeriodEnd": _iso(info.grace_period_end),
    }


def denial_fields(denial: Denial) -> Dict[str, Any]:
    """Variant-specific semantic fields, shared by both transports."""
    fields: Dict[str, Any] = {"code": denial.kind.value, "upgradeUrl": settings.BILLING_URL}
    if isinstance(denial, Inactive):
        fields["subscriptionStatus"] = denial.status.value
    elif isinstance(denial, Expired):
        fields["expiredAt"] = _iso(denial.expired_at)
        if denial.grace_period is not None:
            fields["gracePeriodInfo"] = grace_period_payload(denial.grace_period)
    elif isinstance(denial, GracePeriodRestricted):
        fields["operation"] = denial.operation
        fields["gracePeriodInfo"] = grace_period_payload(denial.grace_period)
    elif isinstance(denial, FeatureDenied):
        fields["feature"] = denial.feature
        fields["currentPlan"] = denial.current_plan
    elif isinstance(denial, LimitExceeded):
        fields["limitType"] = denial.limit_type.value
        fields["currentUsage"] = denial.current_usage
        fields["limit"] = denial.limit
        fields["requestedAmount"] = denial.requested_amount
    return fields


def denial_payload(denial: Denial) -> Dict[str, Any]:
    """HTTP body: {error, code, upgradeUrl, ...variant fields}."""
    return {"error": denial_message(denial), **denial_fields(denial)}


def http_status(denial: Denial) -> int:
    if isinstance(denial, Unauthenticated):
        return 401
    if isinstance(denial, NoOrganization):
        return 400
    if isinstance(denial, FeatureDenied):
        return 403
    return 402


def rpc_code(denial: Denial) -> str:
    if isinstance(denial, Unauthenticated):
        return "UNAUTHORIZED"
    if isinstance(denial, NoOrganization):
        return "BAD_REQUEST"
    return "FORBIDDEN"


class EntitlementDeniedError(AppError):
    """An entry point's subscription policy rejected the caller."""
    code = "entitlement_denied"

    def __init__(self, denial: Denial, *, request_id: Optional[str] = None):
        super().__init__(
            denial_message(denial),
            code=denial.kind.value,
            status_code=http_status(denial),
            request_id=request_id,
        )
        self.denial = denial
