"""Declarative subscription policies attached to gated entry points."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from tightship.models.plan import LimitType


@dataclass(frozen=True)
class LimitRequirement:
    type: LimitType
    amount: int = 1

    def __post_init__(self):
        object.__setattr__(self, "type", LimitType(self.type))
        if self.amount < 0:
            raise ValueError("LimitRequirement.amount must be non-negative")


@dataclass(frozen=True)
class SubscriptionPolicy:
    """
    What an entry point requires of the caller's subscription.

    allow_trial: accept any status, not just ACTIVE
    track_api_call: count the call against the monthly apiCalls ledger on success
    operation: grace-period operation name (read, export, billing, write, ...);
        when set, an ended period inside the grace window is decided by the
        grace allow-list instead of being denied outright
    """
    require_feature: Optional[str] = None
    require_limit: Optional[LimitRequirement] = None
    allow_trial: bool = False
    track_api_call: bool = False
    operation: Optional[str] = None
