"""
tightship/models/plan.py

Plan catalog models.

Plans are immutable reference data: seeded once, read at runtime.
"""

from enum import Enum
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict, Field

UNLIMITED = -1


class PlanTier(str, Enum):
    """Ordered subscription level. Declaration order is the tier order."""
    FREE = "FREE"
    STARTER = "STARTER"
    PROFESSIONAL = "PROFESSIONAL"
    ENTERPRISE = "ENTERPRISE"

    @property
    def rank(self) -> int:
        return list(PlanTier).index(self)


class LimitType(str, Enum):
    """Numeric plan limits. Values are the user-facing metric names."""
    RESTAURANTS = "restaurants"
    PRODUCTS = "products"
    API_CALLS = "apiCalls"


class PlanLimits(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    restaurants: int
    products: int
    api_calls: int = Field(alias="apiCalls")

    def get(self, limit_type: LimitType) -> int:
        return {
            LimitType.RESTAURANTS: self.restaurants,
            LimitType.PRODUCTS: self.products,
            LimitType.API_CALLS: self.api_calls,
        }[LimitType(limit_type)]


class Plan(BaseModel):
    """
    Plan represents a subscription tier.

    `limits` values of -1 mean unlimited. `features` is a strict flag map:
    a missing key is treated as False.
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    tier: PlanTier
    name: str
    description: Optional[str] = None
    price_monthly: Optional[float] = None
    price_yearly: Optional[float] = None
    limits: PlanLimits
    features: Dict[str, bool] = Field(default_factory=dict)
    is_active: bool = True


def plan_sort_key(plan: Plan):
    """Order by monthly price, custom-priced plans last, tier breaking ties."""
    return (plan.price_monthly is None, plan.price_monthly or 0, plan.tier.rank)
