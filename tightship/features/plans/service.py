"""
tightship/features/plans/service.py

Plan catalog service.

Handles:
- Plan seeding (FREE, STARTER, PROFESSIONAL, ENTERPRISE)
- Plan lookup by tier and listing for the pricing surface
- Tier ordering for upgrade/downgrade validation
- Per-tier variant and request-rate ceilings
"""

import logging
from typing import Any, Dict, List, Optional

from tightship.core.errors import PlanNotFoundError
from tightship.features.store.repository import SubscriptionRepository
from tightship.models.plan import UNLIMITED, Plan, PlanLimits, PlanTier

logger = logging.getLogger("tightship.plans")


# Default plan configurations
DEFAULT_PLANS: Dict[PlanTier, Dict[str, Any]] = {
    PlanTier.FREE: {
        "plan_id": "free-plan",
        "name": "Free",
        "description": "Perfect for getting started",
        "price_monthly": 0.0,
        "price_yearly": 0.0,
        "features": {
            "publicMenuAPI": True,
            "basicSupport": True,
        },
        "limits": {"restaurants": 1, "products": 50, "apiCalls": 1000},
    },
    PlanTier.STARTER: {
        "plan_id": "starter-plan",
        "name": "Starter",
        "description": "Great for small restaurants",
        "price_monthly": 29.0,
        "price_yearly": 290.0,
        "features": {
            "publicMenuAPI": True,
            "emailSupport": True,
            "allIntegrations": True,
            "priceSync": True,
        },
        "limits": {"restaurants": 3, "products": 500, "apiCalls": 10000},
    },
    PlanTier.PROFESSIONAL: {
        "plan_id": "professional-plan",
        "name": "Professional",
        "description": "Perfect for growing businesses",
        "price_monthly": 99.0,
        "price_yearly": 990.0,
        "features": {
            "publicMenuAPI": True,
            "prioritySupport": True,
            "advancedAnalytics": True,
            "bulkOperations": True,
            "apiWebhooks": True,
        },
        "limits": {"restaurants": 10, "products": UNLIMITED, "apiCalls": 100000},
    },
    PlanTier.ENTERPRISE: {
        "plan_id": "enterprise-plan",
        "name": "Enterprise",
        "description": "Custom solution for large operations",
        "price_monthly": None,  # custom pricing
        "price_yearly": None,
        "features": {
            "publicMenuAPI": True,
            "dedicatedSupport": True,
            "customIntegrations": True,
            "slaGuarantee": True,
            "whiteLabel": True,
        },
        "limits": {"restaurants": UNLIMITED, "products": UNLIMITED, "apiCalls": UNLIMITED},
    },
}

# Variants per parent product
VARIANT_LIMITS: Dict[PlanTier, int] = {
    PlanTier.FREE: 3,
    PlanTier.STARTER: 5,
    PlanTier.PROFESSIONAL: UNLIMITED,
    PlanTier.ENTERPRISE: UNLIMITED,
}

# Requests per minute
RATE_LIMITS: Dict[PlanTier, int] = {
    PlanTier.FREE: 10,
    PlanTier.STARTER: 30,
    PlanTier.PROFESSIONAL: 100,
    PlanTier.ENTERPRISE: 1000,
}


def build_plan(tier: PlanTier, config: Optional[Dict[str, Any]] = None) -> Plan:
    """Build a Plan model from a DEFAULT_PLANS-shaped config."""
    config = config or DEFAULT_PLANS[tier]
    return Plan(
        plan_id=config["plan_id"],
        tier=tier,
        name=config["name"],
        description=config.get("description"),
        price_monthly=config.get("price_monthly"),
        price_yearly=config.get("price_yearly"),
        limits=PlanLimits.model_validate(config["limits"]),
        features=dict(config.get("features", {})),
        is_active=config.get("is_active", True),
    )


def seed_plans(repository: SubscriptionRepository) -> List[Plan]:
    """
    Seed default plans into the store (idempotent).

    Upserts by tier, so re-running refreshes names, prices, limits and
    features without touching subscriptions that reference the plans.
    """
    seeded = []
    for tier in PlanTier:
        plan = repository.upsert_plan(build_plan(tier))
        seeded.append(plan)
    logger.info("[plans] catalog seeded", extra={"plans": [p.plan_id for p in seeded]})
    return seeded


def get_plan(repository: SubscriptionRepository, tier: PlanTier) -> Plan:
    """
    Get the catalog plan for a tier.

    Raises:
        PlanNotFoundError: If the tier has not been seeded
    """
    plan = repository.get_plan(PlanTier(tier))
    if plan is None:
        raise PlanNotFoundError(f"No plan configured for tier {PlanTier(tier).value}")
    return plan


def get_default_plan(repository: SubscriptionRepository) -> Plan:
    """The plan implied for organizations without a subscription."""
    return get_plan(repository, PlanTier.FREE)


def list_plans(repository: SubscriptionRepository, active_only: bool = True) -> List[Plan]:
    """Plans ordered by monthly price; custom-priced plans last."""
    return repository.list_plans(active_only=active_only)


def is_upgrade(current: Optional[PlanTier], new: PlanTier) -> bool:
    current_rank = PlanTier(current).rank if current else PlanTier.FREE.rank
    return PlanTier(new).rank > current_rank


def is_downgrade(current: Optional[PlanTier], new: PlanTier) -> bool:
    current_rank = PlanTier(current).rank if current else PlanTier.FREE.rank
    return PlanTier(new).rank < current_rank


def get_variant_limit(tier: PlanTier) -> int:
    return VARIANT_LIMITS[PlanTier(tier)]


def get_rate_limit_for_tier(tier: Optional[PlanTier]) -> int:
    if tier is None:
        return RATE_LIMITS[PlanTier.FREE]
    return RATE_LIMITS.get(PlanTier(tier), RATE_LIMITS[PlanTier.FREE])
