"""
Subscription store protocol.

Defines the data-access interface the entitlement core depends on. Services
receive an implementation in their constructor; SqlRepository backs the
running service and InMemoryRepository backs tests and local experiments.
"""
from datetime import date, datetime
from typing import Any, List, Optional, Protocol

from tightship.models.menu import Product, ProductType, Restaurant
from tightship.models.plan import LimitType, Plan, PlanTier
from tightship.models.subscription import SubscriptionRecord, SubscriptionStatus
from tightship.models.usage import MetricType, UsageRecord

UPDATABLE_SUBSCRIPTION_FIELDS = frozenset({
    "plan_id",
    "status",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
})


class SubscriptionRepository(Protocol):
    """
    Store operations required by the plan catalog, usage ledger, entitlement
    evaluator, grace period policy and enforcement layer.

    Implementations must make increment_usage atomic per
    (organization_id, metric_type, period_start). No other operation needs
    cross-request synchronization.
    """

    # Plan catalog

    def get_plan(self, tier: PlanTier) -> Optional[Plan]:
        ...

    def get_plan_by_id(self, plan_id: str) -> Optional[Plan]:
        ...

    def list_plans(self, active_only: bool = True) -> List[Plan]:
        ...

    def upsert_plan(self, plan: Plan) -> Plan:
        ...

    # Subscriptions

    def get_subscription(self, organization_id: str) -> Optional[SubscriptionRecord]:
        ...

    def create_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        """
        Insert a subscription.

        Raises:
            ConflictError: If the organization already has one
        """
        ...

    def update_subscription(self, organization_id: str, **fields: Any) -> SubscriptionRecord:
        """
        Update the organization's subscription in place.

        Raises:
            NotFoundError: If the organization has no subscription
        """
        ...

    def list_subscriptions(
        self,
        status: Optional[SubscriptionStatus] = None,
        period_end_before: Optional[datetime] = None,
    ) -> List[SubscriptionRecord]:
        ...

    # Live counts

    def count_active(self, entity_type: LimitType, organization_id: str) -> int:
        """
        Count active restaurants, or active non-variant products in active
        restaurants, for the organization.
        """
        ...

    def count_active_variants(self, parent_product_id: str) -> int:
        ...

    # Usage ledger

    def increment_usage(
        self,
        organization_id: str,
        metric_type: MetricType,
        period_start: date,
        period_end: date,
        amount: int = 1,
    ) -> int:
        """Atomically create-or-increment the ledger row; returns the new count."""
        ...

    def get_usage_record(
        self, organization_id: str, metric_type: MetricType, period_start: date
    ) -> Optional[UsageRecord]:
        ...

    def list_usage_records(
        self,
        organization_id: str,
        metric_type: Optional[MetricType] = None,
        since: Optional[date] = None,
        until: Optional[date] = None,
    ) -> List[UsageRecord]:
        ...

    def count_usage_records(self, before: Optional[date] = None) -> int:
        ...

    def delete_usage_records(
        self, organization_id: Optional[str] = None, before: Optional[date] = None
    ) -> int:
        ...

    # Identity and menu rows

    def get_user_organization(self, user_id: str) -> Optional[str]:
        ...

    def create_organization(self, organization_id: str, name: str) -> str:
        ...

    def create_user(self, user_id: str, organization_id: Optional[str] = None, email: Optional[str] = None) -> str:
        ...

    def create_restaurant(
        self, organization_id: str, name: str, restaurant_id: Optional[str] = None, is_active: bool = True
    ) -> Restaurant:
        ...

    def create_product(
        self,
        restaurant_id: str,
        name: str,
        product_type: ProductType = ProductType.STANDALONE,
        parent_product_id: Optional[str] = None,
        product_id: Optional[str] = None,
        is_active: bool = True,
    ) -> Product:
        ...

    def get_restaurant(self, restaurant_id: str) -> Optional[Restaurant]:
        ...

    def get_product(self, product_id: str) -> Optional[Product]:
        ...
