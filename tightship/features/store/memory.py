"""
In-memory subscription store.

Thread-safe stand-in for SqlRepository. One lock guards all state, which is
how the ledger's atomic upsert-increment is modelled here.
"""
import threading
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from tightship.core.errors import ConflictError, NotFoundError, ValidationError
from tightship.features.store.repository import UPDATABLE_SUBSCRIPTION_FIELDS
from tightship.models.menu import COUNTED_PRODUCT_TYPES, Product, ProductType, Restaurant
from tightship.models.plan import LimitType, Plan, PlanTier, plan_sort_key
from tightship.models.subscription import SubscriptionRecord, SubscriptionStatus
from tightship.models.usage import MetricType, UsageRecord


class InMemoryRepository:
    def __init__(self):
        self._lock = threading.Lock()
        self._plans: Dict[str, Plan] = {}
        self._subscriptions: Dict[str, SubscriptionRecord] = {}
        self._usage: Dict[Tuple[str, MetricType, date], UsageRecord] = {}
        self._organizations: Dict[str, str] = {}
        self._users: Dict[str, Optional[str]] = {}
        self._restaurants: Dict[str, Restaurant] = {}
        self._products: Dict[str, Product] = {}

    # Plan catalog

    def get_plan(self, tier: PlanTier) -> Optional[Plan]:
        with self._lock:
            for plan in self._plans.values():
                if plan.tier == PlanTier(tier):
                    return plan
        return None

    def get_plan_by_id(self, plan_id: str) -> Optional[Plan]:
        with self._lock:
            return self._plans.get(plan_id)

    def list_plans(self, active_only: bool = True) -> List[Plan]:
        with self._lock:
            plans = [p for p in self._plans.values() if p.is_active or not active_only]
        return sorted(plans, key=plan_sort_key)

    def upsert_plan(self, plan: Plan) -> Plan:
        # Upsert by tier; an existing row keeps its plan_id
        with self._lock:
            for existing in self._plans.values():
                if existing.tier == plan.tier:
                    plan = plan.model_copy(update={"plan_id": existing.plan_id})
                    break
            self._plans[plan.plan_id] = plan
        return plan

    # Subscriptions

    def get_subscription(self, organization_id: str) -> Optional[SubscriptionRecord]:
        with self._lock:
            return self._subscriptions.get(organization_id)

    def create_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        now = datetime.now(timezone.utc)
        with self._lock:
            if record.organization_id in self._subscriptions:
                raise ConflictError(f"Organization {record.organization_id} already has a subscription")
            stored = record.model_copy(update={"created_at": record.created_at or now, "updated_at": now})
            self._subscriptions[record.organization_id] = stored
        return stored

    def update_subscription(self, organization_id: str, **fields: Any) -> SubscriptionRecord:
        unknown = set(fields) - UPDATABLE_SUBSCRIPTION_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update subscription fields: {', '.join(sorted(unknown))}")
        with self._lock:
            current = self._subscriptions.get(organization_id)
            if current is None:
                raise NotFoundError(f"No subscription found for organization {organization_id}")
            updated = current.model_copy(update={**fields, "updated_at": datetime.now(timezone.utc)})
            self._subscriptions[organization_id] = updated
        return updated

    def list_subscriptions(
        self,
        status: Optional[SubscriptionStatus] = None,
        period_end_before: Optional[datetime] = None,
    ) -> List[SubscriptionRecord]:
        with self._lock:
            records = list(self._subscriptions.values())
        if status is not None:
            records = [r for r in records if r.status == status]
        if period_end_before is not None:
            records = [r for r in records if r.current_period_end < period_end_before]
        return records

    # Live counts

    def count_active(self, entity_type: LimitType, organization_id: str) -> int:
        entity_type = LimitType(entity_type)
        with self._lock:
            active_restaurants = {
                r.restaurant_id
                for r in self._restaurants.values()
                if r.organization_id == organization_id and r.is_active
            }
            if entity_type == LimitType.RESTAURANTS:
                return len(active_restaurants)
            if entity_type == LimitType.PRODUCTS:
                return sum(
                    1
                    for p in self._products.values()
                    if p.is_active
                    and p.restaurant_id in active_restaurants
                    and p.product_type in COUNTED_PRODUCT_TYPES
                )
        raise ValidationError(f"No live count for {entity_type.value}")

    def count_active_variants(self, parent_product_id: str) -> int:
        with self._lock:
            return sum(
                1
                for p in self._products.values()
                if p.parent_product_id == parent_product_id
                and p.product_type == ProductType.VARIANT
                and p.is_active
            )

    # Usage ledger

    def increment_usage(
        self,
        organization_id: str,
        metric_type: MetricType,
        period_start: date,
        period_end: date,
        amount: int = 1,
    ) -> int:
        key = (organization_id, MetricType(metric_type), period_start)
        with self._lock:
            current = self._usage.get(key)
            if current is None:
                current = UsageRecord(
                    organization_id=organization_id,
                    metric_type=metric_type,
                    period_start=period_start,
                    period_end=period_end,
                    count=0,
                )
            updated = current.model_copy(update={"count": current.count + amount})
            self._usage[key] = updated
            return updated.count

    def get_usage_record(
        self, organization_id: str, metric_type: MetricType, period_start: date
    ) -> Optional[UsageRecord]:
        with self._lock:
            return self._usage.get((organization_id, MetricType(metric_type), period_start))

    def list_usage_records(
        self,
        organization_id: str,
        metric_type: Optional[MetricType] = None,
        since: Optional[date] = None,
        until: Optional[date] = None,
    ) -> List[UsageRecord]:
        with self._lock:
            records = [r for r in self._usage.values() if r.organization_id == organization_id]
        if metric_type is not None:
            records = [r for r in records if r.metric_type == MetricType(metric_type)]
        if since is not None:
            records = [r for r in records if r.period_start >= since]
        if until is not None:
            records = [r for r in records if r.period_end <= until]
        return sorted(records, key=lambda r: (r.metric_type.value, r.period_start))

    def count_usage_records(self, before: Optional[date] = None) -> int:
        with self._lock:
            return sum(1 for record in self._usage.values() if before is None or record.period_start < before)

    def delete_usage_records(
        self, organization_id: Optional[str] = None, before: Optional[date] = None
    ) -> int:
        with self._lock:
            doomed = [
                key
                for key, record in self._usage.items()
                if (organization_id is None or record.organization_id == organization_id)
                and (before is None or record.period_start < before)
            ]
            for key in doomed:
                del self._usage[key]
        return len(doomed)

    # Identity and menu rows

    def get_user_organization(self, user_id: str) -> Optional[str]:
        with self._lock:
            return self._users.get(user_id)

    def create_organization(self, organization_id: str, name: str) -> str:
        with self._lock:
            self._organizations[organization_id] = name
        return organization_id

    def create_user(self, user_id: str, organization_id: Optional[str] = None, email: Optional[str] = None) -> str:
        with self._lock:
            self._users[user_id] = organization_id
        return user_id

    def create_restaurant(
        self, organization_id: str, name: str, restaurant_id: Optional[str] = None, is_active: bool = True
    ) -> Restaurant:
        restaurant = Restaurant(
            restaurant_id=restaurant_id or f"rest_{uuid4().hex[:12]}",
            organization_id=organization_id,
            name=name,
            is_active=is_active,
            created_at=datetime.now(timezone.utc),
        )
        with self._lock:
            self._restaurants[restaurant.restaurant_id] = restaurant
        return restaurant

    def create_product(
        self,
        restaurant_id: str,
        name: str,
        product_type: ProductType = ProductType.STANDALONE,
        parent_product_id: Optional[str] = None,
        product_id: Optional[str] = None,
        is_active: bool = True,
    ) -> Product:
        product = Product(
            product_id=product_id or f"prod_{uuid4().hex[:12]}",
            restaurant_id=restaurant_id,
            name=name,
            product_type=product_type,
            parent_product_id=parent_product_id,
            is_active=is_active,
            created_at=datetime.now(timezone.utc),
        )
        with self._lock:
            self._products[product.product_id] = product
        return product

    def get_restaurant(self, restaurant_id: str) -> Optional[Restaurant]:
        with self._lock:
            return self._restaurants.get(restaurant_id)

    def get_product(self, product_id: str) -> Optional[Product]:
        with self._lock:
            return self._products.get(product_id)
