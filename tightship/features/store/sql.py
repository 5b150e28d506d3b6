"""
SQL subscription store.

SQLAlchemy Core implementation of SubscriptionRepository over the tables in
tightship.core.database. Every method opens its own short session through
get_db_session, so a SqlRepository instance holds no connection state.

The ledger increment is a single INSERT ... ON CONFLICT DO UPDATE on
PostgreSQL and SQLite; other dialects fall back to update-then-insert with
an IntegrityError retry.
"""
import logging
from datetime import date, datetime, timezone
from typing import Any, List, Optional
from uuid import uuid4

from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError

from tightship.core.database import (
    get_db_session,
    organizations,
    products,
    restaurants,
    subscription_plans,
    subscriptions,
    usage_tracking,
    users,
)
from tightship.core.errors import ConflictError, NotFoundError, ValidationError
from tightship.features.store.repository import UPDATABLE_SUBSCRIPTION_FIELDS
from tightship.models.menu import COUNTED_PRODUCT_TYPES, Product, ProductType, Restaurant
from tightship.models.plan import LimitType, Plan, PlanLimits, PlanTier, plan_sort_key
from tightship.models.subscription import SubscriptionRecord, SubscriptionStatus
from tightship.models.usage import MetricType, UsageRecord

logger = logging.getLogger("tightship.store")


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _plan_from_row(row) -> Plan:
    return Plan(
        plan_id=row.plan_id,
        tier=PlanTier(row.tier),
        name=row.name,
        description=row.description,
        price_monthly=row.price_monthly,
        price_yearly=row.price_yearly,
        limits=PlanLimits.model_validate(row.limits),
        features=dict(row.features or {}),
        is_active=bool(row.is_active),
    )


def _subscription_from_row(row) -> SubscriptionRecord:
    return SubscriptionRecord(
        subscription_id=row.id,
        organization_id=row.organization_id,
        plan_id=row.plan_id,
        status=SubscriptionStatus(row.status),
        current_period_start=_as_utc(row.current_period_start),
        current_period_end=_as_utc(row.current_period_end),
        cancel_at_period_end=bool(row.cancel_at_period_end),
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


def _usage_from_row(row) -> UsageRecord:
    return UsageRecord(
        organization_id=row.organization_id,
        metric_type=MetricType(row.metric_type),
        period_start=row.period_start,
        period_end=row.period_end,
        count=row._mapping["count"],  # Row.count is the tuple method
    )


def _restaurant_from_row(row) -> Restaurant:
    return Restaurant(
        restaurant_id=row.id,
        organization_id=row.organization_id,
        name=row.name,
        is_active=bool(row.is_active),
        created_at=_as_utc(row.created_at),
    )


def _product_from_row(row) -> Product:
    return Product(
        product_id=row.id,
        restaurant_id=row.restaurant_id,
        name=row.name,
        product_type=ProductType(row.product_type),
        parent_product_id=row.parent_product_id,
        is_active=bool(row.is_active),
        created_at=_as_utc(row.created_at),
    )


def _plan_values(plan: Plan) -> dict:
    return {
        "tier": plan.tier.value,
        "name": plan.name,
        "description": plan.description,
        "price_monthly": plan.price_monthly,
        "price_yearly": plan.price_yearly,
        "features": dict(plan.features),
        "limits": plan.limits.model_dump(by_alias=True),
        "is_active": plan.is_active,
    }


class SqlRepository:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    def _session(self):
        return get_db_session(self._session_factory)

    # Plan catalog

    def get_plan(self, tier: PlanTier) -> Optional[Plan]:
        with self._session() as session:
            row = session.execute(
                select(subscription_plans).where(subscription_plans.c.tier == PlanTier(tier).value)
            ).first()
        return _plan_from_row(row) if row else None

    def get_plan_by_id(self, plan_id: str) -> Optional[Plan]:
        with self._session() as session:
            row = session.execute(
                select(subscription_plans).where(subscription_plans.c.plan_id == plan_id)
            ).first()
        return _plan_from_row(row) if row else None

    def list_plans(self, active_only: bool = True) -> List[Plan]:
        query = select(subscription_plans)
        if active_only:
            query = query.where(subscription_plans.c.is_active.is_(True))
        with self._session() as session:
            rows = session.execute(query).all()
        return sorted((_plan_from_row(row) for row in rows), key=plan_sort_key)

    def upsert_plan(self, plan: Plan) -> Plan:
        values = _plan_values(plan)
        with self._session() as session:
            existing = session.execute(
                select(subscription_plans.c.plan_id).where(subscription_plans.c.tier == plan.tier.value)
            ).first()
            if existing:
                session.execute(
                    update(subscription_plans)
                    .where(subscription_plans.c.plan_id == existing.plan_id)
                    .values(**values)
                )
            else:
                session.execute(insert(subscription_plans).values(plan_id=plan.plan_id, **values))
        if existing and existing.plan_id != plan.plan_id:
            return plan.model_copy(update={"plan_id": existing.plan_id})
        return plan

    # Subscriptions

    def get_subscription(self, organization_id: str) -> Optional[SubscriptionRecord]:
        with self._session() as session:
            row = session.execute(
                select(subscriptions).where(subscriptions.c.organization_id == organization_id)
            ).first()
        return _subscription_from_row(row) if row else None

    def create_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        now = datetime.now(timezone.utc)
        created_at = record.created_at or now
        try:
            with self._session() as session:
                session.execute(
                    insert(subscriptions).values(
                        id=record.subscription_id,
                        organization_id=record.organization_id,
                        plan_id=record.plan_id,
                        status=record.status.value,
                        current_period_start=record.current_period_start,
                        current_period_end=record.current_period_end,
                        cancel_at_period_end=record.cancel_at_period_end,
                        created_at=created_at,
                        updated_at=now,
                    )
                )
        except IntegrityError as exc:
            raise ConflictError(
                f"Organization {record.organization_id} already has a subscription"
            ) from exc
        return record.model_copy(update={"created_at": created_at, "updated_at": now})

    def update_subscription(self, organization_id: str, **fields: Any) -> SubscriptionRecord:
        unknown = set(fields) - UPDATABLE_SUBSCRIPTION_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update subscription fields: {', '.join(sorted(unknown))}")
        values = dict(fields)
        if "status" in values:
            values["status"] = SubscriptionStatus(values["status"]).value
        values["updated_at"] = datetime.now(timezone.utc)
        with self._session() as session:
            result = session.execute(
                update(subscriptions)
                .where(subscriptions.c.organization_id == organization_id)
                .values(**values)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"No subscription found for organization {organization_id}")
            row = session.execute(
                select(subscriptions).where(subscriptions.c.organization_id == organization_id)
            ).first()
        return _subscription_from_row(row)

    def list_subscriptions(
        self,
        status: Optional[SubscriptionStatus] = None,
        period_end_before: Optional[datetime] = None,
    ) -> List[SubscriptionRecord]:
        query = select(subscriptions)
        if status is not None:
            query = query.where(subscriptions.c.status == SubscriptionStatus(status).value)
        if period_end_before is not None:
            query = query.where(subscriptions.c.current_period_end < period_end_before)
        with self._session() as session:
            rows = session.execute(query.order_by(subscriptions.c.current_period_end)).all()
        return [_subscription_from_row(row) for row in rows]

    # Live counts

    def count_active(self, entity_type: LimitType, organization_id: str) -> int:
        entity_type = LimitType(entity_type)
        if entity_type == LimitType.RESTAURANTS:
            query = (
                select(func.count())
                .select_from(restaurants)
                .where(restaurants.c.organization_id == organization_id)
                .where(restaurants.c.is_active.is_(True))
            )
        elif entity_type == LimitType.PRODUCTS:
            query = (
                select(func.count())
                .select_from(products.join(restaurants, products.c.restaurant_id == restaurants.c.id))
                .where(restaurants.c.organization_id == organization_id)
                .where(restaurants.c.is_active.is_(True))
                .where(products.c.is_active.is_(True))
                .where(products.c.product_type.in_([t.value for t in COUNTED_PRODUCT_TYPES]))
            )
        else:
            raise ValidationError(f"No live count for {entity_type.value}")
        with self._session() as session:
            return int(session.execute(query).scalar_one())

    def count_active_variants(self, parent_product_id: str) -> int:
        with self._session() as session:
            return int(
                session.execute(
                    select(func.count())
                    .select_from(products)
                    .where(products.c.parent_product_id == parent_product_id)
                    .where(products.c.product_type == ProductType.VARIANT.value)
                    .where(products.c.is_active.is_(True))
                ).scalar_one()
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
        metric = MetricType(metric_type).value
        now = datetime.now(timezone.utc)
        key = and_(
            usage_tracking.c.organization_id == organization_id,
            usage_tracking.c.metric_type == metric,
            usage_tracking.c.period_start == period_start,
        )
        with self._session() as session:
            dialect = session.get_bind().dialect.name
            if dialect in ("postgresql", "sqlite"):
                upsert_module = postgresql if dialect == "postgresql" else sqlite
                stmt = upsert_module.insert(usage_tracking).values(
                    organization_id=organization_id,
                    metric_type=metric,
                    period_start=period_start,
                    period_end=period_end,
                    count=amount,
                    updated_at=now,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["organization_id", "metric_type", "period_start"],
                    set_={"count": usage_tracking.c.count + amount, "updated_at": now},
                )
                session.execute(stmt)
            else:
                self._increment_generic(session, key, organization_id, metric, period_start, period_end, amount, now)
            count = session.execute(select(usage_tracking.c.count).where(key)).scalar_one()
        return int(count)

    def _increment_generic(self, session, key, organization_id, metric, period_start, period_end, amount, now):
        bump = update(usage_tracking).where(key).values(count=usage_tracking.c.count + amount, updated_at=now)
        if session.execute(bump).rowcount:
            return
        try:
            with session.begin_nested():
                session.execute(
                    insert(usage_tracking).values(
                        organization_id=organization_id,
                        metric_type=metric,
                        period_start=period_start,
                        period_end=period_end,
                        count=amount,
                        updated_at=now,
                    )
                )
        except IntegrityError:
            # Lost the insert race; the row exists now
            session.execute(bump)

    def get_usage_record(
        self, organization_id: str, metric_type: MetricType, period_start: date
    ) -> Optional[UsageRecord]:
        with self._session() as session:
            row = session.execute(
                select(usage_tracking)
                .where(usage_tracking.c.organization_id == organization_id)
                .where(usage_tracking.c.metric_type == MetricType(metric_type).value)
                .where(usage_tracking.c.period_start == period_start)
            ).first()
        return _usage_from_row(row) if row else None

    def list_usage_records(
        self,
        organization_id: str,
        metric_type: Optional[MetricType] = None,
        since: Optional[date] = None,
        until: Optional[date] = None,
    ) -> List[UsageRecord]:
        query = select(usage_tracking).where(usage_tracking.c.organization_id == organization_id)
        if metric_type is not None:
            query = query.where(usage_tracking.c.metric_type == MetricType(metric_type).value)
        if since is not None:
            query = query.where(usage_tracking.c.period_start >= since)
        if until is not None:
            query = query.where(usage_tracking.c.period_end <= until)
        query = query.order_by(usage_tracking.c.metric_type, usage_tracking.c.period_start)
        with self._session() as session:
            rows = session.execute(query).all()
        return [_usage_from_row(row) for row in rows]

    def count_usage_records(self, before: Optional[date] = None) -> int:
        query = select(func.count()).select_from(usage_tracking)
        if before is not None:
            query = query.where(usage_tracking.c.period_start < before)
        with self._session() as session:
            return session.execute(query).scalar() or 0

    def delete_usage_records(
        self, organization_id: Optional[str] = None, before: Optional[date] = None
    ) -> int:
        stmt = delete(usage_tracking)
        if organization_id is not None:
            stmt = stmt.where(usage_tracking.c.organization_id == organization_id)
        if before is not None:
            stmt = stmt.where(usage_tracking.c.period_start < before)
        with self._session() as session:
            deleted = session.execute(stmt).rowcount
        logger.info(
            "[store] usage records deleted",
            extra={"organization_id": organization_id, "before": str(before) if before else None, "deleted": deleted},
        )
        return deleted

    # Identity and menu rows

    def get_user_organization(self, user_id: str) -> Optional[str]:
        with self._session() as session:
            row = session.execute(
                select(users.c.organization_id).where(users.c.user_id == user_id)
            ).first()
        return row.organization_id if row else None

    def create_organization(self, organization_id: str, name: str) -> str:
        with self._session() as session:
            session.execute(
                insert(organizations).values(
                    id=organization_id, name=name, created_at=datetime.now(timezone.utc)
                )
            )
        return organization_id

    def create_user(self, user_id: str, organization_id: Optional[str] = None, email: Optional[str] = None) -> str:
        with self._session() as session:
            session.execute(
                insert(users).values(
                    user_id=user_id,
                    email=email,
                    organization_id=organization_id,
                    created_at=datetime.now(timezone.utc),
                )
            )
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
        with self._session() as session:
            session.execute(
                insert(restaurants).values(
                    id=restaurant.restaurant_id,
                    organization_id=organization_id,
                    name=name,
                    is_active=is_active,
                    created_at=restaurant.created_at,
                )
            )
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
        with self._session() as session:
            session.execute(
                insert(products).values(
                    id=product.product_id,
                    restaurant_id=restaurant_id,
                    name=name,
                    product_type=product.product_type.value,
                    parent_product_id=parent_product_id,
                    is_active=is_active,
                    created_at=product.created_at,
                )
            )
        return product

    def get_restaurant(self, restaurant_id: str) -> Optional[Restaurant]:
        with self._session() as session:
            row = session.execute(select(restaurants).where(restaurants.c.id == restaurant_id)).first()
        return _restaurant_from_row(row) if row else None

    def get_product(self, product_id: str) -> Optional[Product]:
        with self._session() as session:
            row = session.execute(select(products).where(products.c.id == product_id)).first()
        return _product_from_row(row) if row else None
