"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Table definitions for plans, subscriptions, the usage ledger and the
  restaurant/product rows counted against plan limits
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Date, Boolean, JSON, Text, Float, Index, ForeignKey, UniqueConstraint
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from tightship.core.config import settings

logger = logging.getLogger("tightship.database")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def build_engine(url: str):
    """Create an engine with the pool settings used across the service."""
    connect_args = {}
    if url.startswith("sqlite"):
        # Detached tasks touch the ledger from worker threads
        connect_args["check_same_thread"] = False
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        connect_args=connect_args,
        echo=False,  # Set to True for SQL query logging
    )


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    _engine = build_engine(url)

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session(session_factory=None):
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)

    The session commits on clean exit and rolls back on any exception.
    """
    SessionLocal = session_factory or get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine=None):
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine or get_engine())


def drop_all_tables(engine=None):
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    metadata.drop_all(bind=engine or get_engine())


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Organizations (tenants)
organizations = Table(
    'organizations',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('name', Text, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)


# Users; organization_id is null until onboarding attaches one
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(320), nullable=True, unique=True),
    Column('organization_id', String(100), ForeignKey('organizations.id'), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_app_users_organization', 'organization_id'),
)


restaurants = Table(
    'restaurants',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('organization_id', String(100), ForeignKey('organizations.id'), nullable=False),
    Column('name', Text, nullable=False),
    Column('is_active', Boolean, nullable=False, server_default='true'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # Live-count pattern for the restaurants limit
    Index('idx_restaurants_org_active', 'organization_id', 'is_active'),
)


products = Table(
    'products',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('restaurant_id', String(100), ForeignKey('restaurants.id'), nullable=False),
    Column('name', Text, nullable=False),
    Column('product_type', String(20), nullable=False, server_default='STANDALONE'),  # STANDALONE | PARENT | VARIANT
    Column('parent_product_id', String(100), ForeignKey('products.id'), nullable=True),
    Column('is_active', Boolean, nullable=False, server_default='true'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_products_restaurant_active', 'restaurant_id', 'is_active'),
    Index('idx_products_parent', 'parent_product_id'),
)


# Plan catalog (reference data, seeded)
subscription_plans = Table(
    'subscription_plans',
    metadata,
    Column('plan_id', String(50), primary_key=True),
    Column('tier', String(20), nullable=False, unique=True),
    Column('name', String(200), nullable=False),
    Column('description', Text, nullable=True),
    Column('price_monthly', Float, nullable=True),
    Column('price_yearly', Float, nullable=True),
    Column('features', JSON, nullable=False),
    Column('limits', JSON, nullable=False),
    Column('is_active', Boolean, nullable=False, server_default='true'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)


# One subscription per organization; status transitions instead of deletes
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', String(150), primary_key=True),
    Column('organization_id', String(100), ForeignKey('organizations.id'), nullable=False),
    Column('plan_id', String(50), ForeignKey('subscription_plans.plan_id'), nullable=False),
    Column('status', String(20), nullable=False),  # TRIALING, ACTIVE, PAST_DUE, CANCELLED, EXPIRED
    Column('current_period_start', DateTime(timezone=True), nullable=False),
    Column('current_period_end', DateTime(timezone=True), nullable=False),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default='false'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('organization_id', name='uq_subscriptions_organization'),
    # Expiry sweep pattern: (status, current_period_end)
    Index('idx_subscriptions_status_period_end', 'status', 'current_period_end'),
)


# Usage ledger: one row per (organization, metric, calendar month)
usage_tracking = Table(
    'usage_tracking',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('organization_id', String(100), ForeignKey('organizations.id'), nullable=False),
    Column('metric_type', String(50), nullable=False),
    Column('count', Integer, nullable=False, server_default='0'),
    Column('period_start', Date, nullable=False),
    Column('period_end', Date, nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('organization_id', 'metric_type', 'period_start', name='uq_usage_tracking_org_metric_period'),
    Index('idx_usage_tracking_period_start', 'period_start'),
)


audit_events = Table(
    'audit_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('action', String(100), nullable=False, index=True),
    Column('organization_id', String(100), nullable=True, index=True),
    Column('actor', String(100), nullable=True),
    Column('target_type', String(50), nullable=True),
    Column('target_id', String(150), nullable=True),
    Column('request_id', String(100), nullable=True),
    Column('payload', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False, index=True),
)
