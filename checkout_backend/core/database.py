"""
Relational store for checkout.

One process-wide engine, created lazily from DATABASE_URL (TEST_DATABASE_URL
wins when set), and a `get_db_session()` unit of work. Tables are SQLAlchemy
Core; schema changes go through `create_all_tables()` in dev and tests.
"""
import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional
from uuid import uuid4

from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    Numeric,
    Text,
    Index,
    ForeignKey,
    UniqueConstraint,
    text,
    true,
    false,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func

from checkout_backend.core.config import settings

logger = logging.getLogger("checkout")

metadata = MetaData()

# Server pool sizing; sqlite ignores these
POOL_OPTIONS: Dict[str, Any] = {
    "poolclass": QueuePool,
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 3600,
    "pool_pre_ping": True,
}

_IN_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def get_database_url() -> Optional[str]:
    return os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL


def _engine_kwargs(url: str) -> Dict[str, Any]:
    if not url.startswith("sqlite"):
        return dict(POOL_OPTIONS)
    kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if url in _IN_MEMORY_URLS:
        # every session must see the same in-memory database
        kwargs["poolclass"] = StaticPool
    return kwargs


def init_engine(database_url: Optional[str] = None) -> Engine:
    """(Re)bind the module engine and session factory.

    Raises:
        ValueError: when no URL is given and none is configured.
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured. Set DATABASE_URL in environment or .env file.")

    if _engine is not None:
        _engine.dispose()
    _engine = create_engine(url, echo=False, **_engine_kwargs(url))
    _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory() -> sessionmaker:
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session() -> Iterator[Session]:
    """
    Unit of work: commit on clean exit, roll back and re-raise otherwise.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables() -> None:
    """Create missing tables; existing ones are left alone."""
    metadata.create_all(bind=get_engine())


def drop_all_tables() -> None:
    """Drop every checkout table. Tests and local dev only."""
    metadata.drop_all(bind=get_engine())


def reset_database() -> None:
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    """True when a trivial query succeeds; failures are logged, not raised."""
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, ValueError) as exc:
        logger.warning("db.unavailable", extra={"error_code": exc.__class__.__name__})
        return False
    return True


def _uuid() -> str:
    return str(uuid4())


# Public users, mapped from the identity provider's auth id
users = Table(
    'users',
    metadata,
    Column('id', String(64), primary_key=True, default=_uuid),
    Column('auth_id', String(128), nullable=False, unique=True),
    Column('email', String(255), nullable=True),
    Column('full_name', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_auth_id', 'auth_id'),
)

organizations = Table(
    'organizations',
    metadata,
    Column('id', String(64), primary_key=True, default=_uuid),
    Column('name', Text, nullable=False),
    Column('plan_id', String(64), ForeignKey('plans.id'), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

organization_members = Table(
    'organization_members',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('organization_id', String(64), ForeignKey('organizations.id'), nullable=False),
    Column('user_id', String(64), ForeignKey('users.id'), nullable=False),
    Column('role', String(20), nullable=False, server_default='member'),  # owner | admin | member
    Column('is_active', Boolean, nullable=False, server_default=true()),
    UniqueConstraint('organization_id', 'user_id', name='uq_org_members_org_user'),
)

# Catalog: courses and their per-currency, per-provider prices
courses = Table(
    'courses',
    metadata,
    Column('id', String(64), primary_key=True, default=_uuid),
    Column('slug', String(200), nullable=False, unique=True),
    Column('title', Text, nullable=False),
    Column('short_description', Text, nullable=True),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_courses_slug', 'slug'),
)

course_prices = Table(
    'course_prices',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('course_id', String(64), ForeignKey('courses.id'), nullable=False),
    Column('currency_code', String(3), nullable=False),
    Column('amount', Numeric(12, 2), nullable=False),
    Column('provider', String(20), nullable=False, server_default='any'),  # mercadopago | paypal | any
    Column('months', Integer, nullable=True),  # access duration; NULL means catalog default
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Index('idx_course_prices_lookup', 'course_id', 'currency_code', 'is_active'),
)

plans = Table(
    'plans',
    metadata,
    Column('id', String(64), primary_key=True, default=_uuid),
    Column('slug', String(100), nullable=False, unique=True),
    Column('name', Text, nullable=False),
    Column('is_active', Boolean, nullable=False, server_default=true()),
)

plan_prices = Table(
    'plan_prices',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('plan_id', String(64), ForeignKey('plans.id'), nullable=False),
    Column('currency_code', String(3), nullable=False),
    Column('billing_period', String(10), nullable=False),  # monthly | annual
    Column('amount', Numeric(12, 2), nullable=False),
    Column('provider', String(20), nullable=False, server_default='any'),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Index('idx_plan_prices_lookup', 'plan_id', 'currency_code', 'billing_period'),
)

# Promotional codes
coupons = Table(
    'coupons',
    metadata,
    Column('id', String(64), primary_key=True, default=_uuid),
    Column('code', String(64), nullable=False, unique=True),  # stored upper-case
    Column('discount_type', String(10), nullable=False),  # percent | fixed
    Column('amount', Numeric(12, 2), nullable=False),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('starts_at', DateTime(timezone=True), nullable=True),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    Column('max_redemptions', Integer, nullable=True),  # NULL = unlimited
    Column('used_count', Integer, nullable=False, server_default='0'),
    Column('per_user_limit', Integer, nullable=True, server_default='1'),  # NULL = unlimited
    Column('min_order_total', Numeric(12, 2), nullable=True),
    Column('currency', String(3), nullable=True),
    Column('applies_to_all', Boolean, nullable=False, server_default=true()),
    Column('grants_free_entitlement', Boolean, nullable=False, server_default=false()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

coupon_courses = Table(
    'coupon_courses',
    metadata,
    Column('coupon_id', String(64), ForeignKey('coupons.id'), primary_key=True),
    Column('course_id', String(64), ForeignKey('courses.id'), primary_key=True),
)

coupon_redemptions = Table(
    'coupon_redemptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('coupon_id', String(64), ForeignKey('coupons.id'), nullable=False),
    Column('user_id', String(64), ForeignKey('users.id'), nullable=False),
    Column('course_id', String(64), ForeignKey('courses.id'), nullable=True),
    Column('amount_saved', Numeric(12, 2), nullable=False, server_default='0'),
    Column('currency', String(3), nullable=True),
    Column('status', String(20), nullable=False, server_default='reserved'),  # reserved | confirmed
    Column('provider', String(20), nullable=True),
    Column('provider_payment_id', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_coupon_redemptions_coupon_user', 'coupon_id', 'user_id'),
)

# Confirmed provider payments; the unique key makes callback redelivery a no-op
payments = Table(
    'payments',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('provider', String(20), nullable=False),
    Column('provider_payment_id', String(100), nullable=False),
    Column('user_id', String(64), ForeignKey('users.id'), nullable=False),
    Column('product_type', String(20), nullable=False),  # course | subscription
    Column('product_ref', String(200), nullable=False),
    Column('organization_id', String(64), nullable=True),
    Column('amount', Numeric(12, 2), nullable=True),
    Column('currency', String(3), nullable=True),
    Column('status', String(20), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('provider', 'provider_payment_id', name='uq_payments_provider_payment'),
)

course_enrollments = Table(
    'course_enrollments',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(64), ForeignKey('users.id'), nullable=False),
    Column('course_id', String(64), ForeignKey('courses.id'), nullable=False),
    Column('status', String(20), nullable=False, server_default='active'),
    Column('payment_method', String(20), nullable=True),  # mercadopago | paypal | coupon_100
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('user_id', 'course_id', name='uq_course_enrollments_user_course'),
)

organization_subscriptions = Table(
    'organization_subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('organization_id', String(64), ForeignKey('organizations.id'), nullable=False),
    Column('plan_id', String(64), ForeignKey('plans.id'), nullable=False),
    Column('billing_period', String(10), nullable=False),
    Column('status', String(20), nullable=False),  # active | expired
    Column('payment_id', Integer, ForeignKey('payments.id'), nullable=True),
    Column('amount', Numeric(12, 2), nullable=True),
    Column('currency', String(3), nullable=True),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=False),
    Index('idx_org_subscriptions_org_status', 'organization_id', 'status'),
)
