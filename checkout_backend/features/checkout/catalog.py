"""
Catalog reads for checkout: items, price rows, members, enrollments.

Read-only; all writes happen in coupons.py and the entitlements service.
"""
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, or_

from checkout_backend.core.database import (
    get_db_session,
    courses,
    course_prices,
    plans,
    plan_prices,
    organization_members,
    course_enrollments,
)
from checkout_backend.features.checkout.models import (
    ItemType,
    PriceRow,
    PurchasableItem,
    PROVIDER_SCOPE_ANY,
    ensure_utc,
    utc_now,
)

ORG_BILLING_ROLES = ("owner", "admin")


def _order_by_scope(rows: List[PriceRow], network: str) -> List[PriceRow]:
    # Stable: provider-specific rows first, catalog order otherwise preserved
    return sorted(rows, key=lambda r: 0 if r.provider_scope == network else 1)


def get_course(slug: str) -> Optional[PurchasableItem]:
    with get_db_session() as session:
        row = session.execute(
            select(courses).where(courses.c.slug == slug)
        ).first()
    if not row:
        return None
    return PurchasableItem(
        id=row.id,
        slug=row.slug,
        title=row.title,
        description=row.short_description,
        is_active=bool(row.is_active),
        item_type=ItemType.COURSE,
    )


def get_plan(slug: str) -> Optional[PurchasableItem]:
    with get_db_session() as session:
        row = session.execute(
            select(plans).where(plans.c.slug == slug)
        ).first()
    if not row:
        return None
    return PurchasableItem(
        id=row.id,
        slug=row.slug,
        title=row.name,
        description=None,
        is_active=bool(row.is_active),
        item_type=ItemType.SUBSCRIPTION,
    )


def get_course_prices(course_id: str, currency: str, network: str) -> List[PriceRow]:
    """Active price rows usable by `network`, provider-specific rows first."""
    with get_db_session() as session:
        rows = session.execute(
            select(course_prices)
            .where(course_prices.c.course_id == course_id)
            .where(course_prices.c.currency_code == currency)
            .where(course_prices.c.is_active.is_(True))
            .where(or_(course_prices.c.provider == network, course_prices.c.provider == PROVIDER_SCOPE_ANY))
            .order_by(course_prices.c.id)
        ).fetchall()
    return _order_by_scope(
        [
            PriceRow(
                item_id=r.course_id,
                currency_code=r.currency_code,
                amount=Decimal(str(r.amount)),
                provider_scope=r.provider,
                is_active=bool(r.is_active),
                entitlement_duration=r.months,
            )
            for r in rows
        ],
        network,
    )


def get_plan_prices(plan_id: str, currency: str, billing_period: str, network: str) -> List[PriceRow]:
    with get_db_session() as session:
        rows = session.execute(
            select(plan_prices)
            .where(plan_prices.c.plan_id == plan_id)
            .where(plan_prices.c.currency_code == currency)
            .where(plan_prices.c.billing_period == billing_period)
            .where(plan_prices.c.is_active.is_(True))
            .where(or_(plan_prices.c.provider == network, plan_prices.c.provider == PROVIDER_SCOPE_ANY))
            .order_by(plan_prices.c.id)
        ).fetchall()
    return _order_by_scope(
        [
            PriceRow(
                item_id=r.plan_id,
                currency_code=r.currency_code,
                amount=Decimal(str(r.amount)),
                provider_scope=r.provider,
                is_active=bool(r.is_active),
                entitlement_duration=None,
            )
            for r in rows
        ],
        network,
    )


def get_member_role(organization_id: str, user_id: str) -> Optional[str]:
    with get_db_session() as session:
        row = session.execute(
            select(organization_members.c.role)
            .where(organization_members.c.organization_id == organization_id)
            .where(organization_members.c.user_id == user_id)
            .where(organization_members.c.is_active.is_(True))
        ).first()
    return row.role if row else None


def has_active_enrollment(user_id: str, course_id: str) -> bool:
    with get_db_session() as session:
        row = session.execute(
            select(course_enrollments.c.status, course_enrollments.c.expires_at)
            .where(course_enrollments.c.user_id == user_id)
            .where(course_enrollments.c.course_id == course_id)
        ).first()
    if not row or row.status != "active":
        return False
    expires_at = ensure_utc(row.expires_at)
    return expires_at is None or expires_at > utc_now()
