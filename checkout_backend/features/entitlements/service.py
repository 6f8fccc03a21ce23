"""
checkout_backend/features/entitlements/service.py

Entitlement granting for confirmed payments.

Handles:
- Course enrollments (paid or coupon_100)
- Organization plan activation for subscription installments
- Idempotency per (provider, provider_payment_id): a redelivered callback is
  a no-op, enforced by the unique key on `payments`
"""

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Protocol

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from checkout_backend.core.database import (
    get_db_session,
    courses,
    plans,
    payments,
    course_enrollments,
    organizations,
    organization_subscriptions,
)
from checkout_backend.core.errors import ConflictError, NotFoundError
from checkout_backend.features.checkout.coupons import confirm_redemption
from checkout_backend.features.checkout.models import (
    CorrelationPayload,
    ItemType,
    ensure_utc,
    utc_now,
)


logger = logging.getLogger("checkout")

FREE_PAYMENT_METHOD = "coupon_100"


class GrantStatus(str, Enum):
    GRANTED = "granted"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class ConfirmedPayment:
    """A provider-confirmed payment and the intent it settles."""
    network: str
    provider_payment_id: str
    payload: CorrelationPayload
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    status: str = "approved"


@dataclass(frozen=True)
class GrantOutcome:
    status: GrantStatus
    payment_id: Optional[int] = None


class EntitlementGranter(Protocol):
    def grant(self, payment: ConfirmedPayment) -> GrantOutcome:
        ...


def add_months(start: datetime, months: int) -> datetime:
    """Calendar-aware month addition, clamping to the last day of the month."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def _course_id(session, slug: str) -> str:
    row = session.execute(select(courses.c.id).where(courses.c.slug == slug)).first()
    if not row:
        raise NotFoundError(f"Course {slug!r} not found")
    return row.id


def _plan_id(session, slug: str) -> str:
    row = session.execute(select(plans.c.id).where(plans.c.slug == slug)).first()
    if not row:
        raise NotFoundError(f"Plan {slug!r} not found")
    return row.id


def _upsert_enrollment(session, *, user_id: str, course_id: str, months: int, payment_method: str, now: datetime) -> None:
    expires_at = add_months(now, months)
    existing = session.execute(
        select(course_enrollments.c.id)
        .where(course_enrollments.c.user_id == user_id)
        .where(course_enrollments.c.course_id == course_id)
    ).first()
    if existing:
        session.execute(
            update(course_enrollments)
            .where(course_enrollments.c.id == existing.id)
            .values(status="active", payment_method=payment_method, started_at=now, expires_at=expires_at, updated_at=now)
        )
    else:
        session.execute(
            insert(course_enrollments).values(
                user_id=user_id,
                course_id=course_id,
                status="active",
                payment_method=payment_method,
                started_at=now,
                expires_at=expires_at,
                updated_at=now,
            )
        )


def _activate_subscription(session, payment: ConfirmedPayment, payment_id: int, now: datetime) -> None:
    payload = payment.payload
    plan_id = _plan_id(session, payload.item_ref)
    period = "annual" if payload.entitlement_duration >= 12 else "monthly"

    session.execute(
        update(organization_subscriptions)
        .where(organization_subscriptions.c.organization_id == payload.organization_id)
        .where(organization_subscriptions.c.status == "active")
        .values(status="expired")
    )
    session.execute(
        insert(organization_subscriptions).values(
            organization_id=payload.organization_id,
            plan_id=plan_id,
            billing_period=period,
            status="active",
            payment_id=payment_id,
            amount=payment.amount,
            currency=payment.currency,
            started_at=now,
            expires_at=add_months(now, payload.entitlement_duration),
        )
    )
    session.execute(
        update(organizations)
        .where(organizations.c.id == payload.organization_id)
        .values(plan_id=plan_id)
    )


class SqlEntitlementGranter:
    """EntitlementGranter backed by the relational store."""

    def __init__(self, clock=utc_now):
        self.clock = clock

    def grant(self, payment: ConfirmedPayment) -> GrantOutcome:
        """Record the payment and grant access, at most once per provider payment."""
        payload = payment.payload
        now = ensure_utc(self.clock())
        course_id = None

        with get_db_session() as session:
            try:
                inserted = session.execute(
                    insert(payments).values(
                        provider=payment.network,
                        provider_payment_id=payment.provider_payment_id,
                        user_id=payload.user_id,
                        product_type=ItemType(payload.item_type).value,
                        product_ref=payload.item_ref,
                        organization_id=payload.organization_id,
                        amount=payment.amount,
                        currency=payment.currency,
                        status=payment.status,
                    )
                )
            except IntegrityError:
                session.rollback()
                logger.info(
                    "entitlement.duplicate",
                    extra={"network": payment.network, "user_id": payload.user_id},
                )
                return GrantOutcome(status=GrantStatus.DUPLICATE)

            payment_id = inserted.inserted_primary_key[0]
            if ItemType(payload.item_type) is ItemType.COURSE:
                course_id = _course_id(session, payload.item_ref)
                _upsert_enrollment(
                    session,
                    user_id=payload.user_id,
                    course_id=course_id,
                    months=payload.entitlement_duration,
                    payment_method=payment.network,
                    now=now,
                )
            else:
                _activate_subscription(session, payment, payment_id, now)

        if course_id and payload.coupon_ref:
            confirm_redemption(
                payload.coupon_ref,
                user_id=payload.user_id,
                course_id=course_id,
                provider=payment.network,
                provider_payment_id=payment.provider_payment_id,
            )

        logger.info(
            "entitlement.granted",
            extra={
                "network": payment.network,
                "user_id": payload.user_id,
                "item_type": ItemType(payload.item_type).value,
                "item_ref": payload.item_ref,
            },
        )
        return GrantOutcome(status=GrantStatus.GRANTED, payment_id=payment_id)


def grant_free_enrollment(*, user_id: str, course_id: str, months: int, now: Optional[datetime] = None) -> None:
    """Enroll without a payment. Raises ConflictError if already enrolled."""
    now = ensure_utc(now) or utc_now()
    with get_db_session() as session:
        existing = session.execute(
            select(course_enrollments.c.status, course_enrollments.c.expires_at)
            .where(course_enrollments.c.user_id == user_id)
            .where(course_enrollments.c.course_id == course_id)
        ).first()
        if existing and existing.status == "active":
            expires_at = ensure_utc(existing.expires_at)
            if expires_at is None or expires_at > now:
                raise ConflictError("Already enrolled in this course", code="already_enrolled")
        _upsert_enrollment(
            session,
            user_id=user_id,
            course_id=course_id,
            months=months,
            payment_method=FREE_PAYMENT_METHOD,
            now=now,
        )
    logger.info("entitlement.granted", extra={"user_id": user_id, "event_type": FREE_PAYMENT_METHOD})
