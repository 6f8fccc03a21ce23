from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from checkout_backend.core import database as db
from checkout_backend.core.errors import ConflictError, NotFoundError
from checkout_backend.features.checkout.models import CorrelationPayload, ItemType, ensure_utc
from checkout_backend.features.entitlements.service import (
    ConfirmedPayment,
    GrantStatus,
    SqlEntitlementGranter,
    add_months,
    grant_free_enrollment,
)


@pytest.mark.parametrize(
    "start, months, expected",
    [
        (datetime(2026, 1, 31, tzinfo=timezone.utc), 1, datetime(2026, 2, 28, tzinfo=timezone.utc)),
        (datetime(2024, 1, 31, tzinfo=timezone.utc), 1, datetime(2024, 2, 29, tzinfo=timezone.utc)),
        (datetime(2026, 3, 15, 12, tzinfo=timezone.utc), 12, datetime(2027, 3, 15, 12, tzinfo=timezone.utc)),
        (datetime(2026, 11, 30, tzinfo=timezone.utc), 3, datetime(2027, 2, 28, tzinfo=timezone.utc)),
    ],
)
def test_add_months(start, months, expected):
    assert add_months(start, months) == expected


def _course_payment(payment_id="pay-1", months=12, network="mercadopago"):
    return ConfirmedPayment(
        network=network,
        provider_payment_id=payment_id,
        payload=CorrelationPayload(
            user_id="user-1",
            item_type=ItemType.COURSE,
            item_ref="course-101",
            entitlement_duration=months,
        ),
        amount=Decimal("50000"),
        currency="ARS",
    )


def _subscription_payment(payment_id, months):
    return ConfirmedPayment(
        network="paypal",
        provider_payment_id=payment_id,
        payload=CorrelationPayload(
            user_id="user-1",
            item_type=ItemType.SUBSCRIPTION,
            item_ref="pro",
            entitlement_duration=months,
            organization_id="org-1",
        ),
    )


def _enrollment():
    with db.get_db_session() as session:
        return session.execute(select(db.course_enrollments)).first()


def test_course_grant_sets_expiry_from_duration(seed, fixed_now):
    seed.user()
    seed.course("course-101")
    outcome = SqlEntitlementGranter(clock=lambda: fixed_now).grant(_course_payment(months=6))

    assert outcome.status is GrantStatus.GRANTED
    assert outcome.payment_id is not None
    row = _enrollment()
    assert row.payment_method == "mercadopago"
    assert ensure_utc(row.expires_at) == datetime(2026, 9, 15, 12, tzinfo=timezone.utc)


def test_same_provider_payment_grants_once(seed, fixed_now):
    seed.user()
    seed.course("course-101")
    granter = SqlEntitlementGranter(clock=lambda: fixed_now)

    assert granter.grant(_course_payment()).status is GrantStatus.GRANTED
    assert granter.grant(_course_payment()).status is GrantStatus.DUPLICATE
    # Same id on another network is a different payment
    assert granter.grant(_course_payment(network="paypal")).status is GrantStatus.GRANTED


def test_new_payment_renews_existing_enrollment(seed, fixed_now):
    seed.user()
    seed.course("course-101")
    granter = SqlEntitlementGranter(clock=lambda: fixed_now)
    granter.grant(_course_payment("pay-1", months=1))
    granter.grant(_course_payment("pay-2", months=12))

    with db.get_db_session() as session:
        rows = session.execute(select(db.course_enrollments)).fetchall()
    assert len(rows) == 1
    assert ensure_utc(rows[0].expires_at) == datetime(2027, 3, 15, 12, tzinfo=timezone.utc)


def test_unknown_course_rolls_back_payment(seed):
    seed.user()
    with pytest.raises(NotFoundError):
        SqlEntitlementGranter().grant(_course_payment())
    with db.get_db_session() as session:
        assert session.execute(select(db.payments)).first() is None


def test_subscription_replaces_active_plan(seed, fixed_now):
    seed.user()
    seed.plan("basic")
    pro = seed.plan("pro")
    seed.organization("org-1", members=[("user-1", "owner")])
    with db.get_db_session() as session:
        session.execute(db.organization_subscriptions.insert().values(
            organization_id="org-1", plan_id="plan-basic", billing_period="monthly", status="active",
            started_at=fixed_now, expires_at=fixed_now,
        ))

    outcome = SqlEntitlementGranter(clock=lambda: fixed_now).grant(_subscription_payment("CAP-1", 12))
    assert outcome.status is GrantStatus.GRANTED

    with db.get_db_session() as session:
        subs = session.execute(
            select(db.organization_subscriptions).order_by(db.organization_subscriptions.c.id)
        ).fetchall()
        org = session.execute(select(db.organizations)).first()
    assert [s.status for s in subs] == ["expired", "active"]
    assert subs[1].plan_id == pro
    assert subs[1].billing_period == "annual"
    assert subs[1].payment_id == outcome.payment_id
    assert org.plan_id == pro


def test_free_enrollment_conflicts_while_active(seed, fixed_now):
    seed.user()
    course_id = seed.course("course-101")
    grant_free_enrollment(user_id="user-1", course_id=course_id, months=12, now=fixed_now)
    assert _enrollment().payment_method == "coupon_100"

    with pytest.raises(ConflictError) as exc:
        grant_free_enrollment(user_id="user-1", course_id=course_id, months=12, now=fixed_now)
    assert exc.value.code == "already_enrolled"

    later = datetime(2027, 4, 1, tzinfo=timezone.utc)
    grant_free_enrollment(user_id="user-1", course_id=course_id, months=1, now=later)
    assert ensure_utc(_enrollment().expires_at) == datetime(2027, 5, 1, tzinfo=timezone.utc)
