"""Coupon engine: eligibility order, atomic redemption, reservation reuse."""
import threading
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from checkout_backend.core import database as db
from checkout_backend.features.checkout.coupons import (
    CouponAccepted,
    CouponRejection,
    CouponRejectReason,
    confirm_redemption,
    get_coupon,
    normalize_code,
    redeem_coupon,
    validate_coupon,
)
from checkout_backend.features.checkout.models import FreeEnrollment


@pytest.fixture
def catalog(seed):
    seed.user()
    course_id = seed.course()
    seed.course_price(course_id)
    return course_id


def _validate(code, course_id, now, base="50000", currency="ARS", user_id="user-1"):
    return validate_coupon(
        code,
        course_id=course_id,
        base_amount=Decimal(base),
        currency=currency,
        user_id=user_id,
        now=now,
    )


def _used_count(coupon_id):
    with db.get_db_session() as session:
        return session.execute(select(db.coupons.c.used_count).where(db.coupons.c.id == coupon_id)).scalar_one()


def test_normalize_code():
    assert normalize_code("  winter22 ") == "WINTER22"
    assert normalize_code("   ") is None
    assert normalize_code(None) is None


def test_percent_coupon_is_accepted_with_discount(seed, catalog, fixed_now):
    seed.coupon("SAVE10")
    decision = _validate("SAVE10", catalog, fixed_now)
    assert isinstance(decision, CouponAccepted)
    assert decision.discount == Decimal("5000.00")
    assert decision.final_price == Decimal("45000.00")


def test_fixed_coupon_is_capped_at_price(seed, catalog, fixed_now):
    seed.coupon("BIG", discount_type="fixed", amount=Decimal("99999"))
    decision = _validate("BIG", catalog, fixed_now)
    assert isinstance(decision, FreeEnrollment)
    assert decision.coupon_code == "BIG"


def test_free_flag_short_circuits_to_free_enrollment(seed, catalog, fixed_now):
    coupon_id = seed.coupon("GIFT", amount=Decimal("0"), grants_free_entitlement=True)
    decision = _validate("GIFT", catalog, fixed_now)
    assert decision == FreeEnrollment(coupon_code="GIFT", coupon_id=coupon_id)


@pytest.mark.parametrize(
    "fields, expected",
    [
        ({"is_active": False}, CouponRejectReason.NOT_FOUND),
        ({"starts_at_offset": timedelta(days=1)}, CouponRejectReason.NOT_STARTED),
        ({"expires_at_offset": timedelta(days=-1)}, CouponRejectReason.EXPIRED),
        ({"currency": "USD"}, CouponRejectReason.WRONG_CURRENCY),
        ({"applies_to_all": False}, CouponRejectReason.WRONG_SCOPE),
        ({"min_order_total": Decimal("60000")}, CouponRejectReason.MINIMUM_NOT_MET),
        ({"max_redemptions": 3, "used_count": 3}, CouponRejectReason.EXHAUSTED),
    ],
)
def test_rejection_reasons(seed, catalog, fixed_now, fields, expected):
    fields = dict(fields)
    if "starts_at_offset" in fields:
        fields["starts_at"] = fixed_now + fields.pop("starts_at_offset")
    if "expires_at_offset" in fields:
        fields["expires_at"] = fixed_now + fields.pop("expires_at_offset")
    seed.coupon("WINTER22", **fields)

    decision = _validate("WINTER22", catalog, fixed_now)
    assert isinstance(decision, CouponRejection)
    assert decision.reason is expected
    assert decision.to_error("WINTER22").reason == expected.value


def test_unknown_code_is_not_found(catalog, fixed_now):
    decision = _validate("NOPE", catalog, fixed_now)
    assert decision.reason is CouponRejectReason.NOT_FOUND


def test_expiry_is_checked_before_scope(seed, catalog, fixed_now):
    seed.coupon("OLD", expires_at=fixed_now - timedelta(days=1), applies_to_all=False, currency="USD")
    assert _validate("OLD", catalog, fixed_now).reason is CouponRejectReason.EXPIRED


def test_scoped_coupon_applies_to_listed_course(seed, catalog, fixed_now):
    coupon_id = seed.coupon("ONLY101", applies_to_all=False)
    seed.coupon_course(coupon_id, catalog)
    assert isinstance(_validate("ONLY101", catalog, fixed_now), CouponAccepted)


def test_lookup_is_case_insensitive(seed, catalog, fixed_now):
    seed.coupon("SAVE10")
    assert get_coupon("save10").code == "SAVE10"


def test_redeem_increments_and_enforces_user_limit(seed, catalog, fixed_now):
    coupon_id = seed.coupon("SAVE10", per_user_limit=1)
    coupon = get_coupon("SAVE10")

    first = redeem_coupon(coupon, user_id="user-1", course_id=catalog, amount_saved=Decimal("5000"), currency="ARS")
    assert first.ok
    assert _used_count(coupon_id) == 1

    # Same user, same course: the open reservation is reused, no second slot taken
    again = redeem_coupon(coupon, user_id="user-1", course_id=catalog, amount_saved=Decimal("5000"), currency="ARS")
    assert again.ok and again.value == first.value
    assert _used_count(coupon_id) == 1

    # A confirmed redemption counts against the per-user limit
    assert confirm_redemption(coupon_id, user_id="user-1", course_id=catalog, provider="mercadopago", provider_payment_id="p-1")
    decision = _validate("SAVE10", catalog, fixed_now)
    assert decision.reason is CouponRejectReason.USER_LIMIT_REACHED

    other_course = seed.course("course-202")
    blocked = redeem_coupon(coupon, user_id="user-1", course_id=other_course, amount_saved=Decimal("1"), currency="ARS")
    assert not blocked.ok
    assert blocked.error.reason == "user_limit_reached"
    # Rolled back with the failed redemption
    assert _used_count(coupon_id) == 1


def test_redeem_on_exhausted_coupon_fails(seed, catalog):
    seed.coupon("ONCE", max_redemptions=1, used_count=1)
    result = redeem_coupon(get_coupon("ONCE"), user_id="user-1", course_id=catalog, amount_saved=Decimal("1"), currency="ARS")
    assert not result.ok
    assert result.error.reason == "exhausted"
    assert result.error.status_code == 400


def test_open_reservation_skips_advisory_limit_checks(seed, catalog, fixed_now):
    seed.coupon("ONCE", max_redemptions=1)
    coupon = get_coupon("ONCE")
    assert redeem_coupon(coupon, user_id="user-1", course_id=catalog, amount_saved=Decimal("1"), currency="ARS").ok

    # The user's own retry still validates even though the global slot is taken
    assert isinstance(_validate("ONCE", catalog, fixed_now), CouponAccepted)
    assert _validate("ONCE", catalog, fixed_now, user_id="user-2").reason is CouponRejectReason.EXHAUSTED


def test_confirm_without_reservation_returns_false(seed, catalog):
    coupon_id = seed.coupon("SAVE10")
    assert confirm_redemption(coupon_id, user_id="user-1", course_id=catalog, provider="paypal", provider_payment_id="x") is False


def test_concurrent_redemptions_of_single_use_coupon(tmp_path, seed):
    """Two racing redemptions of a one-slot coupon: exactly one wins."""
    db.init_engine(f"sqlite:///{tmp_path / 'race.db'}")
    db.create_all_tables()
    seed.user("user-a", auth_id="auth-a")
    seed.user("user-b", auth_id="auth-b")
    course_id = seed.course()
    coupon_id = seed.coupon("ONLYONE", max_redemptions=1, per_user_limit=None)
    coupon = get_coupon("ONLYONE")

    barrier = threading.Barrier(2)
    results = {}

    def attempt(user_id):
        barrier.wait()
        results[user_id] = redeem_coupon(
            coupon, user_id=user_id, course_id=course_id, amount_saved=Decimal("10"), currency="ARS",
        )

    threads = [threading.Thread(target=attempt, args=(u,)) for u in ("user-a", "user-b")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    outcomes = sorted(r.ok for r in results.values())
    assert outcomes == [False, True]
    loser = next(r for r in results.values() if not r.ok)
    assert loser.error.reason == "exhausted"
    assert _used_count(coupon_id) == 1
