"""
Coupon engine.

Validation runs a fixed sequence of eligibility rules and stops at the first
failure with a machine-readable reason. Redemption is a separate, atomic
step: the global limit is enforced by a single conditional UPDATE on
`coupons.used_count`, the per-user limit inside the same transaction.

`used_count` only ever increases.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from sqlalchemy import select, insert, update, func, and_, or_

from checkout_backend.core.database import (
    get_db_session,
    coupons,
    coupon_courses,
    coupon_redemptions,
)
from checkout_backend.core.errors import CouponRejectedError
from checkout_backend.core.results import Failure, StepResult, Success
from checkout_backend.features.checkout.models import (
    Coupon,
    FreeEnrollment,
    ensure_utc,
    utc_now,
)

logger = logging.getLogger("checkout")

ZERO = Decimal("0")


class CouponRejectReason(str, Enum):
    NOT_FOUND = "not_found"
    NOT_STARTED = "not_started"
    EXPIRED = "expired"
    WRONG_CURRENCY = "wrong_currency"
    WRONG_SCOPE = "wrong_scope"
    MINIMUM_NOT_MET = "minimum_not_met"
    EXHAUSTED = "exhausted"
    USER_LIMIT_REACHED = "user_limit_reached"
    FREE_ENROLLMENT_MISMATCH = "free_enrollment_mismatch"


REJECT_MESSAGES = {
    CouponRejectReason.NOT_FOUND: "Coupon does not exist or is inactive",
    CouponRejectReason.NOT_STARTED: "Coupon is not valid yet",
    CouponRejectReason.EXPIRED: "Coupon has expired",
    CouponRejectReason.WRONG_CURRENCY: "Coupon is not valid for this currency",
    CouponRejectReason.WRONG_SCOPE: "Coupon does not apply to this course",
    CouponRejectReason.MINIMUM_NOT_MET: "Order total is below the coupon minimum",
    CouponRejectReason.EXHAUSTED: "Coupon has no redemptions left",
    CouponRejectReason.USER_LIMIT_REACHED: "You have already used this coupon",
    CouponRejectReason.FREE_ENROLLMENT_MISMATCH: "Coupon does not provide a 100% discount",
}


@dataclass(frozen=True)
class CouponAccepted:
    coupon: Coupon
    discount: Decimal
    final_price: Decimal


@dataclass(frozen=True)
class CouponRejection:
    reason: CouponRejectReason
    message: str

    def to_error(self, code: Optional[str] = None) -> CouponRejectedError:
        return CouponRejectedError(self.message, reason=self.reason.value, coupon_code=code)


CouponDecision = Union[CouponAccepted, FreeEnrollment, CouponRejection]


def reject(reason: CouponRejectReason) -> CouponRejection:
    return CouponRejection(reason=reason, message=REJECT_MESSAGES[reason])


def normalize_code(code: Optional[str]) -> Optional[str]:
    """Trimmed, upper-cased code, or None when blank."""
    if code is None:
        return None
    normalized = code.strip().upper()
    return normalized or None


def _row_to_coupon(row) -> Coupon:
    return Coupon(
        id=row.id,
        code=row.code,
        discount_type=row.discount_type,
        amount=Decimal(str(row.amount)),
        is_active=bool(row.is_active),
        starts_at=ensure_utc(row.starts_at),
        expires_at=ensure_utc(row.expires_at),
        max_redemptions=row.max_redemptions,
        used_count=row.used_count or 0,
        per_user_limit=row.per_user_limit,
        min_order_total=Decimal(str(row.min_order_total)) if row.min_order_total is not None else None,
        currency=row.currency,
        applies_to_all=bool(row.applies_to_all),
        grants_free_entitlement=bool(row.grants_free_entitlement),
    )


def get_coupon(code: str) -> Optional[Coupon]:
    with get_db_session() as session:
        row = session.execute(
            select(coupons).where(func.upper(coupons.c.code) == code.upper())
        ).first()
    return _row_to_coupon(row) if row else None


def _applies_to_course(coupon: Coupon, course_id: str) -> bool:
    if coupon.applies_to_all:
        return True
    with get_db_session() as session:
        row = session.execute(
            select(coupon_courses.c.course_id)
            .where(coupon_courses.c.coupon_id == coupon.id)
            .where(coupon_courses.c.course_id == course_id)
        ).first()
    return row is not None


def _count_user_redemptions(session, coupon_id: str, user_id: str) -> int:
    return session.execute(
        select(func.count())
        .select_from(coupon_redemptions)
        .where(coupon_redemptions.c.coupon_id == coupon_id)
        .where(coupon_redemptions.c.user_id == user_id)
    ).scalar_one()


def _open_reservation_id(session, coupon_id: str, user_id: str, course_id: str) -> Optional[int]:
    row = session.execute(
        select(coupon_redemptions.c.id)
        .where(coupon_redemptions.c.coupon_id == coupon_id)
        .where(coupon_redemptions.c.user_id == user_id)
        .where(coupon_redemptions.c.course_id == course_id)
        .where(coupon_redemptions.c.status == "reserved")
        .order_by(coupon_redemptions.c.id)
    ).first()
    return row.id if row else None


def validate_coupon(
    code: str,
    *,
    course_id: str,
    base_amount: Decimal,
    currency: str,
    user_id: str,
    now: Optional[datetime] = None,
) -> CouponDecision:
    """Run eligibility rules in order; first failure wins.

    Usage checks here are advisory reads; `redeem_coupon` is authoritative.
    """
    now = ensure_utc(now) or utc_now()
    coupon = get_coupon(code)

    if coupon is None or not coupon.is_active:
        return reject(CouponRejectReason.NOT_FOUND)

    if coupon.starts_at and now < coupon.starts_at:
        return reject(CouponRejectReason.NOT_STARTED)
    if coupon.expires_at and now >= coupon.expires_at:
        return reject(CouponRejectReason.EXPIRED)

    if coupon.currency and coupon.currency.upper() != currency.upper():
        return reject(CouponRejectReason.WRONG_CURRENCY)

    if not _applies_to_course(coupon, course_id):
        return reject(CouponRejectReason.WRONG_SCOPE)
    if coupon.min_order_total is not None and base_amount < coupon.min_order_total:
        return reject(CouponRejectReason.MINIMUM_NOT_MET)

    with get_db_session() as session:
        reusable = _open_reservation_id(session, coupon.id, user_id, course_id)
        used = _count_user_redemptions(session, coupon.id, user_id)
    if reusable is None:
        if coupon.max_redemptions is not None and coupon.used_count >= coupon.max_redemptions:
            return reject(CouponRejectReason.EXHAUSTED)
        if coupon.per_user_limit is not None and used >= coupon.per_user_limit:
            return reject(CouponRejectReason.USER_LIMIT_REACHED)

    discount = coupon.discount_for(base_amount)
    final_price = base_amount - discount
    if coupon.grants_free_entitlement or final_price <= ZERO:
        return FreeEnrollment(coupon_code=coupon.code, coupon_id=coupon.id)

    return CouponAccepted(coupon=coupon, discount=discount, final_price=final_price)


def redeem_coupon(
    coupon: Coupon,
    *,
    user_id: str,
    course_id: str,
    amount_saved: Decimal,
    currency: str,
    status: str = "reserved",
) -> StepResult:
    """Atomically take one redemption slot for `user_id`.

    Returns Success(redemption_id) or Failure(CouponRejectedError). A caller
    that loses a race for the last slot gets `exhausted`, exactly as if the
    limit had already been reached. An unconfirmed reservation by the same
    user for the same course is reused without taking a second slot.
    """
    with get_db_session() as session:
        if status == "reserved":
            existing = _open_reservation_id(session, coupon.id, user_id, course_id)
            if existing is not None:
                return Success(existing)

        # Global limit: the one conditional write that arbitrates races
        result = session.execute(
            update(coupons)
            .where(coupons.c.id == coupon.id)
            .where(coupons.c.is_active.is_(True))
            .where(or_(coupons.c.max_redemptions.is_(None), coupons.c.used_count < coupons.c.max_redemptions))
            .values(used_count=coupons.c.used_count + 1)
        )
        if result.rowcount == 0:
            session.rollback()
            logger.info("coupon.exhausted", extra={"user_id": user_id, "reason": "exhausted"})
            return Failure(reject(CouponRejectReason.EXHAUSTED).to_error(coupon.code))

        if coupon.per_user_limit is not None:
            used = _count_user_redemptions(session, coupon.id, user_id)
            if used >= coupon.per_user_limit:
                session.rollback()
                return Failure(reject(CouponRejectReason.USER_LIMIT_REACHED).to_error(coupon.code))

        inserted = session.execute(
            insert(coupon_redemptions).values(
                coupon_id=coupon.id,
                user_id=user_id,
                course_id=course_id,
                amount_saved=amount_saved,
                currency=currency,
                status=status,
            )
        )
        redemption_id = inserted.inserted_primary_key[0]

    logger.info("coupon.redeemed", extra={"user_id": user_id, "status": status})
    return Success(redemption_id)


def confirm_redemption(
    coupon_id: str,
    *,
    user_id: str,
    course_id: str,
    provider: str,
    provider_payment_id: str,
) -> bool:
    """Mark the caller's open reservation as paid. Returns False if none was open."""
    with get_db_session() as session:
        open_id = _open_reservation_id(session, coupon_id, user_id, course_id)
        if open_id is None:
            return False
        result = session.execute(
            update(coupon_redemptions)
            .where(and_(coupon_redemptions.c.id == open_id, coupon_redemptions.c.status == "reserved"))
            .values(status="confirmed", provider=provider, provider_payment_id=provider_payment_id)
        )
        return result.rowcount > 0
