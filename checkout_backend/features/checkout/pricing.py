"""
Pricing resolver.

Turns (item, currency, provider, optional coupon) into either a strictly
positive PricedCharge or a FreeEnrollment outcome. Failures come back as
Failure values; nothing here raises for an expected condition.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from checkout_backend.core.errors import CatalogMisconfiguredError, NotFoundError
from checkout_backend.core.results import Failure, StepResult, Success
from checkout_backend.features.checkout import catalog
from checkout_backend.features.checkout.coupons import (
    CouponAccepted,
    CouponRejection,
    normalize_code,
    redeem_coupon,
    validate_coupon,
)
from checkout_backend.features.checkout.models import (
    AppliedCoupon,
    BillingPeriod,
    FreeEnrollment,
    PricedCharge,
    PriceRow,
    PurchasableItem,
)

logger = logging.getLogger("checkout")


def _valid_amount(amount: Optional[Decimal]) -> bool:
    return isinstance(amount, Decimal) and amount.is_finite() and amount > 0


def _choose_row(rows: List[PriceRow]) -> Optional[PriceRow]:
    # Rows arrive provider-specific first; first match wins
    return rows[0] if rows else None


def _check_amount(item: PurchasableItem, row: PriceRow) -> Optional[Failure]:
    if _valid_amount(row.amount):
        return None
    logger.error(
        "pricing.invalid_amount",
        extra={"item_ref": item.slug, "error_code": "catalog_misconfigured"},
    )
    return Failure(CatalogMisconfiguredError("Invalid price"))


def resolve_course_price(
    *,
    course_slug: str,
    currency: str,
    network: str,
    user_id: str,
    coupon_code: Optional[str] = None,
    months: Optional[int] = None,
    default_months: int = 12,
    now: Optional[datetime] = None,
) -> StepResult:
    """Resolve the charge for one course enrollment.

    A requested `months` selects among the course's price rows by access
    duration; otherwise the preferred row's duration (or the catalog default)
    applies.

    Returns:
        Success(PricedCharge), Success(FreeEnrollment) or Failure(AppError)
    """
    course = catalog.get_course(course_slug)
    if course is None or not course.is_active:
        return Failure(NotFoundError("Course not found or inactive"))

    rows = catalog.get_course_prices(course.id, currency, network)
    if months is not None:
        rows = [r for r in rows if (r.entitlement_duration or default_months) == months]
    chosen = _choose_row(rows)
    if chosen is None:
        return Failure(NotFoundError(f"No active price for {currency}", code="no_active_price"))

    invalid = _check_amount(course, chosen)
    if invalid:
        return invalid

    duration = chosen.entitlement_duration or default_months
    code = normalize_code(coupon_code)
    if code is None:
        return Success(PricedCharge(
            item=course,
            amount=chosen.amount,
            base_amount=chosen.amount,
            currency=currency,
            entitlement_duration=duration,
        ))

    decision = validate_coupon(
        code,
        course_id=course.id,
        base_amount=chosen.amount,
        currency=currency,
        user_id=user_id,
        now=now,
    )
    if isinstance(decision, CouponRejection):
        logger.info(
            "coupon.rejected",
            extra={"user_id": user_id, "item_ref": course.slug, "reason": decision.reason.value},
        )
        return Failure(decision.to_error(code))
    if isinstance(decision, FreeEnrollment):
        return Success(decision)

    if not isinstance(decision, CouponAccepted):
        raise TypeError(f"unexpected coupon decision: {decision!r}")
    redeemed = redeem_coupon(
        decision.coupon,
        user_id=user_id,
        course_id=course.id,
        amount_saved=decision.discount,
        currency=currency,
    )
    if not redeemed.ok:
        return redeemed

    return Success(PricedCharge(
        item=course,
        amount=decision.final_price,
        base_amount=chosen.amount,
        currency=currency,
        entitlement_duration=duration,
        coupon=AppliedCoupon(
            coupon_id=decision.coupon.id,
            code=decision.coupon.code,
            discount=decision.discount,
            redemption_id=redeemed.value,
        ),
    ))


def resolve_plan_price(
    *,
    plan_slug: str,
    currency: str,
    billing_period: BillingPeriod,
    network: str,
) -> StepResult:
    """Resolve one subscription installment. Coupons do not apply to plans."""
    plan = catalog.get_plan(plan_slug)
    if plan is None or not plan.is_active:
        return Failure(NotFoundError("Plan not found or inactive"))

    chosen = _choose_row(catalog.get_plan_prices(plan.id, currency, billing_period.value, network))
    if chosen is None:
        return Failure(NotFoundError(f"No active price for {currency}", code="no_active_price"))

    invalid = _check_amount(plan, chosen)
    if invalid:
        return invalid

    return Success(PricedCharge(
        item=plan,
        amount=chosen.amount,
        base_amount=chosen.amount,
        currency=currency,
        entitlement_duration=billing_period.months,
    ))
