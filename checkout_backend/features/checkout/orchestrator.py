"""
Order orchestrator.

One flow per endpoint, each a fixed sequence of steps that return Success or
Failure values:

    ParseInput -> ValidateRequired -> ResolveIdentity -> ResolvePricing
        -> FreeEnrollment (terminal)
        -> BuildCorrelationToken -> BuildBackUrls -> CallProviderAdapter -> ShapeResponse

The first Failure ends the flow. `run_flow` is the single boundary where an
unexpected exception becomes a 500.
"""
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from checkout_backend.core.auth import ResolvedIdentity, SessionProvider, resolve_identity
from checkout_backend.core.config import CheckoutConfig
from checkout_backend.core.errors import (
    AppError,
    ConflictError,
    FatalError,
    NotFoundError,
    PermissionDeniedError,
    ProviderDisabledError,
    ProviderError,
    ValidationError,
)
from checkout_backend.core.results import Failure, StepResult, Success
from checkout_backend.features.checkout import catalog, correlation
from checkout_backend.features.checkout.coupons import (
    CouponAccepted,
    CouponRejectReason,
    CouponRejection,
    get_coupon,
    normalize_code,
    redeem_coupon,
    reject,
    validate_coupon,
)
from checkout_backend.features.checkout.mercadopago_provider import MercadoPagoProvider
from checkout_backend.features.checkout.models import (
    BillingPeriod,
    ChargeIntent,
    CorrelationPayload,
    FreeEnrollment,
    ItemType,
    Network,
    PricedCharge,
    PROVIDER_SCOPE_ANY,
)
from checkout_backend.features.checkout.paypal_provider import PayPalProvider
from checkout_backend.features.checkout.pricing import resolve_course_price, resolve_plan_price
from checkout_backend.features.checkout.provider import ProviderAdapter
from checkout_backend.features.checkout.urls import back_urls, build_url_context, notification_url
from checkout_backend.features.entitlements.service import grant_free_enrollment

logger = logging.getLogger("checkout")

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


@dataclass(frozen=True)
class CourseCheckoutInput:
    course_slug: Optional[str] = None
    currency: Optional[str] = None
    months: Optional[int] = None
    coupon_code: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionCheckoutInput:
    plan_slug: Optional[str] = None
    organization_id: Optional[str] = None
    billing_period: Optional[str] = None
    currency: Optional[str] = None


@dataclass(frozen=True)
class FreeEnrollInput:
    course_slug: Optional[str] = None
    coupon_code: Optional[str] = None


@dataclass
class CheckoutContext:
    """Per-process collaborators shared by every checkout request."""
    config: CheckoutConfig
    session_provider: Optional[SessionProvider]
    adapters: Dict[Network, ProviderAdapter]


def build_adapters(config: CheckoutConfig) -> Dict[Network, ProviderAdapter]:
    """One adapter per network that has credentials."""
    adapters: Dict[Network, ProviderAdapter] = {}
    if config.mercadopago is not None:
        adapters[Network.MERCADOPAGO] = MercadoPagoProvider(
            config.mercadopago,
            timeout=config.provider_timeout,
            statement_descriptor=config.statement_descriptor,
            brand_name=config.brand_name,
        )
    if config.paypal is not None:
        adapters[Network.PAYPAL] = PayPalProvider(
            config.paypal,
            timeout=config.provider_timeout,
            brand_name=config.brand_name,
        )
    return adapters


async def run_flow(flow: Callable[..., Awaitable[StepResult]], *args: Any) -> StepResult:
    """Run a flow; the only place unexpected exceptions are caught."""
    try:
        return await flow(*args)
    except AppError as exc:
        return Failure(exc)
    except Exception as exc:
        logger.error("checkout.fatal", exc_info=True, extra={"error_code": "internal_error"})
        return Failure(FatalError(str(exc) or exc.__class__.__name__))


# ---- steps -----------------------------------------------------------------

def _required(**fields: Any) -> Optional[Failure]:
    missing = [name for name, value in fields.items() if value is None or (isinstance(value, str) and not value.strip())]
    if missing:
        return Failure(ValidationError(f"Missing required field(s): {', '.join(missing)}"))
    return None


def _select_adapter(ctx: CheckoutContext, network_name: str) -> StepResult:
    try:
        network = Network(network_name.lower())
    except ValueError:
        return Failure(NotFoundError(f"Unknown payment network {network_name!r}", code="unknown_network"))
    adapter = ctx.adapters.get(network)
    if adapter is None:
        return Failure(ProviderDisabledError(f"{network.value} is not configured"))
    return Success(adapter)


def _currency(ctx: CheckoutContext, value: Optional[str]) -> StepResult:
    currency = (value or ctx.config.default_currency).strip().upper()
    if not _CURRENCY_RE.match(currency):
        return Failure(ValidationError(f"Invalid currency {value!r}"))
    return Success(currency)


def _intent(
    ctx: CheckoutContext,
    network: Network,
    headers: Mapping[str, str],
    identity: ResolvedIdentity,
    charge: PricedCharge,
    payload: CorrelationPayload,
    metadata: Dict[str, Any],
) -> StepResult:
    token = correlation.encode(payload)
    try:
        url_ctx = build_url_context(headers, ctx.config.return_url_base)
    except ValueError:
        return Failure(ValidationError("Missing host header"))

    return Success(ChargeIntent(
        amount=charge.amount,
        currency=charge.currency,
        title=charge.item.title,
        description=charge.item.description or charge.item.title,
        item_id=charge.item.slug,
        payer_email=identity.email,
        payer_name=identity.full_name,
        correlation_token=token,
        back_urls=back_urls(url_ctx, network, payload.item_type, charge.item.slug),
        notification_url=notification_url(url_ctx, network, ctx.config.webhook_secret),
        metadata=metadata,
    ))


async def _call_provider(adapter: ProviderAdapter, intent: ChargeIntent, identity: ResolvedIdentity) -> StepResult:
    result = await adapter.create_charge(intent)
    if not result.success:
        status = result.status if result.status and result.status >= 400 else 502
        logger.warning(
            "checkout.provider_failed",
            extra={"network": adapter.network.value, "user_id": identity.user_id, "status": status},
        )
        return Failure(ProviderError(result.error or "Payment provider error", status_code=status))

    logger.info(
        "checkout.intent_created",
        extra={"network": adapter.network.value, "user_id": identity.user_id, "item_ref": intent.item_id},
    )
    return Success({
        "ok": True,
        "redirect_url": result.redirect_url,
        "provider_reference": result.provider_reference,
    })


def _free_enrollment_body(free: FreeEnrollment) -> Dict[str, Any]:
    return {
        "ok": True,
        "free_enrollment": True,
        "coupon_code": free.coupon_code,
        "coupon_id": free.coupon_id,
    }


# ---- flows -----------------------------------------------------------------

async def _course_flow(
    ctx: CheckoutContext,
    network_name: str,
    body: CourseCheckoutInput,
    authorization: Optional[str],
    headers: Mapping[str, str],
) -> StepResult:
    missing = _required(course_slug=body.course_slug)
    if missing:
        return missing
    if body.months is not None and body.months <= 0:
        return Failure(ValidationError("months must be a positive integer"))

    selected = _select_adapter(ctx, network_name)
    if not selected.ok:
        return selected
    adapter = selected.value

    currency = _currency(ctx, body.currency)
    if not currency.ok:
        return currency

    resolved = await resolve_identity(authorization, ctx.session_provider)
    if not resolved.ok:
        return resolved
    identity: ResolvedIdentity = resolved.value

    priced = resolve_course_price(
        course_slug=body.course_slug.strip(),
        currency=currency.value,
        network=adapter.network.value,
        user_id=identity.user_id,
        coupon_code=body.coupon_code,
        months=body.months,
        default_months=ctx.config.default_course_months,
    )
    if not priced.ok:
        return priced
    if isinstance(priced.value, FreeEnrollment):
        logger.info("checkout.free_enrollment", extra={"user_id": identity.user_id, "item_ref": body.course_slug})
        return Success(_free_enrollment_body(priced.value))

    charge: PricedCharge = priced.value
    payload = CorrelationPayload(
        user_id=identity.user_id,
        item_type=ItemType.COURSE,
        item_ref=charge.item.slug,
        entitlement_duration=charge.entitlement_duration,
        coupon_ref=charge.coupon.coupon_id if charge.coupon else None,
    )
    metadata = {
        "user_id": identity.user_id,
        "course_slug": charge.item.slug,
        "months": charge.entitlement_duration,
    }
    if charge.coupon:
        metadata["coupon_code"] = charge.coupon.code
        metadata["discount"] = str(charge.coupon.discount)

    intent = _intent(ctx, adapter.network, headers, identity, charge, payload, metadata)
    if not intent.ok:
        return intent
    return await _call_provider(adapter, intent.value, identity)


async def _subscription_flow(
    ctx: CheckoutContext,
    network_name: str,
    body: SubscriptionCheckoutInput,
    authorization: Optional[str],
    headers: Mapping[str, str],
) -> StepResult:
    missing = _required(
        plan_slug=body.plan_slug,
        organization_id=body.organization_id,
        billing_period=body.billing_period,
    )
    if missing:
        return missing
    try:
        period = BillingPeriod(body.billing_period.strip().lower())
    except ValueError:
        return Failure(ValidationError("billing_period must be 'monthly' or 'annual'"))

    selected = _select_adapter(ctx, network_name)
    if not selected.ok:
        return selected
    adapter = selected.value

    currency = _currency(ctx, body.currency)
    if not currency.ok:
        return currency

    resolved = await resolve_identity(authorization, ctx.session_provider)
    if not resolved.ok:
        return resolved
    identity: ResolvedIdentity = resolved.value

    organization_id = body.organization_id.strip()
    role = catalog.get_member_role(organization_id, identity.user_id)
    if role not in catalog.ORG_BILLING_ROLES:
        return Failure(PermissionDeniedError("Only organization owners and admins can change the plan"))

    priced = resolve_plan_price(
        plan_slug=body.plan_slug.strip(),
        currency=currency.value,
        billing_period=period,
        network=adapter.network.value,
    )
    if not priced.ok:
        return priced

    charge: PricedCharge = priced.value
    payload = CorrelationPayload(
        user_id=identity.user_id,
        item_type=ItemType.SUBSCRIPTION,
        item_ref=charge.item.slug,
        entitlement_duration=period.months,
        organization_id=organization_id,
    )
    metadata = {
        "user_id": identity.user_id,
        "plan_slug": charge.item.slug,
        "organization_id": organization_id,
        "billing_period": period.value,
    }

    intent = _intent(ctx, adapter.network, headers, identity, charge, payload, metadata)
    if not intent.ok:
        return intent
    return await _call_provider(adapter, intent.value, identity)


async def _free_enroll_flow(
    ctx: CheckoutContext,
    body: FreeEnrollInput,
    authorization: Optional[str],
) -> StepResult:
    missing = _required(course_slug=body.course_slug, coupon_code=body.coupon_code)
    if missing:
        return missing
    code = normalize_code(body.coupon_code)

    resolved = await resolve_identity(authorization, ctx.session_provider)
    if not resolved.ok:
        return resolved
    identity: ResolvedIdentity = resolved.value

    course = catalog.get_course(body.course_slug.strip())
    if course is None or not course.is_active:
        return Failure(NotFoundError("Course not found or inactive"))
    if catalog.has_active_enrollment(identity.user_id, course.id):
        return Failure(ConflictError("Already enrolled in this course", code="already_enrolled"))

    currency = ctx.config.default_currency
    rows = catalog.get_course_prices(course.id, currency, PROVIDER_SCOPE_ANY)
    if not rows:
        return Failure(NotFoundError(f"No active price for {currency}", code="no_active_price"))
    base_amount: Decimal = rows[0].amount
    months = rows[0].entitlement_duration or ctx.config.default_course_months

    decision = validate_coupon(
        code,
        course_id=course.id,
        base_amount=base_amount,
        currency=currency,
        user_id=identity.user_id,
    )
    if isinstance(decision, CouponRejection):
        return Failure(decision.to_error(code))
    if isinstance(decision, CouponAccepted):
        return Failure(reject(CouponRejectReason.FREE_ENROLLMENT_MISMATCH).to_error(code))

    coupon = get_coupon(code)
    if coupon is None:
        return Failure(reject(CouponRejectReason.NOT_FOUND).to_error(code))
    redeemed = redeem_coupon(
        coupon,
        user_id=identity.user_id,
        course_id=course.id,
        amount_saved=base_amount,
        currency=currency,
        status="confirmed",
    )
    if not redeemed.ok:
        return redeemed

    grant_free_enrollment(user_id=identity.user_id, course_id=course.id, months=months)
    logger.info("checkout.free_enrolled", extra={"user_id": identity.user_id, "item_ref": course.slug})

    body_out = _free_enrollment_body(decision)
    body_out["course_slug"] = course.slug
    return Success(body_out)


# ---- entry points ----------------------------------------------------------

async def create_course_charge(
    ctx: CheckoutContext,
    network_name: str,
    body: CourseCheckoutInput,
    authorization: Optional[str],
    headers: Mapping[str, str],
) -> StepResult:
    return await run_flow(_course_flow, ctx, network_name, body, authorization, headers)


async def create_subscription_charge(
    ctx: CheckoutContext,
    network_name: str,
    body: SubscriptionCheckoutInput,
    authorization: Optional[str],
    headers: Mapping[str, str],
) -> StepResult:
    return await run_flow(_subscription_flow, ctx, network_name, body, authorization, headers)


async def free_enroll(ctx: CheckoutContext, body: FreeEnrollInput, authorization: Optional[str]) -> StepResult:
    return await run_flow(_free_enroll_flow, ctx, body, authorization)
