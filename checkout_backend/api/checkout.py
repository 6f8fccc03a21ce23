"""
Checkout API routes.

- POST /checkout/{network}/create-course: Start a course purchase
- POST /checkout/{network}/create-subscription: Start a plan installment
- POST /checkout/free-enroll: Enroll with a 100% coupon
- GET  /checkout/paypal/capture-course: PayPal return leg (HTML)
- GET  /checkout/paypal/capture-subscription: PayPal return leg (HTML)
- GET  /checkout/mercadopago/success: Mercado Pago return page (HTML)

Request bodies never carry the caller's identity; it comes from the bearer
token only.
"""
from typing import Optional

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from checkout_backend.core.errors import error_response
from checkout_backend.core.results import StepResult
from checkout_backend.features.checkout import orchestrator
from checkout_backend.features.checkout.models import ItemType
from checkout_backend.features.checkout.orchestrator import (
    CourseCheckoutInput,
    FreeEnrollInput,
    SubscriptionCheckoutInput,
)
from checkout_backend.features.checkout.pages import HtmlPage


router = APIRouter(prefix="/checkout", tags=["checkout"])

# Browser-facing legs; CORS advertises GET for these
BROWSER_PATHS = (
    "/checkout/paypal/capture-course",
    "/checkout/paypal/capture-subscription",
    "/checkout/mercadopago/success",
)


class CourseCheckoutRequest(BaseModel):
    """Course purchase. `item_slug` and `duration` are accepted as legacy names."""
    model_config = ConfigDict(extra="ignore")

    course_slug: Optional[str] = Field(default=None, validation_alias=AliasChoices("course_slug", "item_slug"))
    currency: Optional[str] = None
    months: Optional[int] = Field(default=None, validation_alias=AliasChoices("months", "duration"))
    coupon_code: Optional[str] = None


class SubscriptionCheckoutRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    plan_slug: Optional[str] = None
    organization_id: Optional[str] = None
    billing_period: Optional[str] = None
    currency: Optional[str] = None


class FreeEnrollRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    course_slug: Optional[str] = Field(default=None, validation_alias=AliasChoices("course_slug", "item_slug"))
    coupon_code: Optional[str] = None


def respond(result: StepResult) -> JSONResponse:
    if not result.ok:
        return error_response(result.error)
    return JSONResponse(status_code=200, content=result.value)


def html(page: HtmlPage) -> HTMLResponse:
    return HTMLResponse(content=page.content, status_code=page.status_code)


@router.post("/free-enroll")
async def create_free_enrollment(
    body: FreeEnrollRequest,
    request: Request,
    authorization: Optional[str] = Header(None),
):
    """
    Enroll the caller in a course using a coupon that covers the full price.

    Errors:
        400: Missing fields, coupon rejected (reason=free_enrollment_mismatch when not 100%)
        401: Missing or invalid session
        404: Course not found or inactive
        409: Already enrolled
    """
    result = await orchestrator.free_enroll(
        request.app.state.checkout,
        FreeEnrollInput(course_slug=body.course_slug, coupon_code=body.coupon_code),
        authorization,
    )
    return respond(result)


@router.get("/paypal/capture-course", response_class=HTMLResponse)
async def capture_course(request: Request, token: Optional[str] = Query(None)):
    """PayPal sends the buyer back here with ?token=<order id>&PayerID=..."""
    page = await request.app.state.confirmer.capture_return(token, ItemType.COURSE, request.headers)
    return html(page)


@router.get("/paypal/capture-subscription", response_class=HTMLResponse)
async def capture_subscription(request: Request, token: Optional[str] = Query(None)):
    page = await request.app.state.confirmer.capture_return(token, ItemType.SUBSCRIPTION, request.headers)
    return html(page)


@router.get("/mercadopago/success", response_class=HTMLResponse)
async def mercadopago_success(request: Request):
    page = request.app.state.confirmer.mercadopago_return(request.query_params, request.headers)
    return html(page)


@router.post("/{network}/create-course")
async def create_course(
    network: str,
    body: CourseCheckoutRequest,
    request: Request,
    authorization: Optional[str] = Header(None),
):
    """
    Create a provider charge for a course.

    Returns:
        {"ok": true, "redirect_url": "...", "provider_reference": "..."}
        or, for a free coupon, {"ok": true, "free_enrollment": true, "coupon_code": "...", "coupon_id": "..."}

    Errors:
        400: Missing fields or coupon rejected (with reason)
        401: Missing or invalid session
        404: Course or price not found
        500: Catalog misconfigured or unexpected error
        503: Network not configured
    """
    result = await orchestrator.create_course_charge(
        request.app.state.checkout,
        network,
        CourseCheckoutInput(
            course_slug=body.course_slug,
            currency=body.currency,
            months=body.months,
            coupon_code=body.coupon_code,
        ),
        authorization,
        request.headers,
    )
    return respond(result)


@router.post("/{network}/create-subscription")
async def create_subscription(
    network: str,
    body: SubscriptionCheckoutRequest,
    request: Request,
    authorization: Optional[str] = Header(None),
):
    """Create a provider charge for one plan installment. Owners and admins only."""
    result = await orchestrator.create_subscription_charge(
        request.app.state.checkout,
        network,
        SubscriptionCheckoutInput(
            plan_slug=body.plan_slug,
            organization_id=body.organization_id,
            billing_period=body.billing_period,
            currency=body.currency,
        ),
        authorization,
        request.headers,
    )
    return respond(result)
