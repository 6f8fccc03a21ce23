"""
URL context builder.

The service runs behind a reverse proxy with no fixed hostname, so every
absolute URL handed to a provider is derived from the inbound request.
"""
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import quote, urlencode

from checkout_backend.features.checkout.models import BackUrls, ItemType, Network


@dataclass(frozen=True)
class UrlContext:
    origin: str
    webhook_base: str


def request_origin(headers: Mapping[str, str]) -> str:
    """Externally visible origin from forwarded headers, else Host."""
    proto = (headers.get("x-forwarded-proto") or "https").split(",")[0].strip()
    host = (headers.get("x-forwarded-host") or headers.get("host") or "").split(",")[0].strip()
    if not host:
        raise ValueError("request has no host")
    return f"{proto}://{host}"


def build_url_context(headers: Mapping[str, str], override_base: Optional[str] = None) -> UrlContext:
    origin = request_origin(headers)
    base = (override_base or origin).rstrip("/")
    return UrlContext(origin=origin, webhook_base=base)


def notification_url(ctx: UrlContext, network: Network, secret: Optional[str]) -> str:
    url = f"{ctx.webhook_base}/{network.value}/webhook"
    if secret:
        url = f"{url}?{urlencode({'secret': secret})}"
    return url


def _course_page(ctx: UrlContext, slug: str, flag: str) -> str:
    return f"{ctx.origin}/learning/courses/{quote(slug, safe='')}?payment={flag}"


def _billing_page(ctx: UrlContext, flag: str) -> str:
    return f"{ctx.origin}/organization/billing?payment={flag}"


def back_urls(ctx: UrlContext, network: Network, item_type: ItemType, item_slug: str) -> BackUrls:
    """Success/failure/pending targets per provider and item type.

    Mercado Pago course purchases land on the server-side success handler;
    PayPal returns to the capture leg, which finalizes the order. Everything
    else lands directly on the item's page with a `payment` query flag.
    """
    if network is Network.MERCADOPAGO:
        if item_type is ItemType.COURSE:
            return BackUrls(
                success=f"{ctx.webhook_base}/checkout/mercadopago/success?{urlencode({'course_slug': item_slug})}",
                failure=_course_page(ctx, item_slug, "failed"),
                pending=_course_page(ctx, item_slug, "pending"),
            )
        return BackUrls(
            success=_billing_page(ctx, "success"),
            failure=_billing_page(ctx, "failed"),
            pending=_billing_page(ctx, "pending"),
        )

    if item_type is ItemType.COURSE:
        return BackUrls(
            success=f"{ctx.webhook_base}/checkout/paypal/capture-course",
            failure=_course_page(ctx, item_slug, "cancelled"),
            pending=_course_page(ctx, item_slug, "pending"),
        )
    return BackUrls(
        success=f"{ctx.webhook_base}/checkout/paypal/capture-subscription",
        failure=_billing_page(ctx, "cancelled"),
        pending=_billing_page(ctx, "pending"),
    )
