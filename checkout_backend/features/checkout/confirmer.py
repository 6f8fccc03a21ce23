"""
Callback confirmer.

Turns provider callbacks (server-to-server notifications and the PayPal
browser return leg) into at most one entitlement grant each:

1. The shared secret is checked before anything else is read.
2. The correlation token is decoded exactly once; a corrupt token fails closed.
3. The decoded payload is dispatched once to the EntitlementGranter, which
   owns idempotency across redeliveries.
"""
import hmac
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qsl, quote

from checkout_backend.core.config import CheckoutConfig
from checkout_backend.core.errors import (
    CorrelationCorruptError,
    NotFoundError,
    ProviderDisabledError,
    ProviderError,
)
from checkout_backend.core.results import Failure, StepResult, Success
from checkout_backend.features.checkout import correlation
from checkout_backend.features.checkout.models import ItemType, Network
from checkout_backend.features.checkout.pages import HtmlPage, render_page
from checkout_backend.features.checkout.provider import ProviderAdapter, ProviderCallError
from checkout_backend.features.checkout.urls import request_origin
from checkout_backend.features.entitlements.service import (
    ConfirmedPayment,
    EntitlementGranter,
    GrantStatus,
)

logger = logging.getLogger("checkout")

PAYPAL_CAPTURE_COMPLETED = "PAYMENT.CAPTURE.COMPLETED"
PAYPAL_ORDER_APPROVED = "CHECKOUT.ORDER.APPROVED"


def parse_notification_body(raw: bytes, content_type: Optional[str] = None) -> Dict[str, Any]:
    """Decode a JSON or urlencoded notification body; anything else is empty."""
    if not raw:
        return {}
    text = raw.decode("utf-8", errors="replace")
    if content_type and "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(text))
    try:
        data = json.loads(text)
    except ValueError:
        return dict(parse_qsl(text))
    return data if isinstance(data, dict) else {}


def normalize_topic(value: Optional[str]) -> str:
    topic = (value or "").strip().lower()
    if topic.startswith("topic_"):
        topic = topic[len("topic_"):]
    if topic.endswith("_wh"):
        topic = topic[: -len("_wh")]
    return topic


def _notification_id(body: Mapping[str, Any], query: Mapping[str, str]) -> Optional[str]:
    data = body.get("data")
    if isinstance(data, dict) and data.get("id"):
        return str(data["id"])
    for source in (body, query):
        for key in ("data.id", "id"):
            if source.get(key):
                return str(source[key])
    return None


def _ignored(reason: str) -> StepResult:
    return Success({"ok": True, "ignored": reason})


def _to_decimal(value: Any) -> Optional[Decimal]:
    return Decimal(str(value)) if value not in (None, "") else None


class CallbackConfirmer:
    def __init__(self, config: CheckoutConfig, adapters: Dict[Network, ProviderAdapter], granter: EntitlementGranter):
        self.config = config
        self.adapters = adapters
        self.granter = granter

    def verify_secret(self, provided: Optional[str]) -> bool:
        """Constant-time comparison; an unconfigured secret rejects everything."""
        expected = self.config.webhook_secret
        if not expected or not provided:
            return False
        return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))

    def confirm(
        self,
        network: Network,
        provider_payment_id: str,
        token: Optional[str],
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
    ) -> StepResult:
        """Decode once, grant once."""
        try:
            payload = correlation.decode(token)
        except CorrelationCorruptError as exc:
            logger.warning(
                "callback.invalid_reference",
                extra={"network": network.value, "error_code": exc.code},
            )
            return Failure(exc)

        outcome = self.granter.grant(ConfirmedPayment(
            network=network.value,
            provider_payment_id=provider_payment_id,
            payload=payload,
            amount=amount,
            currency=currency,
        ))
        return Success({
            "ok": True,
            "granted": outcome.status is GrantStatus.GRANTED,
            "duplicate": outcome.status is GrantStatus.DUPLICATE,
            "item_type": ItemType(payload.item_type).value,
            "item_ref": payload.item_ref,
        })

    def _adapter(self, network: Network) -> Optional[ProviderAdapter]:
        return self.adapters.get(network)

    async def handle(self, network_name: str, body: Dict[str, Any], query: Mapping[str, str]) -> StepResult:
        try:
            network = Network(network_name.lower())
        except ValueError:
            return Failure(NotFoundError(f"Unknown payment network {network_name!r}", code="unknown_network"))
        adapter = self._adapter(network)
        if adapter is None:
            return Failure(ProviderDisabledError(f"{network.value} is not configured"))

        logger.info("callback.received", extra={"network": network.value})
        if network is Network.MERCADOPAGO:
            return await self.handle_mercadopago(adapter, body, query)
        return await self.handle_paypal(adapter, body)

    async def handle_mercadopago(self, adapter, body: Dict[str, Any], query: Mapping[str, str]) -> StepResult:
        topic = normalize_topic(body.get("type") or body.get("topic") or query.get("type") or query.get("topic"))
        resource_id = _notification_id(body, query)
        if not resource_id:
            return _ignored("missing_id")

        try:
            if topic == "payment":
                payment = await adapter.fetch_payment(resource_id)
                token = payment.external_reference
            elif topic == "merchant_order":
                order = await adapter.fetch_merchant_order(resource_id)
                payment = order.first_approved()
                if payment is None:
                    return _ignored("no_approved_payment")
                token = payment.external_reference or order.external_reference
            else:
                return _ignored(f"topic_{topic or 'unknown'}")
        except ProviderCallError as exc:
            logger.warning("callback.lookup_failed", extra={"network": adapter.network.value, "status": exc.status})
            return Failure(ProviderError(exc.message, status_code=502))

        if not payment.approved:
            self._record_unapproved(Network.MERCADOPAGO, payment, token)
            return _ignored(f"status_{payment.status or 'unknown'}")
        return self.confirm(Network.MERCADOPAGO, payment.id, token, payment.amount, payment.currency)

    def _record_unapproved(self, network: Network, payment, token: Optional[str]) -> None:
        """Leave a trace of payments that will not grant; approved ones are logged by the grant."""
        fields = {
            "network": network.value,
            "payment_id": payment.id,
            "status": payment.status or "unknown",
            "status_detail": payment.raw.get("status_detail"),
        }
        try:
            payload = correlation.decode(token)
        except CorrelationCorruptError:
            fields["reason"] = "invalid_reference"
        else:
            fields.update(user_id=payload.user_id, item_type=payload.item_type.value, item_ref=payload.item_ref)
        logger.warning("callback.payment_status", extra=fields)

    async def handle_paypal(self, adapter, body: Dict[str, Any]) -> StepResult:
        event_type = body.get("event_type")
        resource = body.get("resource") or {}

        if event_type == PAYPAL_CAPTURE_COMPLETED:
            if not resource.get("id"):
                return _ignored("missing_id")
            amount = resource.get("amount") or {}
            return self.confirm(
                Network.PAYPAL,
                str(resource["id"]),
                resource.get("custom_id"),
                _to_decimal(amount.get("value")),
                amount.get("currency_code"),
            )

        if event_type == PAYPAL_ORDER_APPROVED:
            if not resource.get("id"):
                return _ignored("missing_id")
            capture = await adapter.capture_charge(str(resource["id"]))
            if not capture.success:
                status = capture.status if capture.status and capture.status >= 400 else 502
                return Failure(ProviderError(capture.error or "Capture failed", status_code=status))
            return self.confirm(
                Network.PAYPAL,
                capture.capture_id or capture.order_id,
                capture.custom_id,
                capture.amount,
                capture.currency,
            )

        return _ignored(f"event_{event_type or 'unknown'}")

    # ---- browser legs --------------------------------------------------------

    def _page_link(self, headers: Mapping[str, str], item_type: ItemType, item_ref: Optional[str]) -> str:
        try:
            origin = request_origin(headers)
        except ValueError:
            origin = ""
        if item_type is ItemType.SUBSCRIPTION:
            return f"{origin}/organization/billing"
        if item_ref:
            return f"{origin}/learning/courses/{quote(item_ref, safe='')}"
        return f"{origin}/learning/courses"

    def _failure_page(self, headers: Mapping[str, str], item_type: ItemType, message: str) -> HtmlPage:
        return render_page(
            status_code=500,
            title="Payment could not be completed",
            message=message,
            href=self._page_link(headers, item_type, None),
            label="Go back",
            tone="error",
            brand=self.config.brand_name,
        )

    async def capture_return(self, order_id: Optional[str], item_type: ItemType, headers: Mapping[str, str]) -> HtmlPage:
        """PayPal return leg: capture the approved order, grant, render HTML."""
        try:
            return await self._capture_return(order_id, item_type, headers)
        except Exception:
            logger.error("capture.fatal", exc_info=True, extra={"network": Network.PAYPAL.value})
            return self._failure_page(headers, item_type, "Something went wrong while confirming your payment.")

    async def _capture_return(self, order_id: Optional[str], item_type: ItemType, headers: Mapping[str, str]) -> HtmlPage:
        if not order_id:
            return self._failure_page(headers, item_type, "The payment reference is missing.")
        adapter = self._adapter(Network.PAYPAL)
        if adapter is None:
            return self._failure_page(headers, item_type, "PayPal is not available right now.")

        capture = await adapter.capture_charge(order_id)
        if not capture.success:
            logger.warning(
                "capture.failed",
                extra={"network": Network.PAYPAL.value, "status": capture.status, "reason": capture.error},
            )
            return self._failure_page(headers, item_type, "PayPal did not complete the payment.")

        confirmed = self.confirm(
            Network.PAYPAL,
            capture.capture_id or capture.order_id,
            capture.custom_id,
            capture.amount,
            capture.currency,
        )
        if not confirmed.ok:
            return self._failure_page(headers, item_type, "We could not match this payment to your purchase.")

        item_ref = confirmed.value["item_ref"] if item_type is ItemType.COURSE else None
        return render_page(
            status_code=200,
            title="Payment completed",
            message="Your purchase is confirmed. You can close this page.",
            href=self._page_link(headers, item_type, item_ref),
            label="Continue",
            tone="success",
            brand=self.config.brand_name,
        )

    def mercadopago_return(self, query: Mapping[str, str], headers: Mapping[str, str]) -> HtmlPage:
        """Mercado Pago success redirect. Informational only; the webhook grants."""
        status = (query.get("status") or query.get("collection_status") or "").lower()
        href = self._page_link(headers, ItemType.COURSE, query.get("course_slug"))
        if status == "approved":
            return render_page(
                status_code=200,
                title="Payment approved",
                message="Your enrollment will be active in a few moments.",
                href=href,
                label="Go to the course",
                tone="success",
                brand=self.config.brand_name,
            )
        if status in ("pending", "in_process"):
            return render_page(
                status_code=200,
                title="Payment pending",
                message="We will enable your access as soon as Mercado Pago confirms the payment.",
                href=href,
                label="Back to the course",
                tone="pending",
                brand=self.config.brand_name,
            )
        return render_page(
            status_code=200,
            title="Payment not approved",
            message="The payment was not approved. No charge was made.",
            href=href,
            label="Back to the course",
            tone="error",
            brand=self.config.brand_name,
        )
