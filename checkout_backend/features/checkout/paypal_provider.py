"""
PayPal provider ("order/capture" style).

create_charge creates an order and returns its approval link; once the buyer
approves and is sent back, capture_charge finalizes the payment.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from checkout_backend.core.config import PayPalCredentials
from checkout_backend.features.checkout.correlation import PAYPAL_CUSTOM_ID_MAX
from checkout_backend.features.checkout.models import ChargeIntent, Network
from checkout_backend.features.checkout.provider import (
    CaptureResult,
    ChargeResult,
    ProviderCallError,
    response_error,
    send,
    to_money_string,
)

logger = logging.getLogger("checkout")


class PayPalProvider:
    """PayPal implementation of CaptureAdapter."""

    network = Network.PAYPAL

    def __init__(self, credentials: PayPalCredentials, *, timeout: float = 15.0, brand_name: str = "Seencel"):
        self.credentials = credentials
        self.timeout = timeout
        self.brand_name = brand_name
        self.api_base = credentials.api_base

    async def _access_token(self) -> str:
        """OAuth2 client-credentials token. Not cached; each request stands alone."""
        response = await send(
            "POST",
            f"{self.api_base}/v1/oauth2/token",
            timeout=self.timeout,
            auth=(self.credentials.client_id, self.credentials.client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        if not response.is_success:
            raise ProviderCallError(f"PayPal auth failed: {response_error(response)}", response.status_code)
        token = response.json().get("access_token")
        if not token:
            raise ProviderCallError("PayPal auth response missing access_token", 502)
        return token

    def _headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }

    def build_order(self, intent: ChargeIntent) -> Dict[str, Any]:
        return {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": intent.item_id,
                    "description": intent.title[:127],
                    "custom_id": intent.correlation_token,
                    "amount": {
                        "currency_code": intent.currency,
                        "value": to_money_string(intent.amount),
                    },
                }
            ],
            "application_context": {
                "brand_name": self.brand_name,
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
                "return_url": intent.back_urls.success,
                "cancel_url": intent.back_urls.failure,
            },
        }

    async def create_charge(self, intent: ChargeIntent) -> ChargeResult:
        if len(intent.correlation_token) > PAYPAL_CUSTOM_ID_MAX:
            # PayPal truncates custom_id silently
            return ChargeResult.failed("Correlation reference exceeds PayPal custom_id limit", 500)

        try:
            token = await self._access_token()
            response = await send(
                "POST",
                f"{self.api_base}/v2/checkout/orders",
                timeout=self.timeout,
                headers=self._headers(token),
                json=self.build_order(intent),
            )
        except ProviderCallError as exc:
            logger.warning("paypal.order.failed", extra={"network": self.network.value, "status": exc.status})
            return ChargeResult.failed(exc.message, exc.status)

        if not response.is_success:
            logger.warning("paypal.order.rejected", extra={"network": self.network.value, "status": response.status_code})
            return ChargeResult.failed(response_error(response), response.status_code)

        body = response.json()
        approve = next(
            (link.get("href") for link in body.get("links") or [] if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        if not approve or not body.get("id"):
            return ChargeResult.failed("Provider response missing approval link", response.status_code)
        return ChargeResult(success=True, provider_reference=body["id"], redirect_url=approve)

    @staticmethod
    def _capture_from(order_id: str, body: Dict[str, Any], status: int) -> CaptureResult:
        units = body.get("purchase_units") or [{}]
        unit = units[0] or {}
        captures = (unit.get("payments") or {}).get("captures") or []
        capture: Dict[str, Any] = captures[0] if captures else {}
        amount = capture.get("amount") or {}
        value: Optional[Decimal] = Decimal(amount["value"]) if amount.get("value") else None
        capture_status = capture.get("status")
        return CaptureResult(
            success=capture_status == "COMPLETED",
            order_id=order_id,
            status=status,
            capture_id=capture.get("id"),
            capture_status=capture_status,
            custom_id=capture.get("custom_id") or unit.get("custom_id"),
            amount=value,
            currency=amount.get("currency_code"),
            error=None if capture_status == "COMPLETED" else f"Capture status {capture_status or body.get('status')}",
        )

    async def capture_charge(self, order_id: str) -> CaptureResult:
        """Capture an approved order. A second capture of the same order reads it back instead."""
        try:
            token = await self._access_token()
            response = await send(
                "POST",
                f"{self.api_base}/v2/checkout/orders/{order_id}/capture",
                timeout=self.timeout,
                headers=self._headers(token),
            )
            if response.status_code == 422 and "ORDER_ALREADY_CAPTURED" in response.text:
                response = await send(
                    "GET",
                    f"{self.api_base}/v2/checkout/orders/{order_id}",
                    timeout=self.timeout,
                    headers=self._headers(token),
                )
        except ProviderCallError as exc:
            logger.warning("paypal.capture.failed", extra={"network": self.network.value, "status": exc.status})
            return CaptureResult(success=False, order_id=order_id, status=exc.status, error=exc.message)

        if not response.is_success:
            logger.warning("paypal.capture.rejected", extra={"network": self.network.value, "status": response.status_code})
            return CaptureResult(success=False, order_id=order_id, status=response.status_code, error=response_error(response))

        return self._capture_from(order_id, response.json(), response.status_code)
