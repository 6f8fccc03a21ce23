"""
Mercado Pago provider ("preference" style).

One call creates a checkout preference; the buyer is redirected to its
init_point and the result arrives later as a webhook notification.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from checkout_backend.core.config import MercadoPagoCredentials
from checkout_backend.features.checkout.models import ChargeIntent, Network
from checkout_backend.features.checkout.provider import (
    ChargeResult,
    MerchantOrder,
    ProviderCallError,
    ProviderPayment,
    response_error,
    send,
    to_float,
)

logger = logging.getLogger("checkout")

MP_API_BASE = "https://api.mercadopago.com"


def split_name(full_name: Optional[str], fallback_last: str) -> Tuple[str, str]:
    parts = (full_name or "").split()
    if not parts:
        return "Customer", fallback_last
    return parts[0], " ".join(parts[1:]) or fallback_last


class MercadoPagoProvider:
    """Mercado Pago implementation of ProviderAdapter."""

    network = Network.MERCADOPAGO

    def __init__(
        self,
        credentials: MercadoPagoCredentials,
        *,
        timeout: float = 15.0,
        statement_descriptor: str = "SEENCEL",
        brand_name: str = "Seencel",
        api_base: str = MP_API_BASE,
    ):
        self.credentials = credentials
        self.timeout = timeout
        self.statement_descriptor = statement_descriptor
        self.brand_name = brand_name
        self.api_base = api_base.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.credentials.access_token}",
            "Content-Type": "application/json",
        }

    def build_preference(self, intent: ChargeIntent) -> Dict[str, Any]:
        first_name, last_name = split_name(intent.payer_name, self.brand_name)
        payer: Dict[str, Any] = {"first_name": first_name, "last_name": last_name}
        if intent.payer_email:
            payer["email"] = intent.payer_email

        return {
            "items": [
                {
                    "id": intent.item_id,
                    "category_id": "services",
                    "title": intent.title,
                    "description": intent.description,
                    "quantity": 1,
                    "unit_price": to_float(intent.amount),
                    "currency_id": intent.currency,
                }
            ],
            "external_reference": intent.correlation_token,
            "payer": payer,
            "back_urls": {
                "success": intent.back_urls.success,
                "failure": intent.back_urls.failure,
                "pending": intent.back_urls.pending,
            },
            "auto_return": "approved",
            # approved or rejected only, never in_process
            "binary_mode": True,
            "statement_descriptor": self.statement_descriptor,
            "notification_url": intent.notification_url,
            "metadata": dict(intent.metadata),
        }

    async def create_charge(self, intent: ChargeIntent) -> ChargeResult:
        """Create a checkout preference. Never retried here."""
        try:
            response = await send(
                "POST",
                f"{self.api_base}/checkout/preferences",
                timeout=self.timeout,
                headers=self._headers(),
                json=self.build_preference(intent),
            )
        except ProviderCallError as exc:
            logger.warning("mercadopago.preference.unreachable", extra={"network": self.network.value, "status": exc.status})
            return ChargeResult.failed(exc.message, exc.status)

        if not response.is_success:
            logger.warning("mercadopago.preference.rejected", extra={"network": self.network.value, "status": response.status_code})
            return ChargeResult.failed(response_error(response), response.status_code)

        body = response.json()
        init_point = body.get("init_point")
        if not init_point:
            return ChargeResult.failed("Provider response missing init_point", response.status_code)

        return ChargeResult(
            success=True,
            provider_reference=str(body.get("id")) if body.get("id") is not None else None,
            redirect_url=init_point,
        )

    async def _get(self, path: str) -> Dict[str, Any]:
        response = await send("GET", f"{self.api_base}{path}", timeout=self.timeout, headers=self._headers())
        if not response.is_success:
            raise ProviderCallError(response_error(response), response.status_code)
        return response.json()

    @staticmethod
    def _payment_from(body: Dict[str, Any]) -> ProviderPayment:
        amount = body.get("transaction_amount")
        return ProviderPayment(
            id=str(body.get("id")),
            status=str(body.get("status") or ""),
            external_reference=body.get("external_reference"),
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=body.get("currency_id"),
            raw=body,
        )

    async def fetch_payment(self, payment_id: str) -> ProviderPayment:
        return self._payment_from(await self._get(f"/v1/payments/{payment_id}"))

    async def fetch_merchant_order(self, order_id: str) -> MerchantOrder:
        body = await self._get(f"/merchant_orders/{order_id}")
        payments = [
            ProviderPayment(
                id=str(p.get("id")),
                status=str(p.get("status") or ""),
                external_reference=body.get("external_reference"),
                amount=Decimal(str(p["transaction_amount"])) if p.get("transaction_amount") is not None else None,
                currency=p.get("currency_id"),
                raw=p,
            )
            for p in body.get("payments") or []
        ]
        return MerchantOrder(
            id=str(body.get("id")),
            external_reference=body.get("external_reference"),
            payments=payments,
        )
