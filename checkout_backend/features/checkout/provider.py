"""
Payment provider protocol.

Defines the interface both payment networks implement so the orchestrator
stays provider-agnostic. Expected provider failures are returned as values
(ChargeResult / CaptureResult with success=False); only lookups used by the
callback path raise ProviderCallError.
"""
from typing import Protocol, Dict, Any, List, Optional
from dataclasses import dataclass, field
from decimal import Decimal

import httpx

from checkout_backend.features.checkout.models import ChargeIntent, Network

TIMEOUT_STATUS = 504
TRANSPORT_STATUS = 502


@dataclass
class ChargeResult:
    """Outcome of creating a charge with a provider."""
    success: bool
    provider_reference: Optional[str] = None
    redirect_url: Optional[str] = None
    error: Optional[str] = None
    status: Optional[int] = None

    @classmethod
    def failed(cls, error: str, status: int) -> "ChargeResult":
        return cls(success=False, error=error, status=status)


@dataclass
class CaptureResult:
    """Outcome of capturing an approved order-style charge."""
    success: bool
    order_id: str
    status: Optional[int] = None
    capture_id: Optional[str] = None
    capture_status: Optional[str] = None
    custom_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ProviderPayment:
    """A provider-side payment record as seen by the callback path."""
    id: str
    status: str
    external_reference: Optional[str]
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def approved(self) -> bool:
        return self.status == "approved"


@dataclass
class MerchantOrder:
    id: str
    external_reference: Optional[str]
    payments: List[ProviderPayment] = field(default_factory=list)

    def first_approved(self) -> Optional[ProviderPayment]:
        return next((p for p in self.payments if p.approved), None)


class ProviderAdapter(Protocol):
    """
    Protocol for payment network adapters.

    Implementations must:
    - Translate a ChargeIntent into the network's request shape
    - Bound every call with a timeout and never retry
    - Surface non-2xx responses as ChargeResult(success=False, status=<network status>)
    """

    network: Network

    async def create_charge(self, intent: ChargeIntent) -> ChargeResult:
        ...


class CaptureAdapter(ProviderAdapter, Protocol):
    """Order/capture networks additionally finalize approved orders."""

    async def capture_charge(self, order_id: str) -> CaptureResult:
        ...


class ProviderCallError(Exception):
    """A provider call failed at the transport or HTTP level."""

    def __init__(self, message: str, status: int):
        super().__init__(message)
        self.message = message
        self.status = status


def to_float(amount: Decimal) -> float:
    return float(amount.quantize(Decimal("0.01")))


def to_money_string(amount: Decimal) -> str:
    return str(amount.quantize(Decimal("0.01")))


def response_error(response: httpx.Response) -> str:
    """Best-effort human message from a provider error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("message", "error_description", "error", "name"):
            if body.get(key):
                return str(body[key])
    return f"HTTP {response.status_code}"


async def send(
    method: str,
    url: str,
    *,
    timeout: float,
    **kwargs: Any,
) -> httpx.Response:
    """Single bounded HTTP call. Raises ProviderCallError on timeout/transport failure."""
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        raise ProviderCallError(f"Provider timed out: {exc.__class__.__name__}", TIMEOUT_STATUS) from exc
    except httpx.HTTPError as exc:
        raise ProviderCallError(f"Provider unreachable: {exc.__class__.__name__}", TRANSPORT_STATUS) from exc
