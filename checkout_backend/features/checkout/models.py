"""
Checkout domain types.

Everything here is a plain value object; persistence lives in catalog.py and
coupons.py, HTTP shaping in checkout_backend.api.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class Network(str, Enum):
    """Supported payment networks."""
    MERCADOPAGO = "mercadopago"  # preference style
    PAYPAL = "paypal"  # order/capture style


class ItemType(str, Enum):
    COURSE = "course"
    SUBSCRIPTION = "subscription"


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"

    @property
    def months(self) -> int:
        return 12 if self is BillingPeriod.ANNUAL else 1


PROVIDER_SCOPE_ANY = "any"


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (sqlite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PurchasableItem:
    """A course or a billable plan."""
    id: str
    slug: str
    title: str
    description: Optional[str]
    is_active: bool
    item_type: ItemType = ItemType.COURSE


@dataclass(frozen=True)
class PriceRow:
    item_id: str
    currency_code: str
    amount: Decimal
    provider_scope: str
    is_active: bool
    entitlement_duration: Optional[int] = None


@dataclass(frozen=True)
class Coupon:
    id: str
    code: str
    discount_type: str  # percent | fixed
    amount: Decimal
    is_active: bool
    starts_at: Optional[datetime]
    expires_at: Optional[datetime]
    max_redemptions: Optional[int]
    used_count: int
    per_user_limit: Optional[int]
    min_order_total: Optional[Decimal]
    currency: Optional[str]
    applies_to_all: bool
    grants_free_entitlement: bool

    def discount_for(self, base_amount: Decimal) -> Decimal:
        """Discount this coupon takes off `base_amount`, capped at the amount."""
        if self.discount_type == "percent":
            pct = min(max(self.amount, Decimal("0")), Decimal("100"))
            discount = (base_amount * pct / Decimal("100")).quantize(Decimal("0.01"))
        else:
            discount = max(self.amount, Decimal("0"))
        return min(discount, base_amount)


@dataclass(frozen=True)
class AppliedCoupon:
    """Receipt of a coupon reserved against a purchase."""
    coupon_id: str
    code: str
    discount: Decimal
    redemption_id: Optional[int] = None


@dataclass(frozen=True)
class PricedCharge:
    """A resolved, strictly positive amount ready to hand to a provider."""
    item: PurchasableItem
    amount: Decimal
    base_amount: Decimal
    currency: str
    entitlement_duration: int
    coupon: Optional[AppliedCoupon] = None


@dataclass(frozen=True)
class FreeEnrollment:
    """Pricing outcome for a coupon that grants access without a charge."""
    coupon_code: str
    coupon_id: str


@dataclass(frozen=True)
class CorrelationPayload:
    """Facts carried through the provider and back to the callback.

    `user_id` must come from a ResolvedIdentity, never from request input.
    """
    user_id: str
    item_type: ItemType
    item_ref: str
    entitlement_duration: int
    coupon_ref: Optional[str] = None
    organization_id: Optional[str] = None


@dataclass(frozen=True)
class BackUrls:
    success: str
    failure: str
    pending: str


@dataclass(frozen=True)
class ChargeIntent:
    """Normalized request handed to a provider adapter."""
    amount: Decimal
    currency: str
    title: str
    description: str
    item_id: str
    payer_email: Optional[str]
    payer_name: Optional[str]
    correlation_token: str
    back_urls: BackUrls
    notification_url: str
    metadata: Dict[str, Any] = field(default_factory=dict)

