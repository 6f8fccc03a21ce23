"""
Correlation token codec.

The token is the only state that survives the round trip through a payment
network: it travels as Mercado Pago's `external_reference` and PayPal's
`custom_id` and comes back on the callback.

Wire format: base64url (unpadded) of a binary record

    header  1 byte   high nibble = format version, bit 0 = subscription,
                     bit 1 = coupon_ref present, bit 2 = organization_id present
    user_id          reference
    item_ref         reference
    duration         unsigned varint
    coupon_ref?      reference
    organization_id? reference

A reference is a varint tag: 0 means 16 raw UUID bytes follow (canonical
UUID strings only), n > 0 means n - 1 UTF-8 bytes follow. A subscription
with three UUIDs and a 40 character plan slug still encodes to under 127
characters, PayPal's `custom_id` limit.
"""
import base64
import binascii
import uuid
from typing import List, Optional, Tuple
from urllib.parse import unquote

from checkout_backend.core.errors import CorrelationCorruptError
from checkout_backend.features.checkout.models import CorrelationPayload, ItemType

PAYPAL_CUSTOM_ID_MAX = 127

FORMAT_VERSION = 1

_SUBSCRIPTION = 0x01
_HAS_COUPON = 0x02
_HAS_ORGANIZATION = 0x04
_FLAG_MASK = 0x0F

_UUID_TAG = 0

# Providers have been seen double-escaping; more than this is garbage
_MAX_UNESCAPE_PASSES = 3


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    text = text.replace("+", "-").replace("/", "_").rstrip("=")
    text += "=" * (-len(text) % 4)
    return base64.b64decode(text, altchars=b"-_", validate=True)


def _varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _reference(value: str) -> bytes:
    try:
        parsed = uuid.UUID(value)
    except ValueError:
        parsed = None
    if parsed is not None and str(parsed) == value:
        return _varint(_UUID_TAG) + parsed.bytes
    raw = value.encode("utf-8")
    return _varint(len(raw) + 1) + raw


class _Reader:
    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def take(self, size: int) -> bytes:
        if self.pos + size > len(self.data):
            raise ValueError("truncated token")
        chunk = self.data[self.pos:self.pos + size]
        self.pos += size
        return chunk

    def varint(self) -> int:
        value = 0
        for shift in range(0, 35, 7):
            byte = self.take(1)[0]
            value |= (byte & 0x7F) << shift
            if not byte & 0x80:
                return value
        raise ValueError("varint too long")

    def reference(self) -> str:
        tag = self.varint()
        if tag == _UUID_TAG:
            return str(uuid.UUID(bytes=self.take(16)))
        text = self.take(tag - 1).decode("utf-8")
        if not text:
            raise ValueError("empty reference")
        return text

    def done(self) -> bool:
        return self.pos == len(self.data)


def encode(payload: CorrelationPayload) -> str:
    """Serialize a payload into a transport-safe token."""
    if not payload.user_id or not payload.item_ref:
        raise ValueError("user_id and item_ref are required")
    if isinstance(payload.entitlement_duration, bool) or not isinstance(payload.entitlement_duration, int) or payload.entitlement_duration <= 0:
        raise ValueError("entitlement_duration must be a positive integer")
    if payload.coupon_ref == "" or payload.organization_id == "":
        raise ValueError("optional references must be omitted, not blank")
    subscription = ItemType(payload.item_type) is ItemType.SUBSCRIPTION
    if subscription and not payload.organization_id:
        raise ValueError("subscription payloads require organization_id")

    header = FORMAT_VERSION << 4
    if subscription:
        header |= _SUBSCRIPTION
    if payload.coupon_ref:
        header |= _HAS_COUPON
    if payload.organization_id:
        header |= _HAS_ORGANIZATION

    parts: List[bytes] = [
        bytes([header]),
        _reference(payload.user_id),
        _reference(payload.item_ref),
        _varint(payload.entitlement_duration),
    ]
    if payload.coupon_ref:
        parts.append(_reference(payload.coupon_ref))
    if payload.organization_id:
        parts.append(_reference(payload.organization_id))
    return _b64encode(b"".join(parts))


def _normalize(token: str) -> str:
    text = token.strip()
    for _ in range(_MAX_UNESCAPE_PASSES):
        if "%" not in text:
            break
        text = unquote(text).strip()
    return text


def _read_header(reader: _Reader) -> Tuple[ItemType, bool, bool]:
    header = reader.take(1)[0]
    if header >> 4 != FORMAT_VERSION or header & _FLAG_MASK & ~(_SUBSCRIPTION | _HAS_COUPON | _HAS_ORGANIZATION):
        raise ValueError("unknown token format")
    item_type = ItemType.SUBSCRIPTION if header & _SUBSCRIPTION else ItemType.COURSE
    return item_type, bool(header & _HAS_COUPON), bool(header & _HAS_ORGANIZATION)


def decode(token: Optional[str]) -> CorrelationPayload:
    """Parse a token produced by `encode`.

    Raises:
        CorrelationCorruptError: on any malformed, truncated or incomplete token.
    """
    if not token or not isinstance(token, str):
        raise CorrelationCorruptError("Missing correlation reference")

    try:
        reader = _Reader(_b64decode(_normalize(token)))
        item_type, has_coupon, has_organization = _read_header(reader)
        user_id = reader.reference()
        item_ref = reader.reference()
        duration = reader.varint()
        if duration <= 0:
            raise ValueError("invalid duration")
        coupon_ref = reader.reference() if has_coupon else None
        organization_id = reader.reference() if has_organization else None
        if not reader.done():
            raise ValueError("trailing bytes")
        if item_type is ItemType.SUBSCRIPTION and not organization_id:
            raise ValueError("subscription without organization")
    except (ValueError, UnicodeDecodeError, binascii.Error) as exc:
        raise CorrelationCorruptError(f"Malformed correlation reference: {exc}") from exc

    return CorrelationPayload(
        user_id=user_id,
        item_type=item_type,
        item_ref=item_ref,
        entitlement_duration=duration,
        coupon_ref=coupon_ref,
        organization_id=organization_id,
    )
