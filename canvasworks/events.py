"""Typed domain events decoded from payment-gateway payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .errors import PayloadError

CANVAS_SIZES = ("12x12", "16x16")
PURCHASE_TYPES = ("digital", "canvas", "pack")
CONTEXT_KEYS = (
    "pet_name", "style", "utm_source", "utm_medium", "utm_campaign",
    "referrer",
)


@dataclass(frozen=True)
class ShippingAddress:
    """Address snapshot in the shape the print provider expects."""

    first_name: str
    last_name: str
    country: str
    address1: str
    city: str
    zip: str
    region: str = ""
    address2: str = ""
    email: str = ""
    phone: str = ""

    def as_dict(self) -> Dict[str, str]:
        return {
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "country": self.country,
            "region": self.region,
            "address1": self.address1,
            "address2": self.address2,
            "city": self.city,
            "zip": self.zip,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ShippingAddress":
        return cls(**{k: str(d.get(k) or "") for k in (
            "first_name", "last_name", "country", "address1", "city", "zip",
            "region", "address2", "email", "phone",
        )})


@dataclass(frozen=True)
class PaymentCompleted:
    event_id: str
    session_id: str
    purchase_type: str
    artifact_id: Optional[str] = None
    customer_email: Optional[str] = None
    canvas_size: Optional[str] = None
    shipping_address: Optional[ShippingAddress] = None
    context: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentExpired:
    event_id: str
    session_id: str
    artifact_id: Optional[str] = None


@dataclass(frozen=True)
class ChargeRefunded:
    event_id: str
    charge_id: str
    amount_refunded: int = 0


@dataclass(frozen=True)
class DisputeCreated:
    event_id: str
    dispute_id: str
    charge_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class PaymentFailed:
    event_id: str
    payment_intent_id: str
    failure_message: Optional[str] = None


@dataclass(frozen=True)
class Unrecognized:
    event_id: str
    event_type: str


DomainEvent = (
    PaymentCompleted | PaymentExpired | ChargeRefunded | DisputeCreated
    | PaymentFailed | Unrecognized
)


# ----------------------------
# Decoding
# ----------------------------
def _str(obj: Dict[str, Any], key: str) -> Optional[str]:
    v = obj.get(key)
    if v is None or v == "":
        return None
    return str(v)


def _mapping(obj: Dict[str, Any], key: str) -> Dict[str, Any]:
    """The nested object at ``key``; absent is empty, anything else is an error."""
    v = obj.get(key)
    if v is None or v == "":
        return {}
    if not isinstance(v, dict):
        raise PayloadError(f"{key} must be an object")
    return v


def _shipping_address(
    obj: Dict[str, Any], email: Optional[str]
) -> Optional[ShippingAddress]:
    details = _mapping(obj, "shipping_details") or _mapping(obj, "shipping")
    if not details:
        return None
    addr = details.get("address")
    if not isinstance(addr, dict):
        raise PayloadError("shipping_details.address must be an object")
    name = details.get("name") or ""
    if not isinstance(name, str):
        raise PayloadError("shipping_details.name must be a string")
    name = name.strip()
    first, _, last = name.partition(" ")
    phone = details.get("phone") or _mapping(obj, "customer_details").get("phone")
    return ShippingAddress(
        first_name=first,
        last_name=last.strip(),
        email=email or "",
        phone=phone or "",
        country=addr.get("country") or "",
        region=addr.get("state") or "",
        address1=addr.get("line1") or "",
        address2=addr.get("line2") or "",
        city=addr.get("city") or "",
        zip=addr.get("postal_code") or "",
    )


def _payment_completed(event_id: str, obj: Dict[str, Any]) -> PaymentCompleted:
    meta = _mapping(obj, "metadata")
    session_id = _str(obj, "id")
    if not session_id:
        raise PayloadError("checkout session without id")

    purchase_type = _str(meta, "purchase_type") or "digital"
    if purchase_type not in PURCHASE_TYPES:
        raise PayloadError(f"unknown purchase_type {purchase_type!r}")

    canvas_size = _str(meta, "canvas_size")
    if purchase_type == "canvas" and canvas_size not in CANVAS_SIZES:
        raise PayloadError(f"unknown canvas_size {canvas_size!r}")

    details = _mapping(obj, "customer_details")
    email = _str(details, "email") or _str(obj, "customer_email")
    if email:
        email = email.strip().lower()

    return PaymentCompleted(
        event_id=event_id,
        session_id=session_id,
        purchase_type=purchase_type,
        artifact_id=_str(meta, "artifact_id"),
        customer_email=email,
        canvas_size=canvas_size if purchase_type == "canvas" else None,
        shipping_address=_shipping_address(obj, email),
        context={k: str(meta[k]) for k in CONTEXT_KEYS if meta.get(k)},
    )


def decode_event(event: Any) -> DomainEvent:
    """Turn a verified gateway event into a domain event.

    Raises PayloadError when the envelope or a handled object is malformed.
    Types we do not handle decode to Unrecognized.
    """
    if not isinstance(event, dict):
        raise PayloadError("event must be a JSON object")
    event_id = _str(event, "id")
    event_type = _str(event, "type")
    if not event_id or not event_type:
        raise PayloadError("event id and type are required")
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise PayloadError("data.object must be an object")

    if event_type == "checkout.session.completed":
        return _payment_completed(event_id, obj)
    if event_type == "checkout.session.expired":
        return PaymentExpired(
            event_id=event_id,
            session_id=_str(obj, "id") or "",
            artifact_id=_str(_mapping(obj, "metadata"), "artifact_id"),
        )
    if event_type == "charge.refunded":
        try:
            amount = int(obj.get("amount_refunded") or 0)
        except (TypeError, ValueError):
            raise PayloadError("amount_refunded must be an integer")
        return ChargeRefunded(
            event_id=event_id,
            charge_id=_str(obj, "id") or "",
            amount_refunded=amount,
        )
    if event_type == "charge.dispute.created":
        return DisputeCreated(
            event_id=event_id,
            dispute_id=_str(obj, "id") or "",
            charge_id=_str(obj, "charge"),
            reason=_str(obj, "reason"),
        )
    if event_type == "payment_intent.payment_failed":
        return PaymentFailed(
            event_id=event_id,
            payment_intent_id=_str(obj, "id") or "",
            failure_message=_str(
                _mapping(obj, "last_payment_error"), "message"),
        )
    return Unrecognized(event_id=event_id, event_type=event_type)
