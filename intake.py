"""
Order intake: turn an untrusted order payload into a CanonicalOrder draft.

Nothing in this module touches the network or the database, so every rule
about totals, contacts and references can be tested with plain values.
"""
import logging
import math
import re
import secrets
import string
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as SchemaError

from errors import ValidationError
from schemas import CanonicalOrder, CustomerInfo, IncomingOrder, LineItem
from settings import Settings

logger = logging.getLogger(__name__)

REFERENCE_ALPHABET = string.digits + string.ascii_uppercase
REFERENCE_LENGTH = 6

EMAIL_ADAPTER = TypeAdapter(EmailStr)
LOOSE_PHONE_RE = re.compile(r"^\+?\d{7,15}$")
MESSAGING_PHONE_RE = re.compile(r"^\+\d{8,15}$")
REFERENCE_HINT_RE = re.compile(r"^[A-Z0-9-]{4,32}$")

# storefront v1 line-item keys -> canonical keys
LEGACY_ITEM_KEYS = {
    "productId": "productKey",
    "title": "unitTitle",
    "price": "unitPrice",
    "qty": "quantity",
}
LEGACY_ORDER_KEYS = ("items", "info", "subtotal", "deliveryFee", "grandTotal", "referenceHint", "proof")


def generate_reference(prefix: str = "LWG") -> str:
    suffix = "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(REFERENCE_LENGTH))
    return f"{prefix}-{suffix}"


def normalize_phone(value: Optional[str]) -> Optional[str]:
    """Return ``+<digits>`` for a loosely formatted phone number, or None."""
    if not value:
        return None
    compact = re.sub(r"[\s\-().]", "", str(value))
    if not LOOSE_PHONE_RE.match(compact):
        return None
    return "+" + compact.lstrip("+")


def normalize_email(value: Optional[str]) -> Optional[str]:
    """Return a single lower-cased address, or None when ``value`` is not one."""
    if not value:
        return None
    try:
        return EMAIL_ADAPTER.validate_python(str(value).strip().lower())
    except SchemaError:
        return None


def is_messaging_phone(value: Optional[str]) -> bool:
    return bool(value) and bool(MESSAGING_PHONE_RE.match(value))


def zone_fee(zone: Optional[str], fees: Dict[str, float]) -> float:
    if not zone:
        return 0.0
    wanted = zone.strip().lower()
    for name, fee in fees.items():
        if name.strip().lower() == wanted:
            return float(fee)
    return 0.0


def _adapt_items(items: Any) -> Tuple[Any, bool]:
    if not isinstance(items, list):
        return items, False
    adapted = False
    result = []
    for item in items:
        if isinstance(item, dict):
            item = dict(item)
            for old, new in LEGACY_ITEM_KEYS.items():
                if old in item and new not in item:
                    item[new] = item.pop(old)
                    adapted = True
        result.append(item)
    return result, adapted


def parse_order_payload(body: Any) -> IncomingOrder:
    """
    Parse a create-order request body.

    The canonical body is ``{"order": {...}, "proof": {...}}``. A flat body
    carrying ``items``/``info`` at the top level is accepted as a deprecated
    shape: it is rewritten into the canonical one and then resolved by
    exactly the same rules, so both shapes price an order identically.
    Line items using the v1 keys (productId/title/price/qty) are renamed.
    """
    if not isinstance(body, dict):
        raise ValidationError("Invalid payload")

    if isinstance(body.get("order"), dict):
        data = dict(body["order"])
        if body.get("proof") is not None and data.get("proof") is None:
            data["proof"] = body["proof"]
    else:
        logger.warning("Deprecated flat order payload received")
        data = {key: body[key] for key in LEGACY_ORDER_KEYS if key in body}
        info = dict(body.get("info") or {})
        zone = body.get("deliveryZone")
        if zone and not info.get("deliveryZone") and not info.get("delivery_zone"):
            info["deliveryZone"] = zone
        data["info"] = info

    data["items"], adapted = _adapt_items(data.get("items"))
    if adapted:
        logger.warning("Deprecated line item keys received (productId/title/price/qty)")

    try:
        return IncomingOrder.model_validate(data)
    except SchemaError as exc:
        first = exc.errors()[0]
        where = ".".join(str(part) for part in first.get("loc", ()))
        message = first.get("msg", "Invalid payload")
        raise ValidationError(f"{where}: {message}" if where else message)


def _trusted(value: Optional[float], label: str) -> Optional[float]:
    if value is None or not math.isfinite(value):
        return None
    if value < 0:
        raise ValidationError(f"{label} must not be negative")
    return round(float(value), 2)


def _normalize_info(info: CustomerInfo) -> CustomerInfo:
    name = (info.name or "").strip()
    if not name:
        raise ValidationError("Customer name is required")

    address = (info.address or "").strip()
    if not address:
        raise ValidationError("Delivery address is required")

    phone = normalize_phone(info.phone)
    email = normalize_email(info.email)
    if not phone and not email:
        raise ValidationError("Provide a valid phone (with country code) or a valid email")
    if info.phone and not phone:
        logger.warning("Dropping malformed phone from order contact")
    if info.email and not email:
        logger.warning("Dropping malformed email from order contact")

    zone = (info.delivery_zone or "").strip() or None
    return info.model_copy(
        update={
            "name": name,
            "address": address,
            "phone": phone,
            "email": email,
            "delivery_zone": zone,
            "payment_method": (info.payment_method or "").strip(),
        }
    )


def _line_items(incoming: IncomingOrder) -> List[LineItem]:
    if not incoming.items:
        raise ValidationError("Order must contain at least one item")

    items = []
    for item in incoming.items:
        if item.quantity <= 0:
            raise ValidationError(f"Quantity for {item.product_key} must be a positive integer")
        if not math.isfinite(item.unit_price) or item.unit_price < 0:
            raise ValidationError(f"Price for {item.product_key} must not be negative")
        items.append(
            LineItem(
                product_key=item.product_key,
                title=item.unit_title,
                unit_price=item.unit_price,
                quantity=item.quantity,
                line_total=round(item.unit_price * item.quantity, 2),
            )
        )
    return items


def normalize_order(
    incoming: IncomingOrder,
    settings: Settings,
    now: Optional[datetime] = None,
) -> CanonicalOrder:
    """Validate ``incoming`` and build the draft that will be persisted."""
    items = _line_items(incoming)
    info = _normalize_info(incoming.info)

    if incoming.reference_hint:
        reference = incoming.reference_hint.strip().upper()
        if not REFERENCE_HINT_RE.match(reference):
            raise ValidationError("Invalid order reference")
    else:
        reference = generate_reference(settings.ORDER_REF_PREFIX)

    subtotal = _trusted(incoming.subtotal, "subtotal")
    if subtotal is None:
        subtotal = round(sum(item.line_total for item in items), 2)

    delivery_fee = _trusted(incoming.delivery_fee, "deliveryFee")
    if delivery_fee is None:
        delivery_fee = zone_fee(info.delivery_zone, settings.DELIVERY_ZONE_FEES)

    grand_total = _trusted(incoming.grand_total, "grandTotal")
    if grand_total is None:
        grand_total = round(subtotal + delivery_fee, 2)

    now = now or datetime.now(timezone.utc)
    return CanonicalOrder(
        reference=reference,
        created_at=now,
        updated_at=now,
        items=items,
        info=info,
        subtotal=subtotal,
        delivery_fee=delivery_fee,
        grand_total=grand_total,
    )
