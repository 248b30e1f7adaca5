from __future__ import annotations
from datetime import datetime
from stockroom.time_utils import parse_iso_datetime

import re
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta

from .errors import ValidationError


# Maximum price: $9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_PRICE_CENTS = 999_999_999

# Single line quantity ceiling; anything above is a data-entry error
MAX_LINE_QUANTITY = 1_000_000

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

PAYMENT_METHODS = {"card", "bank", "cash"}
DELIVERY_METHODS = {"standard", "express", "overnight", "pickup"}


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def coerce_int(name: str, value: Any) -> int:
    """Strict integer coercion: rejects bools, floats, decimals and scientific notation."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{name} must be an integer")
        if 'e' in stripped.lower():
            raise ValidationError(f"{name} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
            raise ValidationError(f"{name} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{name} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{name} must be an integer, not a decimal")
    raise ValidationError(f"{name} must be an integer")


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return coerce_int(col.key, value)

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        return bool(value)

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        # Blank string check for non-nullable text fields
        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def is_valid_email(value: str | None) -> bool:
    return bool(value) and bool(EMAIL_RE.match(value.strip()))


def enforce_rules_order(patch: dict) -> None:
    if patch.get("customer_email") and not is_valid_email(patch["customer_email"]):
        raise ValidationError("customer_email is not a valid email address")
    if "discount_cents" in patch and patch["discount_cents"] is not None:
        if patch["discount_cents"] < 0:
            raise ValidationError("discount_cents must be >= 0")


def validate_order_items(items: Any) -> list[dict]:
    """Validate order item input: [{product_id, quantity, unit_price_cents, discount_cents?}]."""
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")

    cleaned = []
    for i, raw in enumerate(items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{i}] must be an object")
        for required in ("product_id", "quantity", "unit_price_cents"):
            if raw.get(required) is None:
                raise ValidationError(f"items[{i}].{required} is required")

        quantity = coerce_int(f"items[{i}].quantity", raw["quantity"])
        unit_price = coerce_int(f"items[{i}].unit_price_cents", raw["unit_price_cents"])
        discount = coerce_int(f"items[{i}].discount_cents", raw.get("discount_cents") or 0)

        if quantity <= 0 or quantity > MAX_LINE_QUANTITY:
            raise ValidationError(f"items[{i}].quantity must be between 1 and {MAX_LINE_QUANTITY}")
        if unit_price < 0 or unit_price > MAX_PRICE_CENTS:
            raise ValidationError(f"items[{i}].unit_price_cents must be between 0 and {MAX_PRICE_CENTS}")
        if discount < 0 or discount > unit_price:
            raise ValidationError(f"items[{i}].discount_cents must be between 0 and unit_price_cents")

        cleaned.append({
            "product_id": coerce_int(f"items[{i}].product_id", raw["product_id"]),
            "quantity": quantity,
            "unit_price_cents": unit_price,
            "discount_cents": discount,
        })
    return cleaned


def validate_purchase_order_items(items: Any) -> list[dict]:
    """Validate purchase order lines: [{product_id, quantity_ordered, unit_cost_cents?}]."""
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")

    cleaned = []
    seen: set[int] = set()
    for i, raw in enumerate(items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{i}] must be an object")
        if raw.get("product_id") is None or raw.get("quantity_ordered") is None:
            raise ValidationError(f"items[{i}] requires product_id and quantity_ordered")

        product_id = coerce_int(f"items[{i}].product_id", raw["product_id"])
        quantity = coerce_int(f"items[{i}].quantity_ordered", raw["quantity_ordered"])
        unit_cost = coerce_int(f"items[{i}].unit_cost_cents", raw.get("unit_cost_cents") or 0)

        if product_id in seen:
            raise ValidationError(f"Product {product_id} appears more than once")
        seen.add(product_id)
        if quantity <= 0 or quantity > MAX_LINE_QUANTITY:
            raise ValidationError(f"items[{i}].quantity_ordered must be between 1 and {MAX_LINE_QUANTITY}")
        if unit_cost < 0 or unit_cost > MAX_PRICE_CENTS:
            raise ValidationError(f"items[{i}].unit_cost_cents must be between 0 and {MAX_PRICE_CENTS}")

        cleaned.append({"product_id": product_id, "quantity_ordered": quantity, "unit_cost_cents": unit_cost})
    return cleaned


@dataclass(frozen=True)
class CheckoutDetails:
    """Normalized checkout payload. Payment is mocked: nothing here is charged."""
    customer_name: str
    customer_email: str
    phone: str
    address: str
    city: str
    postal_code: str
    country: str | None
    delivery_method: str
    payment_method: str
    payment_reference: str | None = None

    def shipping_to_dict(self) -> dict:
        return {
            "phone": self.phone,
            "address": self.address,
            "city": self.city,
            "postal_code": self.postal_code,
            "country": self.country,
            "delivery_method": self.delivery_method,
        }


def _required_text(section: dict, key: str, label: str) -> str:
    value = section.get(key)
    if value is None or not str(value).strip():
        raise ValidationError(f"{label} is required")
    return str(value).strip()


def _choice(section: dict, key: str, label: str, choices, default: str | None = None) -> str:
    value = section.get(key)
    if value is None or value == "":
        value = default
    if not isinstance(value, str) or value.strip().lower() not in choices:
        raise ValidationError(f"{label} must be one of: {', '.join(sorted(choices))}")
    return value.strip().lower()


def validate_checkout_payload(payload: Any) -> CheckoutDetails:
    """
    Validate the checkout payload that moves an order from Draft to Paid.

    Shape:
        {
          "customer": {"first_name", "last_name", "email", "phone",
                       "address", "city", "postal_code", "country"?},
          "delivery": {"method": "standard" | "express" | "overnight" | "pickup"},
          "payment":  {"method": "card" | "bank" | "cash", ...method fields}
        }
    """
    if not isinstance(payload, dict):
        raise ValidationError("checkout payload is required")

    customer = payload.get("customer")
    if not isinstance(customer, dict):
        raise ValidationError("checkout.customer is required")

    first_name = _required_text(customer, "first_name", "customer.first_name")
    last_name = _required_text(customer, "last_name", "customer.last_name")
    email = _required_text(customer, "email", "customer.email")
    if not is_valid_email(email):
        raise ValidationError("customer.email is not a valid email address")

    delivery = payload.get("delivery") or {}
    if not isinstance(delivery, dict):
        raise ValidationError("checkout.delivery must be an object")
    delivery_method = _choice(delivery, "method", "delivery.method", DELIVERY_METHODS, default="standard")

    payment = payload.get("payment")
    if not isinstance(payment, dict):
        raise ValidationError("checkout.payment is required")
    method = _choice(payment, "method", "payment.method", PAYMENT_METHODS)

    reference = None
    if method == "card":
        card_number = re.sub(r"\s", "", str(payment.get("card_number") or ""))
        if not re.fullmatch(r"\d{16}", card_number):
            raise ValidationError("payment.card_number must be 16 digits")
        _required_text(payment, "card_holder", "payment.card_holder")
        if not re.fullmatch(r"(0[1-9]|1[0-2])/\d{2}", str(payment.get("expiry_date") or "")):
            raise ValidationError("payment.expiry_date must be MM/YY")
        if not re.fullmatch(r"\d{3}", str(payment.get("cvv") or "")):
            raise ValidationError("payment.cvv must be 3 digits")
        reference = f"card-****{card_number[-4:]}"
    elif method == "bank":
        account = _required_text(payment, "bank_account", "payment.bank_account")
        _required_text(payment, "routing_number", "payment.routing_number")
        reference = f"bank-****{account[-4:]}"

    return CheckoutDetails(
        customer_name=f"{first_name} {last_name}",
        customer_email=email,
        phone=_required_text(customer, "phone", "customer.phone"),
        address=_required_text(customer, "address", "customer.address"),
        city=_required_text(customer, "city", "customer.city"),
        postal_code=_required_text(customer, "postal_code", "customer.postal_code"),
        country=str(customer.get("country") or "").strip() or None,
        delivery_method=delivery_method,
        payment_method=method,
        payment_reference=reference,
    )
