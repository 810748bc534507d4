from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

from .errors import ValidationError
from .money import MAX_AMOUNT
from .time_utils import parse_iso_date, parse_iso_datetime


ITEM_TYPES = ("material", "labour", "custom")
ADJUSTMENT_TYPES = ("none", "percent", "fixed")
PAYMENT_METHODS = ("bank", "cash", "card", "other")

# Legacy clients send "percentage"
_ADJUSTMENT_ALIASES = {"percentage": "percent"}

MAX_QUANTITY = Decimal("999999999.999")


def to_decimal(value: Any, field_name: str, *, places: int) -> Decimal:
    """
    Strict decimal coercion for money, quantities and rates.

    - bool is rejected (it is an int subclass)
    - floats go through str() so 0.1 stays 0.1
    - more than `places` fractional digits is rejected, never silently rounded
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a number")
    if isinstance(value, Decimal):
        dec = value
    elif isinstance(value, (int, float)):
        dec = Decimal(str(value))
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field_name} must be a number")
        try:
            dec = Decimal(stripped)
        except InvalidOperation:
            raise ValidationError(f"{field_name} must be a number")
    else:
        raise ValidationError(f"{field_name} must be a number")

    if not dec.is_finite():
        raise ValidationError(f"{field_name} must be a finite number")
    exponent = dec.normalize().as_tuple().exponent
    if isinstance(exponent, int) and exponent < -places:
        raise ValidationError(f"{field_name} allows at most {places} decimal places")
    return dec


def parse_money(value: Any, field_name: str = "amount") -> Decimal:
    dec = to_decimal(value, field_name, places=2)
    if dec < 0:
        raise ValidationError(f"{field_name} must be >= 0")
    if dec > MAX_AMOUNT:
        raise ValidationError(f"{field_name} cannot exceed {MAX_AMOUNT}")
    return dec


def parse_positive_money(value: Any, field_name: str = "amount") -> Decimal:
    dec = parse_money(value, field_name)
    if dec <= 0:
        raise ValidationError(f"{field_name} must be greater than 0")
    return dec


def parse_quantity(value: Any, field_name: str = "quantity") -> Decimal:
    dec = to_decimal(value, field_name, places=3)
    if dec <= 0:
        raise ValidationError(f"{field_name} must be greater than 0")
    if dec > MAX_QUANTITY:
        raise ValidationError(f"{field_name} is too large")
    return dec


def parse_rate(value: Any, field_name: str = "vat_rate") -> Decimal:
    dec = to_decimal(value, field_name, places=2)
    if dec < 0 or dec > 100:
        raise ValidationError(f"{field_name} must be between 0 and 100")
    return dec


def parse_optional_rate(value: Any, field_name: str = "vat_rate") -> Decimal | None:
    if value is None:
        return None
    return parse_rate(value, field_name)


def parse_text(value: Any, field_name: str, *, max_length: int, required: bool = False) -> str | None:
    if value is None:
        if required:
            raise ValidationError(f"{field_name} is required")
        return None
    text = str(value).strip()
    if not text:
        if required:
            raise ValidationError(f"{field_name} is required")
        return None
    if len(text) > max_length:
        raise ValidationError(f"{field_name} exceeds max length {max_length}")
    return text


def require_reason(value: Any, field_name: str = "reason") -> str:
    return parse_text(value, field_name, max_length=1000, required=True)


def parse_choice(value: Any, field_name: str, choices: tuple[str, ...]) -> str:
    if not isinstance(value, str) or value not in choices:
        raise ValidationError(f"{field_name} must be one of: {', '.join(choices)}")
    return value


def parse_adjustment_type(value: Any, field_name: str) -> str:
    if isinstance(value, str):
        value = _ADJUSTMENT_ALIASES.get(value.strip().lower(), value.strip().lower())
    return parse_choice(value, field_name, ADJUSTMENT_TYPES)


def parse_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ValidationError(f"{field_name} must be an integer")


def parse_date(value: Any, field_name: str) -> date | None:
    if value is None or isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a YYYY-MM-DD date")
    try:
        return parse_iso_date(value)
    except ValueError:
        raise ValidationError(f"{field_name} must be a YYYY-MM-DD date")


def parse_datetime(value: Any, field_name: str) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be an ISO-8601 datetime")
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise ValidationError(f"{field_name} must be an ISO-8601 datetime")


@dataclass(frozen=True)
class PayloadPolicy:
    """
    Central policy layer:
    - parsers: what clients are allowed to set (security boundary) and how
      each field is coerced
    - required_on_create: fields required for POST
    """
    parsers: dict[str, Callable[[Any], Any]]
    required_on_create: frozenset[str] = field(default_factory=frozenset)


def validate_payload(*, payload: Any, policy: PayloadPolicy, partial: bool) -> dict:
    """
    Validates + normalizes incoming JSON against a policy.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    if not partial:
        missing = sorted(f for f in policy.required_on_create if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    for key in payload.keys():
        if key not in policy.parsers:
            raise ValidationError(f"Field not allowed: {key}")

    return {key: policy.parsers[key](raw) for key, raw in payload.items()}


ITEM_POLICY = PayloadPolicy(
    parsers={
        "item_type": lambda v: parse_choice(v, "item_type", ITEM_TYPES),
        "description": lambda v: parse_text(v, "description", max_length=500, required=True),
        "quantity": parse_quantity,
        "unit_price": lambda v: parse_money(v, "unit_price"),
        "vat_rate": parse_optional_rate,
        "unit": lambda v: parse_text(v, "unit", max_length=20),
        "sort_order": lambda v: parse_int(v, "sort_order"),
    },
    required_on_create=frozenset({"description", "quantity", "unit_price"}),
)


PRICING_POLICY = PayloadPolicy(
    parsers={
        "vat_rate": parse_rate,
        "discount_type": lambda v: parse_adjustment_type(v, "discount_type"),
        "discount_value": lambda v: parse_money(v if v is not None else 0, "discount_value"),
        "markup_type": lambda v: parse_adjustment_type(v, "markup_type"),
        "markup_value": lambda v: parse_money(v if v is not None else 0, "markup_value"),
        "deposit_type": lambda v: parse_adjustment_type(v, "deposit_type"),
        "deposit_value": lambda v: parse_money(v if v is not None else 0, "deposit_value"),
    },
)


def validate_item(payload: Any, *, partial: bool = False) -> dict:
    patch = validate_payload(payload=payload, policy=ITEM_POLICY, partial=partial)
    if not partial:
        patch.setdefault("item_type", "material")
    return patch


def validate_pricing(patch: dict, current: dict | None = None) -> dict:
    """
    Cross-field pricing rules on the merged (current + patch) view:
    percent adjustments must stay within 0..100.
    """
    merged = dict(current or {})
    merged.update(patch)
    for prefix in ("discount", "markup", "deposit"):
        adj_type = merged.get(f"{prefix}_type", "none")
        value = merged.get(f"{prefix}_value") or Decimal("0")
        if adj_type == "percent" and value > 100:
            raise ValidationError(f"{prefix}_value must be between 0 and 100 for percent {prefix}")
    return patch


QUOTE_POLICY = PayloadPolicy(
    parsers={
        "client_id": lambda v: parse_int(v, "client_id"),
        "title": lambda v: parse_text(v, "title", max_length=200),
        "notes": lambda v: parse_text(v, "notes", max_length=5000),
        "terms": lambda v: parse_text(v, "terms", max_length=5000),
        "valid_until": lambda v: parse_date(v, "valid_until"),
    },
    required_on_create=frozenset({"client_id"}),
)


INVOICE_POLICY = PayloadPolicy(
    parsers={
        "client_id": lambda v: parse_int(v, "client_id"),
        "issue_date": lambda v: parse_date(v, "issue_date"),
        "due_date": lambda v: parse_date(v, "due_date"),
        "notes": lambda v: parse_text(v, "notes", max_length=5000),
        "terms": lambda v: parse_text(v, "terms", max_length=5000),
    },
    required_on_create=frozenset({"client_id"}),
)


PAYMENT_POLICY = PayloadPolicy(
    parsers={
        "amount": lambda v: parse_positive_money(v, "amount"),
        "method": lambda v: parse_choice(v, "method", PAYMENT_METHODS),
        "reference": lambda v: parse_text(v, "reference", max_length=255),
        "notes": lambda v: parse_text(v, "notes", max_length=5000),
        "paid_at": lambda v: parse_datetime(v, "paid_at"),
    },
    required_on_create=frozenset({"amount", "method"}),
)


def validate_document(payload: Any, *, policy: PayloadPolicy, partial: bool) -> tuple[dict, dict, list[dict] | None]:
    """
    Split a quote/invoice body into (header fields, pricing patch, items).

    items is None when the body carries no "items" key.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    header_raw = {k: v for k, v in payload.items() if k in policy.parsers}
    pricing_raw = {k: v for k, v in payload.items() if k in PRICING_POLICY.parsers}
    unknown = sorted(
        k for k in payload
        if k != "items" and k not in policy.parsers and k not in PRICING_POLICY.parsers
    )
    if unknown:
        raise ValidationError(f"Field not allowed: {unknown[0]}")

    fields = validate_payload(payload=header_raw, policy=policy, partial=partial)
    pricing = validate_pricing(validate_payload(payload=pricing_raw, policy=PRICING_POLICY, partial=True))

    items = None
    if "items" in payload:
        raw_items = payload["items"]
        if not isinstance(raw_items, list):
            raise ValidationError("items must be a list")
        items = [validate_item(raw) for raw in raw_items]
    return fields, pricing, items
