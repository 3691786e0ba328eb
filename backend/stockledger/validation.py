from __future__ import annotations
from datetime import date, datetime
from stockledger.time_utils import parse_iso_datetime

import re
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Date, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta

from .models.inventory import PRODUCT_STATUSES, PRODUCT_UNITS, Product


# Maximum price: 9,999,999.99 (999,999,999 cents)
MAX_PRICE_CENTS = 999_999_999

# 100% in basis points
MAX_TAX_RATE_BPS = 10_000

EMAIL_RE = re.compile(r"^\S+@\S+\.\S+$")


class ValidationError(ValueError):
    """400-level input problem."""


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


def coerce_int(value: Any, field: str) -> int:
    """
    Strict integer coercion: rejects bools, floats, decimals and scientific
    notation. Plain digit strings (with optional leading minus) are accepted.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if 'e' in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if '.' in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def coerce_date(value: Any, field: str) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            dt = parse_iso_datetime(value)
        except ValueError:
            raise ValidationError(f"{field} must be an ISO-8601 date")
        return dt.date() if dt else None
    raise ValidationError(f"{field} must be a date")


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return coerce_int(value, col.key)

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        return bool(value)

    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except Exception:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    if isinstance(coltype, Date):
        return coerce_date(value, col.key)

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

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def _check_cents(patch: dict, field: str) -> None:
    if field in patch and patch[field] is not None:
        value = patch[field]
        if value < 0:
            raise ValidationError(f"{field} must be >= 0")
        if value > MAX_PRICE_CENTS:
            raise ValidationError(f"{field} cannot exceed {MAX_PRICE_CENTS}")


def _current_or_default(current, field: str):
    if current is not None:
        return getattr(current, field)
    default = Product.__table__.c[field].default
    return default.arg if default is not None else None


def enforce_rules_product(patch: dict, *, current=None) -> None:
    """
    Product business rules that SQLAlchemy metadata alone does not capture.

    current: the existing Product for PATCH semantics, so level checks see
    the merged result. Without it (create) the column defaults stand in for
    levels the payload leaves out.
    """
    _check_cents(patch, "cost_price_cents")
    _check_cents(patch, "selling_price_cents")

    if "tax_rate_bps" in patch and patch["tax_rate_bps"] is not None:
        if not 0 <= patch["tax_rate_bps"] <= MAX_TAX_RATE_BPS:
            raise ValidationError(f"tax_rate_bps must be between 0 and {MAX_TAX_RATE_BPS}")

    for field in ("min_stock_level", "max_stock_level", "reorder_point"):
        if field in patch and patch[field] is not None and patch[field] < 0:
            raise ValidationError(f"{field} must be >= 0")

    if "unit" in patch and patch["unit"] not in PRODUCT_UNITS:
        raise ValidationError(f"unit must be one of: {', '.join(PRODUCT_UNITS)}")

    if "status" in patch and patch["status"] not in PRODUCT_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(PRODUCT_STATUSES)}")

    min_level = patch.get("min_stock_level", _current_or_default(current, "min_stock_level"))
    max_level = patch.get("max_stock_level", _current_or_default(current, "max_stock_level"))
    if min_level is not None and max_level is not None and min_level >= max_level:
        raise ValidationError("min_stock_level must be less than max_stock_level")


def validate_customer(customer: Any) -> dict:
    """
    Normalize a sale customer snapshot. Name is required; the rest optional.
    """
    if not isinstance(customer, dict):
        raise ValidationError("customer must be an object")

    name = str(customer.get("name") or "").strip()
    if not name:
        raise ValidationError("Customer name is required")

    limits = {"name": 100, "phone": 15, "email": 255, "address": 200, "gst_number": 15}
    cleaned = {}
    for key, max_len in limits.items():
        raw = customer.get(key)
        if raw is None or str(raw).strip() == "":
            cleaned[key] = None
            continue
        value = str(raw).strip()
        if len(value) > max_len:
            raise ValidationError(f"customer {key} must be at most {max_len} characters")
        cleaned[key] = value
    cleaned["name"] = name

    if cleaned["email"] and not EMAIL_RE.match(cleaned["email"]):
        raise ValidationError("Please enter a valid email")

    return cleaned
