from __future__ import annotations
from datetime import datetime
from decimal import Decimal, InvalidOperation
from territory_engine.time_utils import parse_iso_datetime, normalize_utc

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text, DateTime, Numeric, JSON
from sqlalchemy.orm import DeclarativeMeta

from .errors import ValidationError
from .models.territories import (
    TERRITORY_STATUSES, PROTECTION_TYPES, PROTECTION_RULE_TYPES,
    TERRITORY_STATUS_AVAILABLE, TERRITORY_STATUS_HOUSE,
)
from .models.commissions import COMMISSION_RULE_TYPES


# Largest single order the engine will price: $99,999,999.99
MAX_ORDER_AMOUNT_CENTS = 9_999_999_999

# Rates are percentages; anything above this is a data-entry error
MAX_RATE_PERCENT = Decimal("100")


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


TERRITORY_POLICY = ModelValidationPolicy(
    writable_fields={
        "name", "description", "city", "state", "status", "protection_type",
        "protection_start_date", "protection_end_date", "boundaries",
    },
    required_on_create={"name", "state"},
)

PROTECTION_RULE_POLICY = ModelValidationPolicy(
    writable_fields={
        "rule_type", "minimum_accounts", "minimum_revenue_cents", "time_period_months",
        "performance_threshold", "allow_inheritance", "require_approval", "approved_inheritors",
        "split_commission_enabled", "split_percentage", "split_conditions",
    },
    required_on_create={"rule_type"},
)

COMMISSION_RULE_POLICY = ModelValidationPolicy(
    writable_fields={
        "name", "rule_type", "conditions", "rate_structure",
        "applies_to_reps", "applies_to_territories", "applies_to_products", "applies_to_categories",
        "valid_from", "valid_to", "priority", "is_active",
    },
    required_on_create={"name", "rule_type"},
)


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers - strict validation to reject floats and scientific notation
    if isinstance(coltype, Integer):
        # Already an int (but not bool which is a subclass of int)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        # String input - must be plain digits (with optional leading minus)
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                raise ValidationError(f"{col.key} must be an integer")
            # Reject scientific notation (e.g., "1e15", "1E10")
            if 'e' in stripped.lower():
                raise ValidationError(f"{col.key} must be a plain integer (scientific notation not allowed)")
            # Reject decimal points (e.g., "12.5")
            if '.' in stripped:
                raise ValidationError(f"{col.key} must be an integer (no decimals)")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{col.key} must be an integer")
        # Reject floats explicitly
        if isinstance(value, float):
            raise ValidationError(f"{col.key} must be an integer, not a decimal")
        # Other types
        raise ValidationError(f"{col.key} must be an integer")

    # Decimals (rates) - accept numbers or numeric strings, never bools
    if isinstance(coltype, Numeric):
        return parse_rate(value, col.key)

    # Booleans
    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        # fallback: truthiness
        return bool(value)

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return normalize_utc(value)
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    # JSON documents pass through; shape checks live in the enforce_rules_* helpers
    if isinstance(coltype, JSON):
        return value

    # Default: leave as-is
    return value


def parse_rate(value: Any, field: str = "rate") -> Decimal:
    """Parse a percentage rate into a Decimal (floats go through str to avoid binary noise)."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    try:
        if isinstance(value, float):
            rate = Decimal(str(value))
        else:
            rate = Decimal(value if isinstance(value, (int, Decimal)) else str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not rate.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return rate


def parse_amount_cents(value: Any, field: str, *, allow_negative: bool = False) -> int:
    """Strict integer-cents parsing shared by order and ledger inputs."""
    if isinstance(value, bool) or not isinstance(value, int):
        if isinstance(value, str) and value.strip().lstrip("-").isdigit():
            value = int(value.strip())
        else:
            raise ValidationError(f"{field} must be an integer amount in cents")
    if value < 0 and not allow_negative:
        raise ValidationError(f"{field} must be >= 0")
    if abs(value) > MAX_ORDER_AMOUNT_CENTS:
        raise ValidationError(f"{field} cannot exceed {MAX_ORDER_AMOUNT_CENTS}")
    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
    ignore: frozenset[str] = frozenset(),
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)

    Keys in ``ignore`` are handled by the caller (e.g. postal_codes, which
    is not a column) and skipped here.
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

    # Reject unknown / non-writable fields
    for k in payload.keys():
        if k in ignore:
            continue
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        if k in ignore:
            continue
        col = cols[k]

        # NULL handling
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

        # Max length check for String(n)
        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def _require_string_list(patch: dict, key: str) -> None:
    value = patch.get(key)
    if value is None:
        return
    if not isinstance(value, list) or not all(isinstance(v, (str, int)) and not isinstance(v, bool) for v in value):
        raise ValidationError(f"{key} must be a list of identifiers")
    patch[key] = [str(v).strip() for v in value]


def enforce_rules_territory(patch: dict, *, creating: bool) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.
    Keep these small and centralized.
    """
    if "state" in patch and patch["state"] is not None:
        patch["state"] = patch["state"].upper()

    if "status" in patch:
        status = patch["status"]
        if status not in TERRITORY_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(TERRITORY_STATUSES)}")
        # assigned/protected are reached only through assignment
        if status not in (TERRITORY_STATUS_AVAILABLE, TERRITORY_STATUS_HOUSE):
            raise ValidationError("status can only be set to available or house directly; use assign or transfer")

    if "protection_type" in patch and patch["protection_type"] not in PROTECTION_TYPES:
        raise ValidationError(f"protection_type must be one of: {', '.join(PROTECTION_TYPES)}")

    if "boundaries" in patch and patch["boundaries"] is not None and not isinstance(patch["boundaries"], dict):
        raise ValidationError("boundaries must be a GeoJSON object")

    start = patch.get("protection_start_date")
    end = patch.get("protection_end_date")
    if start and end and end <= start:
        raise ValidationError("protection_end_date must be after protection_start_date")


def enforce_rules_protection_rule(patch: dict) -> None:
    if patch.get("rule_type") not in PROTECTION_RULE_TYPES:
        raise ValidationError(f"rule_type must be one of: {', '.join(PROTECTION_RULE_TYPES)}")

    for key in ("minimum_accounts", "minimum_revenue_cents", "time_period_months"):
        if patch.get(key) is not None and patch[key] < 0:
            raise ValidationError(f"{key} must be >= 0")

    # Quota attainment may exceed 100%; a commission split may not
    if patch.get("performance_threshold") is not None and patch["performance_threshold"] < 0:
        raise ValidationError("performance_threshold must be >= 0")
    if patch.get("split_percentage") is not None and not (0 <= patch["split_percentage"] <= MAX_RATE_PERCENT):
        raise ValidationError("split_percentage must be between 0 and 100")

    _require_string_list(patch, "approved_inheritors")
    if patch.get("split_conditions") is not None and not isinstance(patch["split_conditions"], list):
        raise ValidationError("split_conditions must be a list")


def enforce_rules_commission_rule(patch: dict) -> None:
    if "rule_type" in patch and patch["rule_type"] not in COMMISSION_RULE_TYPES:
        raise ValidationError(f"rule_type must be one of: {', '.join(COMMISSION_RULE_TYPES)}")

    for key in ("conditions", "rate_structure"):
        if key in patch:
            if patch[key] is None:
                patch[key] = {}
            if not isinstance(patch[key], dict):
                raise ValidationError(f"{key} must be an object")

    for key in ("applies_to_reps", "applies_to_territories", "applies_to_products", "applies_to_categories"):
        _require_string_list(patch, key)

    valid_from = patch.get("valid_from")
    valid_to = patch.get("valid_to")
    if valid_from and valid_to and valid_to < valid_from:
        raise ValidationError("valid_to must not be before valid_from")
