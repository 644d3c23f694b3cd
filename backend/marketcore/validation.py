from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy.orm import DeclarativeMeta


# Upper bound for any single price or charge: 9,999,999.99 in major units
MAX_PRICE_CENTS = 999_999_999


# =============================================================================
# ERROR TAXONOMY
# =============================================================================

class MarketError(Exception):
    """
    Base class for every typed failure surfaced to callers.

    Rendered as `to_dict()` with `status_code`, by the route or by the
    app-level error handler for anything raised outside a route body.
    """
    status_code = 400
    code = "error"

    def __init__(self, message: str = "", **extra):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.extra = extra

    def to_dict(self) -> dict:
        payload = {"error": self.message, "code": self.code}
        payload.update(self.extra)
        return payload


class NotAuthenticated(MarketError):
    """No identity on a request that needs one."""
    status_code = 401
    code = "not_authenticated"


class Unauthorized(MarketError):
    """Identity present but lacks ownership or role."""
    status_code = 403
    code = "unauthorized"


class NotFound(MarketError):
    status_code = 404
    code = "not_found"


class ValidationError(MarketError, ValueError):
    """400-level input problem or business-rule violation."""
    status_code = 400
    code = "validation_error"


class EmptyCart(ValidationError):
    code = "empty_cart"

    def __init__(self, message: str = "Cart is empty", **extra):
        super().__init__(message, **extra)


class ProductUnavailable(ValidationError):
    code = "product_unavailable"


class InsufficientStock(ValidationError):
    code = "insufficient_stock"


class PlanLimitExceeded(MarketError):
    """
    Raised when a mutation would push usage past the business's plan.

    Carries feature/current/limit so the client can render an upgrade prompt.
    """
    status_code = 403
    code = "plan_limit_exceeded"

    def __init__(self, feature: str, current: int, limit: int):
        super().__init__(
            f"You've reached your {feature} limit ({current}/{limit}). "
            "Please upgrade your plan to continue.",
            feature=feature,
            current=current,
            limit=limit,
        )
        self.feature = feature
        self.current = current
        self.limit = limit


class ConcurrencyConflict(MarketError):
    """409-level race that could not be resolved to a winner."""
    status_code = 409
    code = "concurrency_conflict"


# =============================================================================
# PAYLOAD VALIDATION
# =============================================================================

@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Which JSON keys a client may write to a model.

    writable_fields is the security boundary; required_on_create applies
    only to full (non-partial) payloads.
    """
    writable_fields: frozenset[str]
    required_on_create: frozenset[str] = frozenset()


def _coerce_column_value(col, value: Any):
    """Normalize one JSON value for an Integer, Boolean or String/Text column."""
    coltype = col.type

    if isinstance(coltype, Integer):
        # JSON numbers only: "12", 12.0 and True are all refused
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"{col.key} must be an integer")
        return value

    if isinstance(coltype, Boolean):
        if not isinstance(value, bool):
            raise ValidationError(f"{col.key} must be true or false")
        return value

    if isinstance(coltype, (String, Text)):
        if not isinstance(value, str):
            raise ValidationError(f"{col.key} must be a string")
        value = value.strip()
        if not col.nullable and value == "":
            raise ValidationError(f"{col.key} cannot be blank")
        if isinstance(coltype, String) and coltype.length and len(value) > coltype.length:
            raise ValidationError(f"{col.key} exceeds max length {coltype.length}")
        return value

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Check a client payload against the policy and the model's columns.

    Returns a patch dict holding only writable keys. Writable keys that are
    not columns (JSON-encoded features/limits) pass through untouched for
    the service to validate.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    if not partial:
        missing = sorted(policy.required_on_create - payload.keys())
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    unknown = sorted(set(payload) - policy.writable_fields)
    if unknown:
        raise ValidationError(f"Field not allowed: {unknown[0]}")

    columns = {c.key: c for c in model.__mapper__.columns}
    patch: dict = {}
    for key, raw in payload.items():
        col = columns.get(key)
        if col is None:
            patch[key] = raw
        elif raw is None:
            if not col.nullable:
                raise ValidationError(f"{key} cannot be null")
            patch[key] = None
        else:
            patch[key] = _coerce_column_value(col, raw)
    return patch


def require_positive_int(value: Any, field: str) -> int:
    """Strict int > 0 (bools and floats rejected)."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    if value <= 0:
        raise ValidationError(f"{field} must be greater than 0")
    return value


def require_int(value: Any, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer")
    return value
