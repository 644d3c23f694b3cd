# Overview: Plan limit enforcement; counts live usage against a business's plan.

"""
Plan Limit Enforcer

WHY: Tiers gate how many products, monthly orders and origin calculations a
seller business may use. Usage is always counted fresh from source tables;
nothing is cached, so a limit check can never be stale by more than the
current transaction.

-1 means unlimited. A business with no active/trialing subscription gets
NO_SUBSCRIPTION_LIMITS (the starter tier), the most restrictive set.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, asdict, fields
from datetime import datetime

from sqlalchemy import func

from ..extensions import db
from ..models import Business, Order, OriginCalculation, Product, Subscription
from ..models.subscriptions import LIVE_SUB_STATUSES
from ..validation import PlanLimitExceeded, ValidationError
from marketcore.time_utils import start_of_month


UNLIMITED = -1

LIMIT_PRODUCTS = "products"
LIMIT_MONTHLY_ORDERS = "monthly_orders"
LIMIT_ORIGIN_CALCULATIONS = "origin_calculations"
VALID_LIMIT_KINDS = (LIMIT_PRODUCTS, LIMIT_MONTHLY_ORDERS, LIMIT_ORIGIN_CALCULATIONS)

# Human label used in PlanLimitExceeded messages
FEATURE_LABELS = {
    LIMIT_PRODUCTS: "product",
    LIMIT_MONTHLY_ORDERS: "monthly order",
    LIMIT_ORIGIN_CALCULATIONS: "origin calculation",
}


@dataclass(frozen=True)
class PlanLimits:
    max_products: int
    max_monthly_orders: int
    max_origin_calculations: int
    max_hs_code_lookups: int
    max_team_members: int
    priority_support: str
    analytics: str
    api_access: str

    def for_kind(self, kind: str) -> int:
        return {
            LIMIT_PRODUCTS: self.max_products,
            LIMIT_MONTHLY_ORDERS: self.max_monthly_orders,
            LIMIT_ORIGIN_CALCULATIONS: self.max_origin_calculations,
        }[kind]

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_json(cls, raw: str | None, fallback: "PlanLimits") -> "PlanLimits":
        """Parse a plan's limits JSON; any missing or mistyped field falls back."""
        try:
            data = json.loads(raw) if raw else {}
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        values = {}
        for f in fields(cls):
            default = getattr(fallback, f.name)
            value = data.get(f.name, default)
            if isinstance(default, int) and (isinstance(value, bool) or not isinstance(value, int)):
                value = default
            if isinstance(default, str) and not isinstance(value, str):
                value = default
            values[f.name] = value
        return cls(**values)


DEFAULT_PLAN_LIMITS = {
    "starter": PlanLimits(
        max_products=10,
        max_monthly_orders=50,
        max_origin_calculations=5,
        max_hs_code_lookups=10,
        max_team_members=1,
        priority_support="none",
        analytics="basic",
        api_access="none",
    ),
    "growth": PlanLimits(
        max_products=50,
        max_monthly_orders=200,
        max_origin_calculations=25,
        max_hs_code_lookups=50,
        max_team_members=3,
        priority_support="email",
        analytics="advanced",
        api_access="limited",
    ),
    "pro": PlanLimits(
        max_products=200,
        max_monthly_orders=1000,
        max_origin_calculations=100,
        max_hs_code_lookups=200,
        max_team_members=10,
        priority_support="chat",
        analytics="full",
        api_access="full",
    ),
    "enterprise": PlanLimits(
        max_products=UNLIMITED,
        max_monthly_orders=UNLIMITED,
        max_origin_calculations=UNLIMITED,
        max_hs_code_lookups=UNLIMITED,
        max_team_members=UNLIMITED,
        priority_support="dedicated",
        analytics="custom",
        api_access="full",
    ),
}

# Applies whenever a business has no active/trialing subscription
NO_SUBSCRIPTION_LIMITS = DEFAULT_PLAN_LIMITS["starter"]


@dataclass(frozen=True)
class LimitCheck:
    kind: str
    allowed: bool
    current: int
    limit: int
    unlimited: bool

    def to_dict(self) -> dict:
        return asdict(self)


def is_within_limit(current: int, limit: int) -> bool:
    if limit == UNLIMITED:
        return True
    return current < limit


# =============================================================================
# LIMIT RESOLUTION
# =============================================================================

def business_for_seller(seller_id: int) -> Business | None:
    return (
        db.session.query(Business)
        .filter_by(owner_id=seller_id)
        .order_by(Business.id.asc())
        .first()
    )


def get_business_limits(business_id: int | None) -> PlanLimits:
    if business_id is None:
        return NO_SUBSCRIPTION_LIMITS
    subscription = (
        db.session.query(Subscription)
        .filter(
            Subscription.business_id == business_id,
            Subscription.status.in_(LIVE_SUB_STATUSES),
        )
        .first()
    )
    if subscription is None or subscription.plan is None:
        return NO_SUBSCRIPTION_LIMITS
    return PlanLimits.from_json(subscription.plan.limits_json, NO_SUBSCRIPTION_LIMITS)


# =============================================================================
# USAGE COUNTERS
# =============================================================================

def count_products(seller_id: int) -> int:
    return db.session.query(func.count(Product.id)).filter(Product.seller_id == seller_id).scalar() or 0


def count_monthly_orders(seller_id: int, now: datetime | None = None) -> int:
    month_start = start_of_month(now)
    return (
        db.session.query(func.count(Order.id))
        .filter(Order.seller_id == seller_id, Order.created_at >= month_start)
        .scalar()
        or 0
    )


def count_origin_calculations(business_id: int | None, now: datetime | None = None) -> int:
    if business_id is None:
        return 0
    month_start = start_of_month(now)
    return (
        db.session.query(func.count(OriginCalculation.id))
        .filter(
            OriginCalculation.business_id == business_id,
            OriginCalculation.created_at >= month_start,
        )
        .scalar()
        or 0
    )


def _current_usage(kind: str, seller_id: int | None, business_id: int | None, now) -> int:
    if kind == LIMIT_PRODUCTS:
        return count_products(seller_id) if seller_id is not None else 0
    if kind == LIMIT_MONTHLY_ORDERS:
        return count_monthly_orders(seller_id, now) if seller_id is not None else 0
    return count_origin_calculations(business_id, now)


def check_limit(
    kind: str,
    *,
    seller_id: int | None = None,
    business_id: int | None = None,
    pending: int = 0,
    now: datetime | None = None,
) -> LimitCheck:
    """
    Evaluate one limit for a seller or business.

    Args:
        kind: products | monthly_orders | origin_calculations
        seller_id / business_id: either may be given; the other is derived
        pending: units about to be created by the caller in this transaction

    Returns:
        LimitCheck with allowed=True iff creating one more unit stays in plan.
    """
    if kind not in VALID_LIMIT_KINDS:
        raise ValidationError(f"Unknown limit kind: {kind}")

    if business_id is None and seller_id is not None:
        business = business_for_seller(seller_id)
        business_id = business.id if business else None
    elif seller_id is None and business_id is not None:
        business = db.session.get(Business, business_id)
        seller_id = business.owner_id if business else None

    limits = get_business_limits(business_id)
    limit = limits.for_kind(kind)
    current = _current_usage(kind, seller_id, business_id, now) + pending

    return LimitCheck(
        kind=kind,
        allowed=is_within_limit(current, limit),
        current=current,
        limit=limit,
        unlimited=limit == UNLIMITED,
    )


def enforce_limit(kind: str, **kwargs) -> LimitCheck:
    """check_limit, failing closed with PlanLimitExceeded."""
    result = check_limit(kind, **kwargs)
    if not result.allowed:
        raise PlanLimitExceeded(FEATURE_LABELS[kind], result.current, result.limit)
    return result
