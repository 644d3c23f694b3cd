# Overview: Service-layer operations for subscription plans.

from __future__ import annotations

import json
import re

from ..extensions import db
from ..models import Subscription, SubscriptionPlan, User
from ..models.subscriptions import BILLING_ANNUAL, LIVE_SUB_STATUSES, VALID_BILLING_CYCLES
from ..validation import (
    MAX_PRICE_CENTS,
    ModelValidationPolicy,
    NotFound,
    Unauthorized,
    ValidationError,
    validate_payload,
)
from .concurrency import run_with_retry
from .plan_limits_service import DEFAULT_PLAN_LIMITS


SLUG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")

PLAN_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({
        "slug",
        "name",
        "description",
        "monthly_price_cents",
        "annual_price_cents",
        "currency",
        "features",
        "limits",
        "is_active",
        "sort_order",
    }),
    required_on_create=frozenset({"slug", "name", "monthly_price_cents", "annual_price_cents"}),
)


def _require_admin(user: User) -> None:
    if not user.is_admin:
        raise Unauthorized("Admin access required")


def _enforce_plan_rules(patch: dict, plan: SubscriptionPlan | None = None) -> None:
    """
    Rules not captured by column metadata.

    Prices are checked against the merged result so a partial update cannot
    invert annual vs. monthly pricing.
    """
    if "slug" in patch and not SLUG_RE.match(patch["slug"]):
        raise ValidationError("slug must be lowercase kebab-case (e.g. growth-plus)")

    for field in ("monthly_price_cents", "annual_price_cents"):
        if field in patch:
            if patch[field] < 0:
                raise ValidationError(f"{field} must be >= 0")
            if patch[field] > MAX_PRICE_CENTS:
                raise ValidationError(f"{field} cannot exceed {MAX_PRICE_CENTS}")

    monthly = patch.get("monthly_price_cents", plan.monthly_price_cents if plan else None)
    annual = patch.get("annual_price_cents", plan.annual_price_cents if plan else None)
    if monthly is not None and annual is not None and annual > monthly * 12:
        raise ValidationError("annual_price_cents cannot exceed 12 x monthly_price_cents")

    if "features" in patch:
        features = patch["features"]
        if not isinstance(features, list) or not all(isinstance(f, str) for f in features):
            raise ValidationError("features must be a list of strings")
    if "limits" in patch:
        if not isinstance(patch["limits"], dict):
            raise ValidationError("limits must be an object")


def _apply_patch(plan: SubscriptionPlan, patch: dict) -> None:
    for key, value in patch.items():
        if key == "features":
            plan.features_json = json.dumps(value)
        elif key == "limits":
            plan.limits_json = json.dumps(value, sort_keys=True)
        else:
            setattr(plan, key, value)


def _slug_taken(slug: str, exclude_id: int | None = None) -> bool:
    query = db.session.query(SubscriptionPlan).filter(SubscriptionPlan.slug == slug)
    if exclude_id is not None:
        query = query.filter(SubscriptionPlan.id != exclude_id)
    return db.session.query(query.exists()).scalar()


# =============================================================================
# QUERIES
# =============================================================================

def list_plans(active_only: bool = True) -> list[SubscriptionPlan]:
    query = db.session.query(SubscriptionPlan)
    if active_only:
        query = query.filter(SubscriptionPlan.is_active.is_(True))
    return query.order_by(SubscriptionPlan.sort_order.asc(), SubscriptionPlan.id.asc()).all()


def get_plan(plan_id: int) -> SubscriptionPlan:
    plan = db.session.get(SubscriptionPlan, plan_id)
    if not plan:
        raise NotFound(f"Plan {plan_id} not found")
    return plan


def get_plan_by_slug(slug: str) -> SubscriptionPlan:
    plan = db.session.query(SubscriptionPlan).filter_by(slug=slug).first()
    if not plan:
        raise NotFound(f"Plan {slug!r} not found")
    return plan


def calculate_price(plan: SubscriptionPlan, billing_cycle: str) -> dict:
    """
    Price for a cycle. Annual pricing also reports savings against paying
    monthly for 12 months.
    """
    if billing_cycle not in VALID_BILLING_CYCLES:
        raise ValidationError(f"billing_cycle must be one of {list(VALID_BILLING_CYCLES)}")

    price = plan.price_for(billing_cycle)
    savings = 0
    savings_percent = 0
    if billing_cycle == BILLING_ANNUAL:
        full = plan.monthly_price_cents * 12
        savings = max(full - plan.annual_price_cents, 0)
        savings_percent = round(savings * 100 / full) if full else 0

    return {
        "plan_id": plan.id,
        "billing_cycle": billing_cycle,
        "price_cents": price,
        "currency": plan.currency,
        "savings_cents": savings,
        "savings_percent": savings_percent,
    }


# =============================================================================
# ADMIN MUTATIONS
# =============================================================================

def create_plan(admin: User, payload: dict) -> SubscriptionPlan:
    _require_admin(admin)
    patch = validate_payload(model=SubscriptionPlan, payload=payload, policy=PLAN_POLICY, partial=False)
    _enforce_plan_rules(patch)

    def _op():
        if _slug_taken(patch["slug"]):
            raise ValidationError(f"A plan with slug {patch['slug']!r} already exists")
        plan = SubscriptionPlan()
        _apply_patch(plan, patch)
        db.session.add(plan)
        db.session.commit()
        return plan

    return run_with_retry(_op)


def update_plan(admin: User, plan_id: int, payload: dict) -> SubscriptionPlan:
    _require_admin(admin)
    patch = validate_payload(model=SubscriptionPlan, payload=payload, policy=PLAN_POLICY, partial=True)

    def _op():
        plan = get_plan(plan_id)
        _enforce_plan_rules(patch, plan)
        if "slug" in patch and _slug_taken(patch["slug"], exclude_id=plan.id):
            raise ValidationError(f"A plan with slug {patch['slug']!r} already exists")
        _apply_patch(plan, patch)
        db.session.commit()
        return plan

    return run_with_retry(_op)


def deactivate_plan(admin: User, plan_id: int) -> SubscriptionPlan:
    """Hide a plan from new checkouts. Existing subscriptions keep it."""
    _require_admin(admin)

    def _op():
        plan = get_plan(plan_id)
        plan.is_active = False
        db.session.commit()
        return plan

    return run_with_retry(_op)


def delete_all_plans(admin: User) -> int:
    """Dev reset. Refused while any subscription is live."""
    _require_admin(admin)

    def _op():
        live = (
            db.session.query(Subscription)
            .filter(Subscription.status.in_(LIVE_SUB_STATUSES))
            .count()
        )
        if live:
            raise ValidationError(f"Cannot delete plans while {live} subscription(s) are active")
        deleted = db.session.query(SubscriptionPlan).delete()
        db.session.commit()
        return deleted

    return run_with_retry(_op)


# =============================================================================
# SEEDING
# =============================================================================

DEFAULT_PLANS = [
    {
        "slug": "starter",
        "name": "Starter",
        "description": "Perfect for small businesses just getting started",
        "monthly_price_cents": 150000,
        "annual_price_cents": 1440000,
        "features": [
            "Up to 10 products",
            "50 orders per month",
            "5 origin calculations",
            "Basic analytics",
            "Email support",
        ],
        "sort_order": 1,
    },
    {
        "slug": "growth",
        "name": "Growth",
        "description": "For growing businesses ready to scale",
        "monthly_price_cents": 400000,
        "annual_price_cents": 3840000,
        "features": [
            "Up to 50 products",
            "200 orders per month",
            "25 origin calculations",
            "Advanced analytics",
            "Priority email support",
            "Limited API access",
        ],
        "sort_order": 2,
    },
    {
        "slug": "pro",
        "name": "Pro",
        "description": "Full-featured plan for established businesses",
        "monthly_price_cents": 800000,
        "annual_price_cents": 7680000,
        "features": [
            "Up to 200 products",
            "1,000 orders per month",
            "100 origin calculations",
            "Full analytics suite",
            "Chat support",
            "Full API access",
            "Team collaboration",
        ],
        "sort_order": 3,
    },
    {
        # Custom pricing: activated by an admin, never by checkout
        "slug": "enterprise",
        "name": "Enterprise",
        "description": "Custom solutions for large organizations",
        "monthly_price_cents": 0,
        "annual_price_cents": 0,
        "features": [
            "Unlimited products",
            "Unlimited orders",
            "Unlimited origin calculations",
            "Custom analytics & reporting",
            "Dedicated account manager",
            "Full API access",
            "Custom integrations",
            "SLA guarantee",
        ],
        "sort_order": 4,
    },
]


def seed_default_plans(currency: str = "ETB") -> int:
    """Insert any missing default plan. Returns the number created."""
    created = 0
    for default in DEFAULT_PLANS:
        if _slug_taken(default["slug"]):
            continue
        plan = SubscriptionPlan(
            slug=default["slug"],
            name=default["name"],
            description=default["description"],
            monthly_price_cents=default["monthly_price_cents"],
            annual_price_cents=default["annual_price_cents"],
            currency=currency,
            features_json=json.dumps(default["features"]),
            limits_json=json.dumps(DEFAULT_PLAN_LIMITS[default["slug"]].to_dict(), sort_keys=True),
            is_active=True,
            sort_order=default["sort_order"],
        )
        db.session.add(plan)
        created += 1
    db.session.commit()
    return created
