from __future__ import annotations

import json

from ..extensions import db
from marketcore.time_utils import to_utc_z, utcnow


SUB_STATUS_TRIALING = "trialing"
SUB_STATUS_ACTIVE = "active"
SUB_STATUS_PAST_DUE = "past_due"
SUB_STATUS_CANCELLED = "cancelled"
SUB_STATUS_EXPIRED = "expired"
VALID_SUB_STATUSES = (
    SUB_STATUS_TRIALING,
    SUB_STATUS_ACTIVE,
    SUB_STATUS_PAST_DUE,
    SUB_STATUS_CANCELLED,
    SUB_STATUS_EXPIRED,
)
LIVE_SUB_STATUSES = (SUB_STATUS_ACTIVE, SUB_STATUS_TRIALING)

BILLING_MONTHLY = "monthly"
BILLING_ANNUAL = "annual"
VALID_BILLING_CYCLES = (BILLING_MONTHLY, BILLING_ANNUAL)


class SubscriptionPlan(db.Model):
    __tablename__ = "subscription_plans"
    __table_args__ = (
        db.UniqueConstraint("slug", name="uq_subscription_plans_slug"),
        db.Index("ix_subscription_plans_active_sort", "is_active", "sort_order"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    slug = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(128), nullable=False)
    description = db.Column(db.Text, nullable=True)
    monthly_price_cents = db.Column(db.Integer, nullable=False)
    annual_price_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="ETB")

    # JSON list[str] and JSON object respectively
    features_json = db.Column(db.Text, nullable=False, default="[]")
    limits_json = db.Column(db.Text, nullable=False, default="{}")

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def features(self) -> list:
        try:
            value = json.loads(self.features_json or "[]")
        except ValueError:
            return []
        return value if isinstance(value, list) else []

    def price_for(self, billing_cycle: str) -> int:
        if billing_cycle == BILLING_ANNUAL:
            return self.annual_price_cents
        return self.monthly_price_cents

    def to_dict(self) -> dict:
        try:
            limits = json.loads(self.limits_json or "{}")
        except ValueError:
            limits = {}
        return {
            "id": self.id,
            "slug": self.slug,
            "name": self.name,
            "description": self.description,
            "monthly_price_cents": self.monthly_price_cents,
            "annual_price_cents": self.annual_price_cents,
            "currency": self.currency,
            "features": self.features,
            "limits": limits,
            "is_active": self.is_active,
            "sort_order": self.sort_order,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Subscription(db.Model):
    """
    A business's billing relationship with a plan. One row per business.

    Access lasts until current_period_end even after cancel; the periodic
    sweep is the only thing that moves rows to cancelled/expired.
    """
    __tablename__ = "subscriptions"
    __table_args__ = (
        db.UniqueConstraint("business_id", name="uq_subscriptions_business"),
        db.Index("ix_subscriptions_status_period_end", "status", "current_period_end"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False)
    plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plans.id"), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False)
    billing_cycle = db.Column(db.String(16), nullable=False, default=BILLING_MONTHLY)

    current_period_start = db.Column(db.DateTime(timezone=True), nullable=False)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=False)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    trial_ends_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    plan = db.relationship("SubscriptionPlan")
    business = db.relationship("Business", backref=db.backref("subscription", uselist=False))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} business_id={self.business_id} status={self.status}>"

    def to_dict(self, include_plan: bool = False) -> dict:
        data = {
            "id": self.id,
            "business_id": self.business_id,
            "plan_id": self.plan_id,
            "status": self.status,
            "billing_cycle": self.billing_cycle,
            "current_period_start": to_utc_z(self.current_period_start),
            "current_period_end": to_utc_z(self.current_period_end),
            "cancel_at_period_end": self.cancel_at_period_end,
            "cancelled_at": to_utc_z(self.cancelled_at),
            "trial_ends_at": to_utc_z(self.trial_ends_at),
            "last_payment_id": self.last_payment_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_plan and self.plan is not None:
            data["plan"] = self.plan.to_dict()
        return data


class OriginCalculation(db.Model):
    """Usage row for one rules-of-origin calculation (metered by plan)."""
    __tablename__ = "origin_calculations"
    __table_args__ = (
        db.Index("ix_origin_calc_business_created", "business_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey("businesses.id"), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)
    origin_country = db.Column(db.String(2), nullable=True)
    destination_country = db.Column(db.String(2), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "user_id": self.user_id,
            "product_id": self.product_id,
            "origin_country": self.origin_country,
            "destination_country": self.destination_country,
            "created_at": to_utc_z(self.created_at),
        }
