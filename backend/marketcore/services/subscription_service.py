# Overview: Service-layer operations for subscriptions; owns billing status and period transitions.

"""
Subscription Billing State Machine

STATES: trialing, active, past_due, cancelled, expired
TERMINAL: cancelled, expired (start a new subscription instead)

TRANSITIONS:
- create:                  -> trialing (trial) | active (paid) | past_due (awaiting payment)
- activate after payment:  any -> active, period reset to now..now+cycle
- cancel:                  flags cancel_at_period_end; access continues
- reactivate:              clears cancel_at_period_end
- change plan:             active/trialing only; period untouched
- sweep:                   trialing + elapsed                      -> expired
                           cancel_at_period_end + elapsed          -> cancelled
                           active + elapsed, not cancelling        -> past_due

PERIODS: monthly = 30 days, annual = 365 days, trial = TRIAL_DAYS (14).
"""

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app

from ..extensions import db
from ..models import Business, OriginCalculation, Payment, Subscription, SubscriptionPlan, User
from ..models.payments import PAYMENT_STATUS_SUCCESS, PAYMENT_TYPE_SUBSCRIPTION
from ..models.subscriptions import (
    BILLING_ANNUAL,
    BILLING_MONTHLY,
    LIVE_SUB_STATUSES,
    SUB_STATUS_ACTIVE,
    SUB_STATUS_CANCELLED,
    SUB_STATUS_EXPIRED,
    SUB_STATUS_PAST_DUE,
    SUB_STATUS_TRIALING,
    VALID_BILLING_CYCLES,
    VALID_SUB_STATUSES,
)
from ..validation import NotFound, Unauthorized, ValidationError
from marketcore.time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry
from . import plan_limits_service


CYCLE_DAYS = {
    BILLING_MONTHLY: 30,
    BILLING_ANNUAL: 365,
}

TERMINAL_SUB_STATUSES = (SUB_STATUS_CANCELLED, SUB_STATUS_EXPIRED)


def period_for(billing_cycle: str, start: datetime) -> tuple[datetime, datetime]:
    if billing_cycle not in CYCLE_DAYS:
        raise ValidationError(f"billing_cycle must be one of {list(VALID_BILLING_CYCLES)}")
    return start, start + timedelta(days=CYCLE_DAYS[billing_cycle])


def _trial_days() -> int:
    return current_app.config.get("TRIAL_DAYS", 14)


# =============================================================================
# OWNERSHIP
# =============================================================================

def _get_business(business_id: int) -> Business:
    business = db.session.get(Business, business_id)
    if not business:
        raise NotFound(f"Business {business_id} not found")
    return business


def require_business_owner(user: User, business_id: int) -> Business:
    business = _get_business(business_id)
    if not user.is_admin and business.owner_id != user.id:
        raise Unauthorized("You can only manage subscriptions for your own business")
    return business


def _get_owned_subscription(user: User, subscription_id: int, *, lock: bool = True) -> Subscription:
    query = db.session.query(Subscription).filter_by(id=subscription_id)
    subscription = (lock_for_update(query) if lock else query).first()
    if not subscription:
        raise NotFound(f"Subscription {subscription_id} not found")
    require_business_owner(user, subscription.business_id)
    return subscription


def get_active_plan(plan_id: int) -> SubscriptionPlan:
    plan = db.session.get(SubscriptionPlan, plan_id)
    if not plan or not plan.is_active:
        raise ValidationError("Invalid or inactive plan")
    return plan


# =============================================================================
# QUERIES
# =============================================================================

def get_for_business(business_id: int) -> Subscription | None:
    return db.session.query(Subscription).filter_by(business_id=business_id).first()


def get_current_subscription(user: User) -> Subscription | None:
    """Subscription of the first business the user owns."""
    business = plan_limits_service.business_for_seller(user.id)
    if business is None:
        return None
    return get_for_business(business.id)


def get_subscription(user: User, subscription_id: int) -> Subscription:
    return _get_owned_subscription(user, subscription_id, lock=False)


def has_active_subscription(business_id: int) -> bool:
    subscription = get_for_business(business_id)
    return subscription is not None and subscription.status in LIVE_SUB_STATUSES


def list_all(status: str | None = None) -> list[Subscription]:
    query = db.session.query(Subscription)
    if status:
        if status not in VALID_SUB_STATUSES:
            raise ValidationError(f"Invalid subscription status: {status}")
        query = query.filter(Subscription.status == status)
    return query.order_by(Subscription.created_at.desc(), Subscription.id.desc()).all()


def get_usage_stats(business_id: int) -> dict:
    usage = {}
    for kind in plan_limits_service.VALID_LIMIT_KINDS:
        result = plan_limits_service.check_limit(kind, business_id=business_id)
        usage[kind] = {
            "used": result.current,
            "limit": result.limit,
            "unlimited": result.unlimited,
        }
    return usage


# =============================================================================
# MUTATIONS
# =============================================================================

def create_subscription(
    user: User,
    business_id: int,
    plan_id: int,
    billing_cycle: str = BILLING_MONTHLY,
    *,
    start_trial: bool = False,
    payment_id: int | None = None,
) -> Subscription:
    """
    Start a subscription for a business the user owns.

    - start_trial: trialing for TRIAL_DAYS
    - payment_id: a successful subscription payment by this user -> active
    - otherwise: past_due until activate_after_payment runs

    A previous cancelled/expired/past_due row is superseded (deleted).
    """
    if billing_cycle not in VALID_BILLING_CYCLES:
        raise ValidationError(f"billing_cycle must be one of {list(VALID_BILLING_CYCLES)}")

    def _op():
        require_business_owner(user, business_id)
        existing = lock_for_update(db.session.query(Subscription).filter_by(business_id=business_id)).first()
        if existing and existing.status in LIVE_SUB_STATUSES:
            raise ValidationError("Business already has an active subscription")

        get_active_plan(plan_id)

        payment = None
        if payment_id is not None:
            payment = db.session.get(Payment, payment_id)
            if (
                payment is None
                or payment.user_id != user.id
                or payment.payment_type != PAYMENT_TYPE_SUBSCRIPTION
                or payment.status != PAYMENT_STATUS_SUCCESS
            ):
                raise ValidationError("payment_id must reference your successful subscription payment")

        now = utcnow()
        if start_trial:
            status = SUB_STATUS_TRIALING
            period_start, period_end = now, now + timedelta(days=_trial_days())
            trial_ends_at = period_end
        else:
            status = SUB_STATUS_ACTIVE if payment is not None else SUB_STATUS_PAST_DUE
            period_start, period_end = period_for(billing_cycle, now)
            trial_ends_at = None

        if existing is not None:
            db.session.delete(existing)
            db.session.flush()

        subscription = Subscription(
            business_id=business_id,
            plan_id=plan_id,
            status=status,
            billing_cycle=billing_cycle,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=False,
            trial_ends_at=trial_ends_at,
            last_payment_id=payment.id if payment is not None else None,
        )
        db.session.add(subscription)
        db.session.flush()
        if payment is not None:
            payment.subscription_id = subscription.id
        db.session.commit()
        return subscription

    return run_with_retry(_op)


def activate_after_payment_inner(
    business_id: int,
    plan_id: int,
    billing_cycle: str,
    payment: Payment,
    *,
    now: datetime | None = None,
) -> Subscription:
    """
    Activate-or-create for a successful subscription payment. No commit.

    Resets the period to now..now+cycle, clears trial and cancellation.
    """
    now = now or utcnow()
    period_start, period_end = period_for(billing_cycle, now)

    subscription = lock_for_update(db.session.query(Subscription).filter_by(business_id=business_id)).first()
    if subscription is None:
        subscription = Subscription(business_id=business_id)
        db.session.add(subscription)

    subscription.plan_id = plan_id
    subscription.status = SUB_STATUS_ACTIVE
    subscription.billing_cycle = billing_cycle
    subscription.current_period_start = period_start
    subscription.current_period_end = period_end
    subscription.cancel_at_period_end = False
    subscription.cancelled_at = None
    subscription.trial_ends_at = None
    subscription.last_payment_id = payment.id
    db.session.flush()

    payment.subscription_id = subscription.id
    return subscription


def cancel_inner(subscription: Subscription, now: datetime | None = None) -> Subscription:
    if subscription.status in TERMINAL_SUB_STATUSES:
        raise ValidationError(f"Subscription is already {subscription.status}")
    subscription.cancel_at_period_end = True
    subscription.cancelled_at = now or utcnow()
    return subscription


def cancel_subscription(user: User, subscription_id: int) -> Subscription:
    """Schedule cancellation; access continues until current_period_end."""
    def _op():
        subscription = _get_owned_subscription(user, subscription_id)
        cancel_inner(subscription)
        db.session.commit()
        return subscription

    return run_with_retry(_op)


def reactivate_subscription(user: User, subscription_id: int) -> Subscription:
    def _op():
        subscription = _get_owned_subscription(user, subscription_id)
        if subscription.status in TERMINAL_SUB_STATUSES:
            raise ValidationError(
                f"Subscription is {subscription.status}; start a new subscription instead"
            )
        if not subscription.cancel_at_period_end:
            raise ValidationError("Subscription is not pending cancellation")
        subscription.cancel_at_period_end = False
        subscription.cancelled_at = None
        db.session.commit()
        return subscription

    return run_with_retry(_op)


def change_plan(user: User, subscription_id: int, plan_id: int) -> Subscription:
    """Swap plans without touching the billing period."""
    def _op():
        subscription = _get_owned_subscription(user, subscription_id)
        if subscription.status not in LIVE_SUB_STATUSES:
            raise ValidationError("Only active or trialing subscriptions can change plans")
        get_active_plan(plan_id)
        subscription.plan_id = plan_id
        db.session.commit()
        return subscription

    return run_with_retry(_op)


def update_status(subscription_id: int, status: str) -> Subscription:
    """System/admin override (e.g. enterprise activation, dunning)."""
    if status not in VALID_SUB_STATUSES:
        raise ValidationError(f"Invalid subscription status: {status}")

    def _op():
        subscription = lock_for_update(db.session.query(Subscription).filter_by(id=subscription_id)).first()
        if not subscription:
            raise NotFound(f"Subscription {subscription_id} not found")
        subscription.status = status
        if status == SUB_STATUS_CANCELLED and subscription.cancelled_at is None:
            subscription.cancelled_at = utcnow()
        db.session.commit()
        return subscription

    return run_with_retry(_op)


def process_expired_subscriptions(now: datetime | None = None) -> dict:
    """
    Periodic sweep. Safe to re-run: every step matches only rows whose period
    has elapsed and whose status has not yet advanced.

    Returns:
        {"processed", "expired", "cancelled", "past_due"}
    """
    now = now or utcnow()

    def _op():
        trials = (
            db.session.query(Subscription)
            .filter(
                Subscription.status == SUB_STATUS_TRIALING,
                Subscription.current_period_end <= now,
            )
            .all()
        )
        for subscription in trials:
            subscription.status = SUB_STATUS_EXPIRED

        cancelling = (
            db.session.query(Subscription)
            .filter(
                Subscription.cancel_at_period_end.is_(True),
                Subscription.current_period_end <= now,
                Subscription.status.notin_(TERMINAL_SUB_STATUSES),
            )
            .all()
        )
        for subscription in cancelling:
            subscription.status = SUB_STATUS_CANCELLED
            if subscription.cancelled_at is None:
                subscription.cancelled_at = now

        lapsed = (
            db.session.query(Subscription)
            .filter(
                Subscription.status == SUB_STATUS_ACTIVE,
                Subscription.cancel_at_period_end.is_(False),
                Subscription.current_period_end <= now,
            )
            .all()
        )
        for subscription in lapsed:
            subscription.status = SUB_STATUS_PAST_DUE

        db.session.commit()
        return {
            "processed": len(trials) + len(cancelling) + len(lapsed),
            "expired": len(trials),
            "cancelled": len(cancelling),
            "past_due": len(lapsed),
        }

    return run_with_retry(_op)


# =============================================================================
# METERED USAGE
# =============================================================================

def record_origin_calculation(
    user: User,
    business_id: int,
    *,
    product_id: int | None = None,
    origin_country: str | None = None,
    destination_country: str | None = None,
) -> OriginCalculation:
    """Meter one origin calculation against the business's plan (fail closed)."""
    def _op():
        require_business_owner(user, business_id)
        plan_limits_service.enforce_limit(
            plan_limits_service.LIMIT_ORIGIN_CALCULATIONS,
            business_id=business_id,
        )
        row = OriginCalculation(
            business_id=business_id,
            user_id=user.id,
            product_id=product_id,
            origin_country=origin_country.upper() if origin_country else None,
            destination_country=destination_country.upper() if destination_country else None,
        )
        db.session.add(row)
        db.session.commit()
        return row

    return run_with_retry(_op)
