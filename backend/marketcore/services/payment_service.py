# Overview: Service-layer operations for payments; encapsulates business logic and database work.

"""
Payment Lifecycle Service

WHY: A payment is created before the buyer is sent to the processor and is
settled later by a callback. Everything between those two moments can be
retried or replayed, so every step must be idempotent.

DESIGN PRINCIPLES:
- Order payments freeze the cart (product, quantity, price, seller, name)
  into the payment at creation; fulfilment uses that snapshot, never the
  live cart or live prices.
- Idempotency keys collapse retried creations onto one row (per user).
- success is a one-way gate: fulfilment runs in the same transaction as the
  pending -> success write and never again.
- Refunds accumulate monotonically: partially_refunded until fully refunded.
- Notifications go out only after the state change has committed.

STATE MACHINE:
    pending -> success | failed | cancelled
    success -> partially_refunded -> refunded
"""

from __future__ import annotations

import re
import secrets
import string

from ..extensions import db
from ..models import Business, Order, Payment, Subscription, User
from ..models.payments import (
    PAYMENT_STATUS_CANCELLED,
    PAYMENT_STATUS_FAILED,
    PAYMENT_STATUS_PARTIALLY_REFUNDED,
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_REFUNDED,
    PAYMENT_STATUS_SUCCESS,
    PAYMENT_TYPE_ORDER,
    PAYMENT_TYPE_SUBSCRIPTION,
)
from ..validation import (
    NotFound,
    Unauthorized,
    ValidationError,
    require_positive_int,
)
from marketcore.time_utils import epoch_millis, utcnow
from .concurrency import lock_for_update, run_with_retry
from .idempotency_service import DuplicateEvent, claim_unique, mark_processed
from .payment_intents import (
    MalformedIntent,
    OrderIntent,
    SubscriptionIntent,
    decode_intent,
    encode_intent,
    parse_subscription_intent,
)
from . import audit_service
from . import checkout_service
from . import notification_service
from . import plan_limits_service
from . import subscription_service


# =============================================================================
# CONSTANTS
# =============================================================================

VALID_PAYMENT_TYPES = (PAYMENT_TYPE_ORDER, PAYMENT_TYPE_SUBSCRIPTION)

VALID_PAYMENT_STATUSES = (
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_SUCCESS,
    PAYMENT_STATUS_FAILED,
    PAYMENT_STATUS_CANCELLED,
    PAYMENT_STATUS_REFUNDED,
    PAYMENT_STATUS_PARTIALLY_REFUNDED,
)

# Statuses a processor callback may report
SETTLEMENT_STATUSES = (
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_SUCCESS,
    PAYMENT_STATUS_FAILED,
    PAYMENT_STATUS_CANCELLED,
)

# Once here, fulfilment has already happened
POST_SUCCESS_STATUSES = (
    PAYMENT_STATUS_SUCCESS,
    PAYMENT_STATUS_PARTIALLY_REFUNDED,
    PAYMENT_STATUS_REFUNDED,
)

REFUNDABLE_STATUSES = (PAYMENT_STATUS_SUCCESS, PAYMENT_STATUS_PARTIALLY_REFUNDED)

# Amount limits per currency, in cents: (min, max)
SUPPORTED_CURRENCIES = {
    "ETB": (100, 1_000_000_000),
    "USD": (100, 10_000_000),
}

IDEMPOTENCY_KEY_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

TX_REF_PREFIX = "MC"
_TX_REF_ALPHABET = string.ascii_uppercase + string.digits


# =============================================================================
# VALIDATION HELPERS
# =============================================================================

def generate_tx_ref() -> str:
    """MC-{epoch_ms}-{6 random A-Z0-9}"""
    suffix = "".join(secrets.choice(_TX_REF_ALPHABET) for _ in range(6))
    return f"{TX_REF_PREFIX}-{epoch_millis()}-{suffix}"


def validate_amount(amount_cents: int, currency: str) -> None:
    if currency not in SUPPORTED_CURRENCIES:
        raise ValidationError(f"Unsupported currency: {currency}. Must be one of {sorted(SUPPORTED_CURRENCIES)}")
    require_positive_int(amount_cents, "amount_cents")
    minimum, maximum = SUPPORTED_CURRENCIES[currency]
    if amount_cents < minimum or amount_cents > maximum:
        raise ValidationError(f"amount_cents for {currency} must be between {minimum} and {maximum}")


def validate_idempotency_key(key: str | None) -> None:
    if key is None:
        return
    if not isinstance(key, str) or not IDEMPOTENCY_KEY_RE.match(key):
        raise ValidationError("idempotency_key must be 1-64 characters of letters, digits, '-' or '_'")


def _find_idempotent_payment(user_id: int, key: str) -> Payment | None:
    return db.session.query(Payment).filter_by(user_id=user_id, idempotency_key=key).first()


def _build_order_intent(user: User, amount_cents: int) -> OrderIntent:
    intent = checkout_service.snapshot_cart(user)
    quote = checkout_service.quote_lines(intent.items)
    if amount_cents != quote["total_cents"]:
        raise ValidationError(
            "Payment amount does not match cart total",
            expected_cents=quote["total_cents"],
            subtotal_cents=quote["subtotal_cents"],
            buyer_fee_cents=quote["buyer_fee_cents"],
        )
    # Fail before taking money a seller could not accept
    for seller_id in {line.seller_id for line in intent.items}:
        plan_limits_service.enforce_limit(plan_limits_service.LIMIT_MONTHLY_ORDERS, seller_id=seller_id)
    return intent


def _build_subscription_intent(user: User, metadata, amount_cents: int, currency: str) -> SubscriptionIntent:
    intent = parse_subscription_intent(metadata)
    business = db.session.get(Business, intent.business_id)
    if business is None:
        raise NotFound(f"Business {intent.business_id} not found")
    if business.owner_id != user.id:
        raise Unauthorized("You can only pay for your own business's subscription")

    plan = subscription_service.get_active_plan(intent.plan_id)
    price = plan.price_for(intent.billing_cycle)
    if price <= 0:
        raise ValidationError("This plan has custom pricing; contact sales to activate it")
    if currency != plan.currency or amount_cents != price:
        raise ValidationError(
            "Payment amount does not match plan price",
            expected_cents=price,
            currency=plan.currency,
        )
    return intent


# =============================================================================
# CREATION
# =============================================================================

def create_payment(
    user: User,
    *,
    amount_cents: int,
    currency: str,
    payment_type: str,
    metadata: dict | None = None,
    idempotency_key: str | None = None,
    checkout_url: str | None = None,
) -> tuple[Payment, bool]:
    """
    Create a pending payment.

    Args:
        user: Paying user
        amount_cents: Total charge (order: cart subtotal + buyer fee)
        currency: ETB or USD
        payment_type: order | subscription
        metadata: subscription intent {plan_id, billing_cycle, business_id};
            ignored for order payments, whose metadata is the cart snapshot
        idempotency_key: Optional client token; retries return the same payment

    Returns:
        (payment, created). created is False when an existing payment for
        the same (user, idempotency_key) was returned instead.

    Raises:
        ValidationError, EmptyCart, ProductUnavailable, InsufficientStock,
        PlanLimitExceeded, Unauthorized, NotFound
    """
    if payment_type not in VALID_PAYMENT_TYPES:
        raise ValidationError(f"Invalid payment type: {payment_type}. Must be one of {list(VALID_PAYMENT_TYPES)}")
    validate_idempotency_key(idempotency_key)

    if idempotency_key:
        existing = _find_idempotent_payment(user.id, idempotency_key)
        if existing is not None:
            return existing, False

    validate_amount(amount_cents, currency)

    def _op():
        if payment_type == PAYMENT_TYPE_ORDER:
            intent = _build_order_intent(user, amount_cents)
        else:
            intent = _build_subscription_intent(user, metadata, amount_cents, currency)

        payment = Payment(
            user_id=user.id,
            tx_ref=generate_tx_ref(),
            checkout_url=checkout_url,
            amount_cents=amount_cents,
            currency=currency,
            status=PAYMENT_STATUS_PENDING,
            payment_type=payment_type,
            metadata_json=encode_intent(intent),
            idempotency_key=idempotency_key,
        )

        if not idempotency_key:
            db.session.add(payment)
            db.session.flush()
            audit_service.record_inner(audit_service.ACTION_CREATE, "success", payment=payment)
            db.session.commit()
            return payment, True

        winner, created = claim_unique(
            payment,
            lambda: _find_idempotent_payment(user.id, idempotency_key),
        )
        audit_service.record(
            audit_service.ACTION_CREATE,
            "success" if created else "duplicate",
            payment=winner,
            metadata={"idempotency_key": idempotency_key},
        )
        return winner, created

    return run_with_retry(_op)


# =============================================================================
# SETTLEMENT
# =============================================================================

def _fulfil_inner(payment: Payment) -> dict:
    """
    Success side effects for a payment that just left pending. No commit.

    Malformed metadata or a product that can no longer be supplied leaves
    the payment in success with no fulfilment; the failure is audited for
    manual follow-up (refund or restock).
    """
    try:
        intent = decode_intent(payment.payment_type, payment.metadata_json)
    except MalformedIntent as exc:
        audit_service.record_inner(audit_service.ACTION_FULFILMENT, "skipped", payment=payment, error=str(exc))
        return {"fulfilled": False, "reason": str(exc)}

    if isinstance(intent, SubscriptionIntent):
        subscription = subscription_service.activate_after_payment_inner(
            intent.business_id,
            intent.plan_id,
            intent.billing_cycle,
            payment,
        )
        audit_service.record_inner(
            audit_service.ACTION_FULFILMENT,
            "success",
            payment=payment,
            metadata={"subscription_id": subscription.id},
        )
        return {"fulfilled": True, "subscription_id": subscription.id}

    buyer = db.session.get(User, payment.user_id)
    try:
        orders = checkout_service.fulfil_order_intent_inner(buyer, intent, payment=payment)
    except ValidationError as exc:
        audit_service.record_inner(audit_service.ACTION_FULFILMENT, "failed", payment=payment, error=exc.message)
        return {"fulfilled": False, "reason": exc.message}

    payment.order_id = orders[0].id if orders else None
    order_ids = [order.id for order in orders]
    audit_service.record_inner(
        audit_service.ACTION_FULFILMENT,
        "success",
        payment=payment,
        metadata={"order_ids": order_ids},
    )
    return {"fulfilled": True, "order_ids": order_ids}


def update_status(
    tx_ref: str,
    status: str,
    processor_ref: str | None = None,
    *,
    webhook_event: tuple[str, str | None] | None = None,
) -> Payment:
    """
    Settle a payment by transaction reference.

    - Already success (or refunded after success): no-op, returns the payment
    - Same status as current: no-op
    - Leaving pending for success: runs fulfilment in the same transaction
    - Any other move out of a non-pending status: ValidationError

    webhook_event=(event_type, signature) claims the processor event in the
    same transaction, so the claim exists iff the settlement committed.

    Fulfilment outcomes (order ids, subscription id, or the reason it was
    skipped) are written to the payment audit log.

    Raises:
        DuplicateEvent: webhook_event was already admitted (nothing changed)
    """
    if status not in SETTLEMENT_STATUSES:
        raise ValidationError(f"Invalid payment status: {status}. Must be one of {list(SETTLEMENT_STATUSES)}")

    def _op():
        payment = lock_for_update(db.session.query(Payment).filter_by(tx_ref=tx_ref)).first()
        if not payment:
            raise NotFound(f"Payment {tx_ref} not found")

        if webhook_event is not None:
            event_type, signature = webhook_event
            claim = mark_processed(tx_ref, event_type, signature)
            if claim["already_processed"]:
                raise DuplicateEvent(tx_ref, claim["event_id"])

        if payment.status in POST_SUCCESS_STATUSES or payment.status == status:
            return payment, None
        if payment.status != PAYMENT_STATUS_PENDING:
            raise ValidationError(f"Payment is already {payment.status}")

        previous = payment.status
        payment.status = status
        if processor_ref:
            payment.processor_ref = processor_ref

        fulfilment = None
        if status == PAYMENT_STATUS_SUCCESS:
            payment.completed_at = utcnow()
            fulfilment = _fulfil_inner(payment)

        audit_service.record_inner(
            audit_service.ACTION_STATUS_UPDATE,
            status,
            payment=payment,
            metadata={"from": previous, "processor_ref": processor_ref},
        )
        db.session.commit()
        return payment, fulfilment

    payment, fulfilment = run_with_retry(_op)

    if fulfilment is not None:
        notification_service.notify(notification_service.EVENT_PAYMENT_SUCCEEDED, {
            "payment": payment.to_dict(),
            "fulfilment": fulfilment,
        })
        if fulfilment.get("subscription_id"):
            notification_service.notify(notification_service.EVENT_SUBSCRIPTION_ACTIVATED, {
                "subscription_id": fulfilment["subscription_id"],
                "payment_id": payment.id,
            })
    return payment


def cancel_payment(user: User, tx_ref: str) -> Payment:
    """Owner abandons a pending payment (e.g. closed the processor page)."""
    payment = get_by_tx_ref(user, tx_ref)
    if payment.status != PAYMENT_STATUS_PENDING:
        raise ValidationError(f"Only pending payments can be cancelled (current: {payment.status})")
    return update_status(tx_ref, PAYMENT_STATUS_CANCELLED)


# =============================================================================
# REFUNDS
# =============================================================================

def record_refund(
    admin: User,
    payment_id: int,
    amount_cents: int,
    *,
    reason: str | None = None,
    reference: str | None = None,
) -> Payment:
    """
    Record a refund issued at the processor.

    Refunds accumulate: status becomes refunded once the total refunded
    reaches the payment amount, partially_refunded before that. Refunding a
    subscription payment schedules the subscription's cancellation.

    Raises:
        Unauthorized: not an admin
        ValidationError: not refundable, non-positive, or exceeds the balance
    """
    if not admin.is_admin:
        raise Unauthorized("Admin access required")
    require_positive_int(amount_cents, "refund_amount_cents")

    def _op():
        payment = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
        if not payment:
            raise NotFound(f"Payment {payment_id} not found")
        if payment.status not in REFUNDABLE_STATUSES:
            raise ValidationError(f"Only successful payments can be refunded (current: {payment.status})")
        if amount_cents > payment.refundable_cents:
            raise ValidationError(
                f"Refund amount exceeds remaining refundable balance ({payment.refundable_cents})",
                refundable_cents=payment.refundable_cents,
            )

        payment.refund_amount_cents = (payment.refund_amount_cents or 0) + amount_cents
        payment.status = (
            PAYMENT_STATUS_REFUNDED
            if payment.refund_amount_cents >= payment.amount_cents
            else PAYMENT_STATUS_PARTIALLY_REFUNDED
        )
        payment.refunded_at = utcnow()
        payment.refund_reason = reason
        payment.refund_reference = reference
        payment.refunded_by_user_id = admin.id

        cancelled_subscription_id = None
        if payment.payment_type == PAYMENT_TYPE_SUBSCRIPTION and payment.subscription_id:
            subscription = lock_for_update(
                db.session.query(Subscription).filter_by(id=payment.subscription_id)
            ).first()
            if (
                subscription is not None
                and not subscription.cancel_at_period_end
                and subscription.status not in subscription_service.TERMINAL_SUB_STATUSES
            ):
                subscription_service.cancel_inner(subscription)
                cancelled_subscription_id = subscription.id

        audit_service.record_inner(
            audit_service.ACTION_REFUND,
            payment.status,
            payment=payment,
            user_id=admin.id,
            metadata={
                "amount_cents": amount_cents,
                "total_refunded_cents": payment.refund_amount_cents,
                "reason": reason,
                "reference": reference,
            },
        )
        db.session.commit()
        return payment, cancelled_subscription_id

    payment, cancelled_subscription_id = run_with_retry(_op)

    notification_service.notify(notification_service.EVENT_PAYMENT_REFUNDED, {
        "payment": payment.to_dict(),
        "refund_amount_cents": amount_cents,
    })
    if cancelled_subscription_id:
        notification_service.notify(notification_service.EVENT_SUBSCRIPTION_CANCELLED, {
            "subscription_id": cancelled_subscription_id,
            "payment_id": payment.id,
        })
    return payment


# =============================================================================
# QUERIES
# =============================================================================

def get_by_tx_ref(user: User, tx_ref: str) -> Payment:
    payment = db.session.query(Payment).filter_by(tx_ref=tx_ref).first()
    if not payment:
        raise NotFound(f"Payment {tx_ref} not found")
    if payment.user_id != user.id and not user.is_admin:
        raise Unauthorized("You can only view your own payments")
    return payment


def get_by_idempotency_key(user: User, key: str) -> Payment | None:
    validate_idempotency_key(key)
    return _find_idempotent_payment(user.id, key)


def get_by_id(payment_id: int) -> Payment:
    payment = db.session.get(Payment, payment_id)
    if not payment:
        raise NotFound(f"Payment {payment_id} not found")
    return payment


def get_with_order(user: User, tx_ref: str) -> dict:
    """Payment plus the orders it produced (owner only)."""
    payment = get_by_tx_ref(user, tx_ref)
    if payment.user_id != user.id:
        raise Unauthorized("You can only view your own payments")
    orders = (
        db.session.query(Order)
        .filter_by(payment_id=payment.id)
        .order_by(Order.id.asc())
        .all()
    )
    return {
        "payment": payment.to_dict(),
        "orders": [order.to_dict(include_items=True) for order in orders],
    }


def _status_filter(query, status: str | None):
    if status:
        if status not in VALID_PAYMENT_STATUSES:
            raise ValidationError(f"Invalid payment status: {status}")
        query = query.filter(Payment.status == status)
    return query


def list_payments(user: User, status: str | None = None) -> list[Payment]:
    query = _status_filter(db.session.query(Payment).filter(Payment.user_id == user.id), status)
    return query.order_by(Payment.created_at.desc(), Payment.id.desc()).all()


def list_all(status: str | None = None, payment_type: str | None = None, limit: int = 100) -> list[Payment]:
    query = _status_filter(db.session.query(Payment), status)
    if payment_type:
        if payment_type not in VALID_PAYMENT_TYPES:
            raise ValidationError(f"Invalid payment type: {payment_type}")
        query = query.filter(Payment.payment_type == payment_type)
    return query.order_by(Payment.created_at.desc(), Payment.id.desc()).limit(limit).all()
