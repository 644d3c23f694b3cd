from __future__ import annotations

import json

from ..extensions import db
from marketcore.time_utils import to_utc_z, utcnow


PAYMENT_STATUS_PENDING = "pending"
PAYMENT_STATUS_SUCCESS = "success"
PAYMENT_STATUS_FAILED = "failed"
PAYMENT_STATUS_CANCELLED = "cancelled"
PAYMENT_STATUS_REFUNDED = "refunded"
PAYMENT_STATUS_PARTIALLY_REFUNDED = "partially_refunded"

PAYMENT_TYPE_ORDER = "order"
PAYMENT_TYPE_SUBSCRIPTION = "subscription"


def _loads(raw):
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


class Payment(db.Model):
    """
    A buyer's payment for a cart (type=order) or a plan (type=subscription).

    STATUS GATE:
    - pending -> success | failed | cancelled
    - success -> partially_refunded | refunded
    Once success, fulfilment never runs again (see payment_service.update_status).

    metadata_json holds the validated payment intent (cart snapshot or
    subscription intent); see services/payment_intents.py.
    """
    __tablename__ = "payments"
    __table_args__ = (
        db.UniqueConstraint("tx_ref", name="uq_payments_tx_ref"),
        db.UniqueConstraint("user_id", "idempotency_key", name="uq_payments_user_idempotency_key"),
        db.Index("ix_payments_user_created", "user_id", "created_at"),
        db.Index("ix_payments_status_type", "status", "payment_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    # Plain integers: orders/subscriptions point back at payments
    order_id = db.Column(db.Integer, nullable=True, index=True)
    subscription_id = db.Column(db.Integer, nullable=True, index=True)

    tx_ref = db.Column(db.String(64), nullable=False)
    processor_ref = db.Column(db.String(128), nullable=True)
    checkout_url = db.Column(db.String(512), nullable=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    status = db.Column(db.String(24), nullable=False, default=PAYMENT_STATUS_PENDING)
    payment_type = db.Column(db.String(16), nullable=False)
    metadata_json = db.Column(db.Text, nullable=True)
    idempotency_key = db.Column(db.String(64), nullable=True)

    refund_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refund_reason = db.Column(db.String(255), nullable=True)
    refund_reference = db.Column(db.String(128), nullable=True)
    refunded_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    user = db.relationship("User", foreign_keys=[user_id])
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def refundable_cents(self) -> int:
        return self.amount_cents - (self.refund_amount_cents or 0)

    def __repr__(self) -> str:
        return f"<Payment id={self.id} tx_ref={self.tx_ref!r} status={self.status} type={self.payment_type}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "order_id": self.order_id,
            "subscription_id": self.subscription_id,
            "tx_ref": self.tx_ref,
            "processor_ref": self.processor_ref,
            "checkout_url": self.checkout_url,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "status": self.status,
            "payment_type": self.payment_type,
            "metadata": _loads(self.metadata_json),
            "idempotency_key": self.idempotency_key,
            "refund_amount_cents": self.refund_amount_cents,
            "refunded_at": to_utc_z(self.refunded_at),
            "refund_reason": self.refund_reason,
            "refund_reference": self.refund_reference,
            "refunded_by_user_id": self.refunded_by_user_id,
            "completed_at": to_utc_z(self.completed_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class WebhookEvent(db.Model):
    """
    Dedup record for processor callbacks: at most one row per tx_ref.

    Pruned by maintenance_service.cleanup_webhook_events after the
    retention window.
    """
    __tablename__ = "webhook_events"
    __table_args__ = (
        db.UniqueConstraint("tx_ref", name="uq_webhook_events_tx_ref"),
        db.Index("ix_webhook_events_processed_at", "processed_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tx_ref = db.Column(db.String(64), nullable=False)
    event_type = db.Column(db.String(64), nullable=False)
    signature = db.Column(db.String(64), nullable=True)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tx_ref": self.tx_ref,
            "event_type": self.event_type,
            "signature": self.signature,
            "processed_at": to_utc_z(self.processed_at),
        }


class PaymentAuditLog(db.Model):
    """Append-only trail of payment and webhook activity. Never drives business logic."""
    __tablename__ = "payment_audit_logs"
    __table_args__ = (
        db.Index("ix_payment_audit_action_created", "action", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, nullable=True, index=True)
    user_id = db.Column(db.Integer, nullable=True)
    action = db.Column(db.String(32), nullable=False)
    status = db.Column(db.String(32), nullable=False)
    tx_ref = db.Column(db.String(64), nullable=True, index=True)
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payment_id": self.payment_id,
            "user_id": self.user_id,
            "action": self.action,
            "status": self.status,
            "tx_ref": self.tx_ref,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "metadata": _loads(self.metadata_json),
            "error_message": self.error_message,
            "created_at": to_utc_z(self.created_at),
        }
