# Overview: Service-layer operations for maintenance; idempotent batch jobs driven by cron or CLI.

from __future__ import annotations

from datetime import datetime, timedelta

from ..extensions import db
from ..models import WebhookEvent
from ..time_utils import utcnow
from ..validation import ValidationError
from . import subscription_service


def cleanup_webhook_events(
    *,
    older_than_days: int = 30,
    batch_size: int = 500,
    now: datetime | None = None,
) -> dict:
    """
    Delete webhook dedup rows older than the retention window, oldest first,
    at most batch_size per call.

    Returns:
        {"deleted": int, "has_more": bool}; re-invoke while has_more.
    """
    if older_than_days < 0:
        raise ValidationError("older_than_days must be >= 0")
    if batch_size <= 0:
        raise ValidationError("batch_size must be > 0")

    cutoff = (now or utcnow()) - timedelta(days=older_than_days)
    ids = [
        row.id
        for row in db.session.query(WebhookEvent.id)
        .filter(WebhookEvent.processed_at < cutoff)
        .order_by(WebhookEvent.processed_at.asc(), WebhookEvent.id.asc())
        .limit(batch_size)
        .all()
    ]
    deleted = 0
    if ids:
        deleted = db.session.query(WebhookEvent).filter(
            WebhookEvent.id.in_(ids)
        ).delete(synchronize_session=False)

    has_more = db.session.query(
        db.session.query(WebhookEvent).filter(WebhookEvent.processed_at < cutoff).exists()
    ).scalar()
    db.session.commit()
    return {"deleted": deleted, "has_more": bool(has_more)}


def process_subscriptions(now: datetime | None = None) -> dict:
    """Advance elapsed subscriptions (trial expiry, scheduled cancellation, lapse)."""
    return subscription_service.process_expired_subscriptions(now=now)
