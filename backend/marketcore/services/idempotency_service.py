# Overview: Idempotency and webhook deduplication; collapses racing writers onto one winner.

"""
Idempotency & Webhook Dedup Layer

WHY: Clients retry payment creation and processors redeliver callbacks. Both
must produce at most one logical effect, without a distributed lock.

ALGORITHM:
1. Pre-check: if a row with the natural key exists, it is the winner.
2. Insert our row.
3. If the unique constraint rejects the insert, another writer committed
   first. Roll back: that committed row is the winner.

Payment creation commits its row on its own (claim_unique). Webhook events
are claimed inside the settlement transaction (mark_processed), so the dedup
row and the payment's new status commit together or not at all. A worker
that dies mid-settlement leaves no claim behind and the processor's retry
is admitted.

The winner is the first row the database committed, so every caller
converges on the same row no matter who physically inserted first.
"""

from __future__ import annotations

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import WebhookEvent
from ..validation import ConcurrencyConflict, MarketError
from marketcore.time_utils import utcnow


class DuplicateEvent(MarketError):
    """The event was already admitted. The caller's transaction must roll back."""
    status_code = 200
    code = "duplicate_event"

    def __init__(self, tx_ref: str, event_id: int | None = None):
        super().__init__(f"Event for {tx_ref} already processed")
        self.tx_ref = tx_ref
        self.event_id = event_id


def claim_unique(row, lookup):
    """
    Insert `row` or return the row that beat it to the unique key.

    Args:
        row: Unsaved model instance carrying the natural key.
        lookup: Zero-arg callable returning the committed row for that key.

    Returns:
        (winner, created) where created is True iff `row` itself won.

    Raises:
        ConcurrencyConflict: The insert was rejected but no winner is visible
            (constraint violated by some other column).
    """
    db.session.add(row)
    try:
        db.session.commit()
        return row, True
    except IntegrityError:
        db.session.rollback()

    existing = lookup()
    if existing is None:
        raise ConcurrencyConflict("Concurrent write could not be resolved; retry the request")
    return existing, False


# =============================================================================
# WEBHOOK EVENTS
# =============================================================================

def _find_event(tx_ref: str) -> WebhookEvent | None:
    return db.session.query(WebhookEvent).filter_by(tx_ref=tx_ref).first()


def is_processed(tx_ref: str) -> bool:
    """Read-only check so callers can short-circuit before doing work."""
    return _find_event(tx_ref) is not None


def mark_processed(tx_ref: str, event_type: str, signature: str | None = None) -> dict:
    """
    Admit a processor event once per transaction reference.

    Flushes but does NOT commit: the claim becomes durable with the caller's
    commit, so it must run inside the transaction that applies the event.

    Returns:
        {"already_processed": bool, "event_id": int}
        already_processed is False only for the caller whose row was inserted.

    Raises:
        DuplicateEvent: a racing writer holds the key (the flush was rejected
            and the session must be rolled back by the caller).
    """
    existing = _find_event(tx_ref)
    if existing is not None:
        return {"already_processed": True, "event_id": existing.id}

    event = WebhookEvent(
        tx_ref=tx_ref,
        event_type=event_type,
        # Full signatures are not needed for forensics
        signature=signature[:32] if signature else None,
        processed_at=utcnow(),
    )
    db.session.add(event)
    try:
        db.session.flush()
    except IntegrityError:
        raise DuplicateEvent(tx_ref)
    return {"already_processed": False, "event_id": event.id}
