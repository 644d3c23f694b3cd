# Overview: Fire-and-forget outbound notifications (email/notification service bridge).

"""
Outbound notifications

The email/notification service is external. The core posts one JSON event
per committed state change and never lets a delivery failure propagate:
financial state is already committed by the time notify() runs.
"""

from __future__ import annotations

import httpx
from flask import current_app

from marketcore.time_utils import to_utc_z, utcnow


EVENT_PAYMENT_SUCCEEDED = "payment.succeeded"
EVENT_PAYMENT_REFUNDED = "payment.refunded"
EVENT_SUBSCRIPTION_ACTIVATED = "subscription.activated"
EVENT_SUBSCRIPTION_CANCELLED = "subscription.cancelled"


def notify(event: str, payload: dict) -> bool:
    """
    POST {"event", "occurred_at", "data"} to NOTIFICATION_WEBHOOK_URL.

    Returns True when the receiver acknowledged with a 2xx, False when
    delivery was skipped or failed.
    """
    url = current_app.config.get("NOTIFICATION_WEBHOOK_URL")
    if not url:
        return False

    body = {
        "event": event,
        "occurred_at": to_utc_z(utcnow()),
        "data": payload,
    }
    timeout = current_app.config.get("NOTIFICATION_TIMEOUT_SECONDS", 5)
    try:
        response = httpx.post(url, json=body, timeout=timeout)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        current_app.logger.warning("Failed to deliver %s notification to %s: %s", event, url, exc)
        return False
    return True
