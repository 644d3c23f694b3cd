# Overview: Inbound payment-processor callbacks; verifies, dedups and settles.

"""
Processor Callback Handling

PIPELINE (every outcome lands in the payment audit log, action "webhook"):
0. Per-address rate limit       else 429  rate_limited  (route decorator)
1. Source in allowlist (if set) else 403  unauthorized_ip
2. Secret configured            else 500  config_error
3. Signature header present     else 401  missing_signature
4. HMAC-SHA256(raw body) match  else 401  invalid_signature
5. Timestamp fresh (if sent)    else 400  stale
6. JSON payload well-formed     else 400  invalid_payload
7. Dedup on tx_ref              duplicate -> 200, no effect
8. payment_service.update_status

Only terminal statuses claim the dedup slot; a "pending" callback never
blocks the success callback that follows it, and one arriving after it is
reported as a duplicate. The slot is claimed inside the settlement
transaction, so a settlement that fails or never commits leaves no claim
and the processor's retry is admitted.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import re

from flask import current_app

from ..models.payments import (
    PAYMENT_STATUS_CANCELLED,
    PAYMENT_STATUS_FAILED,
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_SUCCESS,
)
from ..validation import MarketError
from marketcore.time_utils import epoch_millis
from . import audit_service
from . import idempotency_service
from . import payment_service


SIGNATURE_RE = re.compile(r"[0-9a-fA-F]{64}")

STATUS_MAP = {
    "success": PAYMENT_STATUS_SUCCESS,
    "successful": PAYMENT_STATUS_SUCCESS,
    "failed": PAYMENT_STATUS_FAILED,
    "pending": PAYMENT_STATUS_PENDING,
    "cancelled": PAYMENT_STATUS_CANCELLED,
    "canceled": PAYMENT_STATUS_CANCELLED,
}


class WebhookRejected(MarketError):
    """Callback refused before any payment state was touched."""
    code = "webhook_rejected"

    def __init__(self, message: str, *, status_code: int = 400, reason: str = "rejected"):
        super().__init__(message, reason=reason)
        self.status_code = status_code
        self.reason = reason


def map_processor_status(raw: str | None) -> str:
    """Unknown processor statuses are treated as failures."""
    return STATUS_MAP.get((raw or "").strip().lower(), PAYMENT_STATUS_FAILED)


def compute_signature(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, signature: str, secret: str) -> bool:
    """
    Hex HMAC-SHA256, optional "sha256=" prefix, constant-time compare.

    Anything that is not exactly 64 hex digits is refused before comparing.
    """
    normalized = signature.strip()
    if normalized.lower().startswith("sha256="):
        normalized = normalized[len("sha256="):].strip()
    if not SIGNATURE_RE.fullmatch(normalized):
        return False
    expected = compute_signature(payload, secret)
    return hmac.compare_digest(expected.encode("ascii"), normalized.lower().encode("ascii"))


def _reject(reason: str, message: str, status_code: int, *, tx_ref=None, metadata=None) -> WebhookRejected:
    audit_service.record(
        audit_service.ACTION_WEBHOOK,
        reason,
        tx_ref=tx_ref,
        metadata=metadata,
        error=message,
    )
    return WebhookRejected(message, status_code=status_code, reason=reason)


def _check_timestamp(timestamp: str | None) -> None:
    if not timestamp:
        return
    max_age_ms = current_app.config.get("WEBHOOK_MAX_AGE_SECONDS", 300) * 1000
    try:
        sent_ms = int(timestamp)
    except ValueError:
        raise _reject("stale", "Webhook timestamp invalid", 400, metadata={"timestamp": timestamp})
    age_ms = epoch_millis() - sent_ms
    if age_ms > max_age_ms:
        raise _reject("stale", "Webhook expired", 400, metadata={"timestamp": timestamp, "age_ms": age_ms})


def _parse_payload(raw_body: bytes) -> dict:
    try:
        data = json.loads(raw_body or b"")
    except ValueError:
        raise _reject("invalid_payload", "Invalid JSON", 400)
    if not isinstance(data, dict):
        raise _reject("invalid_payload", "Invalid payload", 400)

    tx_ref = data.get("tx_ref")
    if not isinstance(tx_ref, str) or not tx_ref.strip():
        raise _reject("invalid_payload", "tx_ref is required", 400)
    status = data.get("status")
    if status is not None and not isinstance(status, str):
        raise _reject("invalid_payload", "status must be a string", 400, tx_ref=tx_ref)
    processor_ref = data.get("processor_ref")
    if processor_ref is not None and not isinstance(processor_ref, str):
        raise _reject("invalid_payload", "processor_ref must be a string", 400, tx_ref=tx_ref)
    return {"tx_ref": tx_ref.strip(), "status": status, "processor_ref": processor_ref}


def _duplicate(tx_ref: str, event_id: int | None = None) -> dict:
    audit_service.record(
        audit_service.ACTION_WEBHOOK,
        "duplicate",
        tx_ref=tx_ref,
        metadata={"event_id": event_id} if event_id is not None else None,
    )
    return {"success": True, "duplicate": True, "payment": None}


def handle_callback(
    raw_body: bytes,
    signature: str | None,
    timestamp: str | None = None,
    *,
    ip_address: str | None = None,
) -> dict:
    """
    Process one processor callback.

    Returns:
        {"success": True, "duplicate": bool, "payment": dict | None}

    Raises:
        WebhookRejected: verification failed (nothing was changed)
        MarketError: settlement failed (no dedup claim recorded)
    """
    allowed_ips = current_app.config.get("WEBHOOK_ALLOWED_IPS") or []
    if allowed_ips and ip_address not in allowed_ips:
        raise _reject("unauthorized_ip", "Unauthorized IP address", 403, metadata={"ip": ip_address})

    secret = current_app.config.get("PAYMENT_WEBHOOK_SECRET")
    if not secret:
        raise _reject("config_error", "Webhook secret not configured", 500)
    if not signature:
        raise _reject("missing_signature", "Missing signature", 401)
    if not verify_signature(raw_body, signature, secret):
        raise _reject(
            "invalid_signature",
            "Invalid signature",
            401,
            metadata={"signature_prefix": signature[:10]},
        )
    _check_timestamp(timestamp)

    data = _parse_payload(raw_body)
    tx_ref = data["tx_ref"]
    status = map_processor_status(data["status"])

    webhook_event = None
    if status == PAYMENT_STATUS_PENDING:
        # A late pending after the terminal callback was admitted changes nothing
        if idempotency_service.is_processed(tx_ref):
            return _duplicate(tx_ref)
    else:
        webhook_event = (f"payment.{data['status'] or 'unknown'}", signature)

    try:
        payment = payment_service.update_status(
            tx_ref,
            status,
            data["processor_ref"],
            webhook_event=webhook_event,
        )
    except idempotency_service.DuplicateEvent as exc:
        return _duplicate(tx_ref, exc.event_id)
    except Exception as exc:
        audit_service.record(
            audit_service.ACTION_WEBHOOK,
            "error",
            tx_ref=tx_ref,
            metadata={"status": status},
            error=str(exc),
        )
        raise

    audit_service.record(
        audit_service.ACTION_WEBHOOK,
        "success",
        payment=payment,
        metadata={"status": status, "processor_status": data["status"]},
    )
    return {"success": True, "duplicate": False, "payment": payment.to_dict()}
