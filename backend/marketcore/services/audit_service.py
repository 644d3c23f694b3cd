# Overview: Append-only payment audit trail.

from __future__ import annotations

import json

from flask import has_request_context, request

from ..extensions import db
from ..models import PaymentAuditLog


ACTION_CREATE = "create"
ACTION_STATUS_UPDATE = "status_update"
ACTION_FULFILMENT = "fulfilment"
ACTION_REFUND = "refund"
ACTION_CANCEL = "cancel"
ACTION_WEBHOOK = "webhook"


def client_ip() -> str | None:
    """
    Caller address for the active request.

    Proxy hops are unwrapped by ProxyFix (TRUSTED_PROXY_COUNT), so a client
    cannot choose its own address with a forwarded header.
    """
    if not has_request_context():
        return None
    return request.remote_addr


def _request_network_metadata() -> tuple[str | None, str | None]:
    if not has_request_context():
        return None, None
    user_agent = request.headers.get("User-Agent")
    return client_ip(), (user_agent[:255] if user_agent else None)


def record_inner(
    action: str,
    status: str,
    *,
    payment=None,
    user_id: int | None = None,
    tx_ref: str | None = None,
    metadata: dict | None = None,
    error: str | None = None,
) -> PaymentAuditLog:
    """
    Add an audit row to the current transaction (no commit).

    Use inside a service _op() so the row commits or rolls back with the
    state change it describes.
    """
    ip_address, user_agent = _request_network_metadata()
    entry = PaymentAuditLog(
        payment_id=payment.id if payment is not None else None,
        user_id=user_id if user_id is not None else (payment.user_id if payment is not None else None),
        action=action,
        status=status,
        tx_ref=tx_ref or (payment.tx_ref if payment is not None else None),
        ip_address=ip_address,
        user_agent=user_agent,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        error_message=error,
    )
    db.session.add(entry)
    return entry


def record(action: str, status: str, **kwargs) -> PaymentAuditLog:
    """Standalone audit write, committed immediately."""
    entry = record_inner(action, status, **kwargs)
    db.session.commit()
    return entry


def list_recent(limit: int = 100, action: str | None = None) -> list[PaymentAuditLog]:
    query = db.session.query(PaymentAuditLog)
    if action:
        query = query.filter(PaymentAuditLog.action == action)
    return query.order_by(PaymentAuditLog.id.desc()).limit(limit).all()


def for_payment(payment_id: int) -> list[PaymentAuditLog]:
    return (
        db.session.query(PaymentAuditLog)
        .filter_by(payment_id=payment_id)
        .order_by(PaymentAuditLog.id.asc())
        .all()
    )


def for_tx_ref(tx_ref: str) -> list[PaymentAuditLog]:
    return (
        db.session.query(PaymentAuditLog)
        .filter_by(tx_ref=tx_ref)
        .order_by(PaymentAuditLog.id.asc())
        .all()
    )
