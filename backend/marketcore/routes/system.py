# backend/marketcore/routes/system.py
"""
System health endpoint.

Reports database reachability and the size of the work queues the cron
endpoints drain.
"""

import time
from flask import Blueprint, current_app, jsonify
from sqlalchemy import text

from ..extensions import db
from ..models import Payment, WebhookEvent
from ..models.payments import PAYMENT_STATUS_PENDING

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        pending_payments = db.session.query(Payment).filter_by(status=PAYMENT_STATUS_PENDING).count()
        webhook_events = db.session.query(WebhookEvent).count()

        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "pending_payments": pending_payments,
                "webhook_events": webhook_events,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


@system_bp.get("/health")
def health():
    database = check_database_health()
    healthy = database["status"] == "healthy"
    return jsonify({
        "status": "healthy" if healthy else "unhealthy",
        "checks": {"database": database},
    }), (200 if healthy else 503)
