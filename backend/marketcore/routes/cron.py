# Overview: Maintenance endpoints for an external scheduler, guarded by the cron secret.

from flask import Blueprint, request, jsonify, current_app

from ..services import maintenance_service
from ..validation import MarketError, require_int
from ..decorators import require_cron_secret


cron_bp = Blueprint("cron", __name__, url_prefix="/api/cron")


@cron_bp.post("/subscriptions/process-expired")
@require_cron_secret
def process_expired_subscriptions_route():
    """
    Advance subscriptions whose period has elapsed.

    Returns:
        200: {"success": true, "processed": n, "expired": n, "cancelled": n, "past_due": n}
    """
    try:
        result = maintenance_service.process_subscriptions()
        current_app.logger.info("Processed expired subscriptions: %s", result)
        return jsonify({"success": True, **result}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to process expired subscriptions")
        return jsonify({"error": "Internal server error"}), 500


@cron_bp.post("/webhook-events/cleanup")
@require_cron_secret
def cleanup_webhook_events_route():
    """
    Delete one batch of old webhook dedup rows.

    older_than_days comes from the JSON body or the query string and
    defaults to WEBHOOK_RETENTION_DAYS. Call again while has_more is true.
    """
    try:
        data = request.get_json(silent=True) or {}
        older_than_days = data.get("older_than_days")
        if older_than_days is None:
            older_than_days = request.args.get(
                "older_than_days",
                current_app.config["WEBHOOK_RETENTION_DAYS"],
                type=int,
            )
        result = maintenance_service.cleanup_webhook_events(
            older_than_days=require_int(older_than_days, "older_than_days"),
            batch_size=current_app.config["WEBHOOK_CLEANUP_BATCH_SIZE"],
        )
        current_app.logger.info("Webhook event cleanup: %s", result)
        return jsonify({"success": True, **result}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to clean up webhook events")
        return jsonify({"error": "Internal server error"}), 500
