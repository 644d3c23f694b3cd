# Overview: Flask API routes for business subscriptions, usage and plan limits.

from flask import Blueprint, request, jsonify, g, current_app

from ..models.subscriptions import BILLING_MONTHLY
from ..services import plan_limits_service, subscription_service
from ..validation import MarketError
from ..decorators import require_auth


subscriptions_bp = Blueprint("subscriptions", __name__, url_prefix="/api/subscriptions")


@subscriptions_bp.get("/current")
@require_auth
def current_subscription_route():
    """Subscription of the caller's business, or null when there is none."""
    try:
        subscription = subscription_service.get_current_subscription(g.current_user)
        return jsonify({
            "subscription": subscription.to_dict(include_plan=True) if subscription else None
        }), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get current subscription")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.get("/<int:subscription_id>")
@require_auth
def get_subscription_route(subscription_id: int):
    try:
        subscription = subscription_service.get_subscription(g.current_user, subscription_id)
        return jsonify({"subscription": subscription.to_dict(include_plan=True)}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get subscription")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.post("")
@require_auth
def create_subscription_route():
    """
    Create (or supersede) the subscription of a business.

    Request body:
    {
        "business_id": 3,
        "plan_id": 1,
        "billing_cycle": "monthly" | "annual",
        "start_trial": false,
        "payment_id": 17  (optional, a successful subscription payment)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        missing = [f for f in ("business_id", "plan_id") if data.get(f) is None]
        if missing:
            return jsonify({"error": f"Missing required fields: {', '.join(missing)}"}), 400

        subscription = subscription_service.create_subscription(
            g.current_user,
            data["business_id"],
            data["plan_id"],
            data.get("billing_cycle", BILLING_MONTHLY),
            start_trial=bool(data.get("start_trial", False)),
            payment_id=data.get("payment_id"),
        )
        return jsonify({"subscription": subscription.to_dict(include_plan=True)}), 201
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create subscription")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.post("/<int:subscription_id>/cancel")
@require_auth
def cancel_subscription_route(subscription_id: int):
    """Cancel at period end; access continues until then."""
    try:
        subscription = subscription_service.cancel_subscription(g.current_user, subscription_id)
        return jsonify({"subscription": subscription.to_dict()}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel subscription")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.post("/<int:subscription_id>/reactivate")
@require_auth
def reactivate_subscription_route(subscription_id: int):
    try:
        subscription = subscription_service.reactivate_subscription(g.current_user, subscription_id)
        return jsonify({"subscription": subscription.to_dict()}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to reactivate subscription")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.post("/<int:subscription_id>/change-plan")
@require_auth
def change_plan_route(subscription_id: int):
    try:
        data = request.get_json(silent=True) or {}
        if data.get("plan_id") is None:
            return jsonify({"error": "plan_id is required"}), 400

        subscription = subscription_service.change_plan(g.current_user, subscription_id, data["plan_id"])
        return jsonify({"subscription": subscription.to_dict(include_plan=True)}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to change subscription plan")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.get("/business/<int:business_id>/usage")
@require_auth
def usage_route(business_id: int):
    """Per-limit {used, limit, unlimited} for a business the caller owns."""
    try:
        subscription_service.require_business_owner(g.current_user, business_id)
        return jsonify({
            "business_id": business_id,
            "active": subscription_service.has_active_subscription(business_id),
            "usage": subscription_service.get_usage_stats(business_id),
        }), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get usage stats")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.get("/business/<int:business_id>/limits")
@require_auth
def limits_route(business_id: int):
    try:
        subscription_service.require_business_owner(g.current_user, business_id)
        limits = plan_limits_service.get_business_limits(business_id)
        return jsonify({"business_id": business_id, "limits": limits.to_dict()}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get plan limits")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.get("/business/<int:business_id>/limits/<string:kind>")
@require_auth
def check_limit_route(business_id: int, kind: str):
    """Would one more unit of `kind` fit the plan?"""
    try:
        subscription_service.require_business_owner(g.current_user, business_id)
        result = plan_limits_service.check_limit(kind, business_id=business_id)
        return jsonify(result.to_dict()), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to check plan limit")
        return jsonify({"error": "Internal server error"}), 500


@subscriptions_bp.post("/business/<int:business_id>/origin-calculations")
@require_auth
def record_origin_calculation_route(business_id: int):
    """
    Meter one origin calculation.

    Request body (all optional):
    {
        "product_id": 12,
        "origin_country": "ET",
        "destination_country": "KE"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        row = subscription_service.record_origin_calculation(
            g.current_user,
            business_id,
            product_id=data.get("product_id"),
            origin_country=data.get("origin_country"),
            destination_country=data.get("destination_country"),
        )
        return jsonify({"calculation": row.to_dict()}), 201
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to record origin calculation")
        return jsonify({"error": "Internal server error"}), 500
