# Overview: Flask API routes for subscription plans (public catalog, admin management).

from flask import Blueprint, request, jsonify, g, current_app

from ..models.subscriptions import BILLING_MONTHLY
from ..services import plan_service
from ..validation import MarketError
from ..decorators import require_auth, require_role


plans_bp = Blueprint("plans", __name__, url_prefix="/api/plans")


@plans_bp.get("")
def list_plans_route():
    """Active plans ordered for display. ?include_inactive=true lists every plan."""
    try:
        include_inactive = request.args.get("include_inactive", "").lower() == "true"
        plans = plan_service.list_plans(active_only=not include_inactive)
        return jsonify({"plans": [p.to_dict() for p in plans]}), 200
    except Exception:
        current_app.logger.exception("Failed to list plans")
        return jsonify({"error": "Internal server error"}), 500


@plans_bp.get("/<int:plan_id>")
def get_plan_route(plan_id: int):
    try:
        return jsonify({"plan": plan_service.get_plan(plan_id).to_dict()}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get plan")
        return jsonify({"error": "Internal server error"}), 500


@plans_bp.get("/slug/<string:slug>")
def get_plan_by_slug_route(slug: str):
    try:
        return jsonify({"plan": plan_service.get_plan_by_slug(slug).to_dict()}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get plan")
        return jsonify({"error": "Internal server error"}), 500


@plans_bp.get("/<int:plan_id>/price")
def plan_price_route(plan_id: int):
    """Price for ?billing_cycle=monthly|annual, with annual savings."""
    try:
        plan = plan_service.get_plan(plan_id)
        cycle = request.args.get("billing_cycle", BILLING_MONTHLY)
        return jsonify(plan_service.calculate_price(plan, cycle)), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to calculate plan price")
        return jsonify({"error": "Internal server error"}), 500


@plans_bp.post("")
@require_auth
@require_role("admin")
def create_plan_route():
    try:
        plan = plan_service.create_plan(g.current_user, request.get_json(silent=True) or {})
        return jsonify({"plan": plan.to_dict()}), 201
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create plan")
        return jsonify({"error": "Internal server error"}), 500


@plans_bp.patch("/<int:plan_id>")
@require_auth
@require_role("admin")
def update_plan_route(plan_id: int):
    try:
        plan = plan_service.update_plan(g.current_user, plan_id, request.get_json(silent=True) or {})
        return jsonify({"plan": plan.to_dict()}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update plan")
        return jsonify({"error": "Internal server error"}), 500


@plans_bp.post("/<int:plan_id>/deactivate")
@require_auth
@require_role("admin")
def deactivate_plan_route(plan_id: int):
    try:
        plan = plan_service.deactivate_plan(g.current_user, plan_id)
        return jsonify({"plan": plan.to_dict()}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to deactivate plan")
        return jsonify({"error": "Internal server error"}), 500
