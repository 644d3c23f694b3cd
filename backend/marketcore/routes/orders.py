# Overview: Flask API routes for orders; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g, current_app

from ..services import order_service
from ..validation import MarketError
from ..decorators import require_auth


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.get("/purchases")
@require_auth
def list_purchases_route():
    """Orders the current user bought. Optional ?status= filter."""
    try:
        orders = order_service.list_purchases(g.current_user, request.args.get("status"))
        return jsonify({"orders": [o.to_dict() for o in orders]}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list purchases")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/sales")
@require_auth
def list_sales_route():
    """Orders placed with the current user as seller. Optional ?status= filter."""
    try:
        orders = order_service.list_sales(g.current_user, request.args.get("status"))
        return jsonify({"orders": [o.to_dict() for o in orders]}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list sales")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
@require_auth
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(g.current_user, order_id)
        return jsonify({"order": order.to_dict(include_items=True)}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.patch("/<int:order_id>/status")
@require_auth
def update_order_status_route(order_id: int):
    """
    Request body:
    {
        "status": "processing" | "completed" | "cancelled"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        status = data.get("status")
        if not status:
            return jsonify({"error": "status is required"}), 400

        order = order_service.update_order_status(g.current_user, order_id, status)
        return jsonify({"order": order.to_dict()}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.delete("/<int:order_id>")
@require_auth
def delete_order_route(order_id: int):
    try:
        order_service.delete_order(g.current_user, order_id)
        return jsonify({"deleted": True}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to delete order")
        return jsonify({"error": "Internal server error"}), 500
