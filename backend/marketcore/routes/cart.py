# Overview: Flask API routes for the buyer cart; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g, current_app

from ..services import cart_service, checkout_service
from ..validation import MarketError
from ..decorators import require_auth


cart_bp = Blueprint("cart", __name__, url_prefix="/api/cart")


@cart_bp.get("")
@require_auth
def get_cart_route():
    """Cart lines with subtotal, buyer fee and total (cents)."""
    try:
        return jsonify(cart_service.list_cart(g.current_user)), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load cart")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.get("/quote")
@require_auth
def quote_cart_route():
    """Validated quote of the current cart (fails on empty cart or stock issues)."""
    try:
        return jsonify(checkout_service.quote_cart(g.current_user)), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to quote cart")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.post("/items")
@require_auth
def add_item_route():
    """
    Add a product to the cart.

    Request body:
    {
        "product_id": 12,
        "quantity": 2
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        product_id = data.get("product_id")
        if product_id is None:
            return jsonify({"error": "product_id is required"}), 400

        item = cart_service.add_to_cart(g.current_user, product_id, data.get("quantity", 1))
        return jsonify({"item": item.to_dict()}), 201
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to add cart item")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.patch("/items/<int:item_id>")
@require_auth
def update_item_route(item_id: int):
    """quantity <= 0 removes the line."""
    try:
        data = request.get_json(silent=True) or {}
        if "quantity" not in data:
            return jsonify({"error": "quantity is required"}), 400

        item = cart_service.update_cart_item(g.current_user, item_id, data["quantity"])
        return jsonify({"item": item.to_dict() if item else None, "removed": item is None}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update cart item")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.delete("/items/<int:item_id>")
@require_auth
def remove_item_route(item_id: int):
    try:
        cart_service.remove_cart_item(g.current_user, item_id)
        return jsonify({"removed": True}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to remove cart item")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.delete("")
@require_auth
def clear_cart_route():
    try:
        removed = cart_service.clear_cart(g.current_user)
        return jsonify({"removed": removed}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to clear cart")
        return jsonify({"error": "Internal server error"}), 500
