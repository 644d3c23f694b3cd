# Overview: Flask API route for direct checkout.

from flask import Blueprint, jsonify, g, current_app

from ..services import checkout_service
from ..validation import MarketError
from ..decorators import require_auth


checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/checkout")


@checkout_bp.post("")
@require_auth
def checkout_route():
    """
    Turn the cart into one pending order per seller.

    Returns:
        201: {"orders": [...]} with items
        400: empty cart, unavailable product, insufficient stock
        403: a seller's monthly order limit is exhausted
    """
    try:
        orders = checkout_service.checkout(g.current_user)
        return jsonify({"orders": [order.to_dict(include_items=True) for order in orders]}), 201
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to check out")
        return jsonify({"error": "Internal server error"}), 500
