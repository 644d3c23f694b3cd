# Overview: Flask API routes for seller inventory; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g, current_app

from ..services import inventory_service
from ..validation import MarketError
from ..decorators import require_auth, require_role


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.get("")
@require_auth
@require_role("seller")
def list_inventory_route():
    """Seller's products with stock status and value. Optional ?status=in_stock|low_stock|out_of_stock."""
    try:
        return jsonify(inventory_service.list_inventory(g.current_user, request.args.get("status"))), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list inventory")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/transactions")
@require_auth
@require_role("seller")
def list_transactions_route():
    try:
        product_id = request.args.get("product_id", type=int)
        limit = min(request.args.get("limit", 50, type=int), 500)
        txs = inventory_service.list_transactions(g.current_user, product_id=product_id, limit=limit)
        return jsonify({"transactions": [tx.to_dict() for tx in txs]}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list inventory transactions")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/adjust")
@require_auth
@require_role("seller")
def adjust_stock_route():
    """
    Apply a signed stock change through the ledger.

    Request body:
    {
        "product_id": 12,
        "quantity_delta": -3,
        "type": "adjustment" | "restock" | "damage" | "return",  (optional)
        "reason": "Cycle count",  (optional)
        "reference": "PO-1001"  (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        missing = [f for f in ("product_id", "quantity_delta") if data.get(f) is None]
        if missing:
            return jsonify({"error": f"Missing required fields: {', '.join(missing)}"}), 400

        result = inventory_service.adjust_stock(
            g.current_user,
            data["product_id"],
            data["quantity_delta"],
            reason=data.get("reason"),
            tx_type=data.get("type"),
            reference=data.get("reference"),
        )
        return jsonify(result), 201
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.patch("/products/<int:product_id>/thresholds")
@require_auth
@require_role("seller")
def update_thresholds_route(product_id: int):
    try:
        data = request.get_json(silent=True) or {}
        product = inventory_service.update_thresholds(
            g.current_user,
            product_id,
            low_stock_threshold=data.get("low_stock_threshold"),
            reorder_quantity=data.get("reorder_quantity"),
        )
        return jsonify({"product": product.to_dict()}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update stock thresholds")
        return jsonify({"error": "Internal server error"}), 500
