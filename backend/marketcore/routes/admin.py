# Overview: Flask API routes for platform administration (payments, refunds, audit, subscriptions, users).

from flask import Blueprint, request, jsonify, g, current_app

from ..services import audit_service, identity_service, payment_service, subscription_service
from ..validation import MarketError, require_positive_int
from ..decorators import require_auth, require_role


admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


@admin_bp.get("/payments")
@require_auth
@require_role("admin")
def list_payments_route():
    """All payments, newest first. Optional ?status=, ?payment_type=, ?limit=."""
    try:
        limit = min(request.args.get("limit", 100, type=int), 500)
        payments = payment_service.list_all(
            status=request.args.get("status"),
            payment_type=request.args.get("payment_type"),
            limit=limit,
        )
        return jsonify({"payments": [p.to_dict() for p in payments]}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list payments")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.get("/payments/<int:payment_id>")
@require_auth
@require_role("admin")
def get_payment_route(payment_id: int):
    try:
        payment = payment_service.get_by_id(payment_id)
        return jsonify({
            "payment": payment.to_dict(),
            "audit_logs": [log.to_dict() for log in audit_service.for_payment(payment.id)],
        }), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get payment")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/payments/<int:payment_id>/refunds")
@require_auth
@require_role("admin")
def refund_payment_route(payment_id: int):
    """
    Record a refund already issued at the processor.

    Request body:
    {
        "amount_cents": 500,
        "reason": "Damaged goods",  (optional)
        "reference": "RF-1001"  (optional, processor refund id)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        if data.get("amount_cents") is None:
            return jsonify({"error": "amount_cents is required"}), 400

        payment = payment_service.record_refund(
            g.current_user,
            payment_id,
            require_positive_int(data["amount_cents"], "amount_cents"),
            reason=data.get("reason"),
            reference=data.get("reference"),
        )
        return jsonify({"payment": payment.to_dict()}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to record refund")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.get("/audit-logs")
@require_auth
@require_role("admin")
def list_audit_logs_route():
    """Recent payment audit entries. Optional ?action=, ?tx_ref=, ?limit=."""
    try:
        tx_ref = request.args.get("tx_ref")
        if tx_ref:
            logs = audit_service.for_tx_ref(tx_ref)
        else:
            limit = min(request.args.get("limit", 100, type=int), 500)
            logs = audit_service.list_recent(limit=limit, action=request.args.get("action"))
        return jsonify({"audit_logs": [log.to_dict() for log in logs]}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list audit logs")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.get("/subscriptions")
@require_auth
@require_role("admin")
def list_subscriptions_route():
    try:
        subscriptions = subscription_service.list_all(request.args.get("status"))
        return jsonify({"subscriptions": [s.to_dict(include_plan=True) for s in subscriptions]}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list subscriptions")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.patch("/subscriptions/<int:subscription_id>/status")
@require_auth
@require_role("admin")
def update_subscription_status_route(subscription_id: int):
    """Manual override, e.g. activating an enterprise (custom-priced) subscription."""
    try:
        data = request.get_json(silent=True) or {}
        status = data.get("status")
        if not status:
            return jsonify({"error": "status is required"}), 400

        subscription = subscription_service.update_status(subscription_id, status)
        return jsonify({"subscription": subscription.to_dict()}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update subscription status")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/businesses")
@require_auth
@require_role("admin")
def register_business_route():
    """Request body: {"owner_id": 4, "name": "Addis Coffee Exporters"}"""
    try:
        data = request.get_json(silent=True) or {}
        if data.get("owner_id") is None:
            return jsonify({"error": "owner_id is required"}), 400

        business = identity_service.register_business(data["owner_id"], data.get("name") or "")
        return jsonify({"business": business.to_dict()}), 201
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to register business")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.patch("/users/<int:user_id>/role")
@require_auth
@require_role("admin")
def set_user_role_route(user_id: int):
    try:
        data = request.get_json(silent=True) or {}
        role = data.get("role")
        if not role:
            return jsonify({"error": "role is required"}), 400

        user = identity_service.set_role(user_id, role)
        return jsonify({"user": user.to_dict()}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to set user role")
        return jsonify({"error": "Internal server error"}), 500
