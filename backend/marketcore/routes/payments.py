# Overview: Flask API routes for payments and the processor webhook.

from flask import Blueprint, request, jsonify, g, current_app

from ..services import audit_service, payment_service, processor_service
from ..validation import MarketError, require_int
from ..decorators import rate_limit, require_auth


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


@payments_bp.post("")
@require_auth
@rate_limit(
    "payment_init",
    "RATE_LIMIT_PAYMENT_INIT_PER_MINUTE",
    audit_action=audit_service.ACTION_CREATE,
    per_user=True,
)
def create_payment_route():
    """
    Create a pending payment.

    The Idempotency-Key header (or body field idempotency_key) makes retries
    return the original payment instead of creating another.

    Request body:
    {
        "amount_cents": 35350,
        "currency": "ETB",
        "payment_type": "order" | "subscription",
        "metadata": {"plan_id": 1, "billing_cycle": "monthly", "business_id": 3},
        "checkout_url": "https://..."  (optional)
    }

    Returns:
        201: {"payment": {...}, "created": true}
        200: {"payment": {...}, "created": false}  replay of an idempotent request
    """
    try:
        data = request.get_json(silent=True) or {}
        missing = [f for f in ("amount_cents", "currency", "payment_type") if data.get(f) in (None, "")]
        if missing:
            return jsonify({"error": f"Missing required fields: {', '.join(missing)}"}), 400

        amount_cents = require_int(data["amount_cents"], "amount_cents")
        idempotency_key = request.headers.get("Idempotency-Key") or data.get("idempotency_key")

        payment, created = payment_service.create_payment(
            g.current_user,
            amount_cents=amount_cents,
            currency=str(data["currency"]).upper(),
            payment_type=data["payment_type"],
            metadata=data.get("metadata"),
            idempotency_key=idempotency_key,
            checkout_url=data.get("checkout_url"),
        )
        return jsonify({"payment": payment.to_dict(), "created": created}), (201 if created else 200)
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("")
@require_auth
def list_payments_route():
    """Current user's payments, newest first. Optional ?status= filter."""
    try:
        payments = payment_service.list_payments(g.current_user, request.args.get("status"))
        return jsonify({"payments": [p.to_dict() for p in payments]}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list payments")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/by-key/<string:key>")
@require_auth
def get_payment_by_key_route(key: str):
    try:
        payment = payment_service.get_by_idempotency_key(g.current_user, key)
        if payment is None:
            return jsonify({"error": "Payment not found", "code": "not_found"}), 404
        return jsonify({"payment": payment.to_dict()}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get payment by idempotency key")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/<string:tx_ref>")
@require_auth
def get_payment_route(tx_ref: str):
    try:
        payment = payment_service.get_by_tx_ref(g.current_user, tx_ref)
        return jsonify({"payment": payment.to_dict()}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/<string:tx_ref>/order")
@require_auth
def get_payment_orders_route(tx_ref: str):
    """Payment with the orders it produced."""
    try:
        return jsonify(payment_service.get_with_order(g.current_user, tx_ref)), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get payment orders")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/<string:tx_ref>/cancel")
@require_auth
def cancel_payment_route(tx_ref: str):
    try:
        payment = payment_service.cancel_payment(g.current_user, tx_ref)
        return jsonify({"payment": payment.to_dict()}), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/webhook")
@rate_limit("webhook", "RATE_LIMIT_WEBHOOK_PER_MINUTE", audit_action=audit_service.ACTION_WEBHOOK)
def payment_webhook_route():
    """
    Processor callback. Authenticated by HMAC, not by user identity.

    Headers:
        X-Webhook-Signature: hex HMAC-SHA256 of the raw body (optional "sha256=" prefix)
        X-Webhook-Timestamp: epoch milliseconds (optional; enforced when present)

    The signature covers the exact bytes sent, so the body is read raw.
    Sources outside WEBHOOK_ALLOWED_IPS get 403; bursts past the per-address
    limit get 429.
    """
    try:
        result = processor_service.handle_callback(
            request.get_data(),
            request.headers.get("X-Webhook-Signature"),
            request.headers.get("X-Webhook-Timestamp"),
            ip_address=audit_service.client_ip(),
        )
        return jsonify(result), 200
    except MarketError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to process payment webhook")
        return jsonify({"error": "Internal server error"}), 500
