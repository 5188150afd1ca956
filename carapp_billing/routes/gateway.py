import logging
from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify, request

from carapp_billing.services import build_callback_service, get_credentials, get_gateway
from carapp_billing.utils.identifiers import build_external_order_id

logger = logging.getLogger(__name__)

gateway_bp = Blueprint("gateway", __name__, url_prefix="/bog")


@gateway_bp.route("/callback", methods=["POST"])
def callback():
    payload = request.get_json(silent=True) or {}
    logger.info("Gateway callback received", extra={"event": payload.get("event")})

    result = build_callback_service().handle(payload)
    if not result.get("order_id"):
        return jsonify(result), 400
    return jsonify(result), 200


@gateway_bp.route("/create-order", methods=["POST"])
def create_order():
    data = request.get_json(silent=True) or {}
    if data.get("total_amount") is None:
        return jsonify({"error": "total_amount is required"}), 400

    external_order_id = data.get("external_order_id")
    if not external_order_id:
        if not data.get("user_id"):
            return jsonify({"error": "external_order_id or user_id is required"}), 400
        external_order_id = build_external_order_id("carapp", data["user_id"])

    order = {
        "external_order_id": external_order_id,
        "total_amount": data["total_amount"],
        "currency": data.get("currency") or current_app.config.get("DEFAULT_CURRENCY", "GEL"),
        "product_id": data.get("product_id"),
        "description": data.get("description"),
        "callback_url": data.get("callback_url"),
        "success_url": data.get("success_url"),
        "fail_url": data.get("fail_url"),
    }
    created = get_gateway().create_order(order)
    return jsonify({**created, "external_order_id": external_order_id}), 201


@gateway_bp.route("/order-status/<order_id>", methods=["GET"])
def order_status(order_id):
    return jsonify(get_gateway().get_order_status(order_id)), 200


@gateway_bp.route("/payment-details/<order_id>", methods=["GET"])
def payment_details(order_id):
    return jsonify(get_gateway().get_payment_details(order_id)), 200


@gateway_bp.route("/oauth-status", methods=["GET"])
def oauth_status():
    credentials = get_credentials()
    expires_at = credentials.expires_at
    return jsonify({
        "is_valid": credentials.is_valid(),
        "expires_at": datetime.fromtimestamp(expires_at, tz=timezone.utc).isoformat() if expires_at else None,
    }), 200


@gateway_bp.route("/clear-token-cache", methods=["POST"])
def clear_token_cache():
    get_credentials().invalidate()
    return jsonify({"success": True, "message": "Token cache cleared"}), 200
