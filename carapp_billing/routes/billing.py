from decimal import Decimal, InvalidOperation

from flask import Blueprint, current_app, jsonify, request

from carapp_billing.errors import NotFoundError
from carapp_billing.services import build_ledger, build_scheduler, build_store
from carapp_billing.utils.time import utcnow

billing_bp = Blueprint("billing", __name__, url_prefix="/api")


@billing_bp.route("/recurring-payments/process", methods=["POST"])
def process_recurring_payments():
    """Manual trigger for one billing run."""
    report = build_scheduler().run()
    return jsonify(report.to_dict()), 200


@billing_bp.route("/recurring-payments/upcoming", methods=["GET"])
def upcoming_payments():
    hours = request.args.get("hours", default=24, type=int)
    if hours <= 0:
        return jsonify({"error": "hours must be positive"}), 400

    subscriptions = build_store().upcoming(utcnow(), hours)
    return jsonify({
        "hours": hours,
        "count": len(subscriptions),
        "subscriptions": [s.to_dict() for s in subscriptions],
    }), 200


@billing_bp.route("/recurring-payments/process-by-order/<order_id>", methods=["POST"])
def process_by_order(order_id):
    data = request.get_json(silent=True) or {}
    try:
        amount = Decimal(str(data["amount"]))
    except (KeyError, InvalidOperation):
        return jsonify({"error": "A numeric amount is required"}), 400
    if amount <= 0:
        return jsonify({"error": "amount must be positive"}), 400

    result = build_scheduler().charge_by_order_id(
        order_id,
        amount,
        external_order_id=data.get("external_order_id"),
        currency=data.get("currency") or current_app.config.get("DEFAULT_CURRENCY", "GEL"),
    )
    return jsonify(result), 201


@billing_bp.route("/subscriptions/<subscription_id>/reactivate", methods=["POST"])
def reactivate_subscription(subscription_id):
    subscription = build_store().reactivate(subscription_id, now=utcnow())
    return jsonify(subscription.to_dict()), 200


@billing_bp.route("/subscriptions/<subscription_id>/cancel", methods=["POST"])
def cancel_subscription(subscription_id):
    subscription = build_store().cancel(subscription_id)
    return jsonify(subscription.to_dict()), 200


@billing_bp.route("/payments/user/<user_id>", methods=["GET"])
def user_payments(user_id):
    payments = build_ledger().list_for_user(user_id)
    return jsonify([p.to_dict() for p in payments]), 200


@billing_bp.route("/payments/user/<user_id>/token", methods=["GET"])
def user_payment_token(user_id):
    """Saved-card reference the next recurring charge for this user would use."""
    payment = build_ledger().find_latest_completed_with_instrument_ref(user_id)
    if payment is None:
        return jsonify({
            "success": False,
            "message": "Payment token not found for this user",
            "data": None,
        }), 404

    return jsonify({
        "success": True,
        "data": {"payment_token": payment.instrument_ref, "order_id": payment.order_id},
    }), 200


@billing_bp.route("/payments/save-token", methods=["POST"])
def save_payment_token():
    data = request.get_json(silent=True) or {}
    order_id = data.get("order_id") or data.get("orderId")
    payment_token = data.get("payment_token") or data.get("paymentToken")
    if not order_id or not payment_token:
        return jsonify({"error": "order_id and payment_token are required"}), 400

    payment = build_ledger().attach_instrument_token(order_id, payment_token)
    if payment is None:
        raise NotFoundError(f"No payment found for order {order_id}")

    return jsonify({
        "success": True,
        "message": "Payment token saved successfully",
        "data": payment.to_dict(),
    }), 200
