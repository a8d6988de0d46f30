from __future__ import annotations

import logging

from flask import Blueprint, jsonify

from storefront.blueprints.helpers import (
    current_profile,
    get_checkout_service,
    json_payload,
    request_origin,
)
from storefront.services.order_service import serialize_order
from storefront.services.payment_service import PaymentGatewayError

checkout_bp = Blueprint("checkout", __name__, url_prefix="/api")
logger = logging.getLogger(__name__)


@checkout_bp.route("/checkout/quote", methods=["POST"])
def quote():
    payload = json_payload()
    success, message, result = get_checkout_service().quote(payload.get("items"), payload.get("coupon_code"))
    if not success:
        return jsonify({"error": message}), 400
    return jsonify({"success": True, "quote": result.to_dict()})


@checkout_bp.route("/create-checkout", methods=["POST"])
def create_checkout():
    payload = json_payload()
    profile = current_profile()
    try:
        success, message, result = get_checkout_service().create_checkout(
            payload.get("items"),
            payload.get("payment_method"),
            origin=payload.get("origin") or request_origin(),
            email=payload.get("email"),
            name=payload.get("name"),
            profile_id=profile.profileID if profile else None,
            coupon_code=payload.get("coupon_code"),
            shipping_address=payload.get("shipping_address"),
        )
    except PaymentGatewayError as exc:
        return jsonify({"error": f"Zahlungsanbieter nicht erreichbar: {exc}"}), 502
    if not success:
        return jsonify({"error": message}), 400
    return jsonify(result)


@checkout_bp.route("/capture-paypal", methods=["POST"])
def capture_paypal():
    payload = json_payload()
    try:
        success, message, result = get_checkout_service().capture_paypal(payload.get("order_id"))
    except PaymentGatewayError as exc:
        logger.warning("PayPal capture failed: %s", exc)
        return jsonify({"error": str(exc)}), 502
    if not success:
        return jsonify({"error": message}), 400
    return jsonify(result)


@checkout_bp.route("/checkout/confirm", methods=["POST"])
def confirm_checkout():
    payload = json_payload()
    success, message, order = get_checkout_service().confirm_stripe_session(payload.get("session_id"))
    if not success:
        status = 404 if message == "Order not found" else (402 if message == "Payment not completed" else 400)
        return jsonify({"success": False, "error": message}), status
    return jsonify({"success": True, "message": message, "order": serialize_order(order)})
