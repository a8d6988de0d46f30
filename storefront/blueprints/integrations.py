from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from storefront.blueprints.helpers import get_email_service, get_order_service, json_payload

integrations_bp = Blueprint("integrations", __name__, url_prefix="/api")
logger = logging.getLogger(__name__)


def _email_response(result):
    body = result.to_dict()
    if not result.success:
        return jsonify(body), 500
    return jsonify(body), 200


@integrations_bp.route("/send-order-email", methods=["POST"])
def send_order_email():
    try:
        result = get_email_service().send_order_email(json_payload())
    except ValueError as exc:
        return jsonify({"success": False, "error": str(exc)}), 400
    return _email_response(result)


@integrations_bp.route("/send-subscription-email", methods=["POST"])
def send_subscription_email():
    try:
        result = get_email_service().send_subscription_email(json_payload())
    except ValueError as exc:
        return jsonify({"success": False, "error": str(exc)}), 400
    return _email_response(result)


@integrations_bp.route("/shop-webhook", methods=["POST"])
def shop_webhook():
    source = request.args.get("source", "unknown")
    success, message, order = get_order_service().ingest_external_order(json_payload(), source)
    if not success:
        logger.warning("Rejected webhook from %s: %s", source, message)
        return jsonify({"success": False, "error": message}), 400
    return jsonify(
        {
            "success": True,
            "order_id": order.orderID,
            "order_number": order.order_number,
            "message": "Order created successfully",
        }
    )
