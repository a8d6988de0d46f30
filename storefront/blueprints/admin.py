from __future__ import annotations

from datetime import date
from typing import Any, Dict

from flask import Blueprint, jsonify, request

from storefront.blueprints.helpers import (
    admin_required,
    current_profile,
    get_analytics_service,
    get_catalog_service,
    get_email_service,
    get_order_service,
    get_returns_service,
    get_subscription_service,
    get_ticket_service,
    json_payload,
    not_found_or_bad_request,
    parse_int,
)
from storefront.models import EmailLog, EmailStatus
from storefront.services.catalog_service import serialize_coupon, serialize_product, serialize_variant
from storefront.services.order_service import serialize_order
from storefront.services.returns_service import serialize_return
from storefront.services.ticket_service import serialize_reply, serialize_ticket

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


def _failure(message: str):
    return jsonify({"success": False, "error": message}), not_found_or_bad_request(message)


def _bad_filter(exc: ValueError):
    return jsonify({"error": f"Invalid filter: {exc}"}), 400


def serialize_email_log(entry: EmailLog) -> Dict[str, Any]:
    return {
        "id": entry.emailLogID,
        "type": entry.type,
        "recipient_email": entry.recipient_email,
        "recipient_name": entry.recipient_name,
        "subject": entry.subject,
        "status": EmailStatus(entry.status).value,
        "error_message": entry.error_message,
        "provider_id": entry.provider_id,
        "metadata": entry.details or {},
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


# ---------------------------
# Orders
# ---------------------------


@admin_bp.route("/orders", methods=["GET"])
@admin_required
def list_orders():
    ok, limit = parse_int(request.args.get("limit"))
    if not ok:
        return jsonify({"error": "limit must be an integer"}), 400
    try:
        orders = get_order_service().list_orders(
            search=request.args.get("search"),
            status=request.args.get("status"),
            limit=limit,
        )
    except ValueError as exc:
        return _bad_filter(exc)
    return jsonify({"orders": [serialize_order(order, include_items=False) for order in orders]})


@admin_bp.route("/orders/stats", methods=["GET"])
@admin_required
def order_stats():
    return jsonify(get_order_service().order_stats())


@admin_bp.route("/orders/<order_ref>", methods=["GET"])
@admin_required
def get_order(order_ref: str):
    order = get_order_service().get_order(order_ref)
    if not order:
        return jsonify({"error": "Order not found"}), 404
    return jsonify({"order": serialize_order(order)})


@admin_bp.route("/orders/<int:order_id>/status", methods=["POST"])
@admin_required
def update_order_status(order_id: int):
    payload = json_payload()
    success, message, order = get_order_service().update_order_status(
        order_id,
        payload.get("status") or "",
        tracking_number=payload.get("tracking_number"),
        carrier=payload.get("carrier"),
    )
    if not success:
        return _failure(message)
    return jsonify({"success": True, "message": message, "order": serialize_order(order)})


@admin_bp.route("/orders/<int:order_id>/payment", methods=["POST"])
@admin_required
def update_payment_status(order_id: int):
    success, message, order = get_order_service().update_payment_status(
        order_id, json_payload().get("payment_status") or ""
    )
    if not success:
        return _failure(message)
    return jsonify({"success": True, "message": message, "order": serialize_order(order)})


# ---------------------------
# Tickets
# ---------------------------


@admin_bp.route("/tickets", methods=["GET"])
@admin_required
def list_tickets():
    service = get_ticket_service()
    try:
        tickets = service.list_tickets(request.args.get("status"), request.args.get("priority"))
    except ValueError as exc:
        return _bad_filter(exc)
    return jsonify(
        {
            "tickets": [serialize_ticket(ticket) for ticket in tickets],
            "stats": service.ticket_stats(),
        }
    )


@admin_bp.route("/tickets/<int:ticket_id>", methods=["GET"])
@admin_required
def get_ticket(ticket_id: int):
    ticket = get_ticket_service().get_ticket(ticket_id)
    if not ticket:
        return jsonify({"error": "Ticket not found"}), 404
    return jsonify({"ticket": serialize_ticket(ticket, include_replies=True)})


@admin_bp.route("/tickets/<int:ticket_id>/replies", methods=["POST"])
@admin_required
def add_ticket_reply(ticket_id: int):
    payload = json_payload()
    profile = current_profile()
    success, message, reply = get_ticket_service().add_reply(
        ticket_id,
        payload.get("message") or "",
        author_name=payload.get("author_name") or profile.full_name,
        author_id=profile.profileID,
        is_internal=bool(payload.get("is_internal")),
        is_staff=True,
    )
    if not success:
        return _failure(message)
    return jsonify({"success": True, "message": message, "reply": serialize_reply(reply)}), 201


@admin_bp.route("/tickets/<int:ticket_id>/status", methods=["POST"])
@admin_required
def update_ticket_status(ticket_id: int):
    success, message, ticket = get_ticket_service().update_status(ticket_id, json_payload().get("status") or "")
    if not success:
        return _failure(message)
    return jsonify({"success": True, "message": message, "ticket": serialize_ticket(ticket)})


@admin_bp.route("/tickets/<int:ticket_id>/assign", methods=["POST"])
@admin_required
def assign_ticket(ticket_id: int):
    success, message, ticket = get_ticket_service().assign(ticket_id, json_payload().get("assignee"))
    if not success:
        return _failure(message)
    return jsonify({"success": True, "message": message, "ticket": serialize_ticket(ticket)})


@admin_bp.route("/tickets/<int:ticket_id>/priority", methods=["POST"])
@admin_required
def set_ticket_priority(ticket_id: int):
    success, message, ticket = get_ticket_service().set_priority(ticket_id, json_payload().get("priority") or "")
    if not success:
        return _failure(message)
    return jsonify({"success": True, "message": message, "ticket": serialize_ticket(ticket)})


# ---------------------------
# Returns
# ---------------------------


@admin_bp.route("/returns", methods=["GET"])
@admin_required
def list_returns():
    try:
        returns = get_returns_service().list_returns(request.args.get("status"))
    except ValueError as exc:
        return _bad_filter(exc)
    return jsonify({"returns": [serialize_return(item) for item in returns]})


@admin_bp.route("/returns/<int:return_id>/status", methods=["POST"])
@admin_required
def update_return_status(return_id: int):
    payload = json_payload()
    success, message, return_request = get_returns_service().update_return_status(
        return_id,
        payload.get("status") or "",
        tracking_number=payload.get("tracking_number"),
        notes=payload.get("notes"),
    )
    if not success:
        return _failure(message)
    return jsonify({"success": True, "message": message, "return": serialize_return(return_request)})


# ---------------------------
# Subscriptions
# ---------------------------


@admin_bp.route("/subscriptions/<int:subscription_id>/deliveries", methods=["POST"])
@admin_required
def record_subscription_delivery(subscription_id: int):
    raw = json_payload().get("delivered_on")
    try:
        delivered_on = date.fromisoformat(raw) if raw else None
    except (TypeError, ValueError):
        return jsonify({"success": False, "error": "delivered_on must be YYYY-MM-DD"}), 400
    service = get_subscription_service()
    success, message, subscription = service.record_delivery(subscription_id, delivered_on)
    if not success:
        return _failure(message)
    return jsonify({"success": True, "message": message, "subscription": service.serialize_for_customer(subscription)})


# ---------------------------
# Catalog administration
# ---------------------------


@admin_bp.route("/products", methods=["GET"])
@admin_required
def list_all_products():
    catalog = get_catalog_service()
    products = catalog.list_products(include_inactive=True)
    return jsonify({"products": [serialize_product(product) for product in products]})


@admin_bp.route("/products", methods=["POST"])
@admin_required
def create_product():
    success, message, product = get_catalog_service().create_product(json_payload())
    if not success:
        return _failure(message)
    return jsonify({"success": True, "product": serialize_product(product)}), 201


@admin_bp.route("/products/<int:product_id>", methods=["PUT", "PATCH"])
@admin_required
def update_product(product_id: int):
    success, message, product = get_catalog_service().update_product(product_id, json_payload())
    if not success:
        return _failure(message)
    return jsonify({"success": True, "product": serialize_product(product)})


@admin_bp.route("/products/<int:product_id>/active", methods=["POST"])
@admin_required
def set_product_active(product_id: int):
    success, message, product = get_catalog_service().set_active(
        product_id, bool(json_payload().get("is_active", True))
    )
    if not success:
        return _failure(message)
    return jsonify({"success": True, "message": message, "product": serialize_product(product)})


@admin_bp.route("/products/<int:product_id>/variants", methods=["POST"])
@admin_required
def create_variant(product_id: int):
    success, message, variant = get_catalog_service().upsert_variant(product_id, json_payload())
    if not success:
        return _failure(message)
    return jsonify({"success": True, "variant": serialize_variant(variant)}), 201


@admin_bp.route("/products/<int:product_id>/variants/<int:variant_id>", methods=["PUT", "PATCH"])
@admin_required
def update_variant(product_id: int, variant_id: int):
    success, message, variant = get_catalog_service().upsert_variant(product_id, json_payload(), variant_id)
    if not success:
        return _failure(message)
    return jsonify({"success": True, "variant": serialize_variant(variant)})


@admin_bp.route("/categories", methods=["POST"])
@admin_required
def create_category():
    payload = json_payload()
    success, message, category = get_catalog_service().create_category(payload.get("name"), payload.get("slug"))
    if not success:
        return _failure(message)
    return jsonify({"success": True, "category": {"id": category.categoryID, "name": category.name, "slug": category.slug}}), 201


@admin_bp.route("/coupons", methods=["POST"])
@admin_required
def create_coupon():
    success, message, coupon = get_catalog_service().create_coupon(json_payload())
    if not success:
        return _failure(message)
    return jsonify({"success": True, "coupon": serialize_coupon(coupon)}), 201


# ---------------------------
# Email logs & analytics
# ---------------------------


@admin_bp.route("/email-logs", methods=["GET"])
@admin_required
def email_logs():
    ok, limit = parse_int(request.args.get("limit"), default=100)
    if not ok:
        return jsonify({"error": "limit must be an integer"}), 400
    service = get_email_service()
    try:
        logs = service.list_email_logs(request.args.get("status"), request.args.get("type"), limit=limit)
    except ValueError as exc:
        return _bad_filter(exc)
    return jsonify({"logs": [serialize_email_log(entry) for entry in logs], "stats": service.email_log_stats()})


@admin_bp.route("/email-logs/<int:log_id>/resend", methods=["POST"])
@admin_required
def resend_email(log_id: int):
    success, message, entry = get_email_service().resend_log(log_id, resent_by=current_profile().profileID)
    if entry is None:
        return jsonify({"error": message}), 404
    if not success:
        return jsonify({"success": False, "error": message}), 500
    return jsonify({"success": True, "resendId": entry.provider_id, "log": serialize_email_log(entry)})


@admin_bp.route("/analytics", methods=["GET"])
@admin_required
def analytics():
    ok, days = parse_int(request.args.get("days"), default=30)
    if not ok or days is None or days < 1:
        return jsonify({"error": "days must be a positive integer"}), 400
    return jsonify(get_analytics_service().dashboard(days=days))
