from __future__ import annotations

from flask import Blueprint, jsonify, request

from storefront.blueprints.helpers import (
    current_profile,
    get_catalog_service,
    get_order_service,
    get_returns_service,
    get_subscription_service,
    get_ticket_service,
    json_payload,
    login_required,
    parse_int,
    request_origin,
)
from storefront.services.catalog_service import serialize_product
from storefront.services.order_service import serialize_order
from storefront.services.returns_service import serialize_return
from storefront.services.ticket_service import serialize_ticket

shop_bp = Blueprint("shop", __name__, url_prefix="/api")


def _parse_price(value):
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# ---------------------------
# Catalog
# ---------------------------


@shop_bp.route("/products", methods=["GET"])
def list_products():
    args = request.args
    products = get_catalog_service().list_products(
        category_slug=args.get("category"),
        gender=args.get("gender"),
        min_price=_parse_price(args.get("min_price")),
        max_price=_parse_price(args.get("max_price")),
        search=args.get("search"),
        in_stock_only=args.get("in_stock") in {"1", "true", "yes"},
        sort=args.get("sort", "newest"),
    )
    return jsonify({"products": [serialize_product(product) for product in products]})


@shop_bp.route("/products/<int:product_id>", methods=["GET"])
def get_product(product_id: int):
    product = get_catalog_service().get_product(product_id)
    if not product:
        return jsonify({"error": "Product not found"}), 404
    return jsonify({"product": serialize_product(product)})


@shop_bp.route("/categories", methods=["GET"])
def list_categories():
    categories = get_catalog_service().list_categories()
    return jsonify(
        {"categories": [{"id": c.categoryID, "name": c.name, "slug": c.slug} for c in categories]}
    )


# ---------------------------
# Customer account
# ---------------------------


@shop_bp.route("/orders", methods=["GET"])
@login_required
def my_orders():
    orders = get_order_service().list_customer_orders(current_profile().profileID)
    return jsonify({"orders": [serialize_order(order) for order in orders]})


@shop_bp.route("/returns", methods=["GET"])
@login_required
def my_returns():
    returns = get_returns_service().list_customer_returns(current_profile().profileID)
    return jsonify({"returns": [serialize_return(item) for item in returns]})


@shop_bp.route("/tickets", methods=["GET"])
@login_required
def my_tickets():
    tickets = get_ticket_service().list_customer_tickets(current_profile().profileID)
    return jsonify({"tickets": [serialize_ticket(ticket) for ticket in tickets]})


@shop_bp.route("/subscriptions", methods=["GET"])
@login_required
def my_subscriptions():
    service = get_subscription_service()
    subscriptions = service.list_for_profile(current_profile().profileID)
    return jsonify({"subscriptions": [service.serialize_for_customer(sub) for sub in subscriptions]})


@shop_bp.route("/subscriptions", methods=["POST"])
def create_subscription():
    payload = json_payload()
    ok, variant_id = parse_int(payload.get("variant_id"))
    if not ok or variant_id is None:
        return jsonify({"error": "variant_id is required"}), 400

    profile = current_profile()
    service = get_subscription_service()
    success, message, subscription = service.create_subscription(
        variant_id,
        payload.get("frequency") or "",
        profile_id=profile.profileID if profile else None,
        guest_email=None if profile else payload.get("email"),
        guest_name=None if profile else payload.get("name"),
    )
    if not success:
        return jsonify({"error": message}), 400

    body = {"success": True, "subscription": service.serialize_for_customer(subscription)}
    if subscription.guest_email:
        body["manageUrl"] = service.build_manage_url(subscription, request_origin())
    return jsonify(body), 201
