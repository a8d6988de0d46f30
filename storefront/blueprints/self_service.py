from __future__ import annotations

from flask import Blueprint, jsonify

from storefront.blueprints.helpers import (
    current_profile,
    get_returns_service,
    get_subscription_service,
    get_ticket_service,
    json_payload,
    request_origin,
)

self_service_bp = Blueprint("self_service", __name__, url_prefix="/api")


@self_service_bp.route("/manage-subscription", methods=["POST"])
def manage_subscription():
    payload = json_payload()
    status, body = get_subscription_service().manage(
        payload.get("action"),
        subscription_id=payload.get("subscriptionId"),
        token=payload.get("token"),
        email=payload.get("email"),
        base_url=request_origin(),
    )
    return jsonify(body), status


@self_service_bp.route("/submit-contact-ticket", methods=["POST"])
def submit_contact_ticket():
    payload = json_payload()
    profile = current_profile()
    if profile is not None and not payload.get("userId"):
        payload["userId"] = profile.profileID
    status, body = get_ticket_service().submit_contact_ticket(payload)
    return jsonify(body), status


@self_service_bp.route("/process-return", methods=["POST"])
def process_return():
    status, body = get_returns_service().process_return(json_payload())
    return jsonify(body), status
