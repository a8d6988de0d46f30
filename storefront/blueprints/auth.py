from __future__ import annotations

import logging
from typing import Any, Dict

from flask import Blueprint, jsonify, session
from werkzeug.security import check_password_hash, generate_password_hash

from storefront.blueprints.helpers import current_profile, json_payload, login_required
from storefront.config import Config
from storefront.database import get_db
from storefront.models import Profile
from storefront.observability import increment_counter
from storefront.services.checkout_service import EMAIL_PATTERN

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")
logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


def serialize_profile(profile: Profile) -> Dict[str, Any]:
    return {
        "id": profile.profileID,
        "email": profile.email,
        "first_name": profile.first_name,
        "last_name": profile.last_name,
        "phone": profile.phone,
        "role": profile.role,
        "tier": profile.tier,
        "total_spent": float(profile.total_spent or 0),
        "is_admin": profile.is_admin,
    }


@auth_bp.route("/register", methods=["POST"])
def register():
    payload = json_payload()
    email = str(payload.get("email") or "").strip().lower()
    password = str(payload.get("password") or "")

    if not EMAIL_PATTERN.match(email):
        return jsonify({"error": "Ungültige E-Mail-Adresse"}), 400
    if len(password) < MIN_PASSWORD_LENGTH:
        return jsonify({"error": f"Das Passwort muss mindestens {MIN_PASSWORD_LENGTH} Zeichen lang sein"}), 400

    db = get_db()
    if db.query(Profile).filter(Profile.email == email).first():
        return jsonify({"error": "Email already registered"}), 409

    role = "customer"
    if payload.get("role") == "admin":
        if payload.get("super_admin_token") != Config.SUPER_ADMIN_TOKEN or not Config.SUPER_ADMIN_TOKEN:
            return jsonify({"error": "Invalid super admin token"}), 403
        role = "admin"

    profile = Profile(
        email=email,
        password_hash=generate_password_hash(password),
        first_name=(payload.get("first_name") or "").strip() or None,
        last_name=(payload.get("last_name") or "").strip() or None,
        phone=(payload.get("phone") or "").strip() or None,
        role=role,
    )
    db.add(profile)
    db.commit()
    increment_counter("profiles_registered_total", labels={"role": role})
    logger.info("Profile %s registered", profile.profileID)

    session["user_id"] = profile.profileID
    return jsonify({"success": True, "user": serialize_profile(profile)}), 201


@auth_bp.route("/login", methods=["POST"])
def login():
    payload = json_payload()
    email = str(payload.get("email") or "").strip().lower()
    password = str(payload.get("password") or "")

    profile = get_db().query(Profile).filter(Profile.email == email).first()
    if not profile or not check_password_hash(profile.password_hash, password):
        increment_counter("login_failures_total")
        return jsonify({"error": "Invalid email or password"}), 401

    session.clear()
    session["user_id"] = profile.profileID
    return jsonify({"success": True, "user": serialize_profile(profile)})


@auth_bp.route("/logout", methods=["POST"])
def logout():
    session.clear()
    return jsonify({"success": True})


@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    return jsonify({"user": serialize_profile(current_profile())})
