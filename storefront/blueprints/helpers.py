from __future__ import annotations

from functools import wraps
from typing import Any, Callable, Dict, Optional, Tuple

from flask import current_app, g, jsonify, request

from storefront.config import Config
from storefront.database import get_db
from storefront.models import Profile
from storefront.rate_limit import contact_rate_limiter
from storefront.services.analytics_service import AnalyticsService
from storefront.services.catalog_service import CatalogService
from storefront.services.checkout_service import CheckoutService
from storefront.services.email_service import EmailService
from storefront.services.order_service import OrderService
from storefront.services.payment_service import PaymentService
from storefront.services.returns_service import ReturnsService
from storefront.services.subscription_service import SubscriptionService
from storefront.services.support_dashboard import SupportDashboardClient
from storefront.services.ticket_service import TicketService


# ---------------------------
# Request helpers
# ---------------------------


def json_payload() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def current_profile() -> Optional[Profile]:
    return getattr(g, "current_user", None)


def request_origin() -> str:
    return request.headers.get("Origin") or current_app.config.get("PUBLIC_BASE_URL") or Config.PUBLIC_BASE_URL


def not_found_or_bad_request(message: str) -> int:
    return 404 if message.endswith("not found") else 400


def login_required(view: Callable) -> Callable:
    @wraps(view)
    def wrapper(*args: Any, **kwargs: Any):
        if current_profile() is None:
            return jsonify({"error": "Not authenticated"}), 401
        return view(*args, **kwargs)

    return wrapper


def admin_required(view: Callable) -> Callable:
    @wraps(view)
    def wrapper(*args: Any, **kwargs: Any):
        profile = current_profile()
        if profile is None:
            return jsonify({"error": "Not authenticated"}), 401
        if not profile.is_admin:
            return jsonify({"error": "Forbidden"}), 403
        return view(*args, **kwargs)

    return wrapper


# ---------------------------
# Service factories
# ---------------------------
# Collaborators that talk to third parties can be overridden through
# ``app.config`` (EMAIL_SENDER, PAYMENT_SERVICE, SUPPORT_DASHBOARD).


def get_email_service() -> EmailService:
    return EmailService(get_db(), sender=current_app.config.get("EMAIL_SENDER"))


def get_payment_service() -> PaymentService:
    return current_app.config.get("PAYMENT_SERVICE") or PaymentService()


def get_support_dashboard() -> SupportDashboardClient:
    return current_app.config.get("SUPPORT_DASHBOARD") or SupportDashboardClient()


def get_catalog_service() -> CatalogService:
    return CatalogService(get_db())


def get_subscription_service(email_service: Optional[EmailService] = None) -> SubscriptionService:
    return SubscriptionService(get_db(), email_service=email_service or get_email_service())


def get_order_service(email_service: Optional[EmailService] = None) -> OrderService:
    return OrderService(get_db(), email_service=email_service or get_email_service())


def get_checkout_service() -> CheckoutService:
    db = get_db()
    email_service = get_email_service()
    return CheckoutService(
        db,
        payment_service=get_payment_service(),
        email_service=email_service,
        subscription_service=get_subscription_service(email_service),
        order_service=get_order_service(email_service),
    )


def get_ticket_service() -> TicketService:
    return TicketService(
        get_db(),
        email_service=get_email_service(),
        dashboard=get_support_dashboard(),
        rate_limiter=contact_rate_limiter,
    )


def get_returns_service() -> ReturnsService:
    return ReturnsService(get_db(), email_service=get_email_service(), dashboard=get_support_dashboard())


def get_analytics_service() -> AnalyticsService:
    return AnalyticsService(get_db())


def parse_int(value: Any, default: Optional[int] = None) -> Tuple[bool, Optional[int]]:
    if value in (None, ""):
        return True, default
    try:
        return True, int(value)
    except (TypeError, ValueError):
        return False, None
