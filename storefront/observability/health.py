from __future__ import annotations

from typing import Any, Dict

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from storefront.config import Config
from storefront.database import engine


def check_database_health() -> Dict[str, str]:
    """Attempt a lightweight DB query to ensure connectivity."""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return {"status": "UP"}
    except SQLAlchemyError as exc:
        return {"status": "DOWN", "detail": str(exc)}


def build_health_report(config=Config) -> Dict[str, Any]:
    database = check_database_health()
    return {
        "status": database["status"],
        "database": database,
        "integrations": {
            "email": "configured" if config.RESEND_API_KEY else "disabled",
            "stripe": "configured" if config.STRIPE_SECRET_KEY else "disabled",
            "paypal": "configured" if (config.PAYPAL_CLIENT_ID and config.PAYPAL_SECRET_KEY) else "disabled",
            "support_dashboard": "configured" if config.SUPPORT_DASHBOARD_URL else "disabled",
        },
    }
