"""Centralized application configuration for all environments."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Final

from dotenv import load_dotenv

BASE_DIR: Final[Path] = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

# Load environment variables once, prioritizing runtime env over file values
load_dotenv(dotenv_path=ENV_PATH, override=False)


def _str_to_bool(value: str | bool | None, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _csv(value: str | None, default: str) -> tuple[str, ...]:
    raw = value if value is not None else default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _determine_database_url() -> str:
    """
    Return a connection string using the following precedence:
    1. Explicit DATABASE_URL
    2. Individual DB_* components (for PostgreSQL)
    3. Local SQLite fallback (for onboarding / tests)
    """
    explicit_url = os.getenv("DATABASE_URL")
    if explicit_url:
        return explicit_url

    username = os.getenv("DB_USERNAME")
    password = os.getenv("DB_PASSWORD")
    host = os.getenv("DB_HOST")
    port = os.getenv("DB_PORT")
    name = os.getenv("DB_NAME")

    if all([username, password, host, port, name]):
        driver = os.getenv("DB_DRIVER", "postgresql+psycopg2")
        return f"{driver}://{username}:{password}@{host}:{port}/{name}"

    fallback_path = BASE_DIR / "db" / "storefront.db"
    fallback_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{fallback_path.as_posix()}"


class Config:
    """Default runtime configuration shared across Flask, services, and scripts."""

    APP_NAME: Final[str] = os.getenv("APP_NAME", "ALDENAIR Storefront")
    APP_ENV: Final[str] = os.getenv("APP_ENV", "development")

    SECRET_KEY: Final[str] = os.getenv("SECRET_KEY", "change-me-in-prod")
    SUPER_ADMIN_TOKEN: Final[str] = os.getenv("SUPER_ADMIN_TOKEN", "")
    DEBUG: Final[bool] = _str_to_bool(os.getenv("FLASK_DEBUG"), default=APP_ENV == "development")
    TESTING: Final[bool] = _str_to_bool(os.getenv("FLASK_TESTING"), default=False)

    # Flask run configuration (used by run.py)
    FLASK_RUN_HOST: Final[str] = os.getenv("FLASK_RUN_HOST", "0.0.0.0")
    FLASK_RUN_PORT: Final[int] = int(os.getenv("FLASK_RUN_PORT", "5000"))
    PUBLIC_BASE_URL: Final[str] = os.getenv("PUBLIC_BASE_URL", "https://aldenairperfumes.de")
    CORS_ORIGINS: Final[tuple[str, ...]] = _csv(os.getenv("CORS_ORIGINS"), "*")

    # Database
    DATABASE_URL: Final[str] = _determine_database_url()
    SQL_ECHO: Final[bool] = _str_to_bool(os.getenv("SQL_ECHO"), default=False)
    DB_POOL_SIZE: Final[int] = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: Final[int] = int(os.getenv("DB_MAX_OVERFLOW", "20"))

    # Pricing & checkout
    CURRENCY: Final[str] = os.getenv("CURRENCY", "EUR")
    FREE_SHIPPING_THRESHOLD: Final[float] = float(os.getenv("FREE_SHIPPING_THRESHOLD", "50.00"))
    STANDARD_SHIPPING_COST: Final[float] = float(os.getenv("STANDARD_SHIPPING_COST", "4.95"))
    ALLOWED_SHIPPING_COUNTRIES: Final[tuple[str, ...]] = _csv(
        os.getenv("ALLOWED_SHIPPING_COUNTRIES"), "DE,AT,CH"
    )

    # Payment gateways
    STRIPE_SECRET_KEY: Final[str] = os.getenv("STRIPE_SECRET_KEY", "")
    PAYPAL_CLIENT_ID: Final[str] = os.getenv("PAYPAL_CLIENT_ID", "")
    PAYPAL_SECRET_KEY: Final[str] = os.getenv("PAYPAL_SECRET_KEY", "")
    PAYPAL_API_BASE: Final[str] = os.getenv("PAYPAL_API_BASE", "https://api-m.paypal.com")
    PAYPAL_BRAND_NAME: Final[str] = os.getenv("PAYPAL_BRAND_NAME", "ALDENAIR")
    HTTP_TIMEOUT_SECONDS: Final[int] = int(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))

    # Returns policy
    RETURN_WINDOW_DAYS: Final[int] = int(os.getenv("RETURN_WINDOW_DAYS", "14"))

    # Subscriptions (Abo)
    SUBSCRIPTION_DISCOUNTS: Final[Dict[str, int]] = {
        "monthly": int(os.getenv("SUBSCRIPTION_DISCOUNT_MONTHLY", "15")),
        "bimonthly": int(os.getenv("SUBSCRIPTION_DISCOUNT_BIMONTHLY", "12")),
        "quarterly": int(os.getenv("SUBSCRIPTION_DISCOUNT_QUARTERLY", "10")),
    }
    SUBSCRIPTION_TOKEN_MAX_AGE_DAYS: Final[int] = int(os.getenv("SUBSCRIPTION_TOKEN_MAX_AGE_DAYS", "30"))
    SUBSCRIPTION_TOKEN_SECRET: Final[str] = os.getenv("WEBHOOK_SECRET", "") or SECRET_KEY
    SUBSCRIPTION_REMINDER_DAYS_AHEAD: Final[int] = int(os.getenv("SUBSCRIPTION_REMINDER_DAYS_AHEAD", "3"))

    # Support tickets
    TICKET_SLA_HOURS: Final[Dict[str, int]] = {
        "high": int(os.getenv("TICKET_SLA_HOURS_HIGH", "4")),
        "medium": int(os.getenv("TICKET_SLA_HOURS_MEDIUM", "24")),
        "low": int(os.getenv("TICKET_SLA_HOURS_LOW", "72")),
    }
    TICKET_SLA_AT_RISK_RATIO: Final[float] = float(os.getenv("TICKET_SLA_AT_RISK_RATIO", "0.75"))
    CONTACT_RATE_LIMIT: Final[int] = int(os.getenv("CONTACT_RATE_LIMIT", "5"))
    CONTACT_RATE_WINDOW_SECONDS: Final[int] = int(os.getenv("CONTACT_RATE_WINDOW_SECONDS", "3600"))
    SUPPORT_DASHBOARD_URL: Final[str] = os.getenv("SUPPORT_DASHBOARD_URL", "")

    # Transactional email
    RESEND_API_KEY: Final[str] = os.getenv("RESEND_API_KEY", "")
    EMAIL_FROM: Final[str] = os.getenv("EMAIL_FROM", "ALDENAIR <noreply@aldenairperfumes.de>")
    EMAIL_MAX_ATTEMPTS: Final[int] = int(os.getenv("EMAIL_MAX_ATTEMPTS", "3"))
    EMAIL_BACKOFF_BASE_SECONDS: Final[float] = float(os.getenv("EMAIL_BACKOFF_BASE_SECONDS", "1"))

    # Observability
    STRUCTURED_LOGS_ENABLED: Final[bool] = _str_to_bool(os.getenv("STRUCTURED_LOGS_ENABLED"), default=True)
    LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")
    REQUEST_ID_HEADER: Final[str] = os.getenv("REQUEST_ID_HEADER", "X-Request-ID")
    OBSERVABILITY_ENABLED: Final[bool] = _str_to_bool(os.getenv("OBSERVABILITY_ENABLED"), default=True)

    ORDER_LIST_PAGE_SIZE: Final[int] = int(os.getenv("ORDER_LIST_PAGE_SIZE", "50"))
    DEFAULT_TIMEZONE: Final[str] = os.getenv("DEFAULT_TIMEZONE", "Europe/Berlin")

    @classmethod
    def configure_app(cls, app: Any) -> None:
        """Apply core configuration to a Flask app instance."""
        app.config["SECRET_KEY"] = cls.SECRET_KEY
        app.config["ENV"] = cls.APP_ENV
        app.config["DEBUG"] = cls.DEBUG
        app.config["TESTING"] = cls.TESTING
        app.config["SQLALCHEMY_DATABASE_URI"] = cls.DATABASE_URL
        app.config["SQLALCHEMY_ECHO"] = cls.SQL_ECHO
        app.config["RETURN_WINDOW_DAYS"] = cls.RETURN_WINDOW_DAYS
        app.config["STRUCTURED_LOGS_ENABLED"] = cls.STRUCTURED_LOGS_ENABLED
        app.config["OBSERVABILITY_ENABLED"] = cls.OBSERVABILITY_ENABLED
        app.config["JSON_AS_ASCII"] = False
