# storefront/main.py
import logging
import time
from datetime import date

import click
from flask import Flask, g, jsonify, request, session
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from storefront.blueprints import register_blueprints
from storefront.blueprints.helpers import admin_required
from storefront.config import Config
from storefront.database import close_db, get_db, init_database, session_scope
from storefront.models import Profile
from storefront.observability import (
    build_health_report,
    configure_logging,
    ensure_request_id,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
)
from storefront.services.email_service import EmailService, configure_resend
from storefront.services.subscription_service import SubscriptionService

app = Flask(__name__)
Config.configure_app(app)
configure_logging(app)
configure_resend(Config.RESEND_API_KEY)
CORS(app, resources={r"/api/*": {"origins": list(Config.CORS_ORIGINS)}})
register_blueprints(app)

logger = logging.getLogger(__name__)

try:
    init_database()
    logger.info("Database tables initialized successfully")
except Exception:
    logger.exception("Error initializing database")
    raise


@app.before_request
def before_request_logging():
    g.current_user = None
    if 'user_id' in session:
        g.current_user = get_db().get(Profile, session['user_id'])
    g.request_started_at = time.perf_counter()
    g.request_id = ensure_request_id()
    increment_counter(
        "http_requests_total",
        labels={
            "method": request.method,
            "endpoint": request.endpoint or request.path,
        },
    )


@app.after_request
def after_request_logging(response):
    started = getattr(g, 'request_started_at', None)
    labels = {
        "method": request.method,
        "endpoint": request.endpoint or request.path,
        "status": str(response.status_code),
    }
    if started is not None:
        observe_latency("http_request_latency_ms", (time.perf_counter() - started) * 1000, labels=labels)
    if response.status_code >= 500:
        increment_counter("http_errors_total", labels=labels)
        logger.error("Request finished with error status %s", response.status_code)
    else:
        logger.info("Request finished", extra={"status_code": response.status_code})
    response.headers[Config.REQUEST_ID_HEADER] = getattr(g, "request_id", "")
    return response


@app.teardown_appcontext
def teardown_db(exception):
    close_db(exception)


@app.errorhandler(HTTPException)
def handle_http_error(exc: HTTPException):
    return jsonify({"error": exc.description or exc.name}), exc.code


@app.errorhandler(Exception)
def handle_unexpected_error(exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    db = g.get("db")
    if db is not None:
        db.rollback()
    return jsonify({"error": "Internal server error"}), 500


@app.route('/health', methods=['GET'])
def health():
    report = build_health_report()
    status_code = 200 if report["status"] == "UP" else 503
    return jsonify(report), status_code


@app.route('/admin/metrics', methods=['GET'])
@admin_required
def admin_metrics():
    return jsonify(get_metrics_snapshot())


def run_subscription_reminders(today=None, sender=None):
    """Daily job: remind customers of deliveries due in a few days."""
    with session_scope() as db:
        email_service = EmailService(db, sender=sender or app.config.get("EMAIL_SENDER"))
        return SubscriptionService(db, email_service=email_service).send_due_reminders(today)


@app.cli.command("send-subscription-reminders")
@click.option("--date", "run_date", default=None, help="Run as if today were YYYY-MM-DD.")
def send_subscription_reminders_command(run_date):
    today = date.fromisoformat(run_date) if run_date else None
    summary = run_subscription_reminders(today)
    click.echo(f"Reminders due: {summary['count']}, sent: {summary['sent']}, failed: {summary['failed']}")
