from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import resend
from jinja2 import Environment, FileSystemLoader, select_autoescape
from sqlalchemy import func
from sqlalchemy.orm import Session

from storefront.config import Config
from storefront.models import EmailLog, EmailStatus, utcnow
from storefront.observability import increment_counter, record_event, timed

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "emails"

FREQUENCY_LABELS = {
    "monthly": "Monatlich",
    "bimonthly": "Alle 2 Monate",
    "bi_monthly": "Alle 2 Monate",
    "quarterly": "Vierteljährlich",
}

TICKET_STATUS_LABELS = {
    "open": "Offen",
    "in_progress": "In Bearbeitung",
    "resolved": "Gelöst",
    "closed": "Geschlossen",
}

RETURN_STATUS_LABELS = {
    "pending": "Ausstehend",
    "approved": "Genehmigt",
    "rejected": "Abgelehnt",
    "received": "Ware eingegangen",
    "refunded": "Erstattet",
}

# email type -> subject factory
EMAIL_SUBJECTS: Dict[str, Callable[[Dict[str, Any]], str]] = {
    "order_confirmation": lambda ctx: f"Bestellbestätigung #{ctx.get('order_number', '')}",
    "shipping_notification": lambda ctx: f"Deine Bestellung #{ctx.get('order_number', '')} wurde versendet!",
    "order_delivered": lambda ctx: f"Deine Bestellung #{ctx.get('order_number', '')} wurde zugestellt",
    "subscription_confirmation": lambda ctx: "Willkommen bei deinem ALDENAIR Parfüm-Abo!",
    "subscription_reminder": lambda ctx: "Erinnerung: Ihre Abo-Lieferung in 3 Tagen",
    "subscription_cancelled": lambda ctx: "Dein ALDENAIR Parfüm-Abo wurde gekündigt",
    "subscription_delivery": lambda ctx: "Deine ALDENAIR Abo-Lieferung ist unterwegs",
    "subscription_manage_link": lambda ctx: "Dein Abo-Verwaltungslink",
    "new_ticket": lambda ctx: f"Ticket erhalten: {ctx.get('ticket_subject', '')}",
    "ticket_reply": lambda ctx: f"Neue Antwort: {ctx.get('ticket_subject', '')}",
    "status_change": lambda ctx: f"Statusänderung: {ctx.get('ticket_subject', '')}",
    "return_confirmation": lambda ctx: (
        f"Retoure genehmigt - Retourenschein folgt innerhalb 24h | {ctx.get('order_number', '')}"
        if ctx.get("auto_approved")
        else f"Retoure eingegangen - Prüfung erforderlich | {ctx.get('order_number', '')}"
    ),
    "return_status_change": lambda ctx: f"Retoure aktualisiert: {ctx.get('order_number', '')}",
}

ORDER_EMAIL_TYPES = ("order_confirmation", "shipping_notification", "order_delivered")
SUBSCRIPTION_EMAIL_TYPES = (
    "subscription_confirmation",
    "subscription_reminder",
    "subscription_cancelled",
    "subscription_delivery",
    "subscription_manage_link",
)

_DOMAIN_VERIFICATION_MARKERS = ("testing emails", "verify a domain")
DOMAIN_VERIFICATION_WARNING = "Email notification skipped - domain verification required"


class EmailDeliveryError(Exception):
    """Raised by a sender when the provider rejects or cannot take a message."""


def format_euro(value: Any) -> str:
    amount = float(value or 0)
    formatted = f"{amount:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    return f"{formatted} €"


def discounted_price(price: Any, discount_percent: Any) -> float:
    return round(float(price or 0) * (1 - float(discount_percent or 0) / 100), 2)


def is_domain_verification_error(message: Optional[str]) -> bool:
    text = (message or "").lower()
    return any(marker in text for marker in _DOMAIN_VERIFICATION_MARKERS)


def build_template_environment() -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape(["html"]),
    )
    env.filters["euro"] = format_euro
    return env


def configure_resend(api_key: Optional[str]) -> None:
    """Install the Resend key for the whole process; called once at app start."""
    resend.api_key = api_key or None


class ResendSender:
    """Thin wrapper over the Resend SDK; the key comes from ``configure_resend``."""

    def send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = resend.Emails.send(payload)
        except Exception as exc:  # provider SDK raises several unrelated types
            raise EmailDeliveryError(str(exc)) from exc

        if not isinstance(response, dict) or not response.get("id"):
            raise EmailDeliveryError(str(response))
        return response


@dataclass
class EmailResult:
    success: bool
    status: str
    provider_id: Optional[str] = None
    warning: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    log_id: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def skipped(self) -> bool:
        return self.status == EmailStatus.SKIPPED.value

    @property
    def delivered(self) -> bool:
        return self.status == EmailStatus.SENT.value

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.provider_id:
            payload["id"] = self.provider_id
        if self.skipped and not self.warning:
            payload["skipped"] = True
        if self.warning:
            payload["warning"] = self.warning
        if self.error:
            payload["error"] = self.error
        return payload


class EmailService:
    """Renders, sends and logs every transactional email of the shop."""

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        sender: Optional[Any] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db = db_session
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.sender = sender
        self.sleep = sleep
        self.templates = build_template_environment()

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------
    def render(self, email_type: str, context: Dict[str, Any]) -> Tuple[str, str]:
        if email_type not in EMAIL_SUBJECTS:
            raise ValueError(f"Unknown email type: {email_type}")
        subject = EMAIL_SUBJECTS[email_type](context)
        template = self.templates.get_template(f"{email_type}.html")
        html = template.render(subject=subject, base_url=self.config.PUBLIC_BASE_URL, **context)
        return subject, html

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------
    def _get_sender(self) -> Optional[Any]:
        if self.sender is not None:
            return self.sender
        if not self.config.RESEND_API_KEY:
            return None
        return ResendSender()

    def send(
        self,
        email_type: str,
        to: str,
        name: Optional[str],
        context: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
        max_attempts: int = 1,
    ) -> EmailResult:
        subject, html = self.render(email_type, {"customer_name": name or "Kunde", **context})

        if not self.config.RESEND_API_KEY:
            self.logger.info("Email %s to %s skipped: no provider key configured", email_type, to)
            increment_counter("emails_total", labels={"type": email_type, "status": "skipped"})
            return EmailResult(success=True, status=EmailStatus.SKIPPED.value)

        metadata = dict(metadata or {})
        provider_id, error, attempts = self._deliver(email_type, to, subject, html, max_attempts)

        if error is None:
            log = self._log(email_type, to, name, subject, EmailStatus.SENT, provider_id=provider_id, metadata=metadata)
            self.logger.info("Email %s sent to %s", email_type, to)
            return EmailResult(
                success=True,
                status=EmailStatus.SENT.value,
                provider_id=provider_id,
                attempts=attempts,
                log_id=log.emailLogID if log else None,
            )

        if is_domain_verification_error(error):
            log = self._log(
                email_type, to, name, subject, EmailStatus.SKIPPED,
                error_message=error,
                metadata={**metadata, "reason": "domain_verification_required"},
            )
            return EmailResult(
                success=True,
                status=EmailStatus.SKIPPED.value,
                warning=DOMAIN_VERIFICATION_WARNING,
                attempts=attempts,
                log_id=log.emailLogID if log else None,
            )

        log = self._log(
            email_type, to, name, subject, EmailStatus.FAILED,
            error_message=error,
            metadata={**metadata, "attempts": attempts},
        )
        return EmailResult(
            success=False,
            status=EmailStatus.FAILED.value,
            error=error,
            attempts=attempts,
            log_id=log.emailLogID if log else None,
        )

    def _deliver(
        self,
        email_type: str,
        to: str,
        subject: str,
        html: str,
        max_attempts: int,
    ) -> Tuple[Optional[str], Optional[str], int]:
        """
        Hand one message to the provider with exponential backoff.

        Returns ``(provider_id, error, attempts)``; ``error`` is None on
        success. A domain-verification rejection is final and not retried.
        """
        sender = self._get_sender()
        payload = {
            "from": self.config.EMAIL_FROM,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        attempts = max(1, max_attempts)
        last_error: Optional[str] = None

        for attempt in range(1, attempts + 1):
            try:
                with timed("email_send_ms", labels={"type": email_type}):
                    response = sender.send(payload)
            except EmailDeliveryError as exc:
                last_error = str(exc)
                if is_domain_verification_error(last_error):
                    self.logger.warning("Email %s to %s blocked: domain verification required", email_type, to)
                    return None, last_error, attempt
                self.logger.warning(
                    "Email %s to %s failed (attempt %s/%s): %s", email_type, to, attempt, attempts, last_error
                )
                if attempt < attempts:
                    self.sleep(self.config.EMAIL_BACKOFF_BASE_SECONDS * (2 ** (attempt - 1)))
                continue
            return (response.get("id") if isinstance(response, dict) else None), None, attempt

        return None, last_error, attempts

    def send_safely(self, *args: Any, **kwargs: Any) -> Optional[EmailResult]:
        """Send as a side effect; rendering or logging problems never reach the caller."""
        try:
            return self.send(*args, **kwargs)
        except Exception:  # side-effect emails must not fail the primary operation
            self.logger.exception("Side-effect email could not be processed")
            return None

    def _log(
        self,
        email_type: str,
        to: str,
        name: Optional[str],
        subject: str,
        status: EmailStatus,
        error_message: Optional[str] = None,
        provider_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[EmailLog]:
        increment_counter("emails_total", labels={"type": email_type, "status": status.value})
        record_event("email_logged", {"type": email_type, "status": status.value})
        entry = EmailLog(
            type=email_type,
            recipient_email=to,
            recipient_name=name,
            subject=subject,
            status=status,
            error_message=error_message,
            provider_id=provider_id,
            details=metadata or {},
        )
        try:
            self.db.add(entry)
            self.db.commit()
        except Exception:
            self.db.rollback()
            self.logger.exception("Failed to write email log for %s", email_type)
            return None
        return entry

    # ------------------------------------------------------------------
    # HTTP function payloads (camelCase contract)
    # ------------------------------------------------------------------
    def send_order_email(self, payload: Dict[str, Any]) -> EmailResult:
        email_type = payload.get("type")
        if email_type not in ORDER_EMAIL_TYPES:
            raise ValueError(f"Unknown email type: {email_type}")
        if not payload.get("customerEmail"):
            raise ValueError("customerEmail is required")

        context = {
            "order_number": payload.get("orderNumber", ""),
            "items": [
                {
                    "name": item.get("name", ""),
                    "quantity": int(item.get("quantity") or 0),
                    "price": float(item.get("price") or 0),
                }
                for item in payload.get("items") or []
            ],
            "subtotal": float(payload.get("subtotal") or 0),
            "discount": float(payload.get("discount") or 0),
            "shipping": float(payload.get("shipping") or 0),
            "total": float(payload.get("total") or 0),
            "shipping_address": payload.get("shippingAddress") or {},
            "tracking_number": payload.get("trackingNumber"),
            "tracking_url": payload.get("trackingUrl"),
            "carrier": payload.get("carrier") or "DHL",
            "estimated_delivery": payload.get("estimatedDelivery"),
        }
        metadata = {"orderId": payload.get("orderId"), "orderNumber": payload.get("orderNumber")}
        return self.send(email_type, payload["customerEmail"], payload.get("customerName"), context, metadata)

    def send_subscription_email(self, payload: Dict[str, Any]) -> EmailResult:
        email_type = payload.get("type")
        if email_type not in SUBSCRIPTION_EMAIL_TYPES:
            raise ValueError(f"Unknown email type: {email_type}")
        if not payload.get("customerEmail"):
            raise ValueError("customerEmail is required")

        frequency = payload.get("frequency") or ""
        price = float(payload.get("price") or 0)
        discount = float(payload.get("discountPercent") or 0)
        context = {
            "product_name": payload.get("productName", ""),
            "variant_name": payload.get("variantName") or "",
            "frequency_label": FREQUENCY_LABELS.get(frequency, frequency),
            "discount_percent": int(discount),
            "price": price,
            "discounted_price": discounted_price(price, discount),
            "next_delivery": payload.get("nextDelivery"),
            "manage_url": payload.get("manageUrl"),
            "valid_days": self.config.SUBSCRIPTION_TOKEN_MAX_AGE_DAYS,
            "is_guest": bool(payload.get("isGuest")),
        }
        metadata = {"subscriptionId": payload.get("subscriptionId")}
        return self.send(email_type, payload["customerEmail"], payload.get("customerName"), context, metadata)

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------
    def list_email_logs(
        self,
        status: Optional[str] = None,
        email_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[EmailLog]:
        query = self.db.query(EmailLog)
        if status and status != "all":
            query = query.filter(EmailLog.status == EmailStatus(status))
        if email_type and email_type != "all":
            query = query.filter(EmailLog.type == email_type)
        return query.order_by(EmailLog.created_at.desc(), EmailLog.emailLogID.desc()).limit(limit).all()

    def get_email_log(self, log_id: Any) -> Optional[EmailLog]:
        try:
            return self.db.get(EmailLog, int(log_id))
        except (TypeError, ValueError):
            return None

    def resend_log(
        self,
        log_id: Any,
        resent_by: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> Tuple[bool, str, Optional[EmailLog]]:
        """
        Deliver a logged email again and update that log row in place.

        The body is the generic re-send template carrying the row's subject and
        ``originalContent`` metadata, if any. Retries follow
        ``EMAIL_MAX_ATTEMPTS`` with the usual backoff.
        """
        entry = self.get_email_log(log_id)
        if entry is None:
            return False, "Email log not found", None
        if not self.config.RESEND_API_KEY:
            return False, "Email provider is not configured", entry

        details = dict(entry.details or {})
        html = self.templates.get_template("resent.html").render(
            subject=entry.subject,
            base_url=self.config.PUBLIC_BASE_URL,
            customer_name=entry.recipient_name or "Kunde",
            content=details.get("originalContent"),
        )
        provider_id, error, attempts = self._deliver(
            entry.type,
            entry.recipient_email,
            entry.subject,
            html,
            max_attempts or self.config.EMAIL_MAX_ATTEMPTS,
        )
        now = utcnow().isoformat()

        if error is not None:
            entry.error_message = error
            entry.details = {**details, "lastRetryAt": now, "retryError": error}
            self.db.commit()
            increment_counter("emails_resent_total", labels={"outcome": "failed"})
            self.logger.warning("Email log %s could not be resent after %s attempts", entry.emailLogID, attempts)
            return False, error, entry

        entry.status = EmailStatus.SENT
        entry.provider_id = provider_id
        entry.error_message = None
        entry.details = {**details, "resentAt": now, "resentBy": resent_by}
        self.db.commit()
        increment_counter("emails_resent_total", labels={"outcome": "sent"})
        record_event("email_resent", {"email_log_id": entry.emailLogID, "type": entry.type})
        self.logger.info("Email log %s resent", entry.emailLogID)
        return True, "Email resent", entry

    def email_log_stats(self) -> Dict[str, int]:
        rows = self.db.query(EmailLog.status, func.count(EmailLog.emailLogID)).group_by(EmailLog.status).all()
        stats = {status.value: 0 for status in EmailStatus}
        for status, count in rows:
            stats[EmailStatus(status).value] = count
        stats["total"] = sum(count for _, count in rows)
        return stats
