from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import bleach
from sqlalchemy.orm import Session

from storefront.config import Config
from storefront.models import (
    Order,
    PaymentStatus,
    ReturnRequest,
    ReturnStatus,
    as_utc,
    utcnow,
)
from storefront.observability import increment_counter, record_event
from storefront.services.email_service import RETURN_STATUS_LABELS, EmailService
from storefront.services.support_dashboard import SupportDashboardClient

REQUIRED_FIELDS = ("orderNumber", "firstName", "lastName", "email", "reason", "items")
MISSING_FIELDS_MESSAGE = "Bitte füllen Sie alle Pflichtfelder aus."
ORDER_NOT_FOUND_MESSAGE = "Die angegebene Bestellnummer wurde nicht gefunden. Bitte überprüfen Sie Ihre Eingabe."


def return_reference(request: ReturnRequest) -> str:
    return f"RET-{request.returnID:05d}"


def serialize_return(request: ReturnRequest) -> Dict[str, Any]:
    return {
        "id": request.returnID,
        "reference": return_reference(request),
        "order_id": request.orderID,
        "order_number": request.order.order_number if request.order else None,
        "status": ReturnStatus(request.status).value,
        "reason": request.reason,
        "refund_amount": float(request.refund_amount or 0),
        "tracking_number": request.tracking_number,
        "notes": request.notes,
        "created_at": request.created_at.isoformat() if request.created_at else None,
        "updated_at": request.updated_at.isoformat() if request.updated_at else None,
    }


class ReturnsService:
    """Customer return requests with automatic approval inside the return window."""

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        email_service: Optional[EmailService] = None,
        dashboard: Optional[SupportDashboardClient] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.config = config
        self.email_service = email_service or EmailService(db_session, config=config)
        self.dashboard = dashboard or SupportDashboardClient(config)

    # ------------------------------------------------------------------
    # Customer flow
    # ------------------------------------------------------------------
    def process_return(self, payload: Dict[str, Any], now: Optional[datetime] = None) -> Tuple[int, Dict[str, Any]]:
        """Public returns form; returns (http status, body)."""
        fields = {key: bleach.clean(str(payload.get(key) or ""), tags=[], strip=True).strip()
                  for key in (*REQUIRED_FIELDS, "street", "postalCode", "city")}
        if any(not fields[key] for key in REQUIRED_FIELDS):
            return 400, {"error": MISSING_FIELDS_MESSAGE}

        order = self.db.query(Order).filter(Order.order_number == fields["orderNumber"]).first()
        if not order:
            self.logger.info("Return requested for unknown order %s", fields["orderNumber"])
            return 404, {"error": ORDER_NOT_FOUND_MESSAGE}

        now = now or utcnow()
        age = now - as_utc(order.created_at)
        days_since_order = max(int(age.total_seconds() // 86400), 0)
        auto_approved = age <= timedelta(days=self.config.RETURN_WINDOW_DAYS)

        customer_name = f"{fields['firstName']} {fields['lastName']}"
        verdict = (
            f"Innerhalb der {self.config.RETURN_WINDOW_DAYS}-Tage-Frist - automatisch genehmigt"
            if auto_approved
            else f"Außerhalb der {self.config.RETURN_WINDOW_DAYS}-Tage-Frist - manuelle Prüfung erforderlich"
        )
        notes = "\n".join(
            [
                f"Kunde: {customer_name}",
                f"Adresse: {fields['street']}, {fields['postalCode']} {fields['city']}",
                f"Artikel: {fields['items']}",
                f"Tage seit Bestellung: {days_since_order}",
                verdict,
            ]
        )

        request = ReturnRequest(
            orderID=order.orderID,
            profileID=order.profileID,
            reason=fields["reason"],
            customer_email=fields["email"],
            customer_name=customer_name,
            status=ReturnStatus.APPROVED if auto_approved else ReturnStatus.PENDING,
            refund_amount=float(order.total or 0) if auto_approved else 0,
            notes=notes,
        )
        self.db.add(request)
        self.db.commit()
        increment_counter("returns_created_total", labels={"auto_approved": str(auto_approved).lower()})
        record_event(
            "return_request_created",
            {"return_id": request.returnID, "order_id": order.orderID, "auto_approved": auto_approved},
        )
        self.logger.info(
            "Return %s created for order %s (auto-approved: %s)",
            request.returnID, order.order_number, auto_approved,
        )

        result = self.email_service.send_safely(
            "return_confirmation",
            fields["email"],
            customer_name,
            {
                "return_id": return_reference(request),
                "order_number": order.order_number,
                "items": fields["items"],
                "reason": fields["reason"],
                "auto_approved": auto_approved,
                "days_since_order": days_since_order,
            },
            {"returnId": request.returnID, "orderNumber": order.order_number, "autoApproved": auto_approved},
        )
        email_sent = bool(result and result.delivered)

        self.dashboard.forward_ticket(
            customer_name,
            fields["email"],
            f"Retoure {'(Auto-Genehmigt)' if auto_approved else '(Manuelle Prüfung)'}: {order.order_number}",
            f"{notes}\nGrund: {fields['reason']}",
            category="return",
        )

        message = (
            "Deine Retoure wurde automatisch genehmigt. Den Retourenschein erhältst du innerhalb von 24 Stunden per E-Mail."
            if auto_approved
            else "Deine Retoure ist eingegangen. Da die Bestellung außerhalb der Rückgabefrist liegt, prüfen wir sie manuell."
        )
        return 200, {
            "success": True,
            "returnId": return_reference(request),
            "status": ReturnStatus(request.status).value,
            "autoApproved": auto_approved,
            "daysSinceOrder": days_since_order,
            "emailSent": email_sent,
            "message": message,
        }

    # ------------------------------------------------------------------
    # Admin flow
    # ------------------------------------------------------------------
    def get_return(self, return_id: Any) -> Optional[ReturnRequest]:
        try:
            return self.db.get(ReturnRequest, int(return_id))
        except (TypeError, ValueError):
            return None

    def update_return_status(
        self,
        return_id: Any,
        status: str,
        tracking_number: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Tuple[bool, str, Optional[ReturnRequest]]:
        request = self.get_return(return_id)
        if not request:
            return False, "Return request not found", None
        try:
            new_status = ReturnStatus(status)
        except ValueError:
            return False, f"Unknown return status: {status}", request
        if not request.can_transition(new_status):
            return False, f"Cannot change return status from {ReturnStatus(request.status).value} to {new_status.value}", request

        old_status = ReturnStatus(request.status)
        request.transition_to(new_status)
        if tracking_number:
            request.tracking_number = tracking_number.strip()
        if notes:
            request.notes = f"{request.notes or ''}\n{notes.strip()}".strip()
        if new_status == ReturnStatus.APPROVED and not float(request.refund_amount or 0) and request.order:
            request.refund_amount = float(request.order.total or 0)
        if new_status == ReturnStatus.REJECTED:
            request.refund_amount = 0

        order = request.order
        if new_status == ReturnStatus.REFUNDED and order and order.payment_status == PaymentStatus.PAID:
            order.transition_payment_to(PaymentStatus.REFUNDED)

        self.db.commit()
        increment_counter("return_status_transition_total", labels={"status": new_status.value})
        record_event(
            "return_status_changed",
            {"return_id": request.returnID, "from": old_status.value, "to": new_status.value},
        )
        self._notify_status_change(request, new_status)
        return True, "Return status updated", request

    def _notify_status_change(self, request: ReturnRequest, new_status: ReturnStatus) -> None:
        order = request.order
        recipient = request.customer_email or (order.customer_email if order else None)
        if not recipient:
            self.logger.info("Return %s has no customer email; status mail skipped", request.returnID)
            return
        order_number = order.order_number if order else ""
        self.email_service.send_safely(
            "return_status_change",
            recipient,
            request.customer_name or (order.customer_name if order else None),
            {
                "status": new_status.value,
                "status_label": RETURN_STATUS_LABELS[new_status.value],
                "order_number": order_number,
                "return_id": return_reference(request),
                "refund_amount": float(request.refund_amount or 0),
                "tracking_number": request.tracking_number,
            },
            {"returnId": request.returnID, "orderNumber": order_number, "newStatus": new_status.value},
        )

    def list_returns(self, status: Optional[str] = None) -> List[ReturnRequest]:
        query = self.db.query(ReturnRequest)
        if status and status != "all":
            query = query.filter(ReturnRequest.status == ReturnStatus(status))
        return query.order_by(ReturnRequest.created_at.desc(), ReturnRequest.returnID.desc()).all()

    def list_customer_returns(self, profile_id: int) -> List[ReturnRequest]:
        return (
            self.db.query(ReturnRequest)
            .filter(ReturnRequest.profileID == profile_id)
            .order_by(ReturnRequest.created_at.desc())
            .all()
        )
