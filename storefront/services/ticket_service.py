from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import bleach
from sqlalchemy.orm import Session

from storefront.config import Config
from storefront.models import (
    Profile,
    Ticket,
    TicketPriority,
    TicketReply,
    TicketStatus,
    as_utc,
    utcnow,
)
from storefront.observability import increment_counter, record_event
from storefront.rate_limit import RateLimiter, contact_rate_limiter
from storefront.services.email_service import EmailService, TICKET_STATUS_LABELS
from storefront.services.support_dashboard import SupportDashboardClient

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

MAX_LENGTHS = {"name": 200, "email": 255, "subject": 500, "message": 5000}

RATE_LIMIT_MESSAGE = "Zu viele Anfragen. Bitte versuchen Sie es später erneut."


class SlaState(str, Enum):
    ON_TRACK = "on_track"
    AT_RISK = "at_risk"
    BREACHED = "breached"


@dataclass(frozen=True)
class SlaStatus:
    state: SlaState
    target_hours: float
    elapsed_hours: float
    remaining_hours: float
    due_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "target_hours": self.target_hours,
            "elapsed_hours": round(self.elapsed_hours, 2),
            "remaining_hours": round(self.remaining_hours, 2),
            "due_at": self.due_at.isoformat(),
        }


def sla_status(ticket: Ticket, now: Optional[datetime] = None, config: type[Config] = Config) -> SlaStatus:
    """Response-time SLA measured from creation to resolution (or now while unresolved)."""
    priority = TicketPriority(ticket.priority).value
    target = float(config.TICKET_SLA_HOURS.get(priority, config.TICKET_SLA_HOURS["medium"]))
    created = as_utc(ticket.created_at) or utcnow()
    end = as_utc(ticket.resolved_at) or as_utc(now) or utcnow()
    elapsed = max((end - created).total_seconds() / 3600, 0.0)

    if elapsed > target:
        state = SlaState.BREACHED
    elif elapsed >= target * config.TICKET_SLA_AT_RISK_RATIO:
        state = SlaState.AT_RISK
    else:
        state = SlaState.ON_TRACK

    return SlaStatus(
        state=state,
        target_hours=target,
        elapsed_hours=elapsed,
        remaining_hours=max(target - elapsed, 0.0),
        due_at=created + timedelta(hours=target),
    )


def _clean(value: Any) -> str:
    return bleach.clean(str(value or ""), tags=[], strip=True).strip()


def serialize_reply(reply: TicketReply) -> Dict[str, Any]:
    return {
        "id": reply.replyID,
        "ticket_id": reply.ticketID,
        "author_id": reply.authorID,
        "author_name": reply.author_name,
        "message": reply.message,
        "is_internal": reply.is_internal,
        "is_staff": reply.is_staff,
        "created_at": reply.created_at.isoformat() if reply.created_at else None,
    }


def serialize_ticket(
    ticket: Ticket,
    now: Optional[datetime] = None,
    include_replies: bool = False,
    include_internal: bool = True,
    config: type[Config] = Config,
) -> Dict[str, Any]:
    status = TicketStatus(ticket.status).value
    payload: Dict[str, Any] = {
        "id": ticket.ticketID,
        "customer_name": ticket.customer_name,
        "customer_email": ticket.customer_email,
        "subject": ticket.subject,
        "message": ticket.message,
        "category": ticket.category,
        "priority": TicketPriority(ticket.priority).value,
        "status": status,
        "status_label": TICKET_STATUS_LABELS[status],
        "assigned_to": ticket.assigned_to,
        "created_at": ticket.created_at.isoformat() if ticket.created_at else None,
        "updated_at": ticket.updated_at.isoformat() if ticket.updated_at else None,
        "resolved_at": ticket.resolved_at.isoformat() if ticket.resolved_at else None,
        "sla": sla_status(ticket, now, config).to_dict(),
    }
    if include_replies:
        payload["replies"] = [
            serialize_reply(reply)
            for reply in ticket.replies
            if include_internal or not reply.is_internal
        ]
    return payload


class TicketService:
    """Contact form intake, reply threading and SLA tracking for support tickets."""

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        email_service: Optional[EmailService] = None,
        dashboard: Optional[SupportDashboardClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.db = db_session
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.email_service = email_service or EmailService(db_session, config=config)
        self.dashboard = dashboard or SupportDashboardClient(config)
        self.rate_limiter = rate_limiter or contact_rate_limiter

    # ------------------------------------------------------------------
    # Contact form
    # ------------------------------------------------------------------
    def submit_contact_ticket(self, payload: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
        """Public contact form; returns (http status, body)."""
        if payload.get("_hp"):
            self.logger.info("Honeypot triggered, silently dropping contact request")
            increment_counter("contact_honeypot_total")
            return 200, {"success": True, "ticketId": "dropped"}

        raw = {key: str(payload.get(key) or "") for key in MAX_LENGTHS}
        allowed, _, retry_after = self.rate_limiter.is_allowed(
            f"contact-{raw['email'].strip().lower()}",
            self.config.CONTACT_RATE_LIMIT,
            self.config.CONTACT_RATE_WINDOW_SECONDS,
        )
        if not allowed:
            increment_counter("contact_rate_limited_total")
            return 429, {"error": RATE_LIMIT_MESSAGE, "retryAfter": retry_after}

        if any(len(raw[key]) > limit for key, limit in MAX_LENGTHS.items()):
            return 400, {"error": "Eingabe zu lang."}

        name, email, subject, message = (_clean(raw[key]) for key in ("name", "email", "subject", "message"))
        if len(name) < 2:
            return 400, {"error": "Name muss mindestens 2 Zeichen haben"}
        if not EMAIL_PATTERN.match(email):
            return 400, {"error": "Ungültige E-Mail-Adresse"}
        if len(subject) < 3:
            return 400, {"error": "Betreff muss mindestens 3 Zeichen haben"}
        if len(message) < 10:
            return 400, {"error": "Nachricht muss mindestens 10 Zeichen haben"}

        try:
            profile_id = int(payload["userId"]) if payload.get("userId") else None
        except (TypeError, ValueError):
            profile_id = None
        if profile_id is not None and not self.db.get(Profile, profile_id):
            profile_id = None

        ticket = Ticket(
            profileID=profile_id,
            customer_name=name,
            customer_email=email,
            subject=subject,
            message=message,
            category="contact",
            priority=TicketPriority.MEDIUM,
            status=TicketStatus.OPEN,
        )
        self.db.add(ticket)
        self.db.commit()
        increment_counter("tickets_created_total", labels={"category": "contact"})
        record_event("ticket_created", {"ticket_id": ticket.ticketID})
        self.logger.info("Ticket %s created from contact form", ticket.ticketID)

        self.dashboard.forward_ticket(name, email, subject, message)
        self.email_service.send_safely(
            "new_ticket",
            email,
            name,
            {"ticket_id": ticket.ticketID, "ticket_subject": subject},
            {"ticketId": ticket.ticketID},
        )
        return 200, {"success": True, "ticketId": ticket.ticketID}

    # ------------------------------------------------------------------
    # Back-office
    # ------------------------------------------------------------------
    def get_ticket(self, ticket_id: Any) -> Optional[Ticket]:
        try:
            return self.db.get(Ticket, int(ticket_id))
        except (TypeError, ValueError):
            return None

    def add_reply(
        self,
        ticket_id: Any,
        message: str,
        author_name: Optional[str] = None,
        author_id: Optional[int] = None,
        is_internal: bool = False,
        is_staff: bool = True,
    ) -> Tuple[bool, str, Optional[TicketReply]]:
        ticket = self.get_ticket(ticket_id)
        if not ticket:
            return False, "Ticket not found", None
        message = _clean(message)
        if not message:
            return False, "Reply message is required", None
        if is_internal and not is_staff:
            return False, "Only staff can add internal notes", None

        reply = TicketReply(
            ticketID=ticket.ticketID,
            authorID=author_id,
            author_name=_clean(author_name) or ("Support" if is_staff else ticket.customer_name),
            message=message,
            is_internal=bool(is_internal),
            is_staff=bool(is_staff),
        )
        self.db.add(reply)

        status = TicketStatus(ticket.status)
        if is_staff and status == TicketStatus.OPEN:
            ticket.transition_to(TicketStatus.IN_PROGRESS)
        elif not is_staff and status == TicketStatus.RESOLVED:
            ticket.transition_to(TicketStatus.OPEN)
        ticket.updated_at = utcnow()
        self.db.commit()

        increment_counter("ticket_replies_total", labels={"internal": str(bool(is_internal)).lower()})
        if is_staff and not is_internal:
            self.email_service.send_safely(
                "ticket_reply",
                ticket.customer_email,
                ticket.customer_name,
                {"ticket_subject": ticket.subject, "message": message},
                {"ticketId": ticket.ticketID},
            )
        return True, "Reply added", reply

    def update_status(self, ticket_id: Any, status: str) -> Tuple[bool, str, Optional[Ticket]]:
        ticket = self.get_ticket(ticket_id)
        if not ticket:
            return False, "Ticket not found", None
        try:
            new_status = TicketStatus(status)
        except ValueError:
            return False, f"Unknown ticket status: {status}", ticket
        if not ticket.can_transition(new_status):
            return False, f"Cannot change ticket status from {TicketStatus(ticket.status).value} to {new_status.value}", ticket

        ticket.transition_to(new_status)
        self.db.commit()
        increment_counter("ticket_status_transition_total", labels={"status": new_status.value})
        record_event("ticket_status_changed", {"ticket_id": ticket.ticketID, "to": new_status.value})

        self.email_service.send_safely(
            "status_change",
            ticket.customer_email,
            ticket.customer_name,
            {"ticket_subject": ticket.subject, "status_label": TICKET_STATUS_LABELS[new_status.value]},
            {"ticketId": ticket.ticketID, "newStatus": new_status.value},
        )
        return True, "Ticket status updated", ticket

    def assign(self, ticket_id: Any, assignee: Optional[str]) -> Tuple[bool, str, Optional[Ticket]]:
        ticket = self.get_ticket(ticket_id)
        if not ticket:
            return False, "Ticket not found", None
        ticket.assigned_to = _clean(assignee) or None
        self.db.commit()
        return True, "Ticket assigned" if ticket.assigned_to else "Ticket unassigned", ticket

    def set_priority(self, ticket_id: Any, priority: str) -> Tuple[bool, str, Optional[Ticket]]:
        ticket = self.get_ticket(ticket_id)
        if not ticket:
            return False, "Ticket not found", None
        try:
            ticket.priority = TicketPriority(priority)
        except ValueError:
            return False, f"Unknown ticket priority: {priority}", ticket
        self.db.commit()
        return True, "Ticket priority updated", ticket

    def list_tickets(self, status: Optional[str] = None, priority: Optional[str] = None) -> List[Ticket]:
        query = self.db.query(Ticket)
        if status and status != "all":
            query = query.filter(Ticket.status == TicketStatus(status))
        if priority and priority != "all":
            query = query.filter(Ticket.priority == TicketPriority(priority))
        return query.order_by(Ticket.created_at.desc(), Ticket.ticketID.desc()).all()

    def list_customer_tickets(self, profile_id: int) -> List[Ticket]:
        return (
            self.db.query(Ticket)
            .filter(Ticket.profileID == profile_id)
            .order_by(Ticket.created_at.desc())
            .all()
        )

    def ticket_stats(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        stats = {status.value: 0 for status in TicketStatus}
        stats.update({"total": 0, "breached": 0, "at_risk": 0})
        for ticket in self.db.query(Ticket).all():
            status = TicketStatus(ticket.status)
            stats[status.value] += 1
            stats["total"] += 1
            if status in {TicketStatus.OPEN, TicketStatus.IN_PROGRESS}:
                state = sla_status(ticket, now, self.config).state
                if state == SlaState.BREACHED:
                    stats["breached"] += 1
                elif state == SlaState.AT_RISK:
                    stats["at_risk"] += 1
        return stats
