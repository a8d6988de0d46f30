from __future__ import annotations

import pytest

from storefront.models import EmailLog, EmailStatus
from storefront.services.email_service import (
    DOMAIN_VERIFICATION_WARNING,
    EmailService,
    discounted_price,
    format_euro,
    is_domain_verification_error,
)

from conftest import StubConfig, StubEmailSender


class _NoKeyConfig(StubConfig):
    RESEND_API_KEY = ""


ORDER_PAYLOAD = {
    "type": "order_confirmation",
    "customerEmail": "kundin@example.com",
    "customerName": "Kundin",
    "orderId": 7,
    "orderNumber": "ORD-20260301-00007",
    "items": [{"name": "Oud Noir", "quantity": 2, "price": 49.9}],
    "subtotal": 99.8,
    "shipping": 0,
    "total": 99.8,
    "shippingAddress": {"street": "Hauptstr. 1", "postalCode": "10115", "city": "Berlin"},
}


def test_format_helpers():
    assert format_euro(1234.5) == "1.234,50 €"
    assert format_euro(None) == "0,00 €"
    assert discounted_price(40, 15) == 34.0
    assert is_domain_verification_error("You can only send testing emails to your own address")
    assert not is_domain_verification_error("rate limited")


def test_send_without_key_is_skipped_and_not_logged(db_session):
    sender = StubEmailSender()
    service = EmailService(db_session, config=_NoKeyConfig, sender=sender)

    result = service.send("new_ticket", "max@example.com", "Max", {"ticket_subject": "Hallo"})

    assert result.success and result.skipped
    assert result.to_dict() == {"success": True, "skipped": True}
    assert sender.sent == []
    assert db_session.query(EmailLog).count() == 0


def test_send_logs_success(email_service, email_sender, db_session):
    result = email_service.send("new_ticket", "max@example.com", "Max", {"ticket_subject": "Hallo"}, {"ticketId": 3})

    assert result.delivered
    assert result.to_dict() == {"success": True, "id": "re_1"}
    payload = email_sender.sent[0]
    assert payload["to"] == ["max@example.com"]
    assert payload["from"] == StubConfig.EMAIL_FROM
    log = db_session.query(EmailLog).one()
    assert log.status == EmailStatus.SENT
    assert log.provider_id == "re_1"
    assert log.details == {"ticketId": 3}


def test_domain_verification_failure_is_a_soft_skip(db_session):
    sender = StubEmailSender(failures=["Please verify a domain to send to other recipients"])
    service = EmailService(db_session, config=StubConfig, sender=sender)

    result = service.send("new_ticket", "max@example.com", "Max", {"ticket_subject": "Hallo"})

    assert result.success
    assert result.to_dict() == {"success": True, "warning": DOMAIN_VERIFICATION_WARNING}
    log = db_session.query(EmailLog).one()
    assert log.status == EmailStatus.SKIPPED
    assert log.details["reason"] == "domain_verification_required"


def test_retries_with_exponential_backoff(db_session, sleeps):
    sender = StubEmailSender(failures=["timeout", "timeout"])
    service = EmailService(db_session, config=StubConfig, sender=sender, sleep=sleeps.append)

    result = service.send("subscription_reminder", "a@example.com", "A", {"product_name": "Oud"}, max_attempts=3)

    assert result.delivered
    assert result.attempts == 3
    assert sleeps == [1, 2]


def test_provider_failure_is_logged(db_session):
    service = EmailService(db_session, config=StubConfig, sender=StubEmailSender(failures=["invalid recipient"]))

    result = service.send("new_ticket", "max@example.com", "Max", {"ticket_subject": "Hallo"})

    assert not result.success
    assert result.to_dict() == {"success": False, "error": "invalid recipient"}
    log = db_session.query(EmailLog).one()
    assert log.status == EmailStatus.FAILED
    assert log.error_message == "invalid recipient"


def test_unknown_type_raises(email_service):
    with pytest.raises(ValueError):
        email_service.send("newsletter", "a@example.com", None, {})
    assert email_service.send_safely("newsletter", "a@example.com", None, {}) is None


def test_send_order_email_renders_items_and_totals(email_service, email_sender):
    result = email_service.send_order_email(dict(ORDER_PAYLOAD))

    assert result.delivered
    payload = email_sender.sent[0]
    assert payload["subject"] == "Bestellbestätigung #ORD-20260301-00007"
    assert "Oud Noir" in payload["html"]
    assert "99,80 €" in payload["html"]


def test_send_order_email_validates_payload(email_service):
    with pytest.raises(ValueError):
        email_service.send_order_email(dict(ORDER_PAYLOAD, type="subscription_reminder"))
    with pytest.raises(ValueError):
        email_service.send_order_email(dict(ORDER_PAYLOAD, customerEmail=""))


def test_shipping_notification_links_tracking(email_service, email_sender):
    email_service.send_order_email(
        dict(
            ORDER_PAYLOAD,
            type="shipping_notification",
            trackingNumber="00340434",
            trackingUrl="https://www.dhl.de/track?piececode=00340434",
        )
    )

    payload = email_sender.sent[0]
    assert payload["subject"] == "Deine Bestellung #ORD-20260301-00007 wurde versendet!"
    assert "00340434" in payload["html"]


def test_send_subscription_email_shows_discounted_price(email_service, email_sender):
    result = email_service.send_subscription_email(
        {
            "type": "subscription_confirmation",
            "customerEmail": "abo@example.com",
            "customerName": "Anna",
            "productName": "Amber Gold",
            "frequency": "monthly",
            "price": 40,
            "discountPercent": 15,
            "subscriptionId": 5,
        }
    )

    assert result.delivered
    html = email_sender.sent[0]["html"]
    assert "Amber Gold" in html
    assert "34,00 €" in html

    with pytest.raises(ValueError):
        email_service.send_subscription_email({"type": "order_confirmation", "customerEmail": "a@example.com"})


def test_email_log_listing_and_stats(email_service, db_session):
    email_service.send("new_ticket", "a@example.com", "A", {"ticket_subject": "Eins"})
    failing = EmailService(db_session, config=StubConfig, sender=StubEmailSender(failures=["down"]))
    failing.send("ticket_reply", "b@example.com", "B", {"ticket_subject": "Zwei", "message": "Hallo"})

    stats = email_service.email_log_stats()
    assert stats["sent"] == 1
    assert stats["failed"] == 1
    assert stats["total"] == 2

    assert [log.type for log in email_service.list_email_logs(status="failed")] == ["ticket_reply"]
    assert len(email_service.list_email_logs(email_type="new_ticket")) == 1
    assert len(email_service.list_email_logs(limit=1)) == 1


def _failed_log(db_session):
    failing = EmailService(db_session, config=StubConfig, sender=StubEmailSender(failures=["down"]))
    result = failing.send(
        "ticket_reply", "b@example.com", "Berta", {"ticket_subject": "Zwei", "message": "Hallo"},
        {"ticketId": 3, "originalContent": "Deine Anfrage wurde beantwortet."},
    )
    return db_session.get(EmailLog, result.log_id)


def test_resend_updates_failed_log_in_place(db_session, sleeps):
    log = _failed_log(db_session)
    sender = StubEmailSender(failures=["timeout"])
    service = EmailService(db_session, config=StubConfig, sender=sender, sleep=sleeps.append)

    ok, message, entry = service.resend_log(log.emailLogID, resent_by=42)

    assert ok, message
    assert entry.emailLogID == log.emailLogID
    assert entry.status == EmailStatus.SENT
    assert entry.provider_id == "re_1"
    assert entry.error_message is None
    assert entry.details["resentBy"] == 42
    assert entry.details["ticketId"] == 3
    assert sleeps == [1]
    assert sender.sent[0]["to"] == ["b@example.com"]
    assert sender.sent[0]["subject"] == "Neue Antwort: Zwei"
    assert "Deine Anfrage wurde beantwortet." in sender.sent[0]["html"]
    assert db_session.query(EmailLog).count() == 1


def test_resend_failure_keeps_log_failed(db_session, sleeps):
    log = _failed_log(db_session)
    service = EmailService(
        db_session, config=StubConfig, sender=StubEmailSender(failures=["down"] * 3), sleep=sleeps.append
    )

    ok, message, entry = service.resend_log(log.emailLogID)

    assert not ok
    assert message == "down"
    assert entry.status == EmailStatus.FAILED
    assert entry.details["retryError"] == "down"
    assert "lastRetryAt" in entry.details
    assert sleeps == [1, 2]


def test_resend_unknown_log_or_missing_key(db_session, email_service):
    assert email_service.resend_log(999) == (False, "Email log not found", None)

    log = _failed_log(db_session)
    no_key = EmailService(db_session, config=_NoKeyConfig, sender=StubEmailSender())
    ok, message, _ = no_key.resend_log(log.emailLogID)
    assert not ok
    assert message == "Email provider is not configured"
