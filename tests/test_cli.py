from __future__ import annotations

from datetime import date

from storefront.models import Subscription, SubscriptionFrequency, SubscriptionStatus


def test_reminder_command_sends_due_reminders(client, db_session, make_variant, email_sender):
    from storefront.main import app

    variant = make_variant()
    db_session.add(
        Subscription(
            variantID=variant.variantID,
            productID=variant.productID,
            guest_email="abo@example.com",
            guest_name="Anna",
            frequency=SubscriptionFrequency.MONTHLY,
            discount_percent=15,
            status=SubscriptionStatus.ACTIVE,
            next_delivery=date(2026, 5, 4),
        )
    )
    db_session.commit()

    result = app.test_cli_runner().invoke(args=["send-subscription-reminders", "--date", "2026-05-01"])

    assert result.exit_code == 0
    assert "Reminders due: 1, sent: 1, failed: 0" in result.output
    assert email_sender.subjects() == ["Erinnerung: Ihre Abo-Lieferung in 3 Tagen"]
