from __future__ import annotations

import hmac
import logging
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from dateutil.relativedelta import relativedelta
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy.orm import Session

from storefront.config import Config
from storefront.models import (
    Profile,
    ProductVariant,
    Subscription,
    SubscriptionFrequency,
    SubscriptionStatus,
)
from storefront.observability import increment_counter, record_event
from storefront.services.email_service import (
    EmailService,
    FREQUENCY_LABELS,
    discounted_price,
)

MANAGE_ACTIONS = ("validate", "pause", "resume", "cancel", "generate_link")
_TOKEN_SALT = "subscription-manage"


def next_delivery_after(start: date, frequency: SubscriptionFrequency | str) -> date:
    """One interval after ``start``; month arithmetic clamps to the month end."""
    return start + relativedelta(months=SubscriptionFrequency.parse(frequency).months)


class SubscriptionService:
    """Lifecycle of the perfume subscription (Abo)."""

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        email_service: Optional[EmailService] = None,
        today: Optional[Callable[[], date]] = None,
    ) -> None:
        self.db = db_session
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.email_service = email_service or EmailService(db_session, config=config)
        self._today = today or date.today
        self._serializer = URLSafeTimedSerializer(config.SUBSCRIPTION_TOKEN_SECRET, salt=_TOKEN_SALT)

    # ------------------------------------------------------------------
    # Creation & transitions
    # ------------------------------------------------------------------
    def create_subscription(
        self,
        variant_id: int,
        frequency: str,
        profile_id: Optional[int] = None,
        guest_email: Optional[str] = None,
        guest_name: Optional[str] = None,
        order_id: Optional[int] = None,
    ) -> Tuple[bool, str, Optional[Subscription]]:
        try:
            frequency_enum = SubscriptionFrequency.parse(frequency)
        except ValueError:
            return False, f"Unknown subscription frequency: {frequency}", None

        variant = self.db.get(ProductVariant, variant_id) if variant_id else None
        if not variant or not variant.product or not variant.product.is_active:
            return False, "Product variant not found", None

        guest_email = (guest_email or "").strip().lower() or None
        if profile_id is None and not guest_email:
            return False, "Email is required for guest subscriptions", None
        if profile_id is not None and not self.db.get(Profile, profile_id):
            return False, "Customer not found", None

        subscription = Subscription(
            profileID=profile_id,
            guest_email=guest_email,
            guest_name=(guest_name or "").strip() or None,
            productID=variant.productID,
            variantID=variant.variantID,
            orderID=order_id,
            frequency=frequency_enum,
            discount_percent=self.config.SUBSCRIPTION_DISCOUNTS.get(frequency_enum.value, 0),
            status=SubscriptionStatus.PENDING,
        )
        self.db.add(subscription)
        self.db.commit()
        increment_counter("subscriptions_created_total", labels={"frequency": frequency_enum.value})
        self.logger.info("Subscription %s created (%s)", subscription.subscriptionID, frequency_enum.value)
        return True, "Subscription created", subscription

    def get_subscription(self, subscription_id: Any) -> Optional[Subscription]:
        try:
            return self.db.get(Subscription, int(subscription_id))
        except (TypeError, ValueError):
            return None

    def _transition(self, subscription: Subscription, new_status: SubscriptionStatus) -> None:
        old_status = subscription.status
        subscription.transition_to(new_status)
        self.db.commit()
        increment_counter("subscription_status_transition_total", labels={"status": new_status.value})
        record_event(
            "subscription_status_changed",
            {
                "subscription_id": subscription.subscriptionID,
                "from": SubscriptionStatus(old_status).value,
                "to": new_status.value,
            },
        )

    def activate(self, subscription_id: int) -> Tuple[bool, str, Optional[Subscription]]:
        subscription = self.get_subscription(subscription_id)
        if not subscription:
            return False, "Subscription not found", None
        if subscription.status == SubscriptionStatus.ACTIVE:
            return True, "Subscription already active", subscription
        if subscription.status != SubscriptionStatus.PENDING:
            return False, "Subscription is not pending", subscription

        subscription.next_delivery = next_delivery_after(self._today(), subscription.frequency)
        self._transition(subscription, SubscriptionStatus.ACTIVE)
        self._notify(subscription, "subscription_confirmation")
        return True, "Subscription activated", subscription

    def pause(self, subscription_id: int) -> Tuple[bool, str, Optional[Subscription]]:
        subscription = self.get_subscription(subscription_id)
        if not subscription:
            return False, "Subscription not found", None
        if subscription.status != SubscriptionStatus.ACTIVE:
            return False, "Subscription is not active", subscription
        self._transition(subscription, SubscriptionStatus.PAUSED)
        self.logger.info("Paused subscription %s", subscription.subscriptionID)
        return True, "Subscription paused", subscription

    def resume(self, subscription_id: int) -> Tuple[bool, str, Optional[Subscription]]:
        subscription = self.get_subscription(subscription_id)
        if not subscription:
            return False, "Subscription not found", None
        if subscription.status != SubscriptionStatus.PAUSED:
            return False, "Subscription is not paused", subscription
        subscription.next_delivery = next_delivery_after(self._today(), subscription.frequency)
        self._transition(subscription, SubscriptionStatus.ACTIVE)
        self.logger.info("Resumed subscription %s", subscription.subscriptionID)
        return True, "Subscription resumed", subscription

    def cancel(self, subscription_id: int) -> Tuple[bool, str, Optional[Subscription]]:
        subscription = self.get_subscription(subscription_id)
        if not subscription:
            return False, "Subscription not found", None
        if subscription.status == SubscriptionStatus.CANCELLED:
            return False, "Subscription is already cancelled", subscription
        self._transition(subscription, SubscriptionStatus.CANCELLED)
        self.logger.info("Cancelled subscription %s", subscription.subscriptionID)
        self._notify(subscription, "subscription_cancelled")
        return True, "Subscription cancelled", subscription

    def record_delivery(
        self,
        subscription_id: int,
        delivered_on: Optional[date] = None,
    ) -> Tuple[bool, str, Optional[Subscription]]:
        subscription = self.get_subscription(subscription_id)
        if not subscription:
            return False, "Subscription not found", None
        if subscription.status != SubscriptionStatus.ACTIVE:
            return False, "Subscription is not active", subscription

        delivered_on = delivered_on or self._today()
        subscription.delivery_count = (subscription.delivery_count or 0) + 1
        subscription.last_delivery = delivered_on
        subscription.next_delivery = next_delivery_after(subscription.next_delivery or delivered_on, subscription.frequency)
        self.db.commit()
        increment_counter("subscription_deliveries_total")
        self._notify(subscription, "subscription_delivery")
        return True, "Delivery recorded", subscription

    # ------------------------------------------------------------------
    # Manage tokens
    # ------------------------------------------------------------------
    def generate_manage_token(self, subscription_id: int) -> str:
        return self._serializer.dumps({"sid": str(subscription_id)})

    def validate_manage_token(self, token: Optional[str], subscription_id: Any) -> bool:
        if not token or subscription_id in (None, ""):
            return False
        max_age = self.config.SUBSCRIPTION_TOKEN_MAX_AGE_DAYS * 24 * 60 * 60
        try:
            data = self._serializer.loads(token, max_age=max_age)
        except SignatureExpired:
            self.logger.info("Expired manage token for subscription %s", subscription_id)
            return False
        except BadSignature:
            return False
        if not isinstance(data, dict):
            return False
        return hmac.compare_digest(str(data.get("sid", "")), str(subscription_id))

    def build_manage_url(self, subscription: Subscription, base_url: Optional[str] = None) -> str:
        base = (base_url or self.config.PUBLIC_BASE_URL).rstrip("/")
        query = urlencode(
            {"id": subscription.subscriptionID, "token": self.generate_manage_token(subscription.subscriptionID)}
        )
        return f"{base}/manage-subscription?{query}"

    def manage(
        self,
        action: Optional[str],
        subscription_id: Any = None,
        token: Optional[str] = None,
        email: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> Tuple[int, Dict[str, Any]]:
        """Customer self-service entry point; returns (http status, body)."""
        if action not in MANAGE_ACTIONS:
            return 400, {"error": "Invalid action"}

        if action == "generate_link":
            return self._send_manage_link(email, base_url)

        if not subscription_id or not token:
            return 400, {"error": "Subscription ID and token are required"}
        if not self.validate_manage_token(token, subscription_id):
            increment_counter("subscription_token_rejected_total")
            return 401, {"error": "Invalid or expired token"}

        subscription = self.get_subscription(subscription_id)
        if not subscription:
            return 404, {"error": "Subscription not found"}

        if action == "validate":
            return 200, {"success": True, "subscription": self.serialize_for_customer(subscription)}

        handler = {"pause": self.pause, "resume": self.resume, "cancel": self.cancel}[action]
        success, message, subscription = handler(subscription.subscriptionID)
        if not success:
            return 400, {"error": message}

        body: Dict[str, Any] = {"success": True, "newStatus": SubscriptionStatus(subscription.status).value}
        if action == "resume" and subscription.next_delivery:
            body["nextDelivery"] = subscription.next_delivery.isoformat()
        return 200, body

    def _send_manage_link(self, email: Optional[str], base_url: Optional[str]) -> Tuple[int, Dict[str, Any]]:
        email = (email or "").strip().lower()
        if not email:
            return 400, {"error": "Email is required"}

        subscription = (
            self.db.query(Subscription)
            .filter(Subscription.guest_email == email)
            .filter(Subscription.status == SubscriptionStatus.ACTIVE)
            .order_by(Subscription.created_at.desc(), Subscription.subscriptionID.desc())
            .first()
        )
        if not subscription:
            return 404, {"error": "No active subscription found for this email"}

        manage_url = self.build_manage_url(subscription, base_url)
        self.email_service.send_safely(
            "subscription_manage_link",
            email,
            subscription.guest_name or "Kunde",
            {"manage_url": manage_url, "valid_days": self.config.SUBSCRIPTION_TOKEN_MAX_AGE_DAYS},
            {"subscriptionId": subscription.subscriptionID},
        )
        self.logger.info("Manage link issued for subscription %s", subscription.subscriptionID)
        return 200, {"success": True, "message": "Link sent to email"}

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------
    def send_due_reminders(self, today: Optional[date] = None) -> Dict[str, int]:
        today = today or self._today()
        target = today + timedelta(days=self.config.SUBSCRIPTION_REMINDER_DAYS_AHEAD)
        due: List[Subscription] = (
            self.db.query(Subscription)
            .filter(Subscription.status == SubscriptionStatus.ACTIVE)
            .filter(Subscription.next_delivery == target)
            .all()
        )
        self.logger.info("Found %s subscriptions to remind for %s", len(due), target.isoformat())

        sent = failed = 0
        for subscription in due:
            recipient = subscription.recipient_email
            if not recipient:
                self.logger.info("Skipping subscription %s without email", subscription.subscriptionID)
                continue
            result = self.email_service.send_safely(
                "subscription_reminder",
                recipient,
                subscription.recipient_name or "Geschätzter Kunde",
                self._email_context(subscription),
                {"subscription_id": subscription.subscriptionID, "next_delivery": target.isoformat()},
                max_attempts=self.config.EMAIL_MAX_ATTEMPTS,
            )
            if result is not None and result.success:
                sent += 1
            else:
                failed += 1

        increment_counter("subscription_reminders_sent_total", amount=sent)
        increment_counter("subscription_reminders_failed_total", amount=failed)
        return {"count": len(due), "sent": sent, "failed": failed}

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    def list_for_profile(self, profile_id: int) -> List[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.profileID == profile_id)
            .order_by(Subscription.created_at.desc())
            .all()
        )

    def status_counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in SubscriptionStatus}
        for subscription in self.db.query(Subscription.status).all():
            counts[SubscriptionStatus(subscription[0]).value] += 1
        return counts

    def serialize_for_customer(self, subscription: Subscription) -> Dict[str, Any]:
        variant = subscription.variant
        product = variant.product if variant else subscription.product
        return {
            "id": subscription.subscriptionID,
            "status": SubscriptionStatus(subscription.status).value,
            "frequency": SubscriptionFrequency(subscription.frequency).value,
            "next_delivery": subscription.next_delivery.isoformat() if subscription.next_delivery else None,
            "guest_name": subscription.guest_name,
            "guest_email": subscription.guest_email,
            "discount_percent": subscription.discount_percent,
            "delivery_count": subscription.delivery_count,
            "product": product.name if product else "Unbekanntes Produkt",
            "variant": (variant.name or variant.size) if variant else None,
            "price": float(variant.price) if variant else None,
            "image": product.image_url if product else None,
        }

    def _email_context(self, subscription: Subscription) -> Dict[str, Any]:
        variant = subscription.variant
        product = variant.product if variant else subscription.product
        price = float(variant.price) if variant else 0.0
        frequency = SubscriptionFrequency(subscription.frequency).value
        return {
            "product_name": (product.name if product else None) or "Ihr Parfüm",
            "variant_name": (variant.size if variant else "") or "",
            "frequency_label": FREQUENCY_LABELS.get(frequency, frequency),
            "discount_percent": subscription.discount_percent,
            "price": price,
            "discounted_price": discounted_price(price, subscription.discount_percent),
            "next_delivery": subscription.next_delivery.strftime("%d.%m.%Y") if subscription.next_delivery else None,
            "manage_url": self.build_manage_url(subscription) if subscription.guest_email else None,
            "is_guest": subscription.profileID is None,
        }

    def _notify(self, subscription: Subscription, email_type: str) -> None:
        recipient = subscription.recipient_email
        if not recipient:
            return
        self.email_service.send_safely(
            email_type,
            recipient,
            subscription.recipient_name,
            self._email_context(subscription),
            {"subscriptionId": subscription.subscriptionID},
        )
