from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from storefront.config import Config
from storefront.models import (
    Coupon,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Profile,
    ProductVariant,
    SubscriptionFrequency,
)
from storefront.observability import increment_counter, record_event
from storefront.services.catalog_service import CatalogService
from storefront.services.email_service import EmailService, discounted_price
from storefront.services.order_service import (
    OrderService,
    assign_order_number,
    temporary_order_number,
)
from storefront.services.payment_service import PaymentGatewayError, PaymentService, to_cents
from storefront.services.subscription_service import SubscriptionService

PAYPAL_ORDER_ID = re.compile(r"^[A-Za-z0-9]{1,50}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass
class QuoteLine:
    variant: ProductVariant
    quantity: int
    unit_price: float
    subscription_frequency: Optional[SubscriptionFrequency] = None

    @property
    def product_name(self) -> str:
        return self.variant.product.name if self.variant.product else (self.variant.name or "")

    @property
    def total(self) -> float:
        return round(self.unit_price * self.quantity, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant_id": self.variant.variantID,
            "product_name": self.product_name,
            "size": self.variant.size,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "total": self.total,
            "subscription": self.subscription_frequency.value if self.subscription_frequency else None,
        }


@dataclass
class Quote:
    lines: List[QuoteLine]
    subtotal: float
    discount: float
    shipping: float
    total: float
    coupon: Optional[Coupon] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [line.to_dict() for line in self.lines],
            "subtotal": self.subtotal,
            "discount": self.discount,
            "shipping": self.shipping,
            "total": self.total,
            "coupon_code": self.coupon.code if self.coupon else None,
            "free_shipping": self.shipping == 0,
        }


def shipping_cost_for(amount: float, config: type[Config] = Config) -> float:
    return 0.0 if amount >= config.FREE_SHIPPING_THRESHOLD else config.STANDARD_SHIPPING_COST


class CheckoutService:
    """Prices carts server-side, creates orders and hands off to Stripe or PayPal."""

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        payment_service: Optional[PaymentService] = None,
        email_service: Optional[EmailService] = None,
        catalog_service: Optional[CatalogService] = None,
        subscription_service: Optional[SubscriptionService] = None,
        order_service: Optional[OrderService] = None,
    ) -> None:
        self.db = db_session
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.payments = payment_service or PaymentService(config)
        self.email_service = email_service or EmailService(db_session, config=config)
        self.catalog = catalog_service or CatalogService(db_session, config=config)
        self.subscriptions = subscription_service or SubscriptionService(
            db_session, config=config, email_service=self.email_service
        )
        self.orders = order_service or OrderService(db_session, config=config, email_service=self.email_service)

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------
    def quote(
        self,
        items: Any,
        coupon_code: Optional[str] = None,
    ) -> Tuple[bool, str, Optional[Quote]]:
        if not isinstance(items, list) or not items:
            return False, "Der Warenkorb ist leer", None

        lines: List[QuoteLine] = []
        requested: Dict[int, int] = {}
        for raw in items:
            if not isinstance(raw, dict):
                return False, "Ungültige Warenkorbposition", None
            try:
                variant_id = int(raw.get("variant_id"))
                quantity = int(raw.get("quantity", 1))
            except (TypeError, ValueError):
                return False, "Ungültige Warenkorbposition", None
            if quantity <= 0:
                return False, "Menge muss größer als 0 sein", None

            variant = self.db.get(ProductVariant, variant_id)
            if not variant or not variant.product or not variant.product.is_active:
                return False, f"Artikel {variant_id} nicht gefunden", None
            # repeated lines for one variant draw on the same stock
            requested[variant_id] = requested.get(variant_id, 0) + quantity
            if not variant.in_stock or (variant.stock or 0) < requested[variant_id]:
                return False, f"{variant.product.name} ({variant.size}) ist nicht ausreichend auf Lager", None

            frequency = None
            unit_price = float(variant.price)
            if raw.get("subscription"):
                try:
                    frequency = SubscriptionFrequency.parse(raw["subscription"])
                except ValueError:
                    return False, f"Unbekannter Abo-Rhythmus: {raw['subscription']}", None
                unit_price = discounted_price(
                    unit_price, self.config.SUBSCRIPTION_DISCOUNTS.get(frequency.value, 0)
                )
            lines.append(QuoteLine(variant, quantity, unit_price, frequency))

        subtotal = round(sum(line.total for line in lines), 2)
        coupon = None
        discount = 0.0
        if coupon_code:
            ok, message, coupon = self.catalog.validate_coupon(coupon_code, subtotal)
            if not ok:
                return False, message, None
            discount = coupon.discount_for(subtotal)

        shipping = shipping_cost_for(subtotal - discount, self.config)
        total = round(subtotal - discount + shipping, 2)
        return True, "OK", Quote(lines, subtotal, discount, shipping, total, coupon)

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------
    def create_order(
        self,
        quote: Quote,
        payment_method: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        profile_id: Optional[int] = None,
        shipping_address: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bool, str, Optional[Order]]:
        profile = self.db.get(Profile, profile_id) if profile_id else None
        email = (email or (profile.email if profile else "") or "").strip().lower()
        if not profile and not EMAIL_PATTERN.match(email):
            return False, "Ungültige E-Mail-Adresse", None

        address = shipping_address or {}
        if not address and profile and profile.default_shipping_address:
            address = profile.default_shipping_address.as_shipping_dict()
        country = (address.get("country") or "").upper() or None
        if country and country not in self.config.ALLOWED_SHIPPING_COUNTRIES:
            return False, "Lieferung ist nur nach Deutschland, Österreich und in die Schweiz möglich", None

        order = Order(
            order_number=temporary_order_number(),
            profileID=profile.profileID if profile else None,
            guest_email=None if profile else email,
            guest_name=None if profile else ((name or "").strip() or None),
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            payment_method=payment_method,
            subtotal=quote.subtotal,
            discount=quote.discount,
            shipping_cost=quote.shipping,
            total=quote.total,
            coupon_code=quote.coupon.code if quote.coupon else None,
            shipping_street=address.get("street"),
            shipping_postal_code=address.get("postal_code") or address.get("postalCode"),
            shipping_city=address.get("city"),
            shipping_country=country,
        )
        for line in quote.lines:
            order.items.append(
                OrderItem(
                    variantID=line.variant.variantID,
                    product_name=line.product_name,
                    variant_size=line.variant.size or "Standard",
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    total_price=line.total,
                )
            )
        self.db.add(order)
        self.db.flush()
        assign_order_number(order)

        if quote.coupon:
            quote.coupon.current_uses = (quote.coupon.current_uses or 0) + 1
        self.db.commit()

        for line in quote.lines:
            if line.subscription_frequency:
                self.subscriptions.create_subscription(
                    line.variant.variantID,
                    line.subscription_frequency.value,
                    profile_id=order.profileID,
                    guest_email=order.guest_email,
                    guest_name=order.guest_name,
                    order_id=order.orderID,
                )

        increment_counter("orders_created_total", labels={"payment_method": payment_method})
        record_event("order_created", {"order_id": order.orderID, "total": float(order.total)})
        self.logger.info("Order %s created (%s)", order.order_number, payment_method)
        return True, "Order created", order

    def create_checkout(
        self,
        items: Any,
        payment_method: Optional[str],
        origin: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        profile_id: Optional[int] = None,
        coupon_code: Optional[str] = None,
        shipping_address: Optional[Dict[str, Any]] = None,
    ) -> Tuple[bool, str, Optional[Dict[str, Any]]]:
        """
        Price the cart, persist a pending order and open a hosted payment page.

        Gateway failures raise ``PaymentGatewayError`` after the order's
        payment status has been set to failed.
        """
        method = PaymentMethod.PAYPAL if payment_method == "paypal" else PaymentMethod.STRIPE
        ok, message, quote = self.quote(items, coupon_code)
        if not ok:
            return False, message, None
        ok, message, order = self.create_order(quote, method.value, email, name, profile_id, shipping_address)
        if not ok:
            return False, message, None

        origin = origin.rstrip("/")
        try:
            if method == PaymentMethod.PAYPAL:
                session = self.payments.paypal.create_order(
                    [{"name": line.product_name, "quantity": line.quantity, "unit_price": line.unit_price} for line in quote.lines],
                    {"subtotal": quote.subtotal, "discount": quote.discount, "shipping": quote.shipping, "total": quote.total},
                    return_url=f"{origin}/checkout/success",
                    cancel_url=f"{origin}/checkout/cancel",
                    reference=order.order_number,
                )
            else:
                session = self.payments.stripe.create_checkout_session(
                    self._stripe_line_items(quote, origin),
                    success_url=f"{origin}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
                    cancel_url=f"{origin}/checkout/cancel",
                    customer_email=order.customer_email,
                    discount=quote.discount,
                    metadata={"order_id": str(order.orderID), "order_number": order.order_number},
                )
        except PaymentGatewayError:
            order.transition_payment_to(PaymentStatus.FAILED)
            self.db.commit()
            self.payments.record_outcome(method.value, "error")
            self.logger.exception("Checkout handoff failed for order %s", order.order_number)
            raise

        order.payment_reference = session["id"]
        self.db.commit()
        self.payments.record_outcome(method.value, "session_created")

        response: Dict[str, Any] = {
            "url": session["url"],
            "payment_method": method.value,
            "order_number": order.order_number,
        }
        if method == PaymentMethod.PAYPAL:
            response["order_id"] = session["id"]
        else:
            response["session_id"] = session["id"]
        return True, "Checkout created", response

    def _stripe_line_items(self, quote: Quote, origin: str) -> List[Dict[str, Any]]:
        currency = self.config.CURRENCY.lower()
        line_items: List[Dict[str, Any]] = []
        for line in quote.lines:
            image = line.variant.product.image_url if line.variant.product else None
            if image and image.startswith("/"):
                image = f"{origin}{image}"
            line_items.append(
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {
                            "name": f"{line.product_name} ({line.variant.size})",
                            "images": [image] if image else [],
                        },
                        "unit_amount": to_cents(line.unit_price),
                    },
                    "quantity": line.quantity,
                }
            )
        if quote.shipping > 0:
            line_items.append(
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": "Versand"},
                        "unit_amount": to_cents(quote.shipping),
                    },
                    "quantity": 1,
                }
            )
        return line_items

    # ------------------------------------------------------------------
    # Payment confirmation
    # ------------------------------------------------------------------
    def confirm_stripe_session(self, session_id: Optional[str]) -> Tuple[bool, str, Optional[Order]]:
        if not session_id:
            return False, "session_id is required", None
        try:
            session = self.payments.stripe.retrieve_session(session_id)
        except PaymentGatewayError as exc:
            self.logger.warning("Could not retrieve Stripe session %s: %s", session_id, exc)
            return False, "Invalid session_id", None

        order_id = (session.get("metadata") or {}).get("order_id")
        order = self.orders.get_order(order_id) if order_id else None
        if order is None:
            order = self.db.query(Order).filter(Order.payment_reference == session_id).first()
        if order is None:
            return False, "Order not found", None
        if session.get("payment_status") != "paid":
            return False, "Payment not completed", order
        if order.payment_status == PaymentStatus.PAID:
            return True, "Order already confirmed", order

        # payment_reference stays the session id
        order.payment_intent_id = session.get("payment_intent")
        self._fulfil_payment(order, session_id)
        return True, "Payment confirmed", order

    def capture_paypal(self, paypal_order_id: Any) -> Tuple[bool, str, Optional[Dict[str, Any]]]:
        if not isinstance(paypal_order_id, str) or not PAYPAL_ORDER_ID.match(paypal_order_id):
            return False, "Invalid order_id", None

        order = self.db.query(Order).filter(Order.payment_reference == paypal_order_id).first()
        if order and order.payment_status == PaymentStatus.PAID:
            return True, "Order already captured", {
                "success": True,
                "order_id": paypal_order_id,
                "status": "COMPLETED",
                "order_number": order.order_number,
            }

        capture = self.payments.paypal.capture_order(paypal_order_id)
        self.payments.record_outcome("paypal", "captured")
        if order and capture.get("status") == "COMPLETED":
            self._fulfil_payment(order, paypal_order_id)

        return True, "Captured", {
            "success": True,
            "order_id": capture.get("id"),
            "status": capture.get("status"),
            "order_number": order.order_number if order else None,
        }

    def _fulfil_payment(self, order: Order, reference: str) -> None:
        order.transition_payment_to(PaymentStatus.PAID)
        if order.can_transition(OrderStatus.PROCESSING):
            order.transition_to(OrderStatus.PROCESSING)
        for item in order.items:
            if item.variant is not None:
                item.variant.apply_stock_delta(-item.quantity)
        if order.profile is not None:
            order.profile.total_spent = float(order.profile.total_spent or 0) + float(order.total)
        self.db.commit()

        increment_counter("orders_paid_total", labels={"payment_method": order.payment_method or "unknown"})
        record_event("order_paid", {"order_id": order.orderID, "reference": reference})
        self.logger.info("Order %s paid", order.order_number)

        for subscription in list(order.subscriptions):
            self.subscriptions.activate(subscription.subscriptionID)
        self.orders.send_order_email(order, "order_confirmation")
