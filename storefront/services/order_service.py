from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from storefront.config import Config
from storefront.models import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    utcnow,
)
from storefront.observability import increment_counter, record_event
from storefront.services.email_service import EmailService

ORDER_STATUS_LABELS = {
    "pending": "Ausstehend",
    "processing": "In Bearbeitung",
    "shipped": "Versendet",
    "delivered": "Geliefert",
    "cancelled": "Storniert",
}

# external shop status -> (order status, forces paid)
EXTERNAL_STATUS_MAP: Dict[str, Tuple[OrderStatus, bool]] = {
    "pending": (OrderStatus.PENDING, False),
    "processing": (OrderStatus.PROCESSING, False),
    "paid": (OrderStatus.PROCESSING, True),
    "shipped": (OrderStatus.SHIPPED, True),
    "delivered": (OrderStatus.DELIVERED, True),
    "completed": (OrderStatus.DELIVERED, True),
    "cancelled": (OrderStatus.CANCELLED, False),
    "refunded": (OrderStatus.CANCELLED, False),
}

TRACKING_URLS = {
    "DHL": "https://www.dhl.de/de/privatkunden/pakete-empfangen/verfolgen.html?piececode={number}",
    "DPD": "https://tracking.dpd.de/status/de_DE/parcel/{number}",
    "HERMES": "https://www.myhermes.de/empfangen/sendungsverfolgung/sendungsinformation#{number}",
}


def _line_quantity(item: Dict[str, Any]) -> int:
    """Missing quantities default to one; an explicit zero stays zero."""
    quantity = item.get("quantity", 1)
    return 1 if quantity is None else int(quantity)


def _base36(value: int) -> str:
    digits = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    if value == 0:
        return "0"
    out = []
    while value:
        value, remainder = divmod(value, 36)
        out.append(digits[remainder])
    return "".join(reversed(out))


def temporary_order_number() -> str:
    return f"TMP-{uuid.uuid4().hex[:12].upper()}"


def assign_order_number(order: Order) -> str:
    """Replace the placeholder number once the row id is known."""
    stamp = (order.created_at or utcnow()).strftime("%Y%m%d")
    order.order_number = f"ORD-{stamp}-{order.orderID:05d}"
    return order.order_number


def tracking_url_for(carrier: Optional[str], tracking_number: Optional[str]) -> Optional[str]:
    if not tracking_number:
        return None
    template = TRACKING_URLS.get((carrier or "DHL").upper())
    return template.format(number=tracking_number) if template else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_order(order: Order, include_items: bool = True) -> Dict[str, Any]:
    status = OrderStatus(order.status).value
    payload: Dict[str, Any] = {
        "id": order.orderID,
        "order_number": order.order_number,
        "status": status,
        "status_label": ORDER_STATUS_LABELS[status],
        "payment_status": PaymentStatus(order.payment_status).value,
        "payment_method": order.payment_method,
        "payment_reference": order.payment_reference,
        "payment_intent_id": order.payment_intent_id,
        "customer_email": order.customer_email,
        "customer_name": order.customer_name,
        "subtotal": float(order.subtotal or 0),
        "discount": float(order.discount or 0),
        "shipping_cost": float(order.shipping_cost or 0),
        "total": float(order.total or 0),
        "coupon_code": order.coupon_code,
        "shipping_address": {
            "street": order.shipping_street,
            "postal_code": order.shipping_postal_code,
            "city": order.shipping_city,
            "country": order.shipping_country,
        },
        "tracking_number": order.tracking_number,
        "carrier": order.carrier,
        "notes": order.notes,
        "created_at": _iso(order.created_at),
        "updated_at": _iso(order.updated_at),
    }
    if include_items:
        payload["items"] = [
            {
                "id": item.orderItemID,
                "variant_id": item.variantID,
                "product_name": item.product_name,
                "variant_size": item.variant_size,
                "quantity": item.quantity,
                "unit_price": float(item.unit_price),
                "total_price": float(item.total_price),
            }
            for item in order.items
        ]
    return payload


class OrderService:
    """Back-office order and payment workflow."""

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        email_service: Optional[EmailService] = None,
        clock_ms: Callable[[], int] = lambda: int(time.time() * 1000),
    ) -> None:
        self.db = db_session
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.email_service = email_service or EmailService(db_session, config=config)
        self._clock_ms = clock_ms

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_order(self, identifier: Any) -> Optional[Order]:
        if identifier is None:
            return None
        if isinstance(identifier, int) or (isinstance(identifier, str) and identifier.isdigit()):
            return self.db.get(Order, int(identifier))
        return self.db.query(Order).filter(Order.order_number == str(identifier).strip()).first()

    def list_orders(
        self,
        search: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Order]:
        query = self.db.query(Order)
        if search:
            query = query.filter(func.lower(Order.order_number).contains(search.strip().lower()))
        if status and status != "all":
            query = query.filter(Order.status == OrderStatus(status))
        query = query.order_by(Order.created_at.desc(), Order.orderID.desc())
        return query.limit(limit or self.config.ORDER_LIST_PAGE_SIZE).all()

    def list_customer_orders(self, profile_id: int) -> List[Order]:
        return (
            self.db.query(Order)
            .filter(Order.profileID == profile_id)
            .order_by(Order.created_at.desc(), Order.orderID.desc())
            .all()
        )

    def order_stats(self) -> Dict[str, int]:
        stats = {status.value: 0 for status in OrderStatus}
        rows = self.db.query(Order.status, func.count(Order.orderID)).group_by(Order.status).all()
        for status, count in rows:
            stats[OrderStatus(status).value] = count
        stats["total"] = sum(count for _, count in rows)
        return stats

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def update_order_status(
        self,
        order_id: Any,
        status: str,
        tracking_number: Optional[str] = None,
        carrier: Optional[str] = None,
    ) -> Tuple[bool, str, Optional[Order]]:
        order = self.get_order(order_id)
        if not order:
            return False, "Order not found", None
        try:
            new_status = OrderStatus(status)
        except ValueError:
            return False, f"Unknown order status: {status}", order

        if not order.can_transition(new_status):
            return False, f"Cannot change order status from {OrderStatus(order.status).value} to {new_status.value}", order

        old_status = OrderStatus(order.status)
        if new_status == OrderStatus.SHIPPED:
            order.tracking_number = (tracking_number or "").strip() or order.tracking_number
            order.carrier = (carrier or "").strip() or order.carrier or "DHL"
        order.transition_to(new_status)
        self.db.commit()

        increment_counter("order_status_transition_total", labels={"status": new_status.value})
        record_event(
            "order_status_changed",
            {"order_id": order.orderID, "from": old_status.value, "to": new_status.value},
        )
        self.logger.info("Order %s moved %s -> %s", order.order_number, old_status.value, new_status.value)

        if new_status == OrderStatus.SHIPPED:
            self.send_order_email(order, "shipping_notification")
        elif new_status == OrderStatus.DELIVERED:
            self.send_order_email(order, "order_delivered")
        return True, "Order status updated", order

    def update_payment_status(self, order_id: Any, payment_status: str) -> Tuple[bool, str, Optional[Order]]:
        order = self.get_order(order_id)
        if not order:
            return False, "Order not found", None
        try:
            new_status = PaymentStatus(payment_status)
        except ValueError:
            return False, f"Unknown payment status: {payment_status}", order
        if not order.can_transition_payment(new_status):
            return (
                False,
                f"Cannot change payment status from {PaymentStatus(order.payment_status).value} to {new_status.value}",
                order,
            )
        order.transition_payment_to(new_status)
        self.db.commit()
        increment_counter("payment_status_transition_total", labels={"status": new_status.value})
        record_event("payment_status_changed", {"order_id": order.orderID, "to": new_status.value})
        return True, "Payment status updated", order

    # ------------------------------------------------------------------
    # External shop webhook
    # ------------------------------------------------------------------
    def ingest_external_order(self, payload: Dict[str, Any], source: Optional[str]) -> Tuple[bool, str, Optional[Order]]:
        source = (source or "unknown").strip() or "unknown"
        if not isinstance(payload, dict) or payload.get("total") is None:
            return False, "Missing required field: total", None
        try:
            total = float(payload["total"])
        except (TypeError, ValueError):
            return False, "Invalid total", None

        items = payload.get("items") or []
        try:
            lines = [
                (
                    str(item.get("name") or "Artikel"),
                    str(item.get("variant_size") or "Standard"),
                    _line_quantity(item),
                    float(item.get("price") or 0),
                )
                for item in items
            ]
        except (AttributeError, TypeError, ValueError):
            return False, "Invalid items", None
        subtotal = round(sum(qty * price for _, _, qty, price in lines), 2) if lines else total

        mapped_status, force_paid = EXTERNAL_STATUS_MAP.get(
            str(payload.get("status") or "").lower(), (OrderStatus.PENDING, False)
        )
        paid = force_paid or mapped_status in {OrderStatus.SHIPPED, OrderStatus.DELIVERED}

        notes = f"Externe Bestellung via Webhook ({source})"
        if payload.get("id"):
            notes += f" - Externe ID: {payload['id']}"
        if payload.get("email"):
            notes += f" - Kunde: {payload['email']}"

        address = payload.get("shipping_address") or {}
        guest_name = " ".join(
            part for part in (payload.get("first_name"), payload.get("last_name")) if part
        ) or None
        order = Order(
            order_number=f"EXT-{source.upper()}-{_base36(self._clock_ms())}",
            guest_email=payload.get("email"),
            guest_name=guest_name,
            status=mapped_status,
            payment_status=PaymentStatus.PAID if paid else PaymentStatus.PENDING,
            payment_method=PaymentMethod.EXTERNAL.value,
            subtotal=subtotal,
            discount=0,
            shipping_cost=0,
            total=total,
            shipping_street=address.get("street"),
            shipping_postal_code=address.get("postal_code"),
            shipping_city=address.get("city"),
            shipping_country=address.get("country"),
            notes=notes,
        )
        for name, size, quantity, price in lines:
            order.items.append(
                OrderItem(
                    product_name=name,
                    variant_size=size,
                    quantity=quantity,
                    unit_price=price,
                    total_price=round(price * quantity, 2),
                )
            )
        self.db.add(order)
        self.db.commit()
        increment_counter("external_orders_total", labels={"source": source})
        self.logger.info("External order %s created from %s", order.order_number, source)
        return True, "Order created successfully", order

    # ------------------------------------------------------------------
    # Emails
    # ------------------------------------------------------------------
    def order_email_context(self, order: Order) -> Dict[str, Any]:
        return {
            "order_number": order.order_number,
            "items": [
                {"name": item.product_name, "quantity": item.quantity, "price": float(item.unit_price)}
                for item in order.items
            ],
            "subtotal": float(order.subtotal or 0),
            "discount": float(order.discount or 0),
            "shipping": float(order.shipping_cost or 0),
            "total": float(order.total or 0),
            "shipping_address": {
                "street": order.shipping_street or "",
                "city": order.shipping_city or "",
                "postalCode": order.shipping_postal_code or "",
            },
            "tracking_number": order.tracking_number,
            "tracking_url": tracking_url_for(order.carrier, order.tracking_number),
            "carrier": order.carrier or "DHL",
        }

    def send_order_email(self, order: Order, email_type: str) -> None:
        recipient = order.customer_email
        if not recipient:
            self.logger.info("Order %s has no email address; %s not sent", order.order_number, email_type)
            return
        self.email_service.send_safely(
            email_type,
            recipient,
            order.customer_name,
            self.order_email_context(order),
            {"orderId": order.orderID, "orderNumber": order.order_number},
        )
