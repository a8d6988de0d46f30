from __future__ import annotations

from datetime import datetime, timezone

import pytest

from storefront.models import Order, OrderStatus, PaymentStatus
from storefront.observability.metrics import get_counter_value
from storefront.services.order_service import (
    OrderService,
    _base36,
    assign_order_number,
    serialize_order,
    tracking_url_for,
)

from conftest import StubConfig


@pytest.fixture
def service(db_session, email_service):
    return OrderService(db_session, config=StubConfig, email_service=email_service, clock_ms=lambda: 1700000000000)


def test_order_status_walks_the_allowed_path(service, make_order, email_sender):
    order = make_order()

    ok, _, order = service.update_order_status(order.orderID, "processing")
    assert ok and order.status == OrderStatus.PROCESSING

    ok, _, order = service.update_order_status(order.orderID, "shipped", tracking_number=" 00340434 ")
    assert ok
    assert order.tracking_number == "00340434"
    assert order.carrier == "DHL"

    ok, _, order = service.update_order_status(order.orderID, "delivered")
    assert ok and order.status == OrderStatus.DELIVERED

    assert email_sender.subjects() == [
        f"Deine Bestellung #{order.order_number} wurde versendet!",
        f"Deine Bestellung #{order.order_number} wurde zugestellt",
    ]
    assert get_counter_value("order_status_transition_total", {"status": "shipped"}) == 1


@pytest.mark.parametrize(
    "start, target",
    [
        (OrderStatus.PENDING, "shipped"),
        (OrderStatus.PENDING, "delivered"),
        (OrderStatus.SHIPPED, "cancelled"),
        (OrderStatus.DELIVERED, "processing"),
        (OrderStatus.CANCELLED, "pending"),
    ],
)
def test_illegal_order_transitions_are_rejected(service, make_order, start, target):
    order = make_order(status=start)
    ok, message, order = service.update_order_status(order.orderID, target)
    assert not ok
    assert message.startswith("Cannot change order status")
    assert order.status == start


def test_unknown_status_and_missing_order(service, make_order):
    order = make_order()
    assert service.update_order_status(order.orderID, "teleported")[1] == "Unknown order status: teleported"
    assert service.update_order_status(999999, "processing") == (False, "Order not found", None)


def test_cancelling_paid_order_keeps_payment_status(service, make_order):
    order = make_order(status=OrderStatus.PROCESSING, payment_status=PaymentStatus.PAID)

    ok, _, order = service.update_order_status(order.orderID, "cancelled")

    assert ok
    assert order.status == OrderStatus.CANCELLED
    assert order.payment_status == PaymentStatus.PAID


def test_payment_status_transitions(service, make_order):
    order = make_order()

    ok, _, order = service.update_payment_status(order.orderID, "failed")
    assert ok and order.payment_status == PaymentStatus.FAILED
    ok, _, order = service.update_payment_status(order.orderID, "paid")
    assert ok
    ok, _, order = service.update_payment_status(order.orderID, "refunded")
    assert ok and order.payment_status == PaymentStatus.REFUNDED

    ok, message, _ = service.update_payment_status(order.orderID, "paid")
    assert not ok
    assert "from refunded to paid" in message


def test_list_orders_search_status_and_order(service, make_order):
    first = make_order(order_number="ORD-20260101-00001", days_ago=3)
    second = make_order(order_number="ORD-20260102-00002", days_ago=1, status=OrderStatus.PROCESSING)
    make_order(order_number="EXT-SHOPIFY-ABC", days_ago=2)

    assert [o.orderID for o in service.list_orders(search="ord-2026")] == [second.orderID, first.orderID]
    assert [o.orderID for o in service.list_orders(status="processing")] == [second.orderID]
    assert len(service.list_orders(status="all")) == 3
    with pytest.raises(ValueError):
        service.list_orders(status="bogus")


def test_order_stats_counts_per_status(service, make_order):
    make_order()
    make_order()
    make_order(status=OrderStatus.SHIPPED)

    stats = service.order_stats()

    assert stats["total"] == 3
    assert stats["pending"] == 2
    assert stats["shipped"] == 1
    assert stats["delivered"] == 0


def test_get_order_by_id_or_number(service, make_order):
    order = make_order(order_number="ORD-20260105-00042")
    assert service.get_order(order.orderID) is order
    assert service.get_order(str(order.orderID)) is order
    assert service.get_order(" ORD-20260105-00042 ") is order
    assert service.get_order("ORD-NOPE") is None


def test_assign_order_number_uses_creation_date():
    order = Order(orderID=7, created_at=datetime(2026, 3, 9, 12, 0, tzinfo=timezone.utc))
    assert assign_order_number(order) == "ORD-20260309-00007"


def test_tracking_url_for_known_carriers():
    assert tracking_url_for("dhl", "123").endswith("piececode=123")
    assert tracking_url_for("DPD", "9").endswith("/parcel/9")
    assert tracking_url_for("UPS", "1") is None
    assert tracking_url_for("DHL", None) is None


def test_ingest_external_order_maps_status_and_items(service):
    ok, _, order = service.ingest_external_order(
        {
            "id": "ext-991",
            "email": "shopper@example.com",
            "first_name": "Erika",
            "last_name": "Muster",
            "total": 84.5,
            "status": "Completed",
            "items": [
                {"name": "Amber Gold", "quantity": 2, "price": 29.95},
                {"name": "Probe", "quantity": 1, "price": 4.6, "variant_size": "2ml"},
            ],
        },
        "shopify",
    )

    assert ok
    assert order.order_number == f"EXT-SHOPIFY-{_base36(1700000000000)}"
    assert order.status == OrderStatus.DELIVERED
    assert order.payment_status == PaymentStatus.PAID
    assert order.payment_method == "external"
    assert float(order.subtotal) == 64.5
    assert float(order.total) == 84.5
    assert [item.variant_size for item in order.items] == ["Standard", "2ml"]
    assert "Externe ID: ext-991" in order.notes
    assert order.customer_name == "Erika Muster"


@pytest.mark.parametrize(
    "external, status, payment",
    [
        ("paid", OrderStatus.PROCESSING, PaymentStatus.PAID),
        ("refunded", OrderStatus.CANCELLED, PaymentStatus.PENDING),
        ("shipped", OrderStatus.SHIPPED, PaymentStatus.PAID),
        ("mystery", OrderStatus.PENDING, PaymentStatus.PENDING),
        (None, OrderStatus.PENDING, PaymentStatus.PENDING),
    ],
)
def test_external_status_mapping(service, external, status, payment):
    ok, _, order = service.ingest_external_order({"total": 10, "status": external}, "woo")
    assert ok
    assert order.status == status
    assert order.payment_status == payment


def test_ingest_external_order_accepts_zero_total_but_requires_total(service):
    ok, _, order = service.ingest_external_order({"total": 0}, None)
    assert ok
    assert float(order.subtotal) == 0
    assert order.order_number.startswith("EXT-UNKNOWN-")

    assert service.ingest_external_order({"items": []}, "woo") == (False, "Missing required field: total", None)


def test_ingest_external_order_keeps_zero_quantities(service):
    ok, _, order = service.ingest_external_order(
        {
            "total": 15,
            "items": [
                {"name": "Gratisprobe", "quantity": 0, "price": 4.6},
                {"name": "Amber Gold", "price": 15},
                {"name": "Oud Noir", "quantity": None, "price": 0},
            ],
        },
        "woo",
    )

    assert ok
    assert [item.quantity for item in order.items] == [0, 1, 1]
    assert float(order.items[0].total_price) == 0
    assert float(order.subtotal) == 15


def test_serialize_order_includes_items_and_labels(make_order):
    order = make_order(total=20, items=[{"product_name": "Oud Noir", "quantity": 2, "unit_price": 10}])
    payload = serialize_order(order)
    assert payload["status_label"] == "Ausstehend"
    assert payload["items"][0]["total_price"] == 20
    assert "items" not in serialize_order(order, include_items=False)


def test_base36_encoding():
    assert _base36(0) == "0"
    assert _base36(35) == "Z"
    assert _base36(36) == "10"
    assert _base36(1295) == "ZZ"
