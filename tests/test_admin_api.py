"""HTTP-level tests for the back-office routes under /api/admin."""
from __future__ import annotations

import pytest

from storefront.models import OrderStatus, PaymentStatus, TicketStatus


@pytest.fixture
def admin(make_profile, login_as):
    return login_as(make_profile(email="admin@example.com", role="admin", first_name="Julia", last_name="Admin"))


@pytest.mark.parametrize(
    "path",
    ["/api/admin/orders", "/api/admin/tickets", "/api/admin/returns", "/api/admin/email-logs", "/admin/metrics"],
)
def test_admin_routes_require_admin(client, make_profile, login_as, path):
    assert client.get(path).status_code == 401
    login_as(make_profile())
    assert client.get(path).status_code == 403


def test_metrics_snapshot_counts_requests(client, admin):
    client.get("/health")
    snapshot = client.get("/admin/metrics").get_json()
    assert "http_requests_total" in snapshot["counters"]


def test_order_listing_and_lookup(client, admin, make_order):
    order = make_order(order_number="ORD-20260110-00001")
    make_order(status=OrderStatus.PROCESSING)

    body = client.get("/api/admin/orders?status=processing").get_json()
    assert len(body["orders"]) == 1
    assert client.get("/api/admin/orders?status=bogus").status_code == 400
    assert client.get("/api/admin/orders?limit=abc").status_code == 400

    assert client.get("/api/admin/orders/stats").get_json()["total"] == 2
    assert client.get("/api/admin/orders/ORD-20260110-00001").get_json()["order"]["id"] == order.orderID
    assert client.get("/api/admin/orders/ORD-MISSING").status_code == 404


def test_order_status_updates(client, admin, make_order, email_sender):
    order = make_order(status=OrderStatus.PROCESSING)

    response = client.post(
        f"/api/admin/orders/{order.orderID}/status",
        json={"status": "shipped", "tracking_number": "00340434"},
    )
    assert response.status_code == 200
    assert response.get_json()["order"]["tracking_number"] == "00340434"
    assert email_sender.subjects() == [f"Deine Bestellung #{order.order_number} wurde versendet!"]

    assert client.post(f"/api/admin/orders/{order.orderID}/status", json={"status": "pending"}).status_code == 400
    assert client.post("/api/admin/orders/99999/status", json={"status": "shipped"}).status_code == 404

    response = client.post(f"/api/admin/orders/{order.orderID}/payment", json={"payment_status": "paid"})
    assert response.get_json()["order"]["payment_status"] == "paid"


def test_ticket_workflow(client, admin, make_ticket, email_sender):
    ticket = make_ticket()

    listing = client.get("/api/admin/tickets").get_json()
    assert listing["stats"]["open"] == 1
    assert listing["tickets"][0]["sla"]["state"] == "on_track"

    response = client.post(f"/api/admin/tickets/{ticket.ticketID}/replies", json={"message": "Ist unterwegs!"})
    assert response.status_code == 201
    assert response.get_json()["reply"]["author_name"] == "Julia Admin"

    client.post(f"/api/admin/tickets/{ticket.ticketID}/replies", json={"message": "intern", "is_internal": True})
    detail = client.get(f"/api/admin/tickets/{ticket.ticketID}").get_json()["ticket"]
    assert detail["status"] == TicketStatus.IN_PROGRESS.value
    assert [reply["is_internal"] for reply in detail["replies"]] == [False, True]

    assert client.post(f"/api/admin/tickets/{ticket.ticketID}/assign", json={"assignee": "julia"}).status_code == 200
    assert client.post(f"/api/admin/tickets/{ticket.ticketID}/priority", json={"priority": "high"}).status_code == 200
    response = client.post(f"/api/admin/tickets/{ticket.ticketID}/status", json={"status": "resolved"})
    assert response.get_json()["ticket"]["resolved_at"] is not None
    assert len(email_sender.sent) == 2

    assert client.get("/api/admin/tickets/99999").status_code == 404
    assert client.get("/api/admin/tickets?status=bogus").status_code == 400


def test_return_administration(client, admin, make_order):
    order = make_order(days_ago=30, payment_status=PaymentStatus.PAID)
    client.post(
        "/api/process-return",
        json={
            "orderNumber": order.order_number,
            "firstName": "Max",
            "lastName": "Mustermann",
            "email": "max@example.com",
            "reason": "Defekt",
            "items": "Oud Noir",
        },
    )

    returns = client.get("/api/admin/returns?status=pending").get_json()["returns"]
    assert len(returns) == 1
    return_id = returns[0]["id"]

    response = client.post(f"/api/admin/returns/{return_id}/status", json={"status": "approved"})
    assert response.status_code == 200
    assert response.get_json()["return"]["refund_amount"] == float(order.total)
    assert client.post(f"/api/admin/returns/{return_id}/status", json={"status": "refunded"}).status_code == 400
    assert client.post("/api/admin/returns/99999/status", json={"status": "approved"}).status_code == 404


def test_catalog_administration(client, admin):
    response = client.post("/api/admin/categories", json={"name": "Damen", "slug": "damen"})
    assert response.status_code == 201
    category_id = response.get_json()["category"]["id"]

    response = client.post("/api/admin/products", json={"name": "Rose Blanche", "base_price": 29.9, "category_id": category_id})
    assert response.status_code == 201
    product_id = response.get_json()["product"]["id"]

    response = client.post(f"/api/admin/products/{product_id}/variants", json={"size": "50ml", "price": 29.9, "stock": 5})
    assert response.status_code == 201
    variant_id = response.get_json()["variant"]["id"]
    response = client.patch(f"/api/admin/products/{product_id}/variants/{variant_id}", json={"stock": 0})
    assert response.get_json()["variant"]["in_stock"] is False

    assert client.put(f"/api/admin/products/{product_id}", json={"base_price": -5}).status_code == 400
    client.post(f"/api/admin/products/{product_id}/active", json={"is_active": False})
    assert client.get("/api/products").get_json()["products"] == []
    assert len(client.get("/api/admin/products").get_json()["products"]) == 1

    response = client.post("/api/admin/coupons", json={"code": "herbst15", "discount_value": 15})
    assert response.status_code == 201
    assert response.get_json()["coupon"]["code"] == "HERBST15"
    assert client.post("/api/admin/coupons", json={"code": "HERBST15", "discount_value": 5}).status_code == 400
    response = client.post("/api/admin/coupons", json={"code": "WINTER", "discount_value": 5, "max_uses": "oft"})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Invalid coupon limits"


def test_email_logs_and_analytics(client, admin, make_order):
    client.post(
        "/api/send-order-email",
        json={"type": "order_confirmation", "customerEmail": "a@example.com", "orderNumber": "ORD-1"},
    )
    make_order(total=80, payment_status=PaymentStatus.PAID)

    body = client.get("/api/admin/email-logs?status=sent").get_json()
    assert body["logs"][0]["type"] == "order_confirmation"
    assert body["stats"]["sent"] == 1
    assert client.get("/api/admin/email-logs?status=bogus").status_code == 400

    report = client.get("/api/admin/analytics?days=7").get_json()
    assert report["revenue"] == 80.0
    assert len(report["daily"]["series"]) == 7
    assert client.get("/api/admin/analytics?days=0").status_code == 400


def test_resend_email_log(client, admin, email_sender):
    email_sender.failures.append("mailbox unavailable")
    client.post(
        "/api/send-order-email",
        json={"type": "order_confirmation", "customerEmail": "a@example.com", "orderNumber": "ORD-2"},
    )
    log_id = client.get("/api/admin/email-logs?status=failed").get_json()["logs"][0]["id"]

    response = client.post(f"/api/admin/email-logs/{log_id}/resend")

    assert response.status_code == 200
    body = response.get_json()
    assert body["success"] is True
    assert body["resendId"] == "re_1"
    assert body["log"]["id"] == log_id
    assert body["log"]["status"] == "sent"
    assert body["log"]["metadata"]["resentBy"] == admin.profileID
    assert client.post("/api/admin/email-logs/99999/resend").status_code == 404


def test_resend_email_log_reports_provider_error(client, admin, email_sender):
    email_sender.failures.append("boom")
    client.post(
        "/api/send-order-email",
        json={"type": "order_confirmation", "customerEmail": "a@example.com", "orderNumber": "ORD-3"},
    )
    log_id = client.get("/api/admin/email-logs?status=failed").get_json()["logs"][0]["id"]
    email_sender.failures.append("You can only send testing emails to your own address")

    response = client.post(f"/api/admin/email-logs/{log_id}/resend")

    assert response.status_code == 500
    assert response.get_json() == {"success": False, "error": "You can only send testing emails to your own address"}


def test_return_status_change_emails_customer(client, admin, make_order, email_sender):
    order = make_order(days_ago=30)
    client.post(
        "/api/process-return",
        json={
            "orderNumber": order.order_number,
            "firstName": "Max",
            "lastName": "Mustermann",
            "email": "max@example.com",
            "reason": "Defekt",
            "items": "Oud Noir",
        },
    )
    return_id = client.get("/api/admin/returns").get_json()["returns"][0]["id"]

    client.post(f"/api/admin/returns/{return_id}/status", json={"status": "rejected"})

    assert email_sender.subjects()[-1] == f"Retoure aktualisiert: {order.order_number}"
    assert email_sender.sent[-1]["to"] == ["max@example.com"]
    assert "Abgelehnt" in email_sender.sent[-1]["html"]


def test_record_subscription_delivery(client, admin, make_variant, db_session, email_service, email_sender):
    from storefront.services.subscription_service import SubscriptionService

    from conftest import StubConfig

    service = SubscriptionService(db_session, config=StubConfig, email_service=email_service)
    _, _, subscription = service.create_subscription(make_variant().variantID, "monthly", guest_email="abo@example.com")
    service.activate(subscription.subscriptionID)
    path = f"/api/admin/subscriptions/{subscription.subscriptionID}/deliveries"

    response = client.post(path, json={"delivered_on": "2026-03-01"})

    assert response.status_code == 200
    assert response.get_json()["subscription"]["delivery_count"] == 1
    assert email_sender.subjects()[-1] == "Deine ALDENAIR Abo-Lieferung ist unterwegs"
    assert client.post(path, json={"delivered_on": "01.03.2026"}).status_code == 400
    assert client.post("/api/admin/subscriptions/99999/deliveries").status_code == 404

    service.pause(subscription.subscriptionID)
    response = client.post(path)
    assert response.status_code == 400
    assert response.get_json()["error"] == "Subscription is not active"
