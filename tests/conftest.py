# tests/conftest.py
"""
Shared fixtures: a throw-away SQLite database, model factories and stub
collaborators for the email provider, payment gateways and support dashboard.
"""
import os
import tempfile
from datetime import timedelta

_TEST_DB_DIR = tempfile.mkdtemp(prefix="storefront-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DB_DIR}/storefront_test.db"
for _key in ("RESEND_API_KEY", "STRIPE_SECRET_KEY", "PAYPAL_CLIENT_ID", "PAYPAL_SECRET_KEY", "SUPPORT_DASHBOARD_URL"):
    os.environ[_key] = ""
os.environ["STRUCTURED_LOGS_ENABLED"] = "false"

import pytest

from storefront.config import Config
from storefront.database import Base, SessionLocal, init_database
from storefront.models import (
    Category,
    Coupon,
    DiscountType,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    Product,
    ProductVariant,
    Profile,
    Ticket,
    TicketPriority,
    TicketStatus,
    utcnow,
)
from storefront.observability.metrics import reset_metrics
from storefront.rate_limit import contact_rate_limiter
from storefront.services.email_service import EmailDeliveryError, EmailService
from storefront.services.payment_service import PaymentGatewayError, PaymentService


class StubConfig(Config):
    RESEND_API_KEY = "re_test_key"
    EMAIL_BACKOFF_BASE_SECONDS = 1
    EMAIL_MAX_ATTEMPTS = 3
    PUBLIC_BASE_URL = "https://shop.example"
    SUBSCRIPTION_TOKEN_SECRET = "test-secret"


class StubEmailSender:
    """Records payloads; pops queued failure messages before succeeding."""

    def __init__(self, failures=None):
        self.sent = []
        self.failures = list(failures or [])

    def send(self, payload):
        if self.failures:
            raise EmailDeliveryError(self.failures.pop(0))
        self.sent.append(payload)
        return {"id": f"re_{len(self.sent)}"}

    def subjects(self):
        return [payload["subject"] for payload in self.sent]


class StubStripeGateway:
    def __init__(self, payment_status="paid", fail=False):
        self.payment_status = payment_status
        self.fail = fail
        self.sessions = []
        self.metadata = {}

    def create_checkout_session(self, line_items, success_url, cancel_url, customer_email=None, discount=0.0, metadata=None):
        if self.fail:
            raise PaymentGatewayError("stripe unavailable")
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions.append(
            {
                "id": session_id,
                "line_items": line_items,
                "success_url": success_url,
                "cancel_url": cancel_url,
                "customer_email": customer_email,
                "discount": discount,
                "metadata": metadata or {},
            }
        )
        self.metadata[session_id] = metadata or {}
        return {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}

    def retrieve_session(self, session_id):
        if session_id not in self.metadata:
            raise PaymentGatewayError("No such checkout session")
        return {
            "id": session_id,
            "payment_status": self.payment_status,
            "payment_intent": f"pi_{session_id}",
            "metadata": self.metadata[session_id],
        }


class StubPayPalGateway:
    def __init__(self, capture_status="COMPLETED"):
        self.capture_status = capture_status
        self.orders = []
        self.captures = []

    def create_order(self, items, totals, return_url, cancel_url, reference=None):
        order_id = f"PAYPAL{len(self.orders) + 1}"
        self.orders.append({"id": order_id, "items": items, "totals": totals, "reference": reference})
        return {"id": order_id, "url": f"https://paypal.test/approve/{order_id}"}

    def capture_order(self, paypal_order_id):
        self.captures.append(paypal_order_id)
        return {"id": paypal_order_id, "status": self.capture_status}


class StubDashboard:
    def __init__(self):
        self.forwarded = []

    def forward_ticket(self, name, email, subject, message, category="contact"):
        self.forwarded.append(
            {"name": name, "email": email, "subject": subject, "message": message, "category": category}
        )
        return True


@pytest.fixture(autouse=True)
def _reset_process_state():
    reset_metrics()
    contact_rate_limiter.reset()
    yield
    reset_metrics()
    contact_rate_limiter.reset()


@pytest.fixture
def db_session():
    """Fresh session on a schema that is emptied after every test."""
    init_database()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        for table in reversed(Base.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()
        session.close()


@pytest.fixture
def email_sender():
    return StubEmailSender()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def email_service(db_session, email_sender, sleeps):
    return EmailService(db_session, config=StubConfig, sender=email_sender, sleep=sleeps.append)


@pytest.fixture
def stripe_gateway():
    return StubStripeGateway()


@pytest.fixture
def paypal_gateway():
    return StubPayPalGateway()


@pytest.fixture
def payment_service(stripe_gateway, paypal_gateway):
    return PaymentService(StubConfig, stripe_gateway=stripe_gateway, paypal_gateway=paypal_gateway)


@pytest.fixture
def dashboard():
    return StubDashboard()


# ---------------------------
# Factories
# ---------------------------


@pytest.fixture
def make_profile(db_session):
    counter = {"n": 0}

    def _make(email=None, role="customer", first_name="Lena", last_name="Schmidt"):
        counter["n"] += 1
        profile = Profile(
            email=email or f"kunde{counter['n']}@example.com",
            password_hash="not-a-real-hash",
            first_name=first_name,
            last_name=last_name,
            role=role,
        )
        db_session.add(profile)
        db_session.commit()
        return profile

    return _make


@pytest.fixture
def make_variant(db_session):
    """Create an active product with a single variant and return the variant."""
    counter = {"n": 0}

    def _make(name="Oud Noir", price=49.90, stock=10, size="50ml", category_slug=None, gender="unisex", is_active=True):
        counter["n"] += 1
        category = None
        if category_slug:
            category = db_session.query(Category).filter_by(slug=category_slug).first()
            if category is None:
                category = Category(name=category_slug.title(), slug=category_slug)
                db_session.add(category)
        product = Product(
            name=name,
            base_price=price,
            gender=gender,
            brand="ALDENAIR",
            image_url=f"/images/product-{counter['n']}.jpg",
            category=category,
            is_active=is_active,
        )
        variant = ProductVariant(
            product=product,
            size=size,
            sku=f"SKU-{counter['n']:04d}",
            price=price,
            stock=stock,
            in_stock=stock > 0,
        )
        db_session.add_all([product, variant])
        db_session.commit()
        return variant

    return _make


@pytest.fixture
def make_order(db_session):
    counter = {"n": 0}

    def _make(
        total=59.90,
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
        days_ago=0,
        email="guest@example.com",
        name="Max Mustermann",
        profile=None,
        order_number=None,
        items=None,
    ):
        counter["n"] += 1
        order = Order(
            order_number=order_number or f"ORD-TEST-{counter['n']:05d}",
            profileID=profile.profileID if profile else None,
            guest_email=None if profile else email,
            guest_name=None if profile else name,
            status=status,
            payment_status=payment_status,
            payment_method="stripe",
            subtotal=total,
            total=total,
            created_at=utcnow() - timedelta(days=days_ago),
        )
        for item in items or [{"product_name": "Oud Noir", "quantity": 1, "unit_price": total}]:
            order.items.append(
                OrderItem(
                    product_name=item["product_name"],
                    variant_size=item.get("variant_size", "50ml"),
                    variantID=item.get("variant_id"),
                    quantity=item["quantity"],
                    unit_price=item["unit_price"],
                    total_price=item["unit_price"] * item["quantity"],
                )
            )
        db_session.add(order)
        db_session.commit()
        return order

    return _make


@pytest.fixture
def make_coupon(db_session):
    def _make(code="WELCOME10", discount_type=DiscountType.PERCENTAGE, value=10, **kwargs):
        coupon = Coupon(
            code=code,
            discount_type=discount_type,
            discount_value=value,
            current_uses=kwargs.pop("current_uses", 0),
            is_active=kwargs.pop("is_active", True),
            **kwargs,
        )
        db_session.add(coupon)
        db_session.commit()
        return coupon

    return _make


@pytest.fixture
def make_ticket(db_session):
    def _make(subject="Frage zur Lieferung", priority=TicketPriority.MEDIUM, status=TicketStatus.OPEN, hours_ago=0):
        ticket = Ticket(
            customer_name="Max Mustermann",
            customer_email="max@example.com",
            subject=subject,
            message="Wann kommt meine Bestellung an?",
            priority=priority,
            status=status,
            created_at=utcnow() - timedelta(hours=hours_ago),
        )
        db_session.add(ticket)
        db_session.commit()
        return ticket

    return _make


# ---------------------------
# HTTP client
# ---------------------------


@pytest.fixture
def client(db_session, email_sender, payment_service, dashboard, monkeypatch):
    from storefront.main import app

    monkeypatch.setattr(Config, "RESEND_API_KEY", "re_test_key")
    app.config.update(
        TESTING=True,
        EMAIL_SENDER=email_sender,
        PAYMENT_SERVICE=payment_service,
        SUPPORT_DASHBOARD=dashboard,
    )
    with app.test_client() as test_client:
        yield test_client
    for key in ("EMAIL_SENDER", "PAYMENT_SERVICE", "SUPPORT_DASHBOARD"):
        app.config.pop(key, None)


@pytest.fixture
def login_as(client):
    def _login(profile):
        with client.session_transaction() as sess:
            sess["user_id"] = profile.profileID
        return profile

    return _login
