# storefront/models.py
from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    Date,
    DateTime,
    ForeignKey,
    Boolean,
    Text,
    JSON,
    Enum as SAEnum,
)
from sqlalchemy.orm import relationship

# Use a single, shared Base for all models
from storefront.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _enum_column(enum_cls, name: str, **kwargs) -> Column:
    return Column(
        SAEnum(
            enum_cls,
            name=name,
            native_enum=False,
            validate_strings=True,
            values_callable=lambda members: [member.value for member in members],
        ),
        **kwargs,
    )


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    EXTERNAL = "external"


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class SubscriptionFrequency(str, Enum):
    MONTHLY = "monthly"
    BIMONTHLY = "bimonthly"
    QUARTERLY = "quarterly"

    @property
    def months(self) -> int:
        return {"monthly": 1, "bimonthly": 2, "quarterly": 3}[self.value]

    @classmethod
    def parse(cls, value: "SubscriptionFrequency | str") -> "SubscriptionFrequency":
        if isinstance(value, cls):
            return value
        normalized = (value or "").strip().lower().replace("bi_monthly", "bimonthly")
        return cls(normalized)


class TicketStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class TicketPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class EmailStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


class ReturnStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    RECEIVED = "received"
    REFUNDED = "refunded"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class Profile(Base):
    __tablename__ = 'Profile'
    profileID = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    first_name = Column(String(120))
    last_name = Column(String(120))
    phone = Column(String(50))
    role = Column(String(50), default='customer', nullable=False)
    tier = Column(String(50), default='standard')
    total_spent = Column(Numeric(10, 2), default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    addresses = relationship("Address", back_populates="profile", cascade="all, delete-orphan")
    orders = relationship("Order", back_populates="profile")
    subscriptions = relationship("Subscription", back_populates="profile")
    tickets = relationship("Ticket", back_populates="profile")

    @property
    def is_admin(self) -> bool:
        return (self.role or '').lower() == 'admin'

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part).strip()

    @property
    def default_shipping_address(self) -> Optional["Address"]:
        shipping = [address for address in self.addresses if (address.type or "shipping") == "shipping"]
        for address in shipping:
            if address.is_default:
                return address
        return shipping[0] if shipping else None


class Address(Base):
    __tablename__ = 'Address'
    addressID = Column(Integer, primary_key=True, autoincrement=True)
    profileID = Column(Integer, ForeignKey('Profile.profileID'), nullable=False)
    first_name = Column(String(120), nullable=False)
    last_name = Column(String(120), nullable=False)
    street = Column(String(255), nullable=False)
    street2 = Column(String(255))
    postal_code = Column(String(20), nullable=False)
    city = Column(String(120), nullable=False)
    state = Column(String(120))
    country = Column(String(2), default='DE')
    type = Column(String(20), default='shipping')
    is_default = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)

    profile = relationship("Profile", back_populates="addresses")

    def as_shipping_dict(self) -> Dict[str, Any]:
        street = ", ".join(part for part in (self.street, self.street2) if part)
        return {"street": street, "postal_code": self.postal_code, "city": self.city, "country": self.country}


class Category(Base):
    __tablename__ = 'Category'
    categoryID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    slug = Column(String(120), unique=True, nullable=False)

    products = relationship("Product", back_populates="category")


class Product(Base):
    __tablename__ = 'Product'
    productID = Column(Integer, primary_key=True, autoincrement=True)
    categoryID = Column(Integer, ForeignKey('Category.categoryID'))
    name = Column(String(255), nullable=False)
    description = Column(Text)
    brand = Column(String(120))
    gender = Column(String(20))
    base_price = Column(Numeric(10, 2), nullable=False)
    original_price = Column(Numeric(10, 2))
    image_url = Column(String(512))
    inspired_by = Column(String(255))
    scent_notes = Column(JSON, default=list)
    seasons = Column(JSON, default=list)
    occasions = Column(JSON, default=list)
    rating = Column(Numeric(3, 2))
    review_count = Column(Integer, default=0)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    category = relationship("Category", back_populates="products")
    variants = relationship(
        "ProductVariant",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="ProductVariant.price",
    )

    @property
    def in_stock(self) -> bool:
        return any(variant.in_stock for variant in self.variants)


class ProductVariant(Base):
    __tablename__ = 'ProductVariant'
    variantID = Column(Integer, primary_key=True, autoincrement=True)
    productID = Column(Integer, ForeignKey('Product.productID'), nullable=False)
    name = Column(String(255))
    size = Column(String(50), nullable=False)
    sku = Column(String(80), unique=True)
    price = Column(Numeric(10, 2), nullable=False)
    original_price = Column(Numeric(10, 2))
    stock = Column(Integer, default=0, nullable=False)
    in_stock = Column(Boolean, default=True, nullable=False)

    product = relationship("Product", back_populates="variants")

    @property
    def display_name(self) -> str:
        base = self.name or (self.product.name if self.product else "")
        return f"{base} ({self.size})" if self.size else base

    def apply_stock_delta(self, delta: int) -> int:
        self.stock = max(0, (self.stock or 0) + delta)
        self.in_stock = self.stock > 0
        return self.stock


class Coupon(Base):
    __tablename__ = 'Coupon'
    couponID = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(50), unique=True, nullable=False)
    discount_type = _enum_column(DiscountType, "discount_type", nullable=False)
    discount_value = Column(Numeric(10, 2), nullable=False)
    min_order_amount = Column(Numeric(10, 2))
    max_uses = Column(Integer)
    current_uses = Column(Integer, default=0)
    expires_at = Column(DateTime)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if not self.expires_at:
            return False
        return as_utc(self.expires_at) < (now or utcnow())

    def is_exhausted(self) -> bool:
        return bool(self.max_uses) and (self.current_uses or 0) >= self.max_uses

    def discount_for(self, subtotal: float) -> float:
        value = float(self.discount_value)
        if self.discount_type == DiscountType.PERCENTAGE:
            amount = subtotal * (value / 100)
        else:
            amount = value
        return round(min(amount, subtotal), 2)


class Order(Base):
    __tablename__ = 'Order'
    orderID = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String(50), unique=True, nullable=False)
    profileID = Column(Integer, ForeignKey('Profile.profileID'))
    guest_email = Column(String(255))
    guest_name = Column(String(255))
    status = _enum_column(OrderStatus, "order_status", default=OrderStatus.PENDING, nullable=False)
    payment_status = _enum_column(PaymentStatus, "payment_status", default=PaymentStatus.PENDING, nullable=False)
    payment_method = Column(String(30))
    payment_reference = Column(String(255))
    payment_intent_id = Column(String(255))
    subtotal = Column(Numeric(10, 2), nullable=False, default=0)
    discount = Column(Numeric(10, 2), nullable=False, default=0)
    shipping_cost = Column(Numeric(10, 2), nullable=False, default=0)
    total = Column(Numeric(10, 2), nullable=False, default=0)
    coupon_code = Column(String(50))
    shipping_street = Column(String(255))
    shipping_postal_code = Column(String(20))
    shipping_city = Column(String(120))
    shipping_country = Column(String(2))
    tracking_number = Column(String(120))
    carrier = Column(String(60))
    notes = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    profile = relationship("Profile", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    returns = relationship("ReturnRequest", back_populates="order")
    subscriptions = relationship("Subscription", back_populates="order")

    _VALID_TRANSITIONS = {
        OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
        OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
        OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    }

    _VALID_PAYMENT_TRANSITIONS = {
        PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED},
        PaymentStatus.FAILED: {PaymentStatus.PENDING, PaymentStatus.PAID},
        PaymentStatus.PAID: {PaymentStatus.REFUNDED},
    }

    def can_transition(self, new_status: OrderStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(OrderStatus(self.status), set())
        return new_status in allowed

    def transition_to(self, new_status: OrderStatus) -> None:
        if not self.can_transition(new_status):
            raise ValueError(f"Invalid order status transition from {self.status} to {new_status}")
        self.status = new_status

    def can_transition_payment(self, new_status: PaymentStatus) -> bool:
        allowed = self._VALID_PAYMENT_TRANSITIONS.get(PaymentStatus(self.payment_status), set())
        return new_status in allowed

    def transition_payment_to(self, new_status: PaymentStatus) -> None:
        if not self.can_transition_payment(new_status):
            raise ValueError(
                f"Invalid payment status transition from {self.payment_status} to {new_status}"
            )
        self.payment_status = new_status

    @property
    def customer_email(self) -> Optional[str]:
        if self.guest_email:
            return self.guest_email
        return self.profile.email if self.profile else None

    @property
    def customer_name(self) -> str:
        if self.guest_name:
            return self.guest_name
        if self.profile and self.profile.full_name:
            return self.profile.full_name
        return "Kunde"


class OrderItem(Base):
    __tablename__ = 'OrderItem'
    orderItemID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('Order.orderID'), nullable=False)
    variantID = Column(Integer, ForeignKey('ProductVariant.variantID'))
    product_name = Column(String(255), nullable=False)
    variant_size = Column(String(50), nullable=False, default='Standard')
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    order = relationship("Order", back_populates="items")
    variant = relationship("ProductVariant")


class Subscription(Base):
    __tablename__ = 'Subscription'
    subscriptionID = Column(Integer, primary_key=True, autoincrement=True)
    profileID = Column(Integer, ForeignKey('Profile.profileID'))
    guest_email = Column(String(255))
    guest_name = Column(String(255))
    productID = Column(Integer, ForeignKey('Product.productID'))
    variantID = Column(Integer, ForeignKey('ProductVariant.variantID'))
    orderID = Column(Integer, ForeignKey('Order.orderID'))
    frequency = _enum_column(SubscriptionFrequency, "subscription_frequency", nullable=False)
    discount_percent = Column(Integer, default=0, nullable=False)
    status = _enum_column(
        SubscriptionStatus, "subscription_status", default=SubscriptionStatus.PENDING, nullable=False
    )
    next_delivery = Column(Date)
    last_delivery = Column(Date)
    delivery_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    profile = relationship("Profile", back_populates="subscriptions")
    product = relationship("Product")
    variant = relationship("ProductVariant")
    order = relationship("Order", back_populates="subscriptions")

    _VALID_TRANSITIONS = {
        SubscriptionStatus.PENDING: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED},
        SubscriptionStatus.ACTIVE: {SubscriptionStatus.PAUSED, SubscriptionStatus.CANCELLED},
        SubscriptionStatus.PAUSED: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED},
    }

    def can_transition(self, new_status: SubscriptionStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(SubscriptionStatus(self.status), set())
        return new_status in allowed

    def transition_to(self, new_status: SubscriptionStatus) -> None:
        if not self.can_transition(new_status):
            raise ValueError(f"Invalid subscription status transition from {self.status} to {new_status}")
        self.status = new_status

    @property
    def recipient_email(self) -> Optional[str]:
        if self.guest_email:
            return self.guest_email
        return self.profile.email if self.profile else None

    @property
    def recipient_name(self) -> Optional[str]:
        if self.guest_name:
            return self.guest_name
        if self.profile:
            return self.profile.first_name
        return None


class Ticket(Base):
    __tablename__ = 'Ticket'
    ticketID = Column(Integer, primary_key=True, autoincrement=True)
    profileID = Column(Integer, ForeignKey('Profile.profileID'))
    customer_name = Column(String(200), nullable=False)
    customer_email = Column(String(255), nullable=False)
    subject = Column(String(500), nullable=False)
    message = Column(Text, nullable=False)
    category = Column(String(50), default='contact')
    priority = _enum_column(TicketPriority, "ticket_priority", default=TicketPriority.MEDIUM, nullable=False)
    status = _enum_column(TicketStatus, "ticket_status", default=TicketStatus.OPEN, nullable=False)
    assigned_to = Column(String(255))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    resolved_at = Column(DateTime)

    profile = relationship("Profile", back_populates="tickets")
    replies = relationship(
        "TicketReply",
        back_populates="ticket",
        cascade="all, delete-orphan",
        order_by="TicketReply.created_at",
    )

    _VALID_TRANSITIONS = {
        TicketStatus.OPEN: {TicketStatus.IN_PROGRESS, TicketStatus.RESOLVED, TicketStatus.CLOSED},
        TicketStatus.IN_PROGRESS: {TicketStatus.OPEN, TicketStatus.RESOLVED, TicketStatus.CLOSED},
        TicketStatus.RESOLVED: {TicketStatus.CLOSED, TicketStatus.OPEN},
        TicketStatus.CLOSED: {TicketStatus.OPEN},
    }

    def can_transition(self, new_status: TicketStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(TicketStatus(self.status), set())
        return new_status in allowed

    def transition_to(self, new_status: TicketStatus, now: Optional[datetime] = None) -> None:
        if not self.can_transition(new_status):
            raise ValueError(f"Invalid ticket status transition from {self.status} to {new_status}")
        self.status = new_status
        if new_status in {TicketStatus.RESOLVED, TicketStatus.CLOSED}:
            if self.resolved_at is None:
                self.resolved_at = now or utcnow()
        else:
            self.resolved_at = None


class TicketReply(Base):
    __tablename__ = 'TicketReply'
    replyID = Column(Integer, primary_key=True, autoincrement=True)
    ticketID = Column(Integer, ForeignKey('Ticket.ticketID', ondelete="CASCADE"), nullable=False)
    authorID = Column(Integer, ForeignKey('Profile.profileID'))
    author_name = Column(String(200))
    message = Column(Text, nullable=False)
    is_internal = Column(Boolean, default=False, nullable=False)
    is_staff = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    ticket = relationship("Ticket", back_populates="replies")


class EmailLog(Base):
    __tablename__ = 'EmailLog'
    emailLogID = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(60), nullable=False)
    recipient_email = Column(String(255), nullable=False)
    recipient_name = Column(String(255))
    subject = Column(String(500), nullable=False)
    status = _enum_column(EmailStatus, "email_status", default=EmailStatus.PENDING, nullable=False)
    error_message = Column(Text)
    provider_id = Column(String(120))
    # "metadata" is reserved on declarative classes
    details = Column('metadata', JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)


class ReturnRequest(Base):
    __tablename__ = 'ReturnRequest'
    returnID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('Order.orderID'))
    profileID = Column(Integer, ForeignKey('Profile.profileID'))
    customer_email = Column(String(255))
    customer_name = Column(String(255))
    reason = Column(Text, nullable=False)
    status = _enum_column(ReturnStatus, "return_status", default=ReturnStatus.PENDING, nullable=False)
    refund_amount = Column(Numeric(10, 2), default=0)
    tracking_number = Column(String(120))
    notes = Column(Text)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    order = relationship("Order", back_populates="returns")

    _VALID_TRANSITIONS = {
        ReturnStatus.PENDING: {ReturnStatus.APPROVED, ReturnStatus.REJECTED},
        ReturnStatus.APPROVED: {ReturnStatus.RECEIVED, ReturnStatus.REJECTED},
        ReturnStatus.RECEIVED: {ReturnStatus.REFUNDED},
    }

    def can_transition(self, new_status: ReturnStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(ReturnStatus(self.status), set())
        return new_status in allowed

    def transition_to(self, new_status: ReturnStatus) -> None:
        if not self.can_transition(new_status):
            raise ValueError(f"Invalid return status transition from {self.status} to {new_status}")
        self.status = new_status
