from .analytics_service import AnalyticsService
from .catalog_service import CatalogService
from .checkout_service import CheckoutService
from .email_service import EmailService
from .order_service import OrderService
from .payment_service import PaymentService
from .returns_service import ReturnsService
from .subscription_service import SubscriptionService
from .support_dashboard import SupportDashboardClient
from .ticket_service import TicketService

__all__ = [
    "AnalyticsService",
    "CatalogService",
    "CheckoutService",
    "EmailService",
    "OrderService",
    "PaymentService",
    "ReturnsService",
    "SubscriptionService",
    "SupportDashboardClient",
    "TicketService",
]
