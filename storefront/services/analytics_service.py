from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from storefront.config import Config
from storefront.models import Order, OrderStatus, PaymentStatus
from storefront.observability import set_gauge
from storefront.observability.business_metrics import build_daily_series, trailing_window
from storefront.services.email_service import EmailService
from storefront.services.subscription_service import SubscriptionService
from storefront.services.ticket_service import TicketService


class AnalyticsService:
    """Read-only dashboard numbers for the admin back-office."""

    def __init__(self, db_session: Session, config: type[Config] = Config) -> None:
        self.db = db_session
        self.config = config
        self.logger = logging.getLogger(__name__)

    def _revenue_orders(self, start: datetime, end: datetime) -> List[Order]:
        return (
            self.db.query(Order)
            .filter(Order.created_at >= start, Order.created_at < end)
            .filter(Order.status != OrderStatus.CANCELLED)
            .filter(Order.payment_status == PaymentStatus.PAID)
            .all()
        )

    def top_products(self, orders: List[Order], limit: int = 5) -> List[Dict[str, Any]]:
        quantities: Dict[str, int] = defaultdict(int)
        revenue: Dict[str, float] = defaultdict(float)
        for order in orders:
            for item in order.items:
                quantities[item.product_name] += item.quantity
                revenue[item.product_name] += float(item.total_price or 0)
        ranked = sorted(quantities.items(), key=lambda pair: (-pair[1], pair[0]))[:limit]
        return [
            {"product_name": name, "quantity": quantity, "revenue": round(revenue[name], 2)}
            for name, quantity in ranked
        ]

    def dashboard(self, days: int = 30, now: Optional[datetime] = None) -> Dict[str, Any]:
        window = trailing_window(days, now)
        # SQLite stores naive UTC timestamps
        start, end = window.start.replace(tzinfo=None), window.end.replace(tzinfo=None)
        orders = self._revenue_orders(start, end)

        revenue = round(sum(float(order.total or 0) for order in orders), 2)
        series = build_daily_series(((order.created_at, order.total) for order in orders), window)
        set_gauge("revenue_window_total", revenue, labels={"days": str(window.days)})

        return {
            "window": {"days": window.days, "label": window.label, "start": window.start.isoformat(), "end": window.end.isoformat()},
            "revenue": revenue,
            "order_count": len(orders),
            "average_order_value": round(revenue / len(orders), 2) if orders else 0.0,
            "daily": series,
            "top_products": self.top_products(orders),
            "subscriptions": SubscriptionService(self.db, config=self.config).status_counts(),
            "tickets": TicketService(self.db, config=self.config).ticket_stats(now),
            "emails": EmailService(self.db, config=self.config).email_log_stats(),
        }
