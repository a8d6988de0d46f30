from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from storefront.config import Config
from storefront.observability import increment_counter


class SupportDashboardClient:
    """Forwards tickets to the external support dashboard; failures are logged, never raised."""

    def __init__(self, config: type[Config] = Config, http: Any = requests) -> None:
        self.config = config
        self.http = http
        self.logger = logging.getLogger(__name__)

    @property
    def enabled(self) -> bool:
        return bool(self.config.SUPPORT_DASHBOARD_URL)

    def forward_ticket(
        self,
        name: str,
        email: str,
        subject: str,
        message: str,
        category: str = "contact",
    ) -> Optional[Dict[str, Any]]:
        if not self.enabled:
            return None
        try:
            response = self.http.post(
                self.config.SUPPORT_DASHBOARD_URL,
                json={
                    "name": name,
                    "email": email,
                    "subject": subject,
                    "message": message,
                    "category": category,
                },
                timeout=self.config.HTTP_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            result = response.json() if response.content else {}
        except (requests.RequestException, ValueError) as exc:
            increment_counter("support_dashboard_forward_total", labels={"outcome": "error"})
            self.logger.warning("Support dashboard forward failed (non-blocking): %s", exc)
            return None
        increment_counter("support_dashboard_forward_total", labels={"outcome": "ok"})
        self.logger.info("Ticket forwarded to support dashboard")
        return result
