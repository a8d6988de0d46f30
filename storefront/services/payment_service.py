from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests
import stripe

from storefront.config import Config
from storefront.observability import increment_counter, timed


class PaymentGatewayError(Exception):
    """An upstream payment provider rejected the call or could not be reached."""


def to_cents(amount: float) -> int:
    return int(round(float(amount) * 100))


class StripeGateway:
    """Hosted Stripe Checkout sessions."""

    def __init__(self, config: type[Config] = Config) -> None:
        self.config = config
        self.logger = logging.getLogger(__name__)

    def _require_key(self) -> str:
        if not self.config.STRIPE_SECRET_KEY:
            raise PaymentGatewayError("Stripe is not configured")
        return self.config.STRIPE_SECRET_KEY

    def create_checkout_session(
        self,
        line_items: List[Dict[str, Any]],
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
        discount: float = 0.0,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        api_key = self._require_key()
        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "shipping_address_collection": {"allowed_countries": list(self.config.ALLOWED_SHIPPING_COUNTRIES)},
            "billing_address_collection": "required",
            "metadata": metadata or {},
        }
        if customer_email:
            params["customer_email"] = customer_email
        try:
            with timed("payment_gateway_ms", labels={"provider": "stripe", "call": "create_session"}):
                if discount > 0:
                    coupon = stripe.Coupon.create(
                        api_key=api_key,
                        amount_off=to_cents(discount),
                        currency=self.config.CURRENCY.lower(),
                        duration="once",
                    )
                    params["discounts"] = [{"coupon": coupon.id}]
                session = stripe.checkout.Session.create(api_key=api_key, **params)
        except stripe.StripeError as exc:
            self.logger.warning("Stripe session creation failed: %s", exc)
            raise PaymentGatewayError(str(exc)) from exc
        return {"id": session.id, "url": session.url}

    def retrieve_session(self, session_id: str) -> Dict[str, Any]:
        api_key = self._require_key()
        try:
            with timed("payment_gateway_ms", labels={"provider": "stripe", "call": "retrieve_session"}):
                session = stripe.checkout.Session.retrieve(session_id, api_key=api_key)
        except stripe.StripeError as exc:
            raise PaymentGatewayError(str(exc)) from exc
        metadata = session.metadata or {}
        return {
            "id": session.id,
            "payment_status": session.payment_status,
            "payment_intent": getattr(session, "payment_intent", None),
            "metadata": dict(metadata),
        }


class PayPalGateway:
    """PayPal Orders v2 over plain HTTPS."""

    def __init__(self, config: type[Config] = Config, http: Any = requests) -> None:
        self.config = config
        self.http = http
        self.logger = logging.getLogger(__name__)

    def _access_token(self) -> str:
        if not (self.config.PAYPAL_CLIENT_ID and self.config.PAYPAL_SECRET_KEY):
            raise PaymentGatewayError("PayPal credentials not configured")
        try:
            response = self.http.post(
                f"{self.config.PAYPAL_API_BASE}/v1/oauth2/token",
                auth=(self.config.PAYPAL_CLIENT_ID, self.config.PAYPAL_SECRET_KEY),
                data={"grant_type": "client_credentials"},
                timeout=self.config.HTTP_TIMEOUT_SECONDS,
            )
        except requests.RequestException as exc:
            raise PaymentGatewayError(f"PayPal auth failed: {exc}") from exc
        payload = response.json() if response.content else {}
        if response.status_code >= 400:
            raise PaymentGatewayError(f"PayPal auth failed: {payload.get('error_description', response.status_code)}")
        return payload["access_token"]

    def _post(self, path: str, token: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = self.http.post(
                f"{self.config.PAYPAL_API_BASE}{path}",
                json=body,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
                timeout=self.config.HTTP_TIMEOUT_SECONDS,
            )
        except requests.RequestException as exc:
            raise PaymentGatewayError(str(exc)) from exc
        payload = response.json() if response.content else {}
        if response.status_code >= 400:
            raise PaymentGatewayError(payload.get("message") or f"PayPal returned {response.status_code}")
        return payload

    def create_order(
        self,
        items: List[Dict[str, Any]],
        totals: Dict[str, float],
        return_url: str,
        cancel_url: str,
        reference: Optional[str] = None,
    ) -> Dict[str, Any]:
        currency = self.config.CURRENCY

        def money(value: float) -> Dict[str, str]:
            return {"currency_code": currency, "value": f"{value:.2f}"}

        breakdown: Dict[str, Any] = {"item_total": money(totals["subtotal"])}
        if totals.get("shipping"):
            breakdown["shipping"] = money(totals["shipping"])
        if totals.get("discount"):
            breakdown["discount"] = money(totals["discount"])

        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": reference or "default",
                    "amount": {**money(totals["total"]), "breakdown": breakdown},
                    "items": [
                        {
                            "name": item["name"][:127],
                            "quantity": str(item["quantity"]),
                            "unit_amount": money(item["unit_price"]),
                        }
                        for item in items
                    ],
                }
            ],
            "application_context": {
                "return_url": return_url,
                "cancel_url": cancel_url,
                "brand_name": self.config.PAYPAL_BRAND_NAME,
                "user_action": "PAY_NOW",
            },
        }
        with timed("payment_gateway_ms", labels={"provider": "paypal", "call": "create_order"}):
            payload = self._post("/v2/checkout/orders", self._access_token(), body)
        approve = next((link["href"] for link in payload.get("links", []) if link.get("rel") == "approve"), None)
        return {"id": payload.get("id"), "url": approve}

    def capture_order(self, paypal_order_id: str) -> Dict[str, Any]:
        with timed("payment_gateway_ms", labels={"provider": "paypal", "call": "capture"}):
            payload = self._post(f"/v2/checkout/orders/{paypal_order_id}/capture", self._access_token())
        return {"id": payload.get("id"), "status": payload.get("status")}


class PaymentService:
    """Facade over the Stripe and PayPal gateways."""

    def __init__(
        self,
        config: type[Config] = Config,
        stripe_gateway: Optional[StripeGateway] = None,
        paypal_gateway: Optional[PayPalGateway] = None,
    ) -> None:
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.stripe = stripe_gateway or StripeGateway(config)
        self.paypal = paypal_gateway or PayPalGateway(config)

    def record_outcome(self, provider: str, outcome: str) -> None:
        increment_counter("payment_gateway_calls_total", labels={"provider": provider, "outcome": outcome})
