# stripe_gateway.py
import hashlib
import hmac
import logging
import os
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional

import requests
from dotenv import load_dotenv
from pydantic import BaseModel

from .exceptions import ExternalServiceError

load_dotenv()

logger = logging.getLogger(__name__)

# Every amount sent to the gateway is denominated in this currency
SETTLEMENT_CURRENCY = "cad"

STRIPE_API_BASE = "https://api.stripe.com/v1"
WEBHOOK_TOLERANCE_SECONDS = 300


class WebhookSignatureError(Exception):
    pass


# ---------------------------
# Gateway payloads
# ---------------------------
class CheckoutLineItem(BaseModel):
    name: str
    amount: Decimal
    description: Optional[str] = None
    # e.g. "month" for subscriptions
    recurring_interval: Optional[str] = None


class CheckoutSession(BaseModel):
    id: str
    url: str


# ---------------------------
# Utility functions
# ---------------------------
def to_minor_units(amount: Decimal) -> int:
    """Decimal dollars to integer cents."""
    cents = (Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def encode_form(params, prefix: Optional[str] = None) -> List[tuple]:
    """
    Flatten nested dicts/lists into Stripe's bracketed form fields,
    e.g. ``line_items[0][price_data][currency]``.
    """
    pairs = []
    items = enumerate(params) if isinstance(params, list) else params.items()
    for key, value in items:
        name = f"{prefix}[{key}]" if prefix is not None else str(key)
        if isinstance(value, (dict, list)):
            pairs.extend(encode_form(value, name))
        elif value is None:
            continue
        elif isinstance(value, bool):
            pairs.append((name, "true" if value else "false"))
        else:
            pairs.append((name, str(value)))
    return pairs


def generate_webhook_signature(secret: str, timestamp: int, payload: bytes) -> str:
    signed_payload = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    payload: bytes,
    header: Optional[str],
    secret: Optional[str],
    tolerance: int = WEBHOOK_TOLERANCE_SECONDS,
    now: Optional[int] = None,
) -> None:
    """Raise WebhookSignatureError unless ``header`` signs ``payload``."""
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not header:
        raise WebhookSignatureError("Missing Stripe signature")

    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise WebhookSignatureError("Malformed signature timestamp")
        elif key == "v1":
            signatures.append(value)

    if timestamp is None or not signatures:
        raise WebhookSignatureError("Malformed signature header")

    now = int(time.time()) if now is None else now
    if abs(now - timestamp) > tolerance:
        raise WebhookSignatureError("Signature timestamp outside tolerance")

    expected = generate_webhook_signature(secret, timestamp, payload)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookSignatureError("Signature mismatch")


def build_line_item(item: CheckoutLineItem) -> dict:
    price_data = {
        "currency": SETTLEMENT_CURRENCY,
        "product_data": {
            "name": item.name,
            "description": item.description,
        },
        "unit_amount": to_minor_units(item.amount),
    }
    if item.recurring_interval:
        price_data["recurring"] = {"interval": item.recurring_interval}
    return {"price_data": price_data, "quantity": 1}


# ---------------------------
# Gateway client
# ---------------------------
class StripeGateway:
    """Thin client over the Stripe REST endpoints the marketplace uses."""

    def __init__(
        self,
        api_key: Optional[str],
        api_base: str = STRIPE_API_BASE,
        timeout: float = 10,
        app_url: str = "http://localhost:3000",
    ):
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.app_url = app_url.rstrip("/")

    @classmethod
    def from_env(cls) -> "StripeGateway":
        return cls(
            api_key=os.getenv("STRIPE_SECRET_KEY"),
            api_base=os.getenv("STRIPE_API_BASE", STRIPE_API_BASE),
            timeout=float(os.getenv("STRIPE_TIMEOUT_SECONDS", "10")),
            app_url=os.getenv("APP_URL", "http://localhost:3000"),
        )

    def create_checkout_session(
        self,
        line_items: List[CheckoutLineItem],
        success_url: str,
        cancel_url: str,
        customer_email: str,
        metadata: Dict[str, str],
        mode: str = "payment",
    ) -> CheckoutSession:
        params = {
            "payment_method_types": ["card"],
            "line_items": [build_line_item(item) for item in line_items],
            "mode": mode,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "customer_email": customer_email,
            "metadata": metadata,
        }
        if mode == "subscription":
            # copied onto the subscription so its own events carry our ids
            params["subscription_data"] = {"metadata": metadata}

        data = self._request("POST", "/checkout/sessions", params)
        if not data.get("id") or not data.get("url"):
            logger.error(f"Stripe checkout session response missing id/url: {data}")
            raise ExternalServiceError("Payment gateway returned an invalid checkout session")

        logger.info(f"Created Stripe checkout session {data['id']} ({mode})")
        return CheckoutSession(id=data["id"], url=data["url"])

    def retrieve_subscription(self, gateway_subscription_id: str) -> dict:
        return self._request("GET", f"/subscriptions/{gateway_subscription_id}")

    def _request(self, method: str, path: str, params: Optional[dict] = None) -> dict:
        if not self.api_key:
            raise ExternalServiceError("Stripe API key is not configured")

        try:
            response = requests.request(
                method,
                f"{self.api_base}{path}",
                auth=(self.api_key, ""),
                data=encode_form(params) if params else None,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error(f"Stripe request {method} {path} failed: {exc}")
            raise ExternalServiceError("Payment gateway is unreachable") from exc

        if response.status_code >= 400:
            logger.error(
                f"Stripe request {method} {path} returned {response.status_code}: {response.text[:500]}"
            )
            raise ExternalServiceError("Payment gateway rejected the request")

        try:
            return response.json()
        except ValueError as exc:
            logger.error(f"Stripe request {method} {path} returned a non-JSON body")
            raise ExternalServiceError("Payment gateway returned an invalid response") from exc
