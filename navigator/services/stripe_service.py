"""
Stripe integration.

``StripeGateway`` wraps the Stripe SDK calls the billing endpoints need. The SDK
is synchronous, so every call runs in a worker thread to keep the event loop
free. Webhook signature verification lives here too, together with helpers
that read subscription/invoice fields across Stripe API versions.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import stripe

from navigator.config import settings

logger = logging.getLogger(__name__)


class WebhookVerificationError(Exception):
    """Raised when a webhook payload fails signature or freshness checks."""

    def __init__(self, message: str, replay: bool = False):
        self.replay = replay
        super().__init__(message)


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str


class StripeGateway:
    def __init__(self, api_key: str):
        if not api_key:
            raise ValueError("Stripe API key is required")
        self.api_key = api_key

    async def _call(self, func, *args, **kwargs):
        return await asyncio.to_thread(func, *args, api_key=self.api_key, **kwargs)

    async def create_customer(self, email: str, user_id: str) -> str:
        customer = await self._call(
            stripe.Customer.create,
            email=email,
            metadata={"user_id": user_id},
        )
        return str(customer["id"])

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        session = await self._call(
            stripe.checkout.Session.create,
            customer=customer_id,
            mode="subscription",
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
        )
        return CheckoutSession(id=str(session["id"]), url=str(session["url"]))

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        session = await self._call(
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return str(session["url"])

    async def retrieve_subscription(self, subscription_id: str) -> Any:
        return await self._call(stripe.Subscription.retrieve, subscription_id)

    async def list_portal_configurations(self, limit: int = 1) -> list[Any]:
        result = await self._call(stripe.billing_portal.Configuration.list, limit=limit)
        return list(result.get("data") or [])

    async def update_portal_configuration(self, configuration_id: str, features: dict) -> Any:
        return await self._call(
            stripe.billing_portal.Configuration.modify,
            configuration_id,
            features=features,
        )


def verify_webhook_event(
    payload: bytes,
    signature: str | None,
    secret: str,
    tolerance: int = 300,
    now: datetime | None = None,
) -> Any:
    """Verify a Stripe webhook and return the parsed event.

    The SDK checks the HMAC signature and that the signed timestamp is within
    ``tolerance`` seconds. The event's own ``created`` time is checked against
    the same window afterwards.
    """
    if not signature:
        raise WebhookVerificationError("Missing Stripe-Signature header")

    try:
        event = stripe.Webhook.construct_event(
            payload=payload,
            sig_header=signature,
            secret=secret,
            tolerance=tolerance,
        )
    except stripe.SignatureVerificationError as exc:
        # "Timestamp outside the tolerance zone" marks a stale or replayed event
        replay = "tolerance" in str(exc).lower()
        raise WebhookVerificationError(str(exc), replay=replay) from exc
    except ValueError as exc:
        raise WebhookVerificationError(f"Invalid payload: {exc}") from exc

    now = now or datetime.now(timezone.utc)
    created = event.get("created")
    if created is None:
        raise WebhookVerificationError("Webhook event has no creation timestamp")
    event_age = now.timestamp() - int(created)
    if event_age > tolerance:
        logger.warning("Webhook event too old: %ds (max: %ds)", int(event_age), tolerance)
        raise WebhookVerificationError("Webhook event timestamp too old", replay=True)

    return event


def get_stripe_gateway() -> StripeGateway | None:
    """Return a gateway when Stripe is configured, else None."""
    if not settings.STRIPE_SECRET_KEY:
        return None
    return StripeGateway(settings.STRIPE_SECRET_KEY)


# ── Payload helpers ─────────────────────────────────────────────────
# Stripe objects are dict subclasses; tests pass plain dicts.


def _get(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def timestamp_to_datetime(ts: Any) -> datetime | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


def _first_item(subscription: Any) -> Any:
    items = _get(subscription, "items")
    data = _get(items, "data") or []
    return data[0] if data else None


def subscription_period_start(subscription: Any) -> datetime | None:
    """Older API versions keep the period on the subscription, newer ones on its items."""
    ts = _get(subscription, "current_period_start")
    if ts is None:
        ts = _get(_first_item(subscription), "current_period_start")
    return timestamp_to_datetime(ts)


def subscription_period_end(subscription: Any) -> datetime | None:
    ts = _get(subscription, "current_period_end")
    if ts is None:
        ts = _get(_first_item(subscription), "current_period_end")
    return timestamp_to_datetime(ts)


def subscription_price_id(subscription: Any) -> str | None:
    price = _get(_first_item(subscription), "price")
    price_id = _get(price, "id")
    return str(price_id) if price_id else None


def invoice_subscription_id(invoice: Any) -> str | None:
    """Subscription id of an invoice, from the legacy field or ``parent.subscription_details``."""
    sub = _get(invoice, "subscription")
    if sub is None:
        details = _get(_get(invoice, "parent"), "subscription_details")
        sub = _get(details, "subscription")
    if sub is None:
        return None
    if not isinstance(sub, str):
        sub = _get(sub, "id")
    return str(sub) if sub else None


def object_id(value: Any) -> str | None:
    """Id of an expandable field that may be a bare id or an object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    found = _get(value, "id")
    return str(found) if found else None


def portal_update_features(plans: list[dict]) -> dict:
    """Portal ``features`` letting customers switch between the given plans.

    ``plans`` are rows as returned by ``subscription_service.list_plans``.
    """
    prices_by_product: dict[str, list[str]] = {}
    for plan in plans:
        prices_by_product.setdefault(plan["product_id"], []).append(plan["price_id"])

    return {
        "subscription_update": {
            "enabled": True,
            "default_allowed_updates": ["price", "promotion_code"],
            "proration_behavior": "create_prorations",
            "products": [
                {"product": product_id, "prices": price_ids}
                for product_id, price_ids in prices_by_product.items()
            ],
        },
    }
