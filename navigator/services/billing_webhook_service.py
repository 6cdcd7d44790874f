"""
Stripe webhook dispatch.

Each verified event is routed by type to a handler that mirrors the change
into the subscriptions table. Handlers are idempotent: checkout completion
upserts by Stripe subscription id, everything else updates by the same key.
Database failures inside a handler are logged and rolled back without raising,
so the caller can still acknowledge the delivery.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import sentry_sdk
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from navigator.schemas.subscription import WebhookMetadata
from navigator.services import stripe_service, subscription_service
from navigator.services.stripe_service import StripeGateway
from navigator.services.subscription_service import WriteOutcome

logger = logging.getLogger(__name__)

HANDLED_EVENTS = {
    "checkout.session.completed",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "invoice.payment_succeeded",
    "invoice.payment_failed",
}


@dataclass
class WebhookResult:
    event_id: str | None
    event_type: str
    handled: bool
    outcome: str | None = None
    persistence_failed: bool = False


def _log_outcome(event_type: str, subscription_id: str, outcome: WriteOutcome) -> None:
    if outcome is WriteOutcome.MISSING:
        logger.warning(
            "No local subscription for %s (%s); nothing updated",
            subscription_id,
            event_type,
        )
    elif outcome is WriteOutcome.STALE:
        logger.info(
            "Ignoring out-of-order %s for %s; a newer event was already applied",
            event_type,
            subscription_id,
        )


async def _handle_checkout_completed(db, gateway, session, event_at) -> str | None:
    if session.get("mode") != "subscription" or not session.get("subscription"):
        logger.debug("Checkout session %s is not a subscription checkout", session.get("id"))
        return None

    try:
        metadata = WebhookMetadata.model_validate(dict(session.get("metadata") or {}))
    except PydanticValidationError as exc:
        # Bad metadata must not fail the whole delivery
        logger.error(
            "Webhook metadata validation failed for checkout session %s: %s",
            session.get("id"),
            exc.errors(include_url=False),
        )
        return "invalid_metadata"

    subscription_id = stripe_service.object_id(session.get("subscription"))
    subscription = await gateway.retrieve_subscription(subscription_id)

    now = event_at or datetime.now(timezone.utc)
    period_start = stripe_service.subscription_period_start(subscription) or now
    period_end = stripe_service.subscription_period_end(subscription) or now

    sub = await subscription_service.upsert_subscription_from_checkout(
        db,
        user_id=metadata.user_id,
        product_id=metadata.product_id,
        stripe_subscription_id=str(subscription.get("id") or subscription_id),
        stripe_customer_id=stripe_service.object_id(subscription.get("customer")),
        status=subscription.get("status"),
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
        event_at=event_at,
    )
    logger.info(
        "Subscription %s recorded for user %s (status=%s)",
        sub.stripe_subscription_id,
        sub.user_id,
        sub.status,
    )
    return WriteOutcome.UPDATED.value


async def _handle_subscription_updated(db, subscription, event_at) -> str:
    subscription_id = str(subscription.get("id"))
    outcome = await subscription_service.apply_subscription_update(
        db,
        subscription_id,
        status=subscription.get("status"),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
        current_period_start=stripe_service.subscription_period_start(subscription),
        current_period_end=stripe_service.subscription_period_end(subscription),
        stripe_price_id=stripe_service.subscription_price_id(subscription),
        event_at=event_at,
    )
    _log_outcome("customer.subscription.updated", subscription_id, outcome)
    return outcome.value


async def _set_status(db, event_type, subscription_id, status, event_at) -> str | None:
    if not subscription_id:
        logger.info("%s carries no subscription id; nothing to update", event_type)
        return None
    outcome = await subscription_service.set_subscription_status(
        db, subscription_id, status, event_at=event_at
    )
    _log_outcome(event_type, subscription_id, outcome)
    return outcome.value


async def process_event(db: AsyncSession, gateway: StripeGateway, event: Any) -> WebhookResult:
    """Apply a verified Stripe event to the subscription store."""
    event_type = str(event.get("type") or "")
    event_id = event.get("id")
    event_at = stripe_service.timestamp_to_datetime(event.get("created"))
    obj = (event.get("data") or {}).get("object") or {}

    result = WebhookResult(event_id=event_id, event_type=event_type, handled=event_type in HANDLED_EVENTS)
    if not result.handled:
        logger.info("Unhandled event type: %s", event_type)
        return result

    try:
        if event_type == "checkout.session.completed":
            result.outcome = await _handle_checkout_completed(db, gateway, obj, event_at)
        elif event_type == "customer.subscription.updated":
            result.outcome = await _handle_subscription_updated(db, obj, event_at)
        elif event_type == "customer.subscription.deleted":
            result.outcome = await _set_status(db, event_type, obj.get("id"), "canceled", event_at)
        elif event_type == "invoice.payment_succeeded":
            result.outcome = await _set_status(
                db, event_type, stripe_service.invoice_subscription_id(obj), "active", event_at
            )
        elif event_type == "invoice.payment_failed":
            result.outcome = await _set_status(
                db, event_type, stripe_service.invoice_subscription_id(obj), "past_due", event_at
            )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        sentry_sdk.capture_exception(exc)
        logger.exception(
            "Database error while processing %s",
            event_type,
            extra={"context": {"event_id": event_id, "event_type": event_type}},
        )
        result.persistence_failed = True

    return result
