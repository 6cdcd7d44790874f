import logging

import sentry_sdk
import stripe
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from navigator.config import settings
from navigator.database import get_db
from navigator.dependencies import (
    enforce_billing_rate_limit,
    get_billing_gateway,
    get_current_user,
    get_webhook_gateway,
    require_allowed_origin,
)
from navigator.exceptions import ValidationError
from navigator.models.user import User
from navigator.schemas.subscription import (
    CheckoutRequest,
    CheckoutResponse,
    PlanResponse,
    PortalResponse,
    SubscriptionStatusResponse,
    WebhookAck,
)
from navigator.services import billing_webhook_service, subscription_service
from navigator.services.stripe_service import (
    StripeGateway,
    WebhookVerificationError,
    verify_webhook_event,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.get("/status", response_model=SubscriptionStatusResponse)
async def get_status(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get current subscription status for the authenticated user."""
    sub_status = await subscription_service.get_subscription_status(db, user.id)
    return SubscriptionStatusResponse(**sub_status)


@router.get("/plans", response_model=list[PlanResponse])
async def list_plans(db: AsyncSession = Depends(get_db)):
    """List purchasable plans."""
    return await subscription_service.list_plans(db)


@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    dependencies=[Depends(require_allowed_origin)],
)
async def create_checkout(
    data: CheckoutRequest,
    gateway: StripeGateway = Depends(get_billing_gateway),
    user: User = Depends(get_current_user),
    _: None = Depends(enforce_billing_rate_limit),
    db: AsyncSession = Depends(get_db),
):
    """Start a hosted Stripe Checkout for the requested plan.

    No subscription row is written here; the webhook records it once Stripe
    confirms the checkout.
    """
    logger.info("Checkout session creation started", extra={"context": {"user_id": str(user.id)}})

    price = await subscription_service.get_price_by_stripe_id(db, data.price_id)
    if price is None:
        logger.warning(
            "Invalid price ID provided",
            extra={"context": {"user_id": str(user.id), "price_id": data.price_id}},
        )
        raise ValidationError("Invalid price ID")

    existing = await subscription_service.get_active_subscription(db, user.id)
    if existing is not None:
        logger.warning(
            "User attempted checkout with existing subscription",
            extra={"context": {"user_id": str(user.id)}},
        )
        raise ValidationError(
            "You already have an active subscription. Use the customer portal to manage it."
        )

    customer_id = await subscription_service.find_customer_id(db, user.id)
    if customer_id is None:
        customer_id = await gateway.create_customer(email=user.email, user_id=str(user.id))
        logger.info(
            "Created new Stripe customer",
            extra={"context": {"user_id": str(user.id), "customer_id": customer_id}},
        )

    app_url = settings.APP_URL.rstrip("/")
    session = await gateway.create_checkout_session(
        customer_id=customer_id,
        price_id=data.price_id,
        metadata={"user_id": str(user.id), "product_id": price.product_id},
        success_url=f"{app_url}/subscriptions?success=true",
        cancel_url=f"{app_url}/subscriptions?canceled=true",
    )

    logger.info(
        "Checkout session created",
        extra={"context": {"user_id": str(user.id), "checkout_id": session.id}},
    )
    return CheckoutResponse(url=session.url, session_id=session.id)


@router.post(
    "/portal",
    response_model=PortalResponse,
    dependencies=[Depends(require_allowed_origin)],
)
async def create_portal(
    gateway: StripeGateway = Depends(get_billing_gateway),
    user: User = Depends(get_current_user),
    _: None = Depends(enforce_billing_rate_limit),
    db: AsyncSession = Depends(get_db),
):
    """Open the Stripe customer portal. Changes made there arrive via webhook."""
    customer_id = await subscription_service.find_customer_id(db, user.id)
    if not customer_id:
        raise ValidationError("No active subscription found. Please subscribe to a plan first.")

    url = await gateway.create_portal_session(
        customer_id=customer_id,
        return_url=f"{settings.APP_URL.rstrip('/')}/subscriptions",
    )
    return PortalResponse(url=url)


@router.post("/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    gateway: StripeGateway = Depends(get_webhook_gateway),
    db: AsyncSession = Depends(get_db),
):
    """Receive Stripe lifecycle events.

    Authenticity comes from the signature alone. Once it verifies, the
    delivery is acknowledged even if a local write fails, unless
    STRIPE_WEBHOOK_FAIL_ON_PERSISTENCE_ERROR asks Stripe to redeliver.
    """
    if "Stripe" not in request.headers.get("user-agent", ""):
        logger.warning("Webhook request with non-Stripe user agent")

    payload = await request.body()
    try:
        event = verify_webhook_event(
            payload,
            request.headers.get("stripe-signature"),
            settings.STRIPE_WEBHOOK_SECRET,
            tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )
    except WebhookVerificationError as e:
        logger.error("Webhook signature verification failed: %s", e)
        if e.replay:
            detail = (
                "Webhook event timestamp too old"
                if "event timestamp" in str(e)
                else "Webhook timestamp too old - possible replay attack"
            )
        else:
            detail = "Invalid signature"
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": detail, "code": "VALIDATION_ERROR"},
        )

    try:
        result = await billing_webhook_service.process_event(db, gateway, event)
    except stripe.StripeError as e:
        sentry_sdk.capture_exception(e)
        logger.error("Error processing webhook %s: %s", event.get("type"), e)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Webhook processing failed", "code": "STRIPE_ERROR"},
        )

    logger.info(
        "Webhook %s processed",
        result.event_type,
        extra={
            "context": {
                "event_id": result.event_id,
                "event_type": result.event_type,
                "handled": result.handled,
                "outcome": result.outcome,
                "persistence_failed": result.persistence_failed,
            }
        },
    )

    if result.persistence_failed and settings.STRIPE_WEBHOOK_FAIL_ON_PERSISTENCE_ERROR:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Webhook processing failed", "code": "DATABASE_ERROR"},
        )

    return WebhookAck()
