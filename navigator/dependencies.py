import logging
import uuid

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from navigator.config import settings
from navigator.database import get_db
from navigator.exceptions import (
    AuthenticationError,
    CorsViolationError,
    RateLimitError,
    ServiceUnavailableError,
)
from navigator.models.user import User
from navigator.services import auth_service
from navigator.services.rate_limiter import RateLimiter
from navigator.services.stripe_service import StripeGateway, get_stripe_gateway

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """Client IP from headers set by the hosting proxy, never from X-Forwarded-For."""
    vercel_ip = request.headers.get("x-vercel-forwarded-for")
    if vercel_ip:
        return vercel_ip.split(",")[0].strip()

    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _session_token(request: Request) -> str | None:
    token = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if token:
        return token
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1].strip() or None
    return None


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> User:
    token = _session_token(request)
    if not token:
        raise AuthenticationError()

    try:
        claims = auth_service.decode_session_token(token)
    except ValueError as e:
        logger.warning("SECURITY: Rejected session token: %s", e)
        raise AuthenticationError()

    user_id = uuid.UUID(str(claims["sub"]))
    user = await db.get(User, user_id)
    if user is None:
        user = await auth_service.upsert_user(
            db,
            user_id=user_id,
            email=claims.get("email") or "",
            display_name=(claims.get("user_metadata") or {}).get("full_name"),
        )
    return user


def is_origin_allowed(origin: str | None) -> bool:
    # Same-origin requests carry no Origin header
    if not origin:
        return True
    return origin.rstrip("/") in settings.allowed_origins


async def require_allowed_origin(request: Request) -> None:
    origin = request.headers.get("origin")
    if not is_origin_allowed(origin):
        logger.warning("SECURITY: CORS policy violation from origin %s", origin)
        raise CorsViolationError()


def get_billing_gateway() -> StripeGateway:
    gateway = get_stripe_gateway()
    if gateway is None:
        logger.error("Stripe not configured")
        raise ServiceUnavailableError(
            "Stripe is not configured. Please set up Stripe to use subscriptions."
        )
    return gateway


def get_webhook_gateway() -> StripeGateway:
    gateway = get_stripe_gateway()
    if gateway is None or not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("Stripe webhook not configured")
        raise ServiceUnavailableError("Stripe is not configured. Webhook processing is disabled.")
    return gateway


def get_rate_limiter(request: Request) -> RateLimiter:
    return RateLimiter(getattr(request.app.state, "redis", None), namespace="api")


async def enforce_billing_rate_limit(
    request: Request,
    user: User = Depends(get_current_user),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> None:
    """Independent per-IP and per-user limits on the billing endpoints."""
    limit = settings.BILLING_RATE_LIMIT_PER_MINUTE

    ip = get_client_ip(request)
    ip_result = await limiter.check(limit, f"ip:{ip}")
    if not ip_result.success:
        logger.warning("Rate limit exceeded (IP)", extra={"context": {"ip": ip, "user_id": str(user.id)}})
        raise RateLimitError()

    user_result = await limiter.check(limit, f"user:{user.id}")
    if not user_result.success:
        logger.warning("Rate limit exceeded (user)", extra={"context": {"user_id": str(user.id)}})
        raise RateLimitError()
