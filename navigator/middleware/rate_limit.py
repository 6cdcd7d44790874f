import logging
from urllib.parse import urlencode

from fastapi import Request
from fastapi.responses import RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware

from navigator.config import settings
from navigator.dependencies import get_client_ip
from navigator.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

AUTH_RATE_LIMITED_PATHS = {"/login", "/signup", "/forgot-password", "/auth/callback"}
RETRY_AFTER_SECONDS = 60


class AuthRateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP limit on sign-in paths.

    Browsers land on these paths directly, so exceeding the limit redirects to
    the countdown page instead of returning JSON.
    """

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path not in AUTH_RATE_LIMITED_PATHS:
            return await call_next(request)

        limiter = RateLimiter(
            getattr(request.app.state, "redis", None),
            namespace="auth",
            window_seconds=RETRY_AFTER_SECONDS,
        )
        ip = get_client_ip(request)
        result = await limiter.check(settings.AUTH_RATE_LIMIT_PER_MINUTE, ip)

        if not result.success:
            logger.warning("SECURITY: Auth rate limit exceeded", extra={"context": {"ip": ip, "path": path}})
            query = urlencode({"retry": RETRY_AFTER_SECONDS, "return": path})
            return RedirectResponse(
                url=f"{settings.APP_URL.rstrip('/')}/error/rate-limit?{query}",
                status_code=302,
            )

        return await call_next(request)
