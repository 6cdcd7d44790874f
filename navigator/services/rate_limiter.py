import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    remaining: int


class RateLimiter:
    """Fixed-window request counter kept in Redis.

    Counters are shared by every process pointing at the same Redis, so limits
    hold across workers and restarts. ``namespace`` keeps independent limiters
    (billing API, auth pages) from sharing counters for the same token.
    """

    def __init__(self, redis_client, namespace: str, window_seconds: int = 60):
        self.redis = redis_client
        self.namespace = namespace
        self.window_seconds = window_seconds

    def _key(self, token: str) -> str:
        return f"rate_limit:{self.namespace}:{token}"

    async def check(self, limit: int, token: str) -> RateLimitResult:
        if self.redis is None:
            return RateLimitResult(success=True, remaining=limit)

        key = self._key(token)
        try:
            count = int(await self.redis.incr(key))
            if count == 1:
                await self.redis.expire(key, self.window_seconds)
        except Exception:
            # Redis outage: let the request through rather than fail it
            logger.warning("Rate limiter unavailable, allowing request", exc_info=True)
            return RateLimitResult(success=True, remaining=limit)

        if count > limit:
            return RateLimitResult(success=False, remaining=0)
        return RateLimitResult(success=True, remaining=limit - count)
