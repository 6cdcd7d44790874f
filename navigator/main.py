from contextlib import asynccontextmanager

import redis.asyncio as redis
import sentry_sdk
from fastapi import FastAPI
from sqlalchemy import text

from navigator.config import settings
from navigator.database import engine
from navigator.logging_config import setup_logging

setup_logging()

# Initialize Sentry
if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=0.2 if settings.is_production else 1.0,
        send_default_pii=False,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: verify DB connection and connect Redis
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))

    app.state.redis = redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
    )
    await app.state.redis.ping()

    yield

    # Shutdown
    await app.state.redis.close()
    await engine.dispose()


app = FastAPI(
    title="Niche Navigator API",
    version="0.1.0",
    lifespan=lifespan,
)

# Middleware
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402

from navigator.middleware.rate_limit import AuthRateLimitMiddleware  # noqa: E402
from navigator.middleware.request_context import RequestContextMiddleware  # noqa: E402

app.add_middleware(AuthRateLimitMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    max_age=86400,
)
app.add_middleware(RequestContextMiddleware)

from navigator.middleware.error_handler import register_error_handlers  # noqa: E402

register_error_handlers(app)

# Routers
from navigator.routers.auth import router as auth_router  # noqa: E402
from navigator.routers.subscriptions import router as subscriptions_router  # noqa: E402

app.include_router(auth_router)
app.include_router(subscriptions_router)


@app.get("/health")
async def health():
    return {"status": "ok"}
