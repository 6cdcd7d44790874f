import hashlib
import hmac
import json
import time
import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import StaticPool
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from navigator.config import settings
from navigator.database import get_db
from navigator.dependencies import get_billing_gateway, get_current_user, get_webhook_gateway
from navigator.main import app
from navigator.models import Base, Price, Product, Subscription, User
from navigator.services.stripe_service import CheckoutSession

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_PRICE_ID = "price_ABCDEFGHIJKLMNOPQRSTUVWX"
TEST_PRODUCT_ID = "prod_TLNDrYkt6mPYti"
WEBHOOK_SECRET = "whsec_test_secret"


class FakeRedis:
    """In-memory Redis mock for testing."""

    def __init__(self):
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        self._store[key] = str(value)
        if ex:
            self._ttls[key] = ex

    async def incr(self, key: str) -> int:
        val = int(self._store.get(key, "0")) + 1
        self._store[key] = str(val)
        return val

    async def expire(self, key: str, seconds: int) -> None:
        self._ttls[key] = seconds

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class FakeStripeGateway:
    """Records billing calls instead of talking to Stripe."""

    def __init__(self):
        self.customers_created: list[dict] = []
        self.checkout_sessions: list[dict] = []
        self.portal_sessions: list[dict] = []
        self.subscriptions: dict[str, dict] = {}

    async def create_customer(self, email: str, user_id: str) -> str:
        self.customers_created.append({"email": email, "user_id": user_id})
        return "cus_test_new"

    async def create_checkout_session(self, customer_id, price_id, metadata, success_url, cancel_url):
        self.checkout_sessions.append(
            {
                "customer_id": customer_id,
                "price_id": price_id,
                "metadata": metadata,
                "success_url": success_url,
                "cancel_url": cancel_url,
            }
        )
        return CheckoutSession(id="cs_test_123", url="https://checkout.stripe.com/c/pay/cs_test_123")

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        self.portal_sessions.append({"customer_id": customer_id, "return_url": return_url})
        return "https://billing.stripe.com/p/session/test_123"

    async def retrieve_subscription(self, subscription_id: str) -> dict:
        return self.subscriptions[subscription_id]


def stripe_subscription(
    subscription_id: str = "sub_test_123",
    customer_id: str = "cus_test_123",
    status: str = "active",
    price_id: str = TEST_PRICE_ID,
    cancel_at_period_end: bool = False,
) -> dict:
    """Subscription payload shaped like the Stripe API (periods on the item)."""
    now = int(datetime.now(timezone.utc).timestamp())
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "items": {
            "object": "list",
            "data": [
                {
                    "id": "si_test_123",
                    "price": {"id": price_id},
                    "current_period_start": now,
                    "current_period_end": now + 30 * 24 * 3600,
                }
            ],
        },
    }


@pytest.fixture(autouse=True)
def stripe_settings(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "SUPABASE_JWT_SECRET", "test-jwt-secret")


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    session_factory = async_sessionmaker(
        db_engine, class_=AsyncSession, expire_on_commit=False
    )
    async with session_factory() as session:
        yield session


@pytest.fixture
async def test_user(db_session: AsyncSession) -> User:
    user = User(
        id=uuid.uuid4(),
        email="test@example.com",
        display_name="Test User",
        created_at=datetime.now(timezone.utc),
        updated_at=datetime.now(timezone.utc),
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture
async def product(db_session: AsyncSession) -> Product:
    product = Product(id=TEST_PRODUCT_ID, name="Pro", description="Unlimited niche reports")
    db_session.add(product)
    await db_session.commit()
    await db_session.refresh(product)
    return product


@pytest.fixture
async def price(db_session: AsyncSession, product: Product) -> Price:
    price = Price(
        stripe_price_id=TEST_PRICE_ID,
        product_id=product.id,
        unit_amount=1900,
        currency="usd",
        interval="month",
    )
    db_session.add(price)
    await db_session.commit()
    await db_session.refresh(price)
    return price


@pytest.fixture
async def active_subscription(db_session: AsyncSession, test_user: User, price: Price) -> Subscription:
    now = datetime.now(timezone.utc)
    sub = Subscription(
        user_id=test_user.id,
        product_id=price.product_id,
        stripe_subscription_id="sub_test_123",
        stripe_customer_id="cus_test_123",
        status="active",
        current_period_start=now,
        current_period_end=now + timedelta(days=30),
        cancel_at_period_end=False,
    )
    db_session.add(sub)
    await db_session.commit()
    await db_session.refresh(sub)
    return sub


@pytest.fixture
def fake_gateway() -> FakeStripeGateway:
    return FakeStripeGateway()


@pytest.fixture
async def client(db_engine, test_user: User, fake_gateway) -> AsyncGenerator[AsyncClient, None]:
    session_factory = async_sessionmaker(
        db_engine, class_=AsyncSession, expire_on_commit=False
    )

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def override_get_current_user():
        return test_user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_billing_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_webhook_gateway] = lambda: fake_gateway
    app.state.redis = FakeRedis()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def anon_client(db_engine) -> AsyncGenerator[AsyncClient, None]:
    """Client with real session authentication and Stripe wiring."""
    session_factory = async_sessionmaker(
        db_engine, class_=AsyncSession, expire_on_commit=False
    )

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.state.redis = FakeRedis()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Stripe webhook helpers ──────────────────────────────────────────


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type: str, obj: dict, created: int | None = None, event_id: str | None = None) -> dict:
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()) if created is None else created,
        "data": {"object": obj},
    }


def checkout_completed_event(user_id, product_id: str, subscription_id: str, created: int | None = None) -> dict:
    return make_event(
        "checkout.session.completed",
        {
            "id": "cs_test_123",
            "object": "checkout.session",
            "mode": "subscription",
            "subscription": subscription_id,
            "customer": "cus_test_123",
            "metadata": {"user_id": str(user_id), "product_id": product_id},
        },
        created=created,
    )


async def post_event(client, event: dict, signature: str | None = None, timestamp: int | None = None):
    payload = json.dumps(event)
    headers = {
        "Content-Type": "application/json",
        "User-Agent": "Stripe/1.0 (+https://stripe.com/docs/webhooks)",
        "Stripe-Signature": signature or sign_payload(payload, timestamp=timestamp),
    }
    return await client.post("/subscriptions/webhook", content=payload, headers=headers)
