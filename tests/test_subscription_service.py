import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from navigator.exceptions import NotFoundError
from navigator.models.price import Price
from navigator.models.product import Product
from navigator.models.subscription import Subscription
from navigator.services import subscription_service
from navigator.services.subscription_service import WriteOutcome
from tests.conftest import TEST_PRICE_ID, TEST_PRODUCT_ID, FakeStripeGateway, stripe_subscription


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


async def _upsert(db_session, user_id, **overrides):
    now = datetime.now(timezone.utc)
    params = dict(
        user_id=user_id,
        product_id=TEST_PRODUCT_ID,
        stripe_subscription_id="sub_store_1",
        stripe_customer_id="cus_store_1",
        status="active",
        current_period_start=now,
        current_period_end=now + timedelta(days=30),
        cancel_at_period_end=False,
        event_at=now,
    )
    params.update(overrides)
    sub = await subscription_service.upsert_subscription_from_checkout(db_session, **params)
    await db_session.commit()
    return sub


# ── Reads ───────────────────────────────────────────────────────────


async def test_get_price_by_stripe_id(db_session, price):
    found = await subscription_service.get_price_by_stripe_id(db_session, TEST_PRICE_ID)
    assert found is not None
    assert found.product_id == TEST_PRODUCT_ID
    assert await subscription_service.get_price_by_stripe_id(db_session, "price_missing") is None


async def test_get_price_by_stripe_id_inactive(db_session, price):
    price.active = False
    await db_session.commit()

    assert await subscription_service.get_price_by_stripe_id(db_session, TEST_PRICE_ID) is None
    assert await subscription_service.get_price_by_stripe_id(db_session, TEST_PRICE_ID, active_only=False) is not None


async def test_get_active_subscription(db_session, test_user, active_subscription):
    sub = await subscription_service.get_active_subscription(db_session, test_user.id)
    assert sub is not None
    assert sub.stripe_subscription_id == "sub_test_123"


async def test_get_active_subscription_ignores_expired(db_session, test_user, active_subscription):
    active_subscription.current_period_end = datetime.now(timezone.utc) - timedelta(minutes=1)
    await db_session.commit()

    assert await subscription_service.get_active_subscription(db_session, test_user.id) is None


async def test_get_active_subscription_ignores_other_statuses(db_session, test_user, active_subscription):
    active_subscription.status = "trialing"
    await db_session.commit()

    assert await subscription_service.get_active_subscription(db_session, test_user.id) is None


async def test_find_customer_id(db_session, test_user, active_subscription):
    assert await subscription_service.find_customer_id(db_session, test_user.id) == "cus_test_123"
    assert await subscription_service.find_customer_id(db_session, uuid.uuid4()) is None


# ── Writes ──────────────────────────────────────────────────────────


async def test_upsert_creates_then_converges(db_session, test_user, price):
    await _upsert(db_session, test_user.id)
    sub = await _upsert(db_session, test_user.id, status="past_due", cancel_at_period_end=True)

    count = (await db_session.execute(select(func.count()).select_from(Subscription))).scalar_one()
    assert count == 1
    assert sub.status == "past_due"
    assert sub.cancel_at_period_end is True


async def test_upsert_keeps_watermark_on_older_redelivery(db_session, test_user, price):
    now = datetime.now(timezone.utc)
    await _upsert(db_session, test_user.id, event_at=now)
    sub = await _upsert(db_session, test_user.id, event_at=now - timedelta(minutes=5))

    assert _utc(sub.last_event_at) == now


async def test_status_column_rejects_unknown_values(db_session, test_user, price):
    db_session.add(
        Subscription(
            user_id=test_user.id,
            product_id=TEST_PRODUCT_ID,
            stripe_subscription_id="sub_bad_status",
            status="None",
        )
    )
    with pytest.raises(IntegrityError):
        await db_session.flush()
    await db_session.rollback()


async def test_upsert_requires_supported_dialect():
    db = MagicMock()
    db.get_bind.return_value.dialect.name = "mysql"

    with pytest.raises(RuntimeError, match="postgresql or sqlite"):
        await subscription_service.upsert_subscription_from_checkout(
            db,
            user_id=uuid.uuid4(),
            product_id=TEST_PRODUCT_ID,
            stripe_subscription_id="sub_mysql",
            stripe_customer_id=None,
            status="active",
            current_period_start=datetime.now(timezone.utc),
            current_period_end=datetime.now(timezone.utc),
            cancel_at_period_end=False,
        )


async def test_apply_update_missing_row(db_session):
    outcome = await subscription_service.apply_subscription_update(
        db_session, "sub_missing", status="active", cancel_at_period_end=False
    )
    assert outcome is WriteOutcome.MISSING


async def test_apply_update_keeps_periods_when_absent(db_session, active_subscription):
    original_end = _utc(active_subscription.current_period_end)

    outcome = await subscription_service.apply_subscription_update(
        db_session, "sub_test_123", status="past_due", cancel_at_period_end=True
    )
    await db_session.commit()

    assert outcome is WriteOutcome.UPDATED
    assert active_subscription.status == "past_due"
    assert _utc(active_subscription.current_period_end) == original_end


async def test_apply_update_unknown_status_keeps_stored_status(db_session, active_subscription):
    outcome = await subscription_service.apply_subscription_update(
        db_session, "sub_test_123", status=None, cancel_at_period_end=True
    )
    await db_session.commit()

    assert outcome is WriteOutcome.UPDATED
    assert active_subscription.status == "active"
    assert active_subscription.cancel_at_period_end is True


async def test_ordering_guard_ignores_older_event(db_session, active_subscription):
    now = datetime.now(timezone.utc)
    await subscription_service.set_subscription_status(db_session, "sub_test_123", "canceled", event_at=now)

    outcome = await subscription_service.set_subscription_status(
        db_session, "sub_test_123", "active", event_at=now - timedelta(seconds=1)
    )

    assert outcome is WriteOutcome.STALE
    assert active_subscription.status == "canceled"


async def test_ordering_guard_applies_equal_timestamp(db_session, active_subscription):
    now = datetime.now(timezone.utc)
    await subscription_service.set_subscription_status(db_session, "sub_test_123", "past_due", event_at=now)

    outcome = await subscription_service.set_subscription_status(db_session, "sub_test_123", "active", event_at=now)

    assert outcome is WriteOutcome.UPDATED
    assert active_subscription.status == "active"


async def test_updates_without_event_time_always_apply(db_session, active_subscription):
    now = datetime.now(timezone.utc)
    await subscription_service.set_subscription_status(db_session, "sub_test_123", "past_due", event_at=now)

    outcome = await subscription_service.set_subscription_status(db_session, "sub_test_123", "active")

    assert outcome is WriteOutcome.UPDATED


# ── Manual sync ─────────────────────────────────────────────────────


async def test_sync_from_stripe_mirrors_remote_state(db_session, test_user, active_subscription):
    db_session.add(Product(id="prod_team", name="Team"))
    db_session.add(Price(stripe_price_id="price_team_sync", product_id="prod_team", unit_amount=4900, interval="month"))
    await db_session.commit()

    gateway = FakeStripeGateway()
    gateway.subscriptions["sub_test_123"] = stripe_subscription(
        "sub_test_123", status="past_due", price_id="price_team_sync", cancel_at_period_end=True
    )

    sub = await subscription_service.sync_subscription_from_stripe(db_session, gateway, test_user.id)

    assert sub.status == "past_due"
    assert sub.cancel_at_period_end is True
    assert sub.product_id == "prod_team"


async def test_sync_from_stripe_without_subscription(db_session, test_user):
    with pytest.raises(NotFoundError):
        await subscription_service.sync_subscription_from_stripe(db_session, FakeStripeGateway(), test_user.id)


async def test_sync_from_stripe_keeps_status_when_remote_unknown(db_session, test_user, active_subscription):
    gateway = FakeStripeGateway()
    gateway.subscriptions["sub_test_123"] = stripe_subscription("sub_test_123", status="frozen")

    sub = await subscription_service.sync_subscription_from_stripe(db_session, gateway, test_user.id)

    assert sub.status == "active"
