import enum
import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from navigator.exceptions import NotFoundError
from navigator.models.price import Price
from navigator.models.product import Product
from navigator.models.subscription import SUBSCRIPTION_STATUSES, Subscription
from navigator.services import stripe_service

logger = logging.getLogger(__name__)

ENTITLED_STATUSES = ("active", "trialing")


class WriteOutcome(enum.Enum):
    UPDATED = "updated"
    MISSING = "missing"
    STALE = "stale"


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _is_expired(sub: Subscription, now: datetime) -> bool:
    period_end = _as_utc(sub.current_period_end)
    return period_end is not None and period_end < now


def _known_status(status: str | None, stripe_subscription_id: str) -> bool:
    if status in SUBSCRIPTION_STATUSES:
        return True
    logger.error(
        "Unknown subscription status %r for %s; keeping stored status",
        status,
        stripe_subscription_id,
    )
    return False


def _dialect_insert(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"Upsert requires postgresql or sqlite, got dialect {dialect!r}")
    return insert


# ── Reads ───────────────────────────────────────────────────────────


async def get_price_by_stripe_id(
    db: AsyncSession, stripe_price_id: str, active_only: bool = True
) -> Price | None:
    query = select(Price).where(Price.stripe_price_id == stripe_price_id)
    if active_only:
        query = query.where(Price.active.is_(True))
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def get_by_stripe_subscription_id(
    db: AsyncSession, stripe_subscription_id: str
) -> Subscription | None:
    result = await db.execute(
        select(Subscription).where(
            Subscription.stripe_subscription_id == stripe_subscription_id
        )
    )
    return result.scalar_one_or_none()


async def get_active_subscription(db: AsyncSession, user_id: uuid.UUID) -> Subscription | None:
    """Return the user's active, unexpired subscription, if any."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .where(Subscription.status == "active")
        .order_by(Subscription.updated_at.desc())
    )
    now = datetime.now(timezone.utc)
    for sub in result.scalars().all():
        if not _is_expired(sub, now):
            return sub
    return None


async def find_customer_id(db: AsyncSession, user_id: uuid.UUID) -> str | None:
    """Stripe customer id attached to any of the user's subscriptions."""
    result = await db.execute(
        select(Subscription.stripe_customer_id)
        .where(Subscription.user_id == user_id)
        .where(Subscription.stripe_customer_id.is_not(None))
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_subscription_status(db: AsyncSession, user_id: uuid.UUID) -> dict:
    """Get the current subscription status for a user."""
    result = await db.execute(
        select(Subscription, Product.name)
        .join(Product, Product.id == Subscription.product_id)
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.updated_at.desc(), Subscription.created_at.desc())
        .limit(1)
    )
    row = result.first()

    if row is None:
        return {
            "is_pro": False,
            "product_id": None,
            "product_name": None,
            "status": None,
            "current_period_end": None,
            "cancel_at_period_end": False,
        }

    sub, product_name = row
    now = datetime.now(timezone.utc)
    return {
        "is_pro": sub.status in ENTITLED_STATUSES and not _is_expired(sub, now),
        "product_id": sub.product_id,
        "product_name": product_name,
        "status": sub.status,
        "current_period_end": _as_utc(sub.current_period_end),
        "cancel_at_period_end": sub.cancel_at_period_end,
    }


async def list_plans(db: AsyncSession) -> list[dict]:
    """Active prices with their product display data, cheapest first."""
    result = await db.execute(
        select(Price, Product)
        .join(Product, Product.id == Price.product_id)
        .where(Price.active.is_(True), Product.active.is_(True))
        .order_by(Price.unit_amount.asc())
    )
    return [
        {
            "price_id": price.stripe_price_id,
            "product_id": product.id,
            "name": product.name,
            "description": product.description,
            "unit_amount": price.unit_amount,
            "currency": price.currency,
            "interval": price.interval,
        }
        for price, product in result.all()
    ]


# ── Writes ──────────────────────────────────────────────────────────


async def upsert_subscription_from_checkout(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    product_id: str,
    stripe_subscription_id: str,
    stripe_customer_id: str | None,
    status: str | None,
    current_period_start: datetime,
    current_period_end: datetime,
    cancel_at_period_end: bool,
    event_at: datetime | None = None,
) -> Subscription:
    """Create or converge the row for a completed checkout.

    Keyed by ``stripe_subscription_id`` using the database's native
    ON CONFLICT, so duplicate deliveries leave exactly one row. Owner and
    customer are never rewritten on conflict.
    """
    now = datetime.now(timezone.utc)
    status_known = _known_status(status, stripe_subscription_id)
    insert = _dialect_insert(db)
    stmt = insert(Subscription).values(
        id=uuid.uuid4(),
        user_id=user_id,
        product_id=product_id,
        stripe_subscription_id=stripe_subscription_id,
        stripe_customer_id=stripe_customer_id,
        status=status if status_known else "incomplete",
        current_period_start=current_period_start,
        current_period_end=current_period_end,
        cancel_at_period_end=cancel_at_period_end,
        last_event_at=event_at,
        created_at=now,
        updated_at=now,
    )
    # Never move the ordering watermark backwards on redelivery
    table = Subscription.__table__
    stmt = stmt.on_conflict_do_update(
        index_elements=["stripe_subscription_id"],
        set_={
            "product_id": stmt.excluded.product_id,
            "status": stmt.excluded.status if status_known else table.c.status,
            "current_period_start": stmt.excluded.current_period_start,
            "current_period_end": stmt.excluded.current_period_end,
            "cancel_at_period_end": stmt.excluded.cancel_at_period_end,
            "last_event_at": case(
                (table.c.last_event_at > stmt.excluded.last_event_at, table.c.last_event_at),
                else_=func.coalesce(stmt.excluded.last_event_at, table.c.last_event_at),
            ),
            "updated_at": stmt.excluded.updated_at,
        },
    )
    await db.execute(stmt)

    result = await db.execute(
        select(Subscription)
        .where(Subscription.stripe_subscription_id == stripe_subscription_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


def _is_stale(sub: Subscription, event_at: datetime | None) -> bool:
    last = _as_utc(sub.last_event_at)
    return event_at is not None and last is not None and event_at < last


async def apply_subscription_update(
    db: AsyncSession,
    stripe_subscription_id: str,
    *,
    status: str | None,
    cancel_at_period_end: bool,
    current_period_start: datetime | None = None,
    current_period_end: datetime | None = None,
    stripe_price_id: str | None = None,
    event_at: datetime | None = None,
) -> WriteOutcome:
    """Mirror a subscription change. Period bounds are only written when present."""
    sub = await get_by_stripe_subscription_id(db, stripe_subscription_id)
    if sub is None:
        return WriteOutcome.MISSING
    if _is_stale(sub, event_at):
        return WriteOutcome.STALE

    if _known_status(status, stripe_subscription_id):
        sub.status = status
    sub.cancel_at_period_end = cancel_at_period_end
    if current_period_start is not None:
        sub.current_period_start = current_period_start
    if current_period_end is not None:
        sub.current_period_end = current_period_end

    if stripe_price_id:
        price = await get_price_by_stripe_id(db, stripe_price_id, active_only=False)
        if price is not None:
            sub.product_id = price.product_id
        else:
            logger.error(
                "Error finding product for price %s; keeping product %s",
                stripe_price_id,
                sub.product_id,
            )

    if event_at is not None:
        sub.last_event_at = event_at
    sub.updated_at = datetime.now(timezone.utc)
    await db.flush()
    return WriteOutcome.UPDATED


async def set_subscription_status(
    db: AsyncSession,
    stripe_subscription_id: str,
    status: str,
    event_at: datetime | None = None,
) -> WriteOutcome:
    sub = await get_by_stripe_subscription_id(db, stripe_subscription_id)
    if sub is None:
        return WriteOutcome.MISSING
    if _is_stale(sub, event_at):
        return WriteOutcome.STALE

    sub.status = status
    if event_at is not None:
        sub.last_event_at = event_at
    sub.updated_at = datetime.now(timezone.utc)
    await db.flush()
    return WriteOutcome.UPDATED


async def sync_subscription_from_stripe(
    db: AsyncSession,
    gateway: stripe_service.StripeGateway,
    user_id: uuid.UUID,
) -> Subscription:
    """Pull the user's latest subscription from Stripe and mirror it locally.

    Recovery path for missed webhooks; does not consult the ordering guard.
    """
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.updated_at.desc(), Subscription.created_at.desc())
        .limit(1)
    )
    sub = result.scalar_one_or_none()
    if sub is None:
        raise NotFoundError("No subscription found for this user")

    remote = await gateway.retrieve_subscription(sub.stripe_subscription_id)

    remote_status = remote.get("status")
    if _known_status(remote_status, sub.stripe_subscription_id):
        sub.status = remote_status
    sub.cancel_at_period_end = bool(remote.get("cancel_at_period_end", False))
    period_start = stripe_service.subscription_period_start(remote)
    period_end = stripe_service.subscription_period_end(remote)
    if period_start is not None:
        sub.current_period_start = period_start
    if period_end is not None:
        sub.current_period_end = period_end

    price_id = stripe_service.subscription_price_id(remote)
    if price_id:
        price = await get_price_by_stripe_id(db, price_id, active_only=False)
        if price is not None:
            sub.product_id = price.product_id
        else:
            logger.error("Could not find product for price %s", price_id)

    sub.updated_at = datetime.now(timezone.utc)
    await db.flush()
    await db.refresh(sub)
    return sub
