"""Re-sync one user's subscription from Stripe, for when webhooks were missed.

Usage: python scripts/sync_subscription.py <user_id>
"""
from __future__ import annotations

import argparse
import asyncio
import uuid


async def _sync(user_id: uuid.UUID) -> int:
    from navigator.database import async_session, engine
    from navigator.exceptions import NotFoundError
    from navigator.services import subscription_service
    from navigator.services.stripe_service import get_stripe_gateway

    gateway = get_stripe_gateway()
    if gateway is None:
        raise SystemExit("STRIPE_SECRET_KEY is not set")

    try:
        async with async_session() as db:
            try:
                sub = await subscription_service.sync_subscription_from_stripe(db, gateway, user_id)
            except NotFoundError:
                print(f"No subscription found in database for user {user_id}")
                return 1
            await db.commit()

            print(f"Synced subscription {sub.stripe_subscription_id}")
            print(f"- status: {sub.status}")
            print(f"- product: {sub.product_id}")
            end = sub.current_period_end.isoformat() if sub.current_period_end else None
            print(f"- period end: {end}")
            print(f"- cancel at period end: {sub.cancel_at_period_end}")
            return 0
    finally:
        await engine.dispose()


def main() -> int:
    parser = argparse.ArgumentParser(description="Mirror a user's Stripe subscription into the database.")
    parser.add_argument("user_id", type=uuid.UUID, help="Account id (UUID) whose subscription to sync")
    args = parser.parse_args()

    from navigator.logging_config import setup_logging

    setup_logging()
    return asyncio.run(_sync(args.user_id))


if __name__ == "__main__":
    raise SystemExit(main())
