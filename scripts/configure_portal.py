"""Let customers switch plans from the Stripe customer portal.

Updates the account's first portal configuration (create one in the Stripe
Dashboard beforehand) with every active plan in the database.

Usage: python scripts/configure_portal.py [--dry-run]
"""
from __future__ import annotations

import argparse
import asyncio
import json


async def _configure(dry_run: bool) -> int:
    from navigator.database import async_session, engine
    from navigator.services import subscription_service
    from navigator.services.stripe_service import get_stripe_gateway, portal_update_features

    gateway = get_stripe_gateway()
    if gateway is None:
        raise SystemExit("STRIPE_SECRET_KEY is not set")

    try:
        async with async_session() as db:
            plans = await subscription_service.list_plans(db)
    finally:
        await engine.dispose()

    if not plans:
        print("No active plans in the database; nothing to configure.")
        return 1

    features = portal_update_features(plans)
    print("Configuring Stripe customer portal")
    for plan in plans:
        print(f"  - {plan['name']} ({plan['product_id']}): {plan['price_id']}")

    if dry_run:
        print(json.dumps(features, indent=2))
        print("Dry run: portal not updated.")
        return 0

    configurations = await gateway.list_portal_configurations(limit=1)
    if not configurations:
        print("No portal configuration found. Create one in the Stripe Dashboard first.")
        return 1

    config_id = configurations[0]["id"]
    updated = await gateway.update_portal_configuration(config_id, features)
    update = updated["features"]["subscription_update"]
    print(f"Updated portal configuration {updated['id']}")
    print(f"- plan switching: {'enabled' if update['enabled'] else 'disabled'}")
    print(f"- proration: {update['proration_behavior']}")
    print(f"- products available for switching: {len(features['subscription_update']['products'])}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Enable plan switching in the Stripe customer portal.")
    parser.add_argument("--dry-run", action="store_true", help="Print the portal features without updating Stripe")
    args = parser.parse_args()

    from navigator.logging_config import setup_logging

    setup_logging()
    return asyncio.run(_configure(args.dry_run))


if __name__ == "__main__":
    raise SystemExit(main())
