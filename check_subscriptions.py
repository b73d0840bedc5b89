#!/usr/bin/env python3
"""Check premium status for every user profile that has one."""

import asyncio
from datetime import datetime, timezone

from guardian.config import get_settings
from guardian.services.profile_store import ProfileStore
from guardian.services.supabase import SupabaseClient


async def check_subscriptions():
    """Print a table of premium records."""
    settings = get_settings()
    client = SupabaseClient(settings.profiles_supabase_url, settings.admin_key(wiznote=True), name="profiles")
    profiles = ProfileStore(client)
    now = datetime.now(timezone.utc)

    total = active = lapsed = 0
    print("=" * 110)
    print("User Premium Status")
    print("=" * 110)
    print(f"{'User':<38} {'Status':<19} {'Active':<7} {'Period end':<26} {'Subscription':<20}")
    print("-" * 110)
    try:
        async for profile in profiles.iter_premium_profiles():
            premium = profile.premium
            if premium is None:
                continue
            total += 1
            if premium.is_active:
                active += 1
                if not premium.is_active_at(now):
                    lapsed += 1
            status = premium.status.value if premium.status else "unknown"
            period_end = premium.current_period_end.isoformat() if premium.current_period_end else "-"
            print(
                f"{profile.id:<38} {status:<19} {str(premium.is_active):<7} "
                f"{period_end:<26} {premium.stripe_subscription_id or '-':<20}"
            )
    finally:
        await client.close()

    print("=" * 110)
    print(f"\nProfiles with premium: {total}")
    print(f"Active: {active}")
    print(f"Inactive: {total - active}")
    print(f"Active but past period end: {lapsed}")


if __name__ == "__main__":
    asyncio.run(check_subscriptions())
