"""
Read-project-write discipline shared by every driver.

Each reconciliation re-reads the profile, projects the Stripe subscription
onto the stored premium and writes the whole record only when the
projection says something observable changed.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from guardian.models.premium import Premium, SubscriptionStatus
from guardian.models.profile import UserProfile
from guardian.services.profile_store import ProfileStore
from guardian.services.projector import project
from guardian.services.stripe_fields import ref_id, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileOutcome:
    user_id: str
    premium: Optional[Premium]
    written: bool
    reason: str


class Reconciler:
    """Applies Stripe subscription state to user profiles through the projector."""

    def __init__(self, profiles: ProfileStore, clock: Callable[[], datetime] = utcnow):
        self.profiles = profiles
        self.clock = clock

    async def sync_customer(
        self,
        customer_id: Optional[str],
        subscription: Mapping[str, Any],
        *,
        force_status: Optional[SubscriptionStatus] = None,
        reactivated: bool = False,
    ) -> Optional[ReconcileOutcome]:
        """
        Reconcile the profile linked to a Stripe customer.

        Args:
            customer_id: Stripe customer ID (defaults to the subscription's).
            subscription: Stripe subscription object.
            force_status: Status to record instead of the reported one.
            reactivated: A scheduled cancellation was just withdrawn.

        Returns:
            The outcome, or None when no profile is linked to the customer.
        """
        customer_id = customer_id or ref_id(subscription.get("customer"))
        if not customer_id:
            logger.warning(f"Subscription {subscription.get('id')} has no customer; skipping")
            return None
        profile = await self.profiles.get_by_customer(customer_id)
        if profile is None:
            logger.warning(f"No profile linked to customer {customer_id}; skipping subscription {subscription.get('id')}")
            return None
        return await self._apply(profile, subscription, force_status, reactivated)

    async def sync_user(
        self,
        user_id: str,
        subscription: Mapping[str, Any],
        *,
        force_status: Optional[SubscriptionStatus] = None,
        reactivated: bool = False,
    ) -> ReconcileOutcome:
        """Reconcile a known user's profile, creating the row if needed."""
        profile = await self.profiles.get_or_create(user_id)
        return await self._apply(profile, subscription, force_status, reactivated)

    async def sync_profile(
        self,
        profile: UserProfile,
        subscription: Mapping[str, Any],
        *,
        force_status: Optional[SubscriptionStatus] = None,
        reactivated: bool = False,
    ) -> Optional[ReconcileOutcome]:
        """Reconcile a profile already in hand, re-reading its row first."""
        current = await self.profiles.get(profile.id)
        if current is None:
            logger.warning(f"Profile {profile.id} disappeared before reconciling {subscription.get('id')}")
            return None
        return await self._apply(current, subscription, force_status, reactivated)

    async def _apply(
        self,
        profile: UserProfile,
        subscription: Mapping[str, Any],
        force_status: Optional[SubscriptionStatus],
        reactivated: bool,
    ) -> ReconcileOutcome:
        projection = project(
            profile.premium,
            subscription,
            now=self.clock(),
            force_status=force_status,
            reactivated=reactivated,
        )
        if not projection.must_write:
            logger.info(
                f"Profile {profile.id} already reflects subscription {subscription.get('id')} ({projection.reason})"
            )
            return ReconcileOutcome(profile.id, projection.premium, False, projection.reason)

        premium = projection.premium
        await self.profiles.write_premium(profile.id, premium, premium.stripe_customer_id)
        logger.info(
            f"Updated premium for {profile.id}: status={premium.status.value if premium.status else None} "
            f"active={premium.is_active} ({projection.reason})"
        )
        return ReconcileOutcome(profile.id, premium, True, projection.reason)
