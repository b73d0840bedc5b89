"""Profile store: user_profiles rows and their premium records."""

import logging
from typing import AsyncIterator, Optional

from guardian.models.premium import Premium
from guardian.models.profile import UserProfile
from guardian.services.stripe_fields import utcnow
from guardian.services.supabase import ConstraintViolation, SupabaseClient

logger = logging.getLogger(__name__)

TABLE = "user_profiles"
COLUMNS = "id,stripe_customer_id,premium,created_at,updated_at"


class ProfileStore:
    """
    Reads and writes user_profiles through PostgREST.

    Lookups that match nothing return None; transport and constraint
    failures propagate as UpstreamError.
    """

    def __init__(self, client: SupabaseClient):
        self.client = client

    async def _first(self, column: str, value: str) -> Optional[UserProfile]:
        db = await self.client.get_client()
        rows = await self.client.execute(
            db.table(TABLE).select(COLUMNS).eq(column, value).limit(2),
            f"read {TABLE} by {column}",
        )
        if not rows:
            return None
        if len(rows) > 1:
            logger.warning(f"Multiple profiles match {column}={value}; using {rows[0].get('id')}")
        return UserProfile.from_row(rows[0])

    async def _update(self, user_id: str, values: dict) -> None:
        values["updated_at"] = utcnow().isoformat()
        db = await self.client.get_client()
        await self.client.execute(db.table(TABLE).update(values).eq("id", user_id), f"update {TABLE}")

    async def get(self, user_id: str) -> Optional[UserProfile]:
        return await self._first("id", user_id)

    async def get_by_customer(self, customer_id: str) -> Optional[UserProfile]:
        return await self._first("stripe_customer_id", customer_id)

    async def get_by_subscription(self, subscription_id: str) -> Optional[UserProfile]:
        return await self._first("premium->>stripeSubscriptionId", subscription_id)

    async def create(self, user_id: str, customer_id: Optional[str] = None) -> UserProfile:
        """
        Insert a minimal profile row.

        A concurrent insert of the same user is tolerated by re-reading the row.
        """
        now = utcnow().isoformat()
        row = {"id": user_id, "created_at": now, "updated_at": now}
        if customer_id:
            row["stripe_customer_id"] = customer_id
        db = await self.client.get_client()
        try:
            stored = await self.client.execute(db.table(TABLE).insert(row), f"insert {TABLE}")
        except ConstraintViolation as e:
            if not e.is_unique_violation:
                raise
            existing = await self.get(user_id)
            if existing is None:
                raise
            return existing
        logger.info(f"Created profile for user {user_id}")
        return UserProfile.from_row(stored[0] if stored else row)

    async def get_or_create(self, user_id: str) -> UserProfile:
        profile = await self.get(user_id)
        if profile is None:
            profile = await self.create(user_id)
        return profile

    async def link_customer(self, profile: UserProfile, customer_id: str) -> None:
        """
        Point a profile at a Stripe customer.

        An existing premium record is rewritten in the same request with
        the new stripeCustomerId, so it never references a customer the
        column no longer holds.
        """
        values = {"stripe_customer_id": customer_id}
        if profile.premium is not None and profile.premium.stripe_customer_id != customer_id:
            relinked = profile.premium.model_copy(update={"stripe_customer_id": customer_id})
            values["premium"] = relinked.to_record()
        await self._update(profile.id, values)

    async def write_premium(self, user_id: str, premium: Premium, customer_id: Optional[str]) -> None:
        """
        Replace the premium record of a profile.

        The customer column is written in the same request so the record and
        the column never disagree.
        """
        values = {"premium": premium.to_record()}
        if customer_id:
            values["stripe_customer_id"] = customer_id
        await self._update(user_id, values)

    async def iter_premium_profiles(self, page_size: int = 500) -> AsyncIterator[UserProfile]:
        """Every profile with a non-null premium record, fetched page by page."""
        offset = 0
        while True:
            db = await self.client.get_client()
            rows = await self.client.execute(
                db.table(TABLE)
                .select(COLUMNS)
                .not_.is_("premium", "null")
                .order("id")
                .range(offset, offset + page_size - 1),
                f"page {TABLE}",
            )
            for row in rows:
                yield UserProfile.from_row(row)
            if len(rows) < page_size:
                return
            offset += page_size

    async def ping(self) -> None:
        db = await self.client.get_client()
        await self.client.execute(db.table(TABLE).select("id").limit(1), f"ping {TABLE}")
