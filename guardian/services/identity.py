"""
Identity directory lookups.

Resolves a user ID from an email address using the Supabase auth admin
API. The full user list is paged once and cached, since the admin API offers
no email filter.
"""

import logging
from typing import Dict, Optional

from cachetools import TTLCache

from guardian.services.supabase import SupabaseClient

logger = logging.getLogger(__name__)


class IdentityDirectory:
    """
    Best-effort email -> user ID lookup.

    Results are non-authoritative: the synchronous flows that own the user
    ID always write the canonical customer link.
    """

    def __init__(self, client: SupabaseClient, per_page: int = 1000, max_pages: int = 10):
        self.client = client
        self.per_page = per_page
        self.max_pages = max_pages
        # Cache the email index for 5 minutes
        self._index_cache: TTLCache = TTLCache(maxsize=1, ttl=300)

    async def _email_index(self) -> Dict[str, str]:
        cache_key = "emails"

        # Check cache first
        if cache_key in self._index_cache:
            return self._index_cache[cache_key]

        index: Dict[str, str] = {}
        for page in range(1, self.max_pages + 1):
            users = await self.client.list_auth_users(page=page, per_page=self.per_page)
            for user in users:
                email = (user.email or "").strip().lower()
                if email and user.id:
                    index.setdefault(email, user.id)
            if len(users) < self.per_page:
                break
        else:
            logger.warning(f"User directory larger than {self.max_pages * self.per_page}; index truncated")

        self._index_cache[cache_key] = index
        logger.info(f"Indexed {len(index)} identity users")
        return index

    async def find_user_id_by_email(self, email: Optional[str]) -> Optional[str]:
        """
        Look up a user by email address.

        Args:
            email: Address to look up (case-insensitive).

        Returns:
            The user ID, or None when no user has that address.
        """
        if not email:
            return None
        index = await self._email_index()
        return index.get(email.strip().lower())

    def clear(self) -> None:
        self._index_cache.clear()
