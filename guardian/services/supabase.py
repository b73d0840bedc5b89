"""
Supabase client.

Wraps the supabase package's async client for one project: PostgREST
table queries and the auth admin API. One instance exists per target
project.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx
from supabase import AsyncClient, AsyncClientOptions, AuthError, PostgrestAPIError, acreate_client

from guardian.errors import GuardianError, NotFoundError, UpstreamError

logger = logging.getLogger(__name__)

NOT_FOUND_CODE = "PGRST116"
UNIQUE_VIOLATION_CODE = "23505"
# Error bodies that are not PostgREST JSON carry the HTTP status as their code
CONFLICT_STATUS = "409"


class ConstraintViolation(UpstreamError):
    """The datastore rejected a write because of a table constraint."""

    default_error = "Datastore constraint violated"

    @property
    def is_unique_violation(self) -> bool:
        return self.extra.get("code") in (UNIQUE_VIOLATION_CODE, CONFLICT_STATUS)


class SupabaseClient:
    """
    Async access to one Supabase project.

    Handles:
    - Lazily creating (and re-creating) the supabase client with the admin key
    - Running PostgREST queries built by the stores
    - Mapping PostgREST and auth errors to the service error taxonomy
    """

    def __init__(self, url: str, api_key: str, name: str = "supabase", timeout: float = 10.0):
        self.url = url.rstrip("/")
        self.name = name
        self._api_key = api_key
        self._timeout = timeout
        self._client: Optional[AsyncClient] = None

    async def get_client(self) -> AsyncClient:
        """Get or create the supabase client."""
        if self._client is None:
            self._client = await acreate_client(
                self.url,
                self._api_key,
                options=AsyncClientOptions(
                    auto_refresh_token=False,
                    persist_session=False,
                    postgrest_client_timeout=self._timeout,
                ),
            )
        return self._client

    async def execute(self, query: Any, what: str) -> List[Dict[str, Any]]:
        """
        Run a PostgREST query built from get_client().table(...).

        Args:
            query: A request builder, ready for execute().
            what: Short description of the query for logs.

        Returns:
            The returned rows (empty when nothing matches).
        """
        try:
            response = await query.execute()
        except PostgrestAPIError as e:
            raise self._translate(what, e)
        except httpx.HTTPError as e:
            logger.error(f"{self.name}: {what} failed: {e}")
            raise UpstreamError("Database error", details=str(e))
        return response.data or []

    def _translate(self, what: str, error: PostgrestAPIError) -> GuardianError:
        code = str(error.code) if error.code is not None else None
        message = error.message or error.details or str(error)

        if code == NOT_FOUND_CODE:
            return NotFoundError("Record not found", details=message)
        if code in (UNIQUE_VIOLATION_CODE, CONFLICT_STATUS):
            return ConstraintViolation(details=message, code=code)

        logger.error(f"{self.name}: {what} returned {code}: {message}")
        return UpstreamError("Database error", details=message, code=code)

    async def list_auth_users(self, page: int = 1, per_page: int = 1000) -> List[Any]:
        """One page of users from the auth admin API."""
        client = await self.get_client()
        try:
            return await client.auth.admin.list_users(page=page, per_page=per_page)
        except AuthError as e:
            logger.error(f"{self.name}: listing auth users failed: {e.message}")
            raise UpstreamError("Identity directory error", details=e.message)
        except httpx.HTTPError as e:
            logger.error(f"{self.name}: listing auth users failed: {e}")
            raise UpstreamError("Identity directory error", details=str(e))

    async def reset(self) -> None:
        """Drop the supabase client; the next query opens a fresh one."""
        await self.close()

    async def close(self) -> None:
        """Close the client's HTTP connections."""
        if self._client is None:
            return
        client, self._client = self._client, None
        await client.postgrest.aclose()
        await client.auth.close()
