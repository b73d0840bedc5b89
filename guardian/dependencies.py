"""
Service wiring and FastAPI dependencies.

All services are built once at startup and stored on ``app.state.services``.
Routes pull what they need through the getters below, so tests can swap in
a container of fakes.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from fastapi import Request

from guardian.config import Settings
from guardian.errors import InitializationError
from guardian.services.billing import BillingService
from guardian.services.identity import IdentityDirectory
from guardian.services.plan_store import PlanStore
from guardian.services.profile_store import ProfileStore
from guardian.services.reconciler import Reconciler
from guardian.services.stripe_service import StripeService
from guardian.services.subscription_sync import SubscriptionSyncService
from guardian.services.supabase import SupabaseClient
from guardian.services.webhook_handler import WebhookHandler

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a request handler may need, built once per process."""

    settings: Settings
    stripe: StripeService
    profiles: ProfileStore
    plans: PlanStore
    identity: IdentityDirectory
    reconciler: Reconciler
    billing: BillingService
    webhooks: WebhookHandler
    sync: SubscriptionSyncService
    clients: List[SupabaseClient] = field(default_factory=list)

    async def close(self) -> None:
        await self.sync.stop()
        for client in self.clients:
            await client.close()


def build_services(settings: Settings) -> Services:
    """
    Construct every adapter and driver from settings.

    Args:
        settings: Application settings.

    Returns:
        Wired Services container.

    Raises:
        InitializationError: If Stripe or Supabase credentials are missing.
    """
    if not settings.supabase_url:
        raise InitializationError("Missing Supabase configuration", details="Set SUPABASE_URL")

    stripe_service = StripeService(
        api_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        api_version=settings.stripe_api_version,
    )

    profiles_client = SupabaseClient(
        settings.profiles_supabase_url,
        settings.admin_key(wiznote=True),
        name="profiles",
    )
    if settings.uses_wiznote_project:
        plans_client = SupabaseClient(settings.supabase_url, settings.admin_key(), name="plans")
        clients = [profiles_client, plans_client]
    else:
        plans_client = profiles_client
        clients = [profiles_client]
    logger.info(
        f"Profiles datastore: {settings.profiles_supabase_url} ({settings.admin_key_type(wiznote=True)} key)"
    )

    profiles = ProfileStore(profiles_client)
    plans = PlanStore(plans_client)
    identity = IdentityDirectory(profiles_client)
    reconciler = Reconciler(profiles)
    webhooks = WebhookHandler(
        stripe_service,
        profiles,
        identity,
        reconciler,
        refetch_subscriptions=settings.webhook_refetch_subscriptions,
    )
    billing = BillingService(
        stripe_service,
        profiles,
        plans,
        reconciler,
        publishable_key=settings.stripe_publishable_key,
    )
    sync = SubscriptionSyncService(
        stripe_service,
        profiles,
        reconciler,
        webhooks,
        identity=identity,
        clients=clients,
        interval_minutes=settings.sync_interval_minutes,
        active_limit=settings.sync_active_limit,
        canceled_limit=settings.sync_canceled_limit,
        replay_events=settings.sync_replay_events,
    )
    return Services(
        settings=settings,
        stripe=stripe_service,
        profiles=profiles,
        plans=plans,
        identity=identity,
        reconciler=reconciler,
        billing=billing,
        webhooks=webhooks,
        sync=sync,
        clients=clients,
    )


def get_services(request: Request) -> Services:
    """
    Return the container built at startup.

    Raises:
        InitializationError(503): If startup could not build the services.
    """
    services: Optional[Services] = getattr(request.app.state, "services", None)
    if services is None:
        details = getattr(request.app.state, "init_error", None)
        raise InitializationError("Service not initialized", details=details)
    return services


def get_billing(request: Request) -> BillingService:
    return get_services(request).billing


def get_stripe(request: Request) -> StripeService:
    return get_services(request).stripe


def get_sync(request: Request) -> SubscriptionSyncService:
    return get_services(request).sync
