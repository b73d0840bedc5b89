"""Pytest configuration and shared fixtures."""

import os
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set env before app imports so module-level settings pick it up
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_guardian")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("SUPABASE_URL", "https://plans.supabase.test")
os.environ.setdefault("SUPABASE_SECRET_KEY", "sb_secret_test")
os.environ.setdefault("SYNC_ENABLED", "false")

from guardian.config import Settings
from guardian.dependencies import Services
from guardian.main import create_app
from guardian.models.plan import Plan
from guardian.services.billing import BillingService
from guardian.services.reconciler import Reconciler
from guardian.services.subscription_sync import SubscriptionSyncService
from guardian.services.webhook_handler import WebhookHandler
from tests.fakes import FakeIdentity, FakeStripe, InMemoryPlanStore, InMemoryProfileStore

pytest_plugins = ["pytest_asyncio"]


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        node_env="development",
        stripe_secret_key="sk_test_guardian",
        stripe_webhook_secret="whsec_test",
        stripe_publishable_key="pk_test_guardian",
        supabase_url="https://plans.supabase.test",
        supabase_secret_key="sb_secret_test",
        sync_enabled=False,
    )


@pytest.fixture
def fake_stripe():
    return FakeStripe()


@pytest.fixture
def profiles():
    return InMemoryProfileStore()


@pytest.fixture
def plans():
    return InMemoryPlanStore(
        [
            Plan(
                id="P",
                name="Premium Monthly",
                price=Decimal("9.99"),
                interval="monthly",
                stripe_product_id="prod_P",
                stripe_price_id="price_123",
            )
        ]
    )


@pytest.fixture
def identity():
    return FakeIdentity({"linked@example.com": "U-email"})


@pytest.fixture
def reconciler(profiles):
    return Reconciler(profiles)


@pytest.fixture
def webhooks(fake_stripe, profiles, identity, reconciler):
    return WebhookHandler(fake_stripe, profiles, identity, reconciler)


@pytest.fixture
def billing(fake_stripe, profiles, plans, reconciler):
    return BillingService(fake_stripe, profiles, plans, reconciler, publishable_key="pk_test_guardian")


@pytest.fixture
def sync(fake_stripe, profiles, reconciler, webhooks, identity):
    return SubscriptionSyncService(fake_stripe, profiles, reconciler, webhooks, identity=identity)


@pytest.fixture
def services(settings, fake_stripe, profiles, plans, identity, reconciler, billing, webhooks, sync):
    return Services(
        settings=settings,
        stripe=fake_stripe,
        profiles=profiles,
        plans=plans,
        identity=identity,
        reconciler=reconciler,
        billing=billing,
        webhooks=webhooks,
        sync=sync,
    )


@pytest.fixture
def app(settings, services):
    return create_app(settings=settings, services=services)


@pytest_asyncio.fixture
async def client(app):
    """AsyncClient over the app; lifespan is not run, services are injected."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
