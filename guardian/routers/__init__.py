"""API routers for Stripe Guardian."""

from guardian.routers.health import router as health_router
from guardian.routers.promotions import router as promotions_router
from guardian.routers.stripe import router as stripe_router
from guardian.routers.sync import router as sync_router
from guardian.routers.webhooks import router as webhooks_router

__all__ = [
    "health_router",
    "promotions_router",
    "stripe_router",
    "sync_router",
    "webhooks_router",
]
