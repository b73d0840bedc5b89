"""Service modules for Stripe Guardian."""

from guardian.services.billing import BillingService, PurchaseRequest
from guardian.services.identity import IdentityDirectory
from guardian.services.plan_store import PlanStore
from guardian.services.profile_store import ProfileStore
from guardian.services.reconciler import ReconcileOutcome, Reconciler
from guardian.services.stripe_service import StripeService
from guardian.services.subscription_sync import SubscriptionSyncService, SyncReport
from guardian.services.supabase import SupabaseClient
from guardian.services.webhook_handler import WebhookHandler

__all__ = [
    "BillingService",
    "IdentityDirectory",
    "PlanStore",
    "ProfileStore",
    "PurchaseRequest",
    "ReconcileOutcome",
    "Reconciler",
    "StripeService",
    "SubscriptionSyncService",
    "SupabaseClient",
    "SyncReport",
    "WebhookHandler",
]
