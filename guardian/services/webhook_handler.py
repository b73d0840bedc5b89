"""
Stripe webhook event handling.

Every subscription-affecting event is funneled through the Reconciler,
so replaying an event cannot change already committed state.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from guardian.errors import GuardianError, NotFoundError
from guardian.models.premium import SubscriptionStatus
from guardian.services.identity import IdentityDirectory
from guardian.services.profile_store import ProfileStore
from guardian.services.reconciler import Reconciler
from guardian.services.stripe_fields import metadata_of, ref_id
from guardian.services.stripe_service import StripeService

logger = logging.getLogger(__name__)

HANDLED_EVENTS = (
    "checkout.session.completed",
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "invoice.payment_succeeded",
    "invoice.payment_failed",
    "customer.created",
    "customer.updated",
)


class WebhookHandler:
    """
    Dispatches verified Stripe events.

    Handles:
    - Subscription lifecycle events (projected onto the linked profile)
    - Invoice outcomes (re-read the subscription, then project)
    - Customer events (best-effort linking of customer to user)
    """

    def __init__(
        self,
        stripe_service: StripeService,
        profiles: ProfileStore,
        identity: IdentityDirectory,
        reconciler: Reconciler,
        refetch_subscriptions: bool = True,
    ):
        self.stripe = stripe_service
        self.profiles = profiles
        self.identity = identity
        self.reconciler = reconciler
        self.refetch_subscriptions = refetch_subscriptions
        self._handlers: Dict[str, Callable[[Mapping[str, Any]], Awaitable[None]]] = {
            "checkout.session.completed": self.handle_checkout_completed,
            "customer.subscription.created": self.handle_subscription_changed,
            "customer.subscription.updated": self.handle_subscription_changed,
            "customer.subscription.deleted": self.handle_subscription_deleted,
            "invoice.payment_succeeded": self.handle_payment_succeeded,
            "invoice.payment_failed": self.handle_payment_failed,
            "customer.created": self.handle_customer_event,
            "customer.updated": self.handle_customer_event,
        }

    async def process(self, event: Mapping[str, Any]) -> bool:
        """
        Handle one event, never raising.

        A failure is logged and acknowledged so Stripe does not redeliver
        an event that will keep failing; the periodic sync repairs the state.

        Returns:
            True if the event was handled without error.
        """
        event_type = event.get("type")
        event_id = event.get("id")
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled webhook event type: {event_type} ({event_id})")
            return True

        logger.info(f"Processing webhook {event_type} ({event_id})")
        obj = (event.get("data") or {}).get("object") or {}
        try:
            await handler(obj)
            return True
        except GuardianError as e:
            logger.error(f"Error processing webhook {event_type} ({event_id}): {e}")
        except Exception as e:
            logger.exception(f"Unexpected error processing webhook {event_type} ({event_id}): {e}")
        return False

    async def _latest(self, subscription: Mapping[str, Any]) -> Mapping[str, Any]:
        if not self.refetch_subscriptions:
            return subscription
        try:
            return await self.stripe.retrieve_subscription(subscription["id"])
        except NotFoundError:
            logger.warning(f"Subscription {subscription.get('id')} no longer retrievable; using event payload")
            return subscription

    async def handle_checkout_completed(self, session: Mapping[str, Any]) -> None:
        """Sync the subscription a completed checkout created."""
        if session.get("mode") != "subscription":
            logger.info(f"Checkout session {session.get('id')} is not a subscription checkout")
            return
        subscription_id = ref_id(session.get("subscription"))
        if not subscription_id:
            logger.warning(f"Checkout completed without subscription ID: {session.get('id')}")
            return

        customer_id = ref_id(session.get("customer"))
        user_id = metadata_of(session).get("userId") or session.get("client_reference_id")
        if customer_id and user_id:
            await self._link_customer(customer_id, user_id)

        subscription = await self.stripe.retrieve_subscription(subscription_id)
        await self.reconciler.sync_customer(customer_id, subscription)

    async def handle_subscription_changed(self, subscription: Mapping[str, Any]) -> None:
        latest = await self._latest(subscription)
        await self.reconciler.sync_customer(ref_id(latest.get("customer")), latest)

    async def handle_subscription_deleted(self, subscription: Mapping[str, Any]) -> None:
        await self.reconciler.sync_customer(
            ref_id(subscription.get("customer")),
            subscription,
            force_status=SubscriptionStatus.CANCELED,
        )

    async def handle_payment_succeeded(self, invoice: Mapping[str, Any]) -> None:
        subscription_id = _invoice_subscription(invoice)
        if not subscription_id:
            logger.info(f"Invoice {invoice.get('id')} is not for a subscription")
            return
        subscription = await self.stripe.retrieve_subscription(subscription_id)
        await self.reconciler.sync_customer(ref_id(invoice.get("customer")), subscription)

    async def handle_payment_failed(self, invoice: Mapping[str, Any]) -> None:
        subscription_id = _invoice_subscription(invoice)
        if not subscription_id:
            logger.info(f"Invoice {invoice.get('id')} is not for a subscription")
            return
        subscription = await self.stripe.retrieve_subscription(subscription_id)
        await self.reconciler.sync_customer(
            ref_id(invoice.get("customer")),
            subscription,
            force_status=SubscriptionStatus.PAST_DUE,
        )

    async def handle_customer_event(self, customer: Mapping[str, Any]) -> None:
        """
        Link a Stripe customer to a user profile when possible.

        The link is best-effort: metadata.userId is trusted first, then an
        email lookup in the identity directory.
        """
        customer_id = customer.get("id")
        if not customer_id:
            return
        if await self.profiles.get_by_customer(customer_id):
            logger.info(f"Customer {customer_id} already linked")
            return

        user_id = metadata_of(customer).get("userId")
        if not user_id:
            user_id = await self.identity.find_user_id_by_email(customer.get("email"))
        if not user_id:
            logger.info(f"No user found for customer {customer_id}")
            return
        await self._link_customer(customer_id, user_id)

    async def _link_customer(self, customer_id: str, user_id: str) -> None:
        profile = await self.profiles.get(user_id)
        if profile is None:
            await self.profiles.create(user_id, customer_id=customer_id)
            logger.info(f"Created profile for user {user_id} linked to customer {customer_id}")
        elif not profile.stripe_customer_id:
            await self.profiles.link_customer(profile, customer_id)
            logger.info(f"Linked customer {customer_id} to user {user_id}")
        elif profile.stripe_customer_id != customer_id:
            logger.warning(
                f"User {user_id} is linked to {profile.stripe_customer_id}; not relinking to {customer_id}"
            )


def _invoice_subscription(invoice: Mapping[str, Any]) -> Optional[str]:
    subscription_id = ref_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    # Newer API versions move the reference under parent.subscription_details
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return ref_id(details.get("subscription"))
