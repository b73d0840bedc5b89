"""
Synchronous billing flows called from the HTTP API.

Each flow finishes its Stripe side effect first and then projects the
result into the user's profile. A failed local write never turns a
committed Stripe change into an error response; it is logged and left
for the periodic sync to repair.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from guardian.errors import (
    ConflictError,
    GuardianError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from guardian.models.premium import BLOCKING_STATUSES, PENDING_STATUSES, parse_status
from guardian.models.profile import UserProfile
from guardian.services.plan_store import PlanStore
from guardian.services.profile_store import ProfileStore
from guardian.services.reconciler import Reconciler
from guardian.services.stripe_fields import from_epoch, metadata_of, period_bounds, ref_id, to_epoch
from guardian.services.stripe_service import StripeService, subscription_idempotency_key

logger = logging.getLogger(__name__)

MAX_BILLING_HISTORY = 100


@dataclass
class PurchaseRequest:
    """Inputs shared by checkout and payment-sheet purchases."""

    user_id: str
    email: str
    plan_id: str
    price_id: str
    coupon_id: Optional[str] = None
    promotion_id: Optional[str] = None
    product_id: Optional[str] = None
    platform: Optional[str] = None

    def metadata(self) -> Dict[str, str]:
        values = {
            "userId": self.user_id,
            "planId": self.plan_id,
            "priceId": self.price_id,
            "couponId": self.coupon_id,
            "promotionId": self.promotion_id,
            "productId": self.product_id,
            "platform": self.platform,
        }
        return {key: value for key, value in values.items() if value}


def subscription_summary(subscription: Mapping[str, Any], include_canceled_at: bool = True) -> Dict[str, Any]:
    _, period_end = period_bounds(subscription)
    summary = {
        "id": subscription.get("id"),
        "status": subscription.get("status"),
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
        "current_period_end": to_epoch(period_end),
    }
    if include_canceled_at:
        summary["canceled_at"] = subscription.get("canceled_at")
    return summary


def invoice_summary(invoice: Mapping[str, Any]) -> Dict[str, Any]:
    lines = (invoice.get("lines") or {}).get("data") or []
    description = (lines[0].get("description") if lines else None) or "Subscription payment"
    return {
        "id": invoice.get("id"),
        "amount": (invoice.get("amount_paid") or 0) / 100,
        "currency": (invoice.get("currency") or "").upper(),
        "status": invoice.get("status"),
        "date": _iso(invoice.get("created")),
        "periodStart": _iso(invoice.get("period_start")),
        "periodEnd": _iso(invoice.get("period_end")),
        "description": description,
        "invoiceUrl": invoice.get("hosted_invoice_url"),
        "invoicePdf": invoice.get("invoice_pdf"),
        "amountDue": (invoice.get("amount_due") or 0) / 100,
        "amountRemaining": (invoice.get("amount_remaining") or 0) / 100,
        "paid": bool(invoice.get("paid", invoice.get("status") == "paid")),
        "attempted": bool(invoice.get("attempted")),
    }


def _iso(epoch: Any) -> Optional[str]:
    moment = from_epoch(epoch)
    return moment.isoformat() if moment else None


class BillingService:
    """
    Synchronous-flow driver.

    Handles:
    - Checkout and payment-sheet purchases behind the double-subscription guard
    - Confirming payment sheets and verifying checkout sessions
    - Cancel / reactivate, customers, billing history and plan sync
    """

    def __init__(
        self,
        stripe_service: StripeService,
        profiles: ProfileStore,
        plans: PlanStore,
        reconciler: Reconciler,
        publishable_key: str = "",
    ):
        self.stripe = stripe_service
        self.profiles = profiles
        self.plans = plans
        self.reconciler = reconciler
        self.publishable_key = publishable_key

    # Guards

    def _local_guard(self, profile: UserProfile) -> None:
        """Reject from the stored premium alone, before touching Stripe."""
        premium = profile.premium
        if premium is None or not premium.stripe_subscription_id:
            return
        if premium.is_active:
            raise ConflictError(
                "Subscription already active",
                message="You already have an active premium subscription.",
                existingSubscriptionId=premium.stripe_subscription_id,
                status=premium.status.value if premium.status else None,
            )
        if premium.status in PENDING_STATUSES:
            raise ConflictError(
                "Subscription pending",
                message="Your previous subscription attempt is still being processed.",
                existingSubscriptionId=premium.stripe_subscription_id,
                status=premium.status.value,
            )

    async def _authoritative_guard(self, profile: UserProfile, customer_id: str) -> None:
        """Reject when Stripe already holds a live subscription for the customer."""
        subscriptions = await self.stripe.list_subscriptions(customer_id=customer_id, status="all", limit=10)
        live = [sub for sub in subscriptions if parse_status(sub.get("status")) in BLOCKING_STATUSES]
        if not live:
            return
        latest = max(live, key=lambda sub: sub.get("created") or 0)
        logger.warning(
            f"User {profile.id} already has subscription {latest['id']} ({latest.get('status')}) at Stripe"
        )
        try:
            await self.reconciler.sync_user(profile.id, latest)
        except GuardianError as e:
            logger.error(f"Could not record existing subscription {latest['id']} for {profile.id}: {e}")
        raise ConflictError(
            "Existing subscription found",
            message="An existing subscription was found and your account has been updated.",
            existingSubscriptionId=latest["id"],
            status=latest.get("status"),
        )

    async def _ensure_customer(self, profile: UserProfile, email: str) -> str:
        customer = await self.stripe.find_or_create_customer(
            email=email,
            user_id=profile.id,
            existing_customer_id=profile.stripe_customer_id,
        )
        if customer.replaced_stale:
            logger.warning(
                f"Customer {profile.stripe_customer_id} of user {profile.id} is gone at Stripe; using {customer.id}"
            )
        if customer.id != profile.stripe_customer_id:
            try:
                await self.profiles.link_customer(profile, customer.id)
            except GuardianError as e:
                logger.error(f"Could not store customer {customer.id} on profile {profile.id}: {e}")
        return customer.id

    async def _prepare_purchase(self, request: PurchaseRequest) -> str:
        profile = await self.profiles.get_or_create(request.user_id)
        self._local_guard(profile)
        customer_id = await self._ensure_customer(profile, request.email)
        await self._authoritative_guard(profile, customer_id)
        return customer_id

    # Purchases

    async def create_checkout(
        self,
        request: PurchaseRequest,
        success_url: str,
        cancel_url: str,
    ) -> Dict[str, Any]:
        """
        Start a hosted checkout for a plan.

        Raises:
            ConflictError: If the user already has a live or pending subscription.
        """
        customer_id = await self._prepare_purchase(request)
        session = await self.stripe.create_checkout_session(
            customer_id=customer_id,
            price_id=request.price_id,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=request.metadata(),
            coupon_id=request.coupon_id,
        )
        return {"url": session.get("url"), "sessionId": session["id"], "customerId": customer_id}

    async def create_payment_sheet(self, request: PurchaseRequest) -> Dict[str, Any]:
        """
        Prepare an in-app payment sheet backed by a SetupIntent.

        The subscription itself is created by confirm_payment_sheet once the
        payment method is saved.
        """
        customer_id = await self._prepare_purchase(request)
        await self.stripe.retrieve_active_price(request.price_id)
        intent = await self.stripe.create_setup_intent(customer_id, request.metadata())
        ephemeral_key = await self.stripe.create_ephemeral_key(customer_id)
        return {
            "setupIntent": intent.get("client_secret"),
            "setupIntentId": intent["id"],
            "ephemeralKey": ephemeral_key.get("secret"),
            "customer": customer_id,
            "publishableKey": self.publishable_key,
            "planId": request.plan_id,
            "stripePriceId": request.price_id,
        }

    async def confirm_payment_sheet(
        self,
        user_id: str,
        plan_id: str,
        setup_intent_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        price_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Turn a succeeded payment sheet into a subscription.

        The price comes from the request, then the intent metadata, then
        the plan.

        The intent ID keys the subscription creation, so a retried confirm
        cannot create a second subscription.

        Raises:
            ValidationError: If the intent has not succeeded or carries no payment method.
            NotFoundError: If the plan does not exist.
            PaymentFailedError: If the first payment is declined.
        """
        if setup_intent_id:
            intent = await self.stripe.retrieve_setup_intent(setup_intent_id)
        else:
            intent = await self.stripe.retrieve_payment_intent(payment_intent_id)
        intent_id = intent["id"]
        if intent.get("status") != "succeeded":
            raise ValidationError(
                "Payment not completed",
                details=f"Intent {intent_id} has status {intent.get('status')}",
            )
        payment_method = ref_id(intent.get("payment_method"))
        if not payment_method:
            raise ValidationError("Payment method not found", details=intent_id)

        plan = await self.plans.get(plan_id)
        if plan is None:
            raise NotFoundError("Plan not found", details=plan_id)

        intent_metadata = metadata_of(intent)
        price_id = price_id or intent_metadata.get("priceId") or plan.stripe_price_id
        if not price_id:
            raise ValidationError("Plan has no Stripe price", details=plan_id)
        customer_id = ref_id(intent.get("customer"))
        if not customer_id:
            raise ValidationError("Intent has no customer", details=intent_id)

        subscription = await self._existing_for_intent(user_id, customer_id, intent_id)
        if subscription is None:
            subscription = await self.stripe.create_subscription(
                customer_id=customer_id,
                price_id=price_id,
                payment_method=payment_method,
                metadata={
                    "planId": plan_id,
                    "userId": user_id,
                    "intentId": intent_id,
                    "source": "paymentsheet",
                },
                idempotency_key=subscription_idempotency_key(intent_id),
                coupon_id=intent_metadata.get("couponId"),
            )

        await self._record(user_id, subscription)
        return {
            "success": True,
            "subscriptionId": subscription["id"],
            "message": "Subscription created successfully",
        }

    async def _existing_for_intent(
        self, user_id: str, customer_id: str, intent_id: str
    ) -> Optional[Mapping[str, Any]]:
        subscriptions = await self.stripe.list_subscriptions(customer_id=customer_id, status="all", limit=10)
        for sub in subscriptions:
            if parse_status(sub.get("status")) not in BLOCKING_STATUSES:
                continue
            if metadata_of(sub).get("intentId") == intent_id:
                logger.info(f"Intent {intent_id} already produced subscription {sub['id']}")
                return sub
            raise ConflictError(
                "Existing subscription found",
                message="You already have an active premium subscription.",
                existingSubscriptionId=sub["id"],
                status=sub.get("status"),
            )
        return None

    async def _record(self, user_id: str, subscription: Mapping[str, Any], **options: Any) -> None:
        try:
            await self.reconciler.sync_user(user_id, subscription, **options)
        except GuardianError as e:
            logger.error(
                f"Stripe subscription {subscription.get('id')} committed but profile {user_id} "
                f"not updated; periodic sync will repair: {e}"
            )

    async def verify_session(self, session_id: str) -> Dict[str, Any]:
        """
        Confirm a completed checkout and record its subscription.

        Raises:
            ValidationError: If the session is unpaid or lacks a subscription.
            NotFoundError: If no profile is linked to the session's customer.
        """
        session = await self.stripe.retrieve_checkout_session(session_id)
        if session.get("payment_status") != "paid":
            raise ValidationError(
                "Payment not completed",
                details=f"Session payment status is {session.get('payment_status')}",
            )
        subscription = session.get("subscription")
        customer_id = ref_id(session.get("customer"))
        if not subscription or not customer_id:
            raise ValidationError("Session has no subscription or customer", details=session_id)
        if isinstance(subscription, str):
            subscription = await self.stripe.retrieve_subscription(subscription)

        plan_id = metadata_of(session).get("planId") or metadata_of(subscription).get("planId")
        if not plan_id:
            items = (subscription.get("items") or {}).get("data") or []
            if items:
                plan_id = metadata_of(items[0].get("price")).get("planId")
        if not plan_id:
            raise ValidationError("Plan ID not found in session metadata", details=session_id)

        profile = await self.profiles.get_by_customer(customer_id)
        if profile is None:
            raise NotFoundError("User profile not found", details=f"No profile for customer {customer_id}")

        await self._record(profile.id, subscription)
        return {
            "success": True,
            "session": {
                "id": session["id"],
                "payment_status": session.get("payment_status"),
                "subscription_id": subscription["id"],
                "customer_id": customer_id,
                "plan_id": plan_id,
            },
            "message": "Payment verified and subscription activated",
        }

    # Lifecycle

    async def _owned_subscription(self, user_id: str, subscription_id: str) -> Mapping[str, Any]:
        subscription = await self.stripe.retrieve_subscription(subscription_id)
        profile = await self.profiles.get(user_id)
        owner = ref_id(subscription.get("customer"))
        if profile and profile.stripe_customer_id and profile.stripe_customer_id != owner:
            raise ValidationError(
                "Subscription does not belong to user",
                details=f"{subscription_id} is not billed to {user_id}",
            )
        return subscription

    async def cancel_subscription(self, user_id: str, subscription_id: str) -> Dict[str, Any]:
        """Schedule cancellation at period end; access continues until then."""
        await self._owned_subscription(user_id, subscription_id)
        subscription = await self.stripe.schedule_cancellation(subscription_id, user_id)
        local_updated = await self._record_by_customer(subscription)
        message = "Subscription will be canceled at the end of the current billing period"
        if not local_updated:
            message += " (local profile update pending)"
        return {"success": True, "subscription": subscription_summary(subscription), "message": message}

    async def reactivate_subscription(self, user_id: str, subscription_id: str) -> Dict[str, Any]:
        """Withdraw a scheduled cancellation."""
        await self._owned_subscription(user_id, subscription_id)
        subscription = await self.stripe.resume_subscription(subscription_id, user_id)
        local_updated = await self._record_by_customer(subscription, reactivated=True)
        message = "Subscription reactivated successfully"
        if not local_updated:
            message += " (local profile update pending)"
        return {
            "success": True,
            "subscription": subscription_summary(subscription, include_canceled_at=False),
            "message": message,
        }

    async def _record_by_customer(self, subscription: Mapping[str, Any], **options: Any) -> bool:
        try:
            outcome = await self.reconciler.sync_customer(None, subscription, **options)
        except GuardianError as e:
            logger.error(
                f"Subscription {subscription.get('id')} updated at Stripe but profile not updated; "
                f"periodic sync will repair: {e}"
            )
            return False
        return outcome is not None

    # Customers and history

    async def create_customer(
        self,
        user_id: str,
        email: str,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Ensure a Stripe customer exists for a user and link it.

        Raises:
            UpstreamError: If the link cannot be stored.
        """
        profile = await self.profiles.get(user_id)
        customer = await self.stripe.find_or_create_customer(
            email=email,
            user_id=user_id,
            existing_customer_id=profile.stripe_customer_id if profile else None,
            name=name,
            phone=phone,
            metadata=metadata,
        )
        if profile is None:
            await self.profiles.create(user_id, customer_id=customer.id)
        elif profile.stripe_customer_id != customer.id:
            if customer.replaced_stale:
                logger.warning(
                    f"Customer {profile.stripe_customer_id} of user {user_id} is gone at Stripe; using {customer.id}"
                )
            await self.profiles.link_customer(profile, customer.id)

        if customer.is_existing:
            message = "Customer already exists"
        else:
            message = "Customer created successfully"
        return {
            "success": True,
            "customerId": customer.id,
            "isExisting": customer.is_existing,
            "message": message,
        }

    async def billing_history(self, user_id: str, limit: int = 10) -> Dict[str, Any]:
        """
        Recent invoices for a user, newest first.

        Raises:
            NotFoundError: If the user has no profile.
        """
        profile = await self.profiles.get(user_id)
        if profile is None:
            raise NotFoundError("User profile not found", details=user_id)
        if not profile.stripe_customer_id:
            return {"success": True, "billingHistory": [], "count": 0, "message": "No billing history found"}

        limit = max(1, min(limit, MAX_BILLING_HISTORY))
        invoices = await self.stripe.list_invoices(profile.stripe_customer_id, limit=limit)
        history: List[Dict[str, Any]] = [invoice_summary(invoice) for invoice in invoices]
        return {"success": True, "billingHistory": history, "count": len(history)}

    async def sync_plan(self, plan_id: str) -> Dict[str, Any]:
        """
        Mirror a plan into Stripe and store the resulting IDs.

        Raises:
            NotFoundError: If the plan does not exist.
        """
        plan = await self.plans.get(plan_id)
        if plan is None:
            raise NotFoundError("Plan not found", details=plan_id)

        result = await self.stripe.sync_plan(plan)
        try:
            await self.plans.update_stripe_ids(plan.id, result.product_id, result.price_id)
        except GuardianError as e:
            raise UpstreamError("Failed to update plan with Stripe IDs", details=e.details or e.error)

        return {
            "success": True,
            "plan": {
                "id": plan.id,
                "name": plan.name,
                "stripe_product_id": result.product_id,
                "stripe_price_id": result.price_id,
            },
            "message": "Plan synced with Stripe successfully",
        }
