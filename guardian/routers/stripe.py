"""Billing endpoints under /api/stripe."""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from guardian.dependencies import get_billing
from guardian.errors import ValidationError, require_fields
from guardian.services.billing import BillingService, PurchaseRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stripe", tags=["Stripe"])


class ApiRequest(BaseModel):
    """
    Base for request bodies.

    Fields are camelCase on the wire and optional in the schema, so a
    missing field is reported by require_fields with every missing name.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def public(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class CreateCustomerRequest(ApiRequest):
    user_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    metadata: Optional[Dict[str, str]] = None


class CreateCheckoutRequest(ApiRequest):
    user_id: Optional[str] = None
    email: Optional[str] = None
    plan_id: Optional[str] = None
    price_id: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    coupon_id: Optional[str] = None
    promotion_id: Optional[str] = None


class CreatePaymentSheetRequest(ApiRequest):
    user_id: Optional[str] = None
    email: Optional[str] = None
    plan_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    product_id: Optional[str] = None
    platform: Optional[str] = None
    coupon_id: Optional[str] = None
    promotion_id: Optional[str] = None


class ConfirmPaymentSheetRequest(ApiRequest):
    setup_intent_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    plan_id: Optional[str] = None
    user_id: Optional[str] = None
    stripe_price_id: Optional[str] = None


class SubscriptionActionRequest(ApiRequest):
    user_id: Optional[str] = None
    subscription_id: Optional[str] = None


class BillingHistoryRequest(ApiRequest):
    user_id: Optional[str] = None
    limit: int = 10


class SyncPlanRequest(ApiRequest):
    plan_id: Optional[str] = None


@router.post("/create-customer")
async def create_customer(
    body: CreateCustomerRequest,
    billing: BillingService = Depends(get_billing),
) -> Dict[str, Any]:
    """Create or reuse the Stripe customer for a user and link it to the profile."""
    require_fields(body.public(), "userId", "email")
    return await billing.create_customer(
        user_id=body.user_id,
        email=body.email,
        name=body.name,
        phone=body.phone,
        metadata=body.metadata,
    )


@router.post("/create-checkout")
async def create_checkout(
    body: CreateCheckoutRequest,
    billing: BillingService = Depends(get_billing),
) -> Dict[str, Any]:
    """
    Start a hosted Stripe Checkout for a plan.

    Raises:
        ConflictError(409): If the user already has a live or pending subscription.
    """
    require_fields(body.public(), "userId", "email", "planId", "priceId", "successUrl", "cancelUrl")
    request = PurchaseRequest(
        user_id=body.user_id,
        email=body.email,
        plan_id=body.plan_id,
        price_id=body.price_id,
        coupon_id=body.coupon_id,
        promotion_id=body.promotion_id,
    )
    return await billing.create_checkout(request, success_url=body.success_url, cancel_url=body.cancel_url)


@router.post("/create-paymentsheet")
async def create_payment_sheet(
    body: CreatePaymentSheetRequest,
    billing: BillingService = Depends(get_billing),
) -> Dict[str, Any]:
    """Prepare an in-app payment sheet (SetupIntent plus ephemeral key)."""
    require_fields(body.public(), "userId", "email", "planId", "stripePriceId")
    request = PurchaseRequest(
        user_id=body.user_id,
        email=body.email,
        plan_id=body.plan_id,
        price_id=body.stripe_price_id,
        coupon_id=body.coupon_id,
        promotion_id=body.promotion_id,
        product_id=body.product_id,
        platform=body.platform,
    )
    return await billing.create_payment_sheet(request)


@router.post("/confirm-paymentsheet")
async def confirm_payment_sheet(
    body: ConfirmPaymentSheetRequest,
    billing: BillingService = Depends(get_billing),
) -> Dict[str, Any]:
    """Create the subscription once the payment sheet's intent has succeeded."""
    require_fields(body.public(), "planId", "userId")
    if not body.setup_intent_id and not body.payment_intent_id:
        raise ValidationError("Missing required fields: setupIntentId")
    return await billing.confirm_payment_sheet(
        user_id=body.user_id,
        plan_id=body.plan_id,
        setup_intent_id=body.setup_intent_id,
        payment_intent_id=body.payment_intent_id,
        price_id=body.stripe_price_id,
    )


@router.get("/verify-session")
async def verify_session(
    session_id: Optional[str] = Query(None),
    billing: BillingService = Depends(get_billing),
) -> Dict[str, Any]:
    """Verify a completed checkout and record its subscription."""
    if not session_id:
        raise ValidationError("Missing session_id")
    return await billing.verify_session(session_id)


@router.post("/cancel-subscription")
async def cancel_subscription(
    body: SubscriptionActionRequest,
    billing: BillingService = Depends(get_billing),
) -> Dict[str, Any]:
    """Schedule cancellation at the end of the current period."""
    require_fields(body.public(), "userId", "subscriptionId")
    return await billing.cancel_subscription(body.user_id, body.subscription_id)


@router.post("/reactivate-subscription")
async def reactivate_subscription(
    body: SubscriptionActionRequest,
    billing: BillingService = Depends(get_billing),
) -> Dict[str, Any]:
    require_fields(body.public(), "userId", "subscriptionId")
    return await billing.reactivate_subscription(body.user_id, body.subscription_id)


@router.post("/get-billing-history")
async def get_billing_history(
    body: BillingHistoryRequest,
    billing: BillingService = Depends(get_billing),
) -> Dict[str, Any]:
    require_fields(body.public(), "userId")
    return await billing.billing_history(body.user_id, limit=body.limit)


@router.post("/sync-plan")
async def sync_plan(
    body: SyncPlanRequest,
    billing: BillingService = Depends(get_billing),
) -> Dict[str, Any]:
    """Mirror a premium plan into a Stripe product and price."""
    require_fields(body.public(), "planId")
    return await billing.sync_plan(body.plan_id)
