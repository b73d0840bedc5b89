"""
Stripe service for customer, subscription and catalog management.

Handles:
- Finding or creating Stripe customers
- Checkout sessions, setup intents and ephemeral keys
- Subscription creation, cancellation and reactivation
- Product/price sync with deterministic idempotency keys
- Coupons, promotion codes and code validation
- Webhook signature verification
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterator, List, Optional, Sequence

import stripe

from guardian.errors import (
    BadSignatureError,
    DuplicateCodeError,
    GuardianError,
    InitializationError,
    InvalidPriceError,
    NotFoundError,
    PaymentFailedError,
    UpstreamError,
    ValidationError,
)
from guardian.models.plan import Plan, to_minor_units
from guardian.services.stripe_fields import to_epoch, utcnow

logger = logging.getLogger(__name__)

PROMOTION_SOURCE = "wiznote_promotion_system"


@dataclass(frozen=True)
class CustomerRef:
    """A resolved Stripe customer."""

    id: str
    is_existing: bool
    replaced_stale: bool = False


@dataclass(frozen=True)
class PlanSyncResult:
    product_id: str
    price_id: str
    price_created: bool


@contextmanager
def stripe_errors(action: str) -> Iterator[None]:
    """Translate Stripe SDK errors raised inside the block into service errors."""
    try:
        yield
    except GuardianError:
        raise
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        raise BadSignatureError("Invalid signature", details=str(e))
    except stripe.CardError as e:
        logger.warning(f"Payment failed while trying to {action}: {e.user_message or e}")
        raise PaymentFailedError(details=e.user_message or str(e), code=e.code)
    except stripe.InvalidRequestError as e:
        if e.code == "resource_missing":
            raise NotFoundError(f"Stripe resource not found while trying to {action}", details=str(e))
        if e.code == "resource_already_exists":
            raise DuplicateCodeError(details=e.user_message or str(e))
        logger.error(f"Stripe rejected request to {action}: {e}")
        raise ValidationError(f"Failed to {action}", details=e.user_message or str(e))
    except stripe.StripeError as e:
        logger.error(f"Failed to {action}: {e}")
        raise UpstreamError(f"Failed to {action}", details=e.user_message or str(e))


def price_idempotency_key(plan_id: str, unit_amount: int, currency: str, interval: Optional[str]) -> str:
    return f"plan-price-{plan_id}-{unit_amount}-{currency.lower()}-{interval or 'one-time'}"


def product_create_idempotency_key(plan_id: str) -> str:
    return f"plan-product-create-{plan_id}"


def product_update_idempotency_key(product_id: str, updated_at: Optional[datetime]) -> str:
    stamp = updated_at.isoformat() if updated_at else "initial"
    return f"plan-product-update-{product_id}-{stamp}"


def subscription_idempotency_key(intent_id: str) -> str:
    return f"subscription-{intent_id}"


def plain(obj: Any) -> Any:
    """Recursive dict copy of a Stripe API object; StripeObjects are not mappings."""
    if isinstance(obj, stripe.StripeObject):
        return obj.to_dict()
    return obj


def page_data(page: Any) -> List[Dict[str, Any]]:
    """The objects of one list or search page, as dicts."""
    return list(plain(page)["data"])


def discounted_price(price: Decimal, discount_type: str, discount_value: Decimal) -> Decimal:
    """Apply a percentage or fixed discount, rounded to cents and never negative."""
    if discount_type == "percentage":
        discounted = price * (1 - discount_value / 100)
    else:
        discounted = price - discount_value
    return max(Decimal("0"), discounted).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class StripeService:
    """
    Service for Stripe payment integration.

    One instance is shared by the whole process. Every call goes through
    stripe_errors() so callers only ever see the service error taxonomy.
    """

    def __init__(self, api_key: str, webhook_secret: str = "", api_version: str = "2024-06-20"):
        if not api_key:
            raise InitializationError("Missing Stripe configuration", details="STRIPE_SECRET_KEY is not set")
        self.webhook_secret = webhook_secret
        self.api_version = api_version
        stripe.api_key = api_key
        stripe.api_version = api_version

    # Customers

    async def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        """
        Retrieve a customer.

        Raises:
            NotFoundError: If the customer does not exist or was deleted.
        """
        with stripe_errors("retrieve customer"):
            customer = plain(await stripe.Customer.retrieve_async(customer_id))
        if customer.get("deleted"):
            raise NotFoundError("Stripe customer was deleted", details=customer_id)
        return customer

    async def find_customer_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        with stripe_errors("look up customer"):
            customers = page_data(await stripe.Customer.list_async(email=email, limit=1))
        return customers[0] if customers else None

    async def create_customer(
        self,
        email: str,
        user_id: str,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Create a Stripe customer.

        Args:
            email: Customer's email address.
            user_id: Internal user ID stored in metadata.
            name: Optional display name.
            phone: Optional phone number.
            metadata: Extra metadata merged under the userId key.

        Returns:
            The created customer.
        """
        params: Dict[str, Any] = {
            "email": email,
            "metadata": {**(metadata or {}), "userId": user_id},
        }
        if name:
            params["name"] = name
        if phone:
            params["phone"] = phone
        with stripe_errors("create customer"):
            customer = plain(await stripe.Customer.create_async(**params))
        logger.info(f"Created Stripe customer {customer['id']} for user {user_id}")
        return customer

    async def find_or_create_customer(
        self,
        email: str,
        user_id: str,
        existing_customer_id: Optional[str] = None,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CustomerRef:
        """
        Resolve the customer for a user.

        A stored ID is verified first; if Stripe no longer knows it, it is
        dropped and the lookup continues by email, then by creation.

        Returns:
            CustomerRef describing the customer and how it was found.
        """
        replaced_stale = False
        if existing_customer_id:
            try:
                await self.retrieve_customer(existing_customer_id)
                return CustomerRef(id=existing_customer_id, is_existing=True)
            except NotFoundError:
                logger.warning(
                    f"Stored customer {existing_customer_id} for user {user_id} is gone; resolving again"
                )
                replaced_stale = True

        found = await self.find_customer_by_email(email)
        if found:
            logger.info(f"Found existing Stripe customer {found['id']} by email")
            return CustomerRef(id=found["id"], is_existing=True, replaced_stale=replaced_stale)

        created = await self.create_customer(email, user_id, name=name, phone=phone, metadata=metadata)
        return CustomerRef(id=created["id"], is_existing=False, replaced_stale=replaced_stale)

    # Prices and intents

    async def retrieve_active_price(self, price_id: str) -> Dict[str, Any]:
        """
        Retrieve a price that can be sold.

        Raises:
            InvalidPriceError: If the price is unknown or inactive.
        """
        try:
            with stripe_errors("retrieve price"):
                price = plain(await stripe.Price.retrieve_async(price_id))
        except (NotFoundError, ValidationError) as e:
            raise InvalidPriceError(details=f"Price {price_id} could not be retrieved: {e.details or e.error}")
        if not price.get("active"):
            raise InvalidPriceError(details=f"Price {price_id} is not active")
        return price

    async def create_setup_intent(self, customer_id: str, metadata: Dict[str, str]) -> Dict[str, Any]:
        with stripe_errors("create setup intent"):
            intent = await stripe.SetupIntent.create_async(
                customer=customer_id,
                usage="off_session",
                automatic_payment_methods={"enabled": True},
                metadata=metadata,
            )
        intent = plain(intent)
        logger.info(f"Created setup intent {intent['id']} for customer {customer_id}")
        return intent

    async def create_ephemeral_key(self, customer_id: str) -> Dict[str, Any]:
        with stripe_errors("create ephemeral key"):
            key = await stripe.EphemeralKey.create_async(
                customer=customer_id,
                stripe_version=self.api_version,
            )
        return plain(key)

    async def retrieve_setup_intent(self, intent_id: str) -> Dict[str, Any]:
        with stripe_errors("retrieve setup intent"):
            return plain(await stripe.SetupIntent.retrieve_async(intent_id))

    async def retrieve_payment_intent(self, intent_id: str) -> Dict[str, Any]:
        with stripe_errors("retrieve payment intent"):
            return plain(await stripe.PaymentIntent.retrieve_async(intent_id))

    # Checkout

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        coupon_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a subscription-mode checkout session.

        The metadata is attached to both the session and the subscription it
        creates, so webhooks can recover the plan.
        """
        session_params: Dict[str, Any] = {
            "customer": customer_id,
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price": price_id,
                    "quantity": 1,
                },
            ],
            "mode": "subscription",
            "subscription_data": {"metadata": metadata},
            "metadata": metadata,
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if coupon_id:
            session_params["discounts"] = [{"coupon": coupon_id}]
        else:
            session_params["allow_promotion_codes"] = True

        with stripe_errors("create checkout session"):
            session = plain(await stripe.checkout.Session.create_async(**session_params))
        logger.info(f"Created checkout session {session['id']} for customer {customer_id}")
        return session

    async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        with stripe_errors("retrieve checkout session"):
            session = await stripe.checkout.Session.retrieve_async(
                session_id,
                expand=["subscription", "customer"],
            )
        return plain(session)

    # Subscriptions

    async def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        payment_method: Optional[str],
        metadata: Dict[str, str],
        idempotency_key: str,
        coupon_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a subscription that must be paid immediately.

        Raises:
            PaymentFailedError: If the first invoice cannot be paid.
        """
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "payment_behavior": "error_if_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "expand": ["latest_invoice.payment_intent"],
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        }
        if payment_method:
            params["default_payment_method"] = payment_method
        if coupon_id:
            params["discounts"] = [{"coupon": coupon_id}]
        with stripe_errors("create subscription"):
            subscription = plain(await stripe.Subscription.create_async(**params))
        logger.info(f"Created subscription {subscription['id']} for customer {customer_id}")
        return subscription

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        with stripe_errors("retrieve subscription"):
            return plain(await stripe.Subscription.retrieve_async(subscription_id))

    async def schedule_cancellation(self, subscription_id: str, user_id: str) -> Dict[str, Any]:
        """Cancel at the end of the current period, recording who asked."""
        with stripe_errors("cancel subscription"):
            subscription = await stripe.Subscription.modify_async(
                subscription_id,
                cancel_at_period_end=True,
                metadata={
                    "canceled_by": user_id,
                    "canceled_at": utcnow().isoformat(),
                },
            )
        subscription = plain(subscription)
        logger.info(f"Subscription {subscription_id} set to cancel at period end")
        return subscription

    async def resume_subscription(self, subscription_id: str, user_id: str) -> Dict[str, Any]:
        """Withdraw a scheduled cancellation."""
        with stripe_errors("reactivate subscription"):
            subscription = await stripe.Subscription.modify_async(
                subscription_id,
                cancel_at_period_end=False,
                metadata={
                    "reactivated_by": user_id,
                    "reactivated_at": utcnow().isoformat(),
                },
            )
        subscription = plain(subscription)
        logger.info(f"Subscription {subscription_id} reactivated")
        return subscription

    async def list_subscriptions(
        self,
        customer_id: Optional[str] = None,
        status: str = "all",
        limit: int = 10,
    ) -> List[Dict[str, Any]]:
        """One page of subscriptions, newest first."""
        params: Dict[str, Any] = {"status": status, "limit": limit}
        if customer_id:
            params["customer"] = customer_id
        with stripe_errors("list subscriptions"):
            return page_data(await stripe.Subscription.list_async(**params))

    async def list_events(
        self,
        types: Sequence[str],
        created_after: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"types": list(types), "limit": limit}
        if created_after:
            params["created"] = {"gt": to_epoch(created_after)}
        with stripe_errors("list events"):
            return page_data(await stripe.Event.list_async(**params))

    async def list_invoices(self, customer_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        with stripe_errors("fetch billing history"):
            return page_data(await stripe.Invoice.list_async(customer=customer_id, limit=limit))

    # Catalog

    async def _find_plan_product(self, plan: Plan) -> Optional[Dict[str, Any]]:
        if plan.stripe_product_id:
            try:
                with stripe_errors("retrieve product"):
                    return plain(await stripe.Product.retrieve_async(plan.stripe_product_id))
            except NotFoundError:
                logger.warning(f"Stored product {plan.stripe_product_id} for plan {plan.id} not found; searching")

        with stripe_errors("search products"):
            products = page_data(await stripe.Product.search_async(query=f"metadata['planId']:'{plan.id}'"))
        return products[0] if products else None

    async def _find_matching_price(self, product_id: str, plan: Plan) -> Optional[Dict[str, Any]]:
        with stripe_errors("list prices"):
            prices = page_data(await stripe.Price.list_async(product=product_id, active=True, limit=100))
        for price in prices:
            recurring = price.get("recurring") or {}
            if (
                price.get("unit_amount") == plan.unit_amount
                and (price.get("currency") or "").lower() == plan.currency
                and recurring.get("interval") == plan.recurring_interval
            ):
                return price
        return None

    async def sync_plan(self, plan: Plan) -> PlanSyncResult:
        """
        Upsert the Stripe product and price for a plan.

        Retries collapse onto the same objects because every write carries
        an idempotency key derived from the plan's identity and price.

        Args:
            plan: Plan to mirror.

        Returns:
            PlanSyncResult with the product and price IDs.
        """
        product_fields: Dict[str, Any] = {
            "name": plan.name,
            "metadata": {"planId": plan.id, "planType": plan.plan_type},
        }
        if plan.description:
            product_fields["description"] = plan.description

        product = await self._find_plan_product(plan)
        if product:
            with stripe_errors("update product"):
                product = await stripe.Product.modify_async(
                    product["id"],
                    idempotency_key=product_update_idempotency_key(product["id"], plan.updated_at),
                    **product_fields,
                )
            product = plain(product)
        else:
            with stripe_errors("create product"):
                product = await stripe.Product.create_async(
                    idempotency_key=product_create_idempotency_key(plan.id),
                    **product_fields,
                )
            product = plain(product)
            logger.info(f"Created product {product['id']} for plan {plan.id}")

        price = await self._find_matching_price(product["id"], plan)
        price_created = price is None
        if price is None:
            price_params: Dict[str, Any] = {
                "product": product["id"],
                "unit_amount": plan.unit_amount,
                "currency": plan.currency,
                "metadata": {"planId": plan.id, "planType": plan.plan_type},
            }
            if plan.recurring_interval:
                price_params["recurring"] = {"interval": plan.recurring_interval}
            with stripe_errors("create price"):
                price = await stripe.Price.create_async(
                    idempotency_key=price_idempotency_key(
                        plan.id, plan.unit_amount, plan.currency, plan.recurring_interval
                    ),
                    **price_params,
                )
            price = plain(price)
            logger.info(f"Created price {price['id']} for plan {plan.id}")

        if plan.stripe_price_id and plan.stripe_price_id != price["id"]:
            try:
                with stripe_errors("deactivate old price"):
                    await stripe.Price.modify_async(plan.stripe_price_id, active=False)
                logger.info(f"Deactivated previous price {plan.stripe_price_id}")
            except GuardianError as e:
                logger.warning(f"Could not deactivate old price {plan.stripe_price_id}: {e}")

        return PlanSyncResult(product_id=product["id"], price_id=price["id"], price_created=price_created)

    # Promotions

    async def create_coupon(
        self,
        name: str,
        discount_type: str,
        discount_value: Decimal,
        duration: str = "once",
        duration_in_months: Optional[int] = None,
        redeem_by: Optional[datetime] = None,
        max_redemptions: Optional[int] = None,
        currency: str = "usd",
        promotion_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a coupon for a promotion.

        Args:
            name: Coupon display name.
            discount_type: "percentage" or "fixed_amount".
            discount_value: Percent off, or amount off in major units.
            duration: once, repeating or forever.
            duration_in_months: Months the discount lasts when repeating.
            redeem_by: Last moment the coupon can be redeemed.
            max_redemptions: Redemption cap.
            currency: Currency of a fixed amount.
            promotion_id: Promotion this coupon belongs to.

        Returns:
            The created coupon.
        """
        params: Dict[str, Any] = {
            "name": name,
            "duration": duration,
            "metadata": {"source": PROMOTION_SOURCE},
        }
        if promotion_id:
            params["metadata"]["promotionId"] = promotion_id
        if discount_type == "percentage":
            params["percent_off"] = float(discount_value)
        else:
            params["amount_off"] = to_minor_units(discount_value)
            params["currency"] = currency.lower()
        if duration == "repeating" and duration_in_months:
            params["duration_in_months"] = duration_in_months
        if redeem_by:
            params["redeem_by"] = to_epoch(redeem_by)
        if max_redemptions:
            params["max_redemptions"] = max_redemptions

        with stripe_errors("create coupon"):
            coupon = plain(await stripe.Coupon.create_async(**params))
        logger.info(f"Created coupon {coupon['id']}")
        return coupon

    async def create_promotion_code(
        self,
        coupon_id: str,
        code: str,
        active: bool = True,
        max_redemptions: Optional[int] = None,
        expires_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Create a customer-facing code for a coupon.

        Raises:
            DuplicateCodeError: If the code already exists.
        """
        params: Dict[str, Any] = {
            "coupon": coupon_id,
            "code": code.upper(),
            "active": active,
            "metadata": metadata or {},
        }
        if max_redemptions:
            params["max_redemptions"] = max_redemptions
        if expires_at:
            params["expires_at"] = to_epoch(expires_at)
        with stripe_errors("create promotion code"):
            promotion_code = plain(await stripe.PromotionCode.create_async(**params))
        logger.info(f"Created promotion code {promotion_code['id']} for coupon {coupon_id}")
        return promotion_code

    async def create_discounted_price(
        self,
        product_id: str,
        plan: Plan,
        discount_type: str,
        discount_value: Decimal,
    ) -> Dict[str, Any]:
        """
        Create a promotional price below the plan's list price.

        Raises:
            ValidationError: If the plan is not recurring.
        """
        interval = plan.recurring_interval
        if interval is None:
            raise ValidationError("Invalid plan interval", details=f"{plan.interval!r} is not a recurring interval")
        discounted = discounted_price(plan.price, discount_type, discount_value)
        with stripe_errors("create discounted price"):
            created = await stripe.Price.create_async(
                product=product_id,
                unit_amount=to_minor_units(discounted),
                currency=plan.currency,
                recurring={"interval": interval},
                metadata={
                    "planId": plan.id,
                    "isPromotionalPrice": "true",
                    "originalPrice": str(plan.price),
                    "discountValue": str(discount_value),
                    "discountType": discount_type,
                },
            )
        created = plain(created)
        logger.info(f"Created discounted price {created['id']} for plan {plan.id}")
        return created

    async def _lookup_code(self, code: str):
        try:
            with stripe_errors("retrieve coupon"):
                return plain(await stripe.Coupon.retrieve_async(code)), None
        except (NotFoundError, ValidationError):
            pass

        with stripe_errors("look up promotion code"):
            codes = page_data(await stripe.PromotionCode.list_async(code=code.upper(), limit=1))
        if not codes:
            return None, None
        promotion_code = codes[0]
        coupon = promotion_code.get("coupon")
        if isinstance(coupon, str):
            with stripe_errors("retrieve coupon"):
                coupon = plain(await stripe.Coupon.retrieve_async(coupon))
        return coupon, promotion_code

    async def validate_code(self, code: str) -> Dict[str, Any]:
        """
        Check whether a coupon ID or promotion code can be redeemed.

        Returns:
            Dict with "valid" and either the discount details or an "error".
        """
        coupon, promotion_code = await self._lookup_code(code)
        if not coupon:
            return {"valid": False, "error": "Coupon not found"}

        now = to_epoch(utcnow())
        if not coupon.get("valid"):
            return {"valid": False, "error": "Coupon is no longer valid"}
        if coupon.get("redeem_by") and coupon["redeem_by"] < now:
            return {"valid": False, "error": "Coupon has expired"}
        if coupon.get("max_redemptions") and (coupon.get("times_redeemed") or 0) >= coupon["max_redemptions"]:
            return {"valid": False, "error": "Coupon redemption limit reached"}

        if promotion_code:
            if not promotion_code.get("active"):
                return {"valid": False, "error": "Promotion code is inactive"}
            if promotion_code.get("expires_at") and promotion_code["expires_at"] < now:
                return {"valid": False, "error": "Promotion code has expired"}
            if promotion_code.get("max_redemptions") and (
                promotion_code.get("times_redeemed") or 0
            ) >= promotion_code["max_redemptions"]:
                return {"valid": False, "error": "Promotion code redemption limit reached"}

        if coupon.get("percent_off"):
            discount_type, discount_value = "percentage", coupon["percent_off"]
        else:
            discount_type, discount_value = "fixed_amount", (coupon.get("amount_off") or 0) / 100

        result: Dict[str, Any] = {
            "valid": True,
            "coupon": {
                "id": coupon.get("id"),
                "name": coupon.get("name"),
                "duration": coupon.get("duration"),
                "durationInMonths": coupon.get("duration_in_months"),
                "currency": coupon.get("currency"),
            },
            "discountType": discount_type,
            "discountValue": discount_value,
        }
        if promotion_code:
            result["promotionCode"] = {
                "id": promotion_code.get("id"),
                "code": promotion_code.get("code"),
                "expiresAt": promotion_code.get("expires_at"),
                "maxRedemptions": promotion_code.get("max_redemptions"),
            }
        return result

    # Webhooks and health checks

    def construct_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify Stripe webhook signature and return the event.

        Args:
            payload: Raw webhook payload bytes.
            signature: Stripe-Signature header value.

        Returns:
            The verified event as a dict.

        Raises:
            InitializationError: If no webhook secret is configured.
            BadSignatureError: If signature verification fails.
        """
        if not self.webhook_secret:
            raise InitializationError("Webhook configuration error", details="STRIPE_WEBHOOK_SECRET is not set")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise BadSignatureError("Invalid signature", details=str(e))
        except ValueError as e:
            logger.warning(f"Webhook payload could not be parsed: {e}")
            raise BadSignatureError("Invalid payload", details=str(e))
        return plain(event)

    async def ping(self) -> None:
        """Cheapest authenticated call: list a single product."""
        with stripe_errors("reach Stripe"):
            await stripe.Product.list_async(limit=1)
