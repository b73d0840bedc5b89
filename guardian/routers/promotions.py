"""Coupon, promotion code and discounted price endpoints under /api/stripe."""

import logging
import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from guardian.dependencies import get_stripe
from guardian.errors import ValidationError, require_fields
from guardian.models.plan import Plan
from guardian.routers.stripe import ApiRequest
from guardian.services.stripe_service import StripeService, discounted_price

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stripe", tags=["Promotions"])

DISCOUNT_TYPES = ("percentage", "fixed_amount")
DURATIONS = ("once", "repeating", "forever")
CODE_PATTERN = re.compile(r"^[A-Z0-9_-]+$")


class CreateCouponRequest(ApiRequest):
    name: Optional[str] = None
    discount_type: Optional[str] = None
    discount_value: Optional[Decimal] = None
    duration: str = "once"
    duration_in_months: Optional[int] = None
    end_date: Optional[datetime] = None
    max_redemptions: Optional[int] = None
    currency: str = "usd"
    promotion_id: Optional[str] = None


class CreatePromotionCodeRequest(ApiRequest):
    coupon_id: Optional[str] = None
    code: Optional[str] = None
    active: bool = True
    max_redemptions: Optional[int] = None
    expires_at: Optional[datetime] = None
    metadata: Optional[Dict[str, str]] = None


class PlanPricing(ApiRequest):
    id: Optional[str] = None
    price: Optional[Decimal] = None
    interval: Optional[str] = None


class CreateDiscountedPriceRequest(ApiRequest):
    product_id: Optional[str] = None
    plan: Optional[PlanPricing] = None
    discount_value: Optional[Decimal] = None
    discount_type: Optional[str] = None


class ValidateCouponRequest(ApiRequest):
    code: Optional[str] = None


def _check_discount(discount_type: str, discount_value: Decimal) -> None:
    if discount_type not in DISCOUNT_TYPES:
        raise ValidationError('discountType must be "percentage" or "fixed_amount"')
    if discount_value <= 0:
        raise ValidationError("discountValue must be positive")
    if discount_type == "percentage" and discount_value > 100:
        raise ValidationError("percentage discount must be between 1 and 100")


def _coupon_view(coupon: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": coupon.get("id"),
        "name": coupon.get("name"),
        "percentOff": coupon.get("percent_off"),
        "amountOff": coupon.get("amount_off"),
        "currency": coupon.get("currency"),
        "duration": coupon.get("duration"),
        "durationInMonths": coupon.get("duration_in_months"),
        "redeemBy": coupon.get("redeem_by"),
        "maxRedemptions": coupon.get("max_redemptions"),
        "timesRedeemed": coupon.get("times_redeemed"),
        "valid": coupon.get("valid"),
    }


@router.post("/create-coupon")
async def create_coupon(
    body: CreateCouponRequest,
    stripe_service: StripeService = Depends(get_stripe),
) -> Dict[str, Any]:
    """
    Create a Stripe coupon for a promotion.

    Raises:
        ValidationError(400): On a missing field, unknown discount type or
            duration, or a percentage above 100.
    """
    require_fields(body.public(), "name", "discountType", "discountValue")
    _check_discount(body.discount_type, body.discount_value)
    if body.duration not in DURATIONS:
        raise ValidationError('duration must be "once", "repeating", or "forever"')
    if body.duration == "repeating" and not body.duration_in_months:
        raise ValidationError("durationInMonths is required for repeating coupons")

    coupon = await stripe_service.create_coupon(
        name=body.name,
        discount_type=body.discount_type,
        discount_value=body.discount_value,
        duration=body.duration,
        duration_in_months=body.duration_in_months,
        redeem_by=body.end_date,
        max_redemptions=body.max_redemptions,
        currency=body.currency,
        promotion_id=body.promotion_id,
    )
    return {"success": True, "couponId": coupon["id"], "coupon": _coupon_view(coupon)}


@router.post("/create-promotion-code")
async def create_promotion_code(
    body: CreatePromotionCodeRequest,
    stripe_service: StripeService = Depends(get_stripe),
) -> Dict[str, Any]:
    """
    Create a customer-facing promotion code for a coupon.

    Raises:
        DuplicateCodeError(409): If the code is already in use.
    """
    require_fields(body.public(), "couponId", "code")
    code = body.code.strip().upper()
    if not CODE_PATTERN.match(code):
        raise ValidationError("Code must contain only letters, numbers, underscores, and hyphens")

    promotion_code = await stripe_service.create_promotion_code(
        coupon_id=body.coupon_id,
        code=code,
        active=body.active,
        max_redemptions=body.max_redemptions,
        expires_at=body.expires_at,
        metadata=body.metadata,
    )
    coupon = promotion_code.get("coupon")
    return {
        "success": True,
        "promotionCodeId": promotion_code["id"],
        "promotionCode": {
            "id": promotion_code["id"],
            "code": promotion_code.get("code"),
            "couponId": coupon.get("id") if isinstance(coupon, dict) else coupon,
            "active": promotion_code.get("active"),
            "maxRedemptions": promotion_code.get("max_redemptions"),
            "timesRedeemed": promotion_code.get("times_redeemed"),
            "expiresAt": promotion_code.get("expires_at"),
        },
    }


@router.post("/create-discounted-price")
async def create_discounted_price(
    body: CreateDiscountedPriceRequest,
    stripe_service: StripeService = Depends(get_stripe),
) -> Dict[str, Any]:
    """Create a promotional recurring price for a plan."""
    require_fields(body.public(), "productId", "plan", "discountValue", "discountType")
    require_fields(body.plan.public(), "id", "price", "interval")
    _check_discount(body.discount_type, body.discount_value)
    if body.discount_type == "fixed_amount" and body.discount_value >= body.plan.price:
        raise ValidationError("Fixed discount must be less than the plan price")

    plan = Plan(id=body.plan.id, name=body.plan.id, price=body.plan.price, interval=body.plan.interval)
    price = await stripe_service.create_discounted_price(
        product_id=body.product_id,
        plan=plan,
        discount_type=body.discount_type,
        discount_value=body.discount_value,
    )
    return {
        "success": True,
        "priceId": price["id"],
        "originalPrice": float(plan.price),
        "discountedPrice": float(discounted_price(plan.price, body.discount_type, body.discount_value)),
        "discountValue": float(body.discount_value),
        "discountType": body.discount_type,
    }


async def _validate(code: Optional[str], stripe_service: StripeService) -> Dict[str, Any]:
    if not code or not code.strip():
        raise ValidationError("Missing required parameter: code")
    result = await stripe_service.validate_code(code.strip())
    if not result["valid"]:
        logger.info(f"Rejected code {code.strip()}: {result.get('error')}")
    return result


@router.get("/validate-coupon")
async def validate_coupon(
    code: Optional[str] = Query(None),
    stripe_service: StripeService = Depends(get_stripe),
) -> Dict[str, Any]:
    """Check a coupon ID or promotion code. Invalid codes still answer 200."""
    return await _validate(code, stripe_service)


@router.post("/validate-coupon")
async def validate_coupon_post(
    body: ValidateCouponRequest,
    stripe_service: StripeService = Depends(get_stripe),
) -> Dict[str, Any]:
    return await _validate(body.code, stripe_service)
