"""Premium plan mirrored locally in the premium_plans table."""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, field_validator

# Stored plan interval -> Stripe recurring interval
INTERVAL_TO_STRIPE = {
    "weekly": "week",
    "monthly": "month",
    "yearly": "year",
    "week": "week",
    "month": "month",
    "year": "year",
}


class Plan(BaseModel):
    """
    A sellable premium plan.

    Attributes:
        id: Plan ID, also written into Stripe product metadata
        name: Display name, synced to the Stripe product
        description: Optional product description
        price: Decimal price in major currency units
        currency: ISO currency code
        interval: weekly, monthly, yearly or empty for one-off plans
        plan_type: "subscription" for recurring plans
        stripe_product_id: Synced Stripe product ID
        stripe_price_id: Synced Stripe price ID
        updated_at: Last local modification
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    description: Optional[str] = None
    price: Decimal = Decimal("0")
    currency: str = "usd"
    interval: Optional[str] = None
    plan_type: str = "subscription"
    stripe_product_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    updated_at: Optional[datetime] = None

    @field_validator("currency", mode="before")
    @classmethod
    def _normalize_currency(cls, value: Any) -> str:
        return (value or "usd").lower()

    @field_validator("price", mode="before")
    @classmethod
    def _default_price(cls, value: Any) -> Any:
        return 0 if value is None else value

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Plan":
        return cls.model_validate(row)

    @property
    def recurring_interval(self) -> Optional[str]:
        """Stripe recurring interval, or None for one-off plans."""
        if self.plan_type != "subscription" or not self.interval:
            return None
        return INTERVAL_TO_STRIPE.get(self.interval.lower())

    @property
    def unit_amount(self) -> int:
        """Price in the smallest currency unit."""
        return to_minor_units(self.price)


def to_minor_units(amount: Any) -> int:
    """Convert a major-unit amount to cents, rounding half up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
