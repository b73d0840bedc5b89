"""Premium record stored on each user profile."""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


class SubscriptionStatus(str, Enum):
    """Stripe subscription statuses mirrored into the premium record."""

    ACTIVE = "active"
    TRIALING = "trialing"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    PAUSED = "paused"


ACTIVE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})

# A subscription in any other state still counts against the one-live-subscription rule.
TERMINAL_STATUSES = frozenset(
    {SubscriptionStatus.CANCELED, SubscriptionStatus.INCOMPLETE_EXPIRED}
)

# Local guard: a stored subscription in one of these blocks a new checkout as "pending".
PENDING_STATUSES = frozenset(
    {
        SubscriptionStatus.INCOMPLETE,
        SubscriptionStatus.INCOMPLETE_EXPIRED,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.UNPAID,
    }
)

# Authoritative guard: live Stripe subscriptions that block a new checkout.
BLOCKING_STATUSES = frozenset(
    {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.INCOMPLETE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.UNPAID,
    }
)


def parse_status(value: Any) -> Optional[SubscriptionStatus]:
    """Return the matching status, or None for anything unrecognized."""
    if isinstance(value, SubscriptionStatus):
        return value
    try:
        return SubscriptionStatus(value)
    except ValueError:
        return None


def is_live(status: Optional[SubscriptionStatus]) -> bool:
    return status is not None and status not in TERMINAL_STATUSES


class Premium(BaseModel):
    """
    Structured premium state, persisted as camelCase JSON.

    Attributes:
        is_active: Whether premium features are currently granted
        status: Mirrored Stripe subscription status
        plan_id: Plan identifier from subscription metadata or line item price
        stripe_subscription_id: Stripe subscription ID
        stripe_customer_id: Stripe customer ID (matches the profile column)
        current_period_start: Start of the current billing period
        current_period_end: End of the current billing period
        cancel_at_period_end: Subscription ends when the period ends
        canceled_at: When cancellation was requested or took effect
        reactivated_at: When a scheduled cancellation was withdrawn
        started_at: When premium first became active for this subscription
        updated_at: Last committed write
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    is_active: bool = False
    status: Optional[SubscriptionStatus] = None
    plan_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    reactivated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def _lenient_status(cls, value: Any) -> Optional[SubscriptionStatus]:
        return parse_status(value) if value is not None else None

    @field_validator(
        "current_period_start",
        "current_period_end",
        "canceled_at",
        "reactivated_at",
        "started_at",
        "updated_at",
        mode="wrap",
    )
    @classmethod
    def _lenient_instant(cls, value: Any, handler) -> Optional[datetime]:
        if value in (None, ""):
            return None
        try:
            parsed = handler(value)
        except ValueError:
            logger.warning(f"Dropping unparseable premium timestamp: {value!r}")
            return None
        if parsed is not None and parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    @classmethod
    def from_record(cls, raw: Any) -> Optional["Premium"]:
        """
        Parse a stored premium value.

        Only the structured object form is understood. A scalar value
        (the legacy boolean flag) is reported and treated as absent.
        """
        if raw is None:
            return None
        if not isinstance(raw, dict):
            logger.warning(f"Ignoring non-object premium value of type {type(raw).__name__}")
            return None
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed premium record: {e}")
            return None

    def to_record(self) -> Dict[str, Any]:
        """Serialize for storage (camelCase keys, ISO-8601 instants, nulls dropped)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def observable(self) -> Dict[str, Any]:
        """Every field that decides whether a write is needed."""
        return self.model_dump(exclude={"updated_at"})

    def is_active_at(self, now: datetime) -> bool:
        """Evaluate the activity rule against a reference time."""
        return self.status in ACTIVE_STATUSES and (
            self.current_period_end is None or self.current_period_end > now
        )
