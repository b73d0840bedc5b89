"""Domain models for Stripe Guardian."""

from guardian.models.plan import Plan
from guardian.models.premium import (
    ACTIVE_STATUSES,
    BLOCKING_STATUSES,
    PENDING_STATUSES,
    TERMINAL_STATUSES,
    Premium,
    SubscriptionStatus,
)
from guardian.models.profile import UserProfile

__all__ = [
    "ACTIVE_STATUSES",
    "BLOCKING_STATUSES",
    "PENDING_STATUSES",
    "TERMINAL_STATUSES",
    "Plan",
    "Premium",
    "SubscriptionStatus",
    "UserProfile",
]
