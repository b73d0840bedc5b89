"""
State projector.

Maps (stored premium, Stripe subscription) to the next premium value.
This is the only place premium records are computed, so every writer
produces a complete, self-consistent record instead of merging fields.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional

from guardian.models.premium import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Premium,
    SubscriptionStatus,
    is_live,
    parse_status,
)
from guardian.services.stripe_fields import (
    from_epoch,
    line_price_id,
    metadata_of,
    period_bounds,
    ref_id,
)


@dataclass(frozen=True)
class Projection:
    """Outcome of a projection: the next record and whether to persist it."""

    premium: Optional[Premium]
    must_write: bool
    reason: str


def project(
    stored: Optional[Premium],
    subscription: Mapping[str, Any],
    *,
    now: datetime,
    force_status: Optional[SubscriptionStatus] = None,
    reactivated: bool = False,
) -> Projection:
    """
    Compute the next premium record for a subscription.

    Args:
        stored: Premium currently persisted for the user, if any.
        subscription: Stripe subscription object.
        now: Reference time for activity checks and new timestamps.
        force_status: Status to record instead of the reported one.
        reactivated: The caller just withdrew a scheduled cancellation.

    Returns:
        Projection with the next record, the write decision and a reason.
    """
    subscription_id = subscription.get("id")
    customer_id = ref_id(subscription.get("customer"))
    status = force_status or parse_status(subscription.get("status"))

    same_subscription = stored is not None and stored.stripe_subscription_id == subscription_id

    if (
        stored is not None
        and stored.stripe_subscription_id
        and not same_subscription
        and is_live(stored.status)
        and status in TERMINAL_STATUSES
    ):
        return Projection(stored, False, "superseded")

    period_start, period_end = period_bounds(subscription)
    is_active = status in ACTIVE_STATUSES and (period_end is None or period_end > now)
    plan_id = metadata_of(subscription).get("planId") or line_price_id(subscription)
    cancel_at_period_end = bool(subscription.get("cancel_at_period_end"))

    if same_subscription and stored.started_at:
        started_at = stored.started_at
    else:
        started_at = now if is_active else None

    previous_canceled_at = stored.canceled_at if same_subscription else None
    previous_reactivated_at = stored.reactivated_at if same_subscription else None

    if status == SubscriptionStatus.CANCELED:
        canceled_at = from_epoch(subscription.get("canceled_at")) or previous_canceled_at or now
        reactivated_at = None
    elif reactivated or (
        same_subscription and stored.cancel_at_period_end and not cancel_at_period_end
    ):
        canceled_at = None
        reactivated_at = now
    elif cancel_at_period_end:
        canceled_at = from_epoch(subscription.get("canceled_at")) or previous_canceled_at or now
        reactivated_at = previous_reactivated_at
    else:
        canceled_at = None
        reactivated_at = previous_reactivated_at

    candidate = Premium(
        is_active=is_active,
        status=status,
        plan_id=plan_id,
        stripe_subscription_id=subscription_id,
        stripe_customer_id=customer_id,
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=cancel_at_period_end,
        canceled_at=canceled_at,
        reactivated_at=reactivated_at,
        started_at=started_at,
    )

    if stored is None:
        return Projection(candidate.model_copy(update={"updated_at": now}), True, "created")

    if candidate.observable() == stored.observable():
        return Projection(stored, False, "unchanged")

    if stored.updated_at and stored.updated_at > now:
        return Projection(stored, False, "stale-clock")

    reason = "status-changed" if stored.status != status else "fields-changed"
    return Projection(candidate.model_copy(update={"updated_at": now}), True, reason)
