"""
Consistency diagnostics for stored premium records.

Read-only: nothing here writes to the datastore or to Stripe.
"""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from guardian.errors import GuardianError, NotFoundError
from guardian.models.premium import parse_status
from guardian.models.profile import UserProfile
from guardian.services.stripe_fields import utcnow

if TYPE_CHECKING:
    from guardian.dependencies import Services

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_SIZE = 25


def profile_violations(profile: UserProfile, now: datetime) -> List[str]:
    """
    List the ways a stored premium record disagrees with itself.

    Args:
        profile: Profile to inspect.
        now: Reference time for the activity rule.

    Returns:
        Human-readable problems, empty when the record is consistent.
    """
    premium = profile.premium
    if premium is None:
        return []

    problems = []
    if premium.is_active != premium.is_active_at(now):
        problems.append(
            f"isActive={premium.is_active} but status={premium.status.value if premium.status else None} "
            f"and currentPeriodEnd={premium.current_period_end}"
        )
    if premium.stripe_customer_id and premium.stripe_customer_id != profile.stripe_customer_id:
        problems.append(
            f"premium.stripeCustomerId {premium.stripe_customer_id} differs from "
            f"stripe_customer_id {profile.stripe_customer_id}"
        )
    if (
        premium.current_period_start
        and premium.current_period_end
        and premium.current_period_start > premium.current_period_end
    ):
        problems.append("currentPeriodStart is after currentPeriodEnd")
    if premium.is_active and not premium.stripe_subscription_id:
        problems.append("active premium without stripeSubscriptionId")
    return problems


async def _compare_with_stripe(services: "Services", profile: UserProfile) -> Optional[Dict[str, Any]]:
    premium = profile.premium
    try:
        subscription = await services.stripe.retrieve_subscription(premium.stripe_subscription_id)
    except NotFoundError:
        return {
            "userId": profile.id,
            "subscriptionId": premium.stripe_subscription_id,
            "problem": "subscription not found in Stripe",
        }

    remote_status = parse_status(subscription.get("status"))
    if remote_status != premium.status:
        return {
            "userId": profile.id,
            "subscriptionId": premium.stripe_subscription_id,
            "problem": "status mismatch",
            "local": premium.status.value if premium.status else None,
            "stripe": subscription.get("status"),
        }
    if bool(subscription.get("cancel_at_period_end")) != premium.cancel_at_period_end:
        return {
            "userId": profile.id,
            "subscriptionId": premium.stripe_subscription_id,
            "problem": "cancelAtPeriodEnd mismatch",
            "local": premium.cancel_at_period_end,
            "stripe": bool(subscription.get("cancel_at_period_end")),
        }
    return None


async def collect_health_report(services: "Services", sample_size: int = DEFAULT_SAMPLE_SIZE) -> Dict[str, Any]:
    """
    Scan every profile with a premium record and sample some against Stripe.

    Args:
        services: Wired service container.
        sample_size: How many profiles with a subscription ID to compare
            against Stripe.

    Returns:
        Dict with the scan counts, the three problem lists and
        recommendations for an operator.
    """
    now = utcnow()
    violations: List[Dict[str, Any]] = []
    orphaned: List[Dict[str, Any]] = []
    mismatches: List[Dict[str, Any]] = []
    sampled = 0
    scanned = 0
    sample_errors = 0

    async for profile in services.profiles.iter_premium_profiles():
        scanned += 1
        problems = profile_violations(profile, now)
        if problems:
            violations.append({"userId": profile.id, "problems": problems})
        if profile.has_active_premium and not profile.stripe_customer_id:
            orphaned.append({"userId": profile.id, "subscriptionId": profile.premium.stripe_subscription_id})

        if sampled >= sample_size or not profile.premium.stripe_subscription_id:
            continue
        sampled += 1
        try:
            mismatch = await _compare_with_stripe(services, profile)
        except GuardianError as e:
            sample_errors += 1
            logger.error(f"Could not compare {profile.id} with Stripe: {e}")
            continue
        if mismatch:
            mismatches.append(mismatch)

    recommendations = []
    if violations:
        recommendations.append(f"{len(violations)} profile(s) hold an inconsistent premium record; run a sync")
    if orphaned:
        recommendations.append(f"{len(orphaned)} active premium profile(s) have no Stripe customer ID")
    if mismatches:
        recommendations.append(f"{len(mismatches)} sampled profile(s) disagree with Stripe; run a sync")
    if sample_errors:
        recommendations.append(f"{sample_errors} Stripe lookup(s) failed during sampling")

    return {
        "checkedAt": now.isoformat(),
        "profilesScanned": scanned,
        "profilesSampled": sampled,
        "invariantViolations": violations,
        "orphanedPremium": orphaned,
        "stripeMismatches": mismatches,
        "recommendations": recommendations,
        "healthy": not (violations or orphaned or mismatches or sample_errors),
    }
