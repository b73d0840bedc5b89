"""
Periodic subscription sync.

Pulls Stripe's view of subscriptions on a fixed cadence and reconciles it
into user profiles, repairing anything the webhooks and API flows missed.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from guardian.errors import GuardianError
from guardian.models.premium import SubscriptionStatus
from guardian.services.identity import IdentityDirectory
from guardian.services.profile_store import ProfileStore
from guardian.services.reconciler import Reconciler
from guardian.services.stripe_fields import ref_id, utcnow
from guardian.services.stripe_service import StripeService
from guardian.services.supabase import SupabaseClient
from guardian.services.webhook_handler import HANDLED_EVENTS, WebhookHandler

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_FAILURES = 3
JOB_ID = "subscription-sync"


@dataclass
class SyncReport:
    """Counters for one sync cycle."""

    started_at: str
    active_updated: int = 0
    expired_updated: int = 0
    canceled_updated: int = 0
    events_replayed: int = 0
    entity_errors: int = 0
    duration_ms: int = 0
    success: bool = True
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startedAt": self.started_at,
            "activeUpdated": self.active_updated,
            "expiredUpdated": self.expired_updated,
            "canceledUpdated": self.canceled_updated,
            "eventsReplayed": self.events_replayed,
            "entityErrors": self.entity_errors,
            "durationMs": self.duration_ms,
            "success": self.success,
            "error": self.error,
        }


@dataclass
class SyncState:
    last_sync_time: Optional[datetime] = None
    last_success_time: Optional[datetime] = None
    sync_count: int = 0
    consecutive_failures: int = 0
    recoveries: int = 0
    last_report: Optional[SyncReport] = None


class SubscriptionSyncService:
    """
    Single-flight periodic reconciliation.

    Phases, in order:
    - Adopt actives: every active Stripe subscription is projected onto its profile
    - Expire stale: profiles still active past their period end are re-checked
    - Absorb cancels: recently canceled subscriptions still shown active are closed
    - Replay events (optional): missed webhook events since the last good cycle
    """

    def __init__(
        self,
        stripe_service: StripeService,
        profiles: ProfileStore,
        reconciler: Reconciler,
        webhooks: WebhookHandler,
        identity: Optional[IdentityDirectory] = None,
        clients: Optional[List[SupabaseClient]] = None,
        interval_minutes: int = 60,
        active_limit: int = 100,
        canceled_limit: int = 50,
        replay_events: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.stripe = stripe_service
        self.profiles = profiles
        self.reconciler = reconciler
        self.webhooks = webhooks
        self.identity = identity
        self.clients = clients or []
        self.interval_minutes = interval_minutes
        self.active_limit = active_limit
        self.canceled_limit = canceled_limit
        self.replay_events = replay_events
        self.clock = clock
        self.state = SyncState()
        self._lock = asyncio.Lock()
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._cycles: Set[asyncio.Task] = set()

    # Scheduling

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    def start(self) -> None:
        """Schedule the cycle at a fixed interval, starting immediately."""
        if self.running:
            return
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._scheduler.add_job(
            self.run_cycle,
            "interval",
            minutes=self.interval_minutes,
            id=JOB_ID,
            next_run_time=self.clock(),
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(f"Subscription sync scheduled every {self.interval_minutes} minutes")

    async def stop(self) -> None:
        """Stop scheduling, then cancel and wait out any cycle still running."""
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        for task in list(self._cycles):
            task.cancel()
        if self._cycles:
            await asyncio.gather(*self._cycles, return_exceptions=True)
        logger.info("Subscription sync stopped")

    def trigger(self) -> None:
        """Run a cycle in the background without waiting for it."""
        task = asyncio.create_task(self.run_cycle())
        self._cycles.add(task)
        task.add_done_callback(self._cycles.discard)

    def status(self) -> Dict[str, Any]:
        last = self.state.last_sync_time
        return {
            "running": self.running,
            "inProgress": self.in_progress,
            "lastSyncTime": last.isoformat() if last else None,
            "syncCount": self.state.sync_count,
            "intervalMinutes": self.interval_minutes,
            "consecutiveFailures": self.state.consecutive_failures,
            "lastResult": self.state.last_report.to_dict() if self.state.last_report else None,
        }

    # Cycle

    async def run_cycle(self) -> Optional[SyncReport]:
        """
        Run one full sync unless another is already running.

        Returns:
            The cycle report, or None if the call was dropped.
        """
        if self._lock.locked():
            logger.warning("Sync already in progress; skipping")
            return None

        # Scheduled runs get their task from the scheduler; stop() must see them too
        task = asyncio.current_task()
        self._cycles.add(task)
        try:
            return await self._run_locked()
        finally:
            self._cycles.discard(task)

    async def _run_locked(self) -> SyncReport:
        async with self._lock:
            report = await self._cycle()

        if not report.success:
            self.state.consecutive_failures += 1
            logger.error(
                f"Sync failed ({self.state.consecutive_failures}/{MAX_CONSECUTIVE_FAILURES}): {report.error}"
            )
            if self.state.consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                report = await self._emergency_recovery()
        return report

    async def _cycle(self) -> SyncReport:
        started = self.clock()
        started_clock = time.monotonic()
        report = SyncReport(started_at=started.isoformat())
        logger.info("Starting subscription sync")
        try:
            await self._adopt_actives(report)
            await self._expire_stale(report)
            await self._absorb_cancels(report)
            if self.replay_events:
                await self._replay_events(report)
        except Exception as e:
            logger.exception(f"Sync cycle aborted: {e}")
            report.success = False
            report.error = str(e)

        report.duration_ms = int((time.monotonic() - started_clock) * 1000)
        self.state.last_sync_time = started
        self.state.sync_count += 1
        self.state.last_report = report
        if report.success:
            self.state.consecutive_failures = 0
            self.state.last_success_time = started
            logger.info(
                f"Sync completed in {report.duration_ms}ms: {report.active_updated} active, "
                f"{report.expired_updated} expired, {report.canceled_updated} canceled"
            )
        return report

    async def _emergency_recovery(self) -> SyncReport:
        """Reset state and connections, then try one fresh cycle."""
        logger.warning("Too many consecutive sync failures; starting emergency recovery")
        self.state.consecutive_failures = 0
        self.state.recoveries += 1
        for client in self.clients:
            await client.reset()
        if self.identity is not None:
            self.identity.clear()

        async with self._lock:
            report = await self._cycle()
        if report.success:
            logger.info("Emergency recovery succeeded")
        else:
            self.state.consecutive_failures = 1
            logger.error(f"Emergency recovery failed: {report.error}")
        return report

    # Phases

    async def _adopt_actives(self, report: SyncReport) -> None:
        subscriptions = await self.stripe.list_subscriptions(
            status=SubscriptionStatus.ACTIVE.value,
            limit=self.active_limit,
        )
        logger.info(f"Found {len(subscriptions)} active subscriptions in Stripe")
        for subscription in subscriptions:
            try:
                outcome = await self.reconciler.sync_customer(ref_id(subscription.get("customer")), subscription)
            except GuardianError as e:
                report.entity_errors += 1
                logger.error(f"Failed to sync active subscription {subscription.get('id')}: {e}")
                continue
            if outcome and outcome.written:
                report.active_updated += 1

    async def _expire_stale(self, report: SyncReport) -> None:
        now = self.clock()
        async for profile in self.profiles.iter_premium_profiles():
            premium = profile.premium
            if premium is None or not premium.is_active or not premium.stripe_subscription_id:
                continue
            if premium.current_period_end is None or premium.current_period_end >= now:
                continue
            try:
                subscription = await self.stripe.retrieve_subscription(premium.stripe_subscription_id)
                outcome = await self.reconciler.sync_profile(profile, subscription)
            except GuardianError as e:
                report.entity_errors += 1
                logger.error(f"Failed to check expired premium for {profile.id}: {e}")
                continue
            if outcome and outcome.written:
                report.expired_updated += 1
                logger.info(f"Refreshed lapsed premium for user {profile.id}")

    async def _absorb_cancels(self, report: SyncReport) -> None:
        subscriptions = await self.stripe.list_subscriptions(
            status=SubscriptionStatus.CANCELED.value,
            limit=self.canceled_limit,
        )
        for subscription in subscriptions:
            customer_id = ref_id(subscription.get("customer"))
            try:
                profile = await self.profiles.get_by_customer(customer_id) if customer_id else None
                if profile is None or profile.premium is None:
                    continue
                premium = profile.premium
                if premium.stripe_subscription_id != subscription.get("id") or not premium.is_active:
                    continue
                outcome = await self.reconciler.sync_profile(profile, subscription)
            except GuardianError as e:
                report.entity_errors += 1
                logger.error(f"Failed to sync canceled subscription {subscription.get('id')}: {e}")
                continue
            if outcome and outcome.written:
                report.canceled_updated += 1
                logger.info(f"Deactivated premium for user {profile.id}")

    async def _replay_events(self, report: SyncReport) -> None:
        since = self.state.last_success_time
        if since is None:
            return
        events = await self.stripe.list_events(HANDLED_EVENTS, created_after=since)
        # Stripe lists newest first; replay in the order they happened
        for event in reversed(events):
            if await self.webhooks.process(event):
                report.events_replayed += 1
            else:
                report.entity_errors += 1
