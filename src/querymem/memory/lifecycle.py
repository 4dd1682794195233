"""Lifecycle management: decay, expiry, purge and tier promotion.

Sweeps:
- Decay: idle, rarely used, barely trusted short-term units are archived
- Expiry: units past their expiry time are archived
- Purge: archived, barely trusted units untouched for months are hard-deleted
- Cleanup: units of any tier but long-term that sit unused below a
  confidence threshold are hard-deleted on demand

Promotion moves frequently used or long-lived units up one tier at a time
(short -> mid -> long), recomputing their expiry.

Every record transition is an independent store statement, so a sweep may
be abandoned at any point and failures on one record never abort a batch.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from querymem.config import QueryMemSettings
from querymem.errors import StoreUnavailable
from querymem.memory.canonical import Canonicalizer
from querymem.memory.policy import PolicyTable
from querymem.memory.types import MemoryUnit, SweepReport, Tier
from querymem.storage.sqlite import MemoryStore

logger = logging.getLogger(__name__)


class LifecycleManager:
    """Retention sweeps and usage-driven promotion over a MemoryStore.

    Args:
        store: MemoryStore holding the units
        policies: PolicyTable for tier expiry defaults and volatility
        settings: QueryMemSettings with the lifecycle thresholds
        canonicalizer: Canonicalizer resolving the category of a unit
    """

    def __init__(
        self,
        store: MemoryStore,
        policies: Optional[PolicyTable] = None,
        settings: Optional[QueryMemSettings] = None,
        canonicalizer: Optional[Canonicalizer] = None,
    ):
        self.store = store
        self.settings = settings or QueryMemSettings()
        self.policies = policies or PolicyTable(self.settings)
        self.canonicalizer = canonicalizer or Canonicalizer(self.settings)

    def _transition_batches(
        self,
        name: str,
        fetch: Callable[[], list[str]],
        apply: Callable[[str], bool],
    ) -> tuple[int, int]:
        """Apply a transition to fetched ids until a batch makes no progress.

        Returns:
            (succeeded, failed) counts
        """
        succeeded = failed = 0
        attempted: set[str] = set()
        while True:
            batch = [unit_id for unit_id in fetch() if unit_id not in attempted]
            if not batch:
                break
            progress = 0
            for unit_id in batch:
                attempted.add(unit_id)
                try:
                    if apply(unit_id):
                        succeeded += 1
                        progress += 1
                except StoreUnavailable as e:
                    failed += 1
                    logger.warning(f"{name} failed for {unit_id}: {e}", exc_info=True)
            if progress == 0:
                break
        return succeeded, failed

    # =========================================================================
    # Sweeps
    # =========================================================================

    def sweep_decay(self, now: Optional[datetime] = None) -> tuple[int, int]:
        """Archive idle short-term units with low use and low confidence."""
        now = now or datetime.now()
        s = self.settings
        idle_before = now - timedelta(days=s.decay_idle_days)

        def fetch() -> list[str]:
            return self.store.find_decay_candidates(
                idle_before, s.decay_max_access, s.decay_max_confidence, s.sweep_batch_size
            )

        decayed, failed = self._transition_batches(
            "Decay", fetch, lambda unit_id: self.store.archive_unit(unit_id, now)
        )
        if decayed or failed:
            logger.info(f"Decay sweep archived {decayed} units ({failed} failed)")
        return decayed, failed

    def sweep_expiry(self, now: Optional[datetime] = None) -> tuple[int, int]:
        """Archive every non-archived unit whose expiry has passed."""
        now = now or datetime.now()

        def fetch() -> list[str]:
            units = self.store.find_by_tier_expiry(
                expires_before=now, limit=self.settings.sweep_batch_size
            )
            return [unit.id for unit in units]

        expired, failed = self._transition_batches(
            "Expiry", fetch, lambda unit_id: self.store.archive_unit(unit_id, now)
        )
        if expired or failed:
            logger.info(f"Expiry sweep archived {expired} units ({failed} failed)")
        return expired, failed

    def purge(self, now: Optional[datetime] = None) -> tuple[int, int]:
        """Hard-delete archived units not updated for purge_after_days.

        Archived units at or above purge_max_confidence are kept.
        """
        now = now or datetime.now()
        s = self.settings
        updated_before = now - timedelta(days=s.purge_after_days)

        def fetch() -> list[str]:
            return self.store.find_purge_candidates(
                updated_before, s.purge_max_confidence, s.sweep_batch_size
            )

        purged, failed = self._transition_batches("Purge", fetch, self.store.delete_unit)
        if purged or failed:
            logger.info(f"Purge removed {purged} archived units ({failed} failed)")
        return purged, failed

    def cleanup_old(
        self,
        days: Optional[float] = None,
        confidence_threshold: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> tuple[int, int]:
        """Hard-delete units unused for `days` with confidence below the threshold.

        Long-term units are never deleted here.

        Args:
            days: Idle age in days, defaults to cleanup_old_days
            confidence_threshold: Exclusive confidence ceiling, defaults to
                cleanup_old_max_confidence
            now: Reference time
        """
        now = now or datetime.now()
        s = self.settings
        days = s.cleanup_old_days if days is None else days
        if confidence_threshold is None:
            confidence_threshold = s.cleanup_old_max_confidence
        if days < 0 or not 0.0 <= confidence_threshold <= 1.0:
            raise ValueError(
                f"Invalid cleanup bounds: days={days}, confidence_threshold={confidence_threshold}"
            )
        accessed_before = now - timedelta(days=days)

        def fetch() -> list[str]:
            return self.store.find_stale_candidates(
                accessed_before, confidence_threshold, s.sweep_batch_size
            )

        removed, failed = self._transition_batches("Cleanup", fetch, self.store.delete_unit)
        if removed or failed:
            logger.info(
                f"Cleanup removed {removed} units idle for {days} days "
                f"below confidence {confidence_threshold} ({failed} failed)"
            )
        return removed, failed

    def run_all(self, now: Optional[datetime] = None) -> SweepReport:
        """Run expiry, decay and purge sweeps in that order."""
        now = now or datetime.now()
        expired, expiry_failed = self.sweep_expiry(now)
        decayed, decay_failed = self.sweep_decay(now)
        purged, purge_failed = self.purge(now)
        report = SweepReport(
            decayed=decayed,
            expired=expired,
            purged=purged,
            failed=expiry_failed + decay_failed + purge_failed,
        )
        logger.info(f"Lifecycle sweep complete: {report.as_dict()}")
        return report

    # =========================================================================
    # Promotion
    # =========================================================================

    def next_tier(self, unit: MemoryUnit, now: Optional[datetime] = None) -> Optional[Tier]:
        """Tier a unit qualifies for by usage or age, None to stay put."""
        now = now or datetime.now()
        s = self.settings
        age = now - unit.usage.created_at
        access = unit.usage.access_count
        tier = unit.storage.tier

        if tier == Tier.SHORT_TERM and (
            access > s.promote_mid_access or age > timedelta(days=s.promote_mid_age_days)
        ):
            return Tier.MID_TERM
        if tier == Tier.MID_TERM and (
            access > s.promote_long_access or age > timedelta(days=s.promote_long_age_days)
        ):
            return Tier.LONG_TERM
        return None

    def is_volatile(self, unit: MemoryUnit) -> bool:
        """Whether the unit, or any step of a compound unit, has a volatile policy."""
        calls = [(unit.tool_name, unit.query.original_parameters)]
        calls += [(step.get("toolName", ""), step.get("parameters", {})) for step in unit.steps()]
        for tool_name, params in calls:
            category = self.canonicalizer.category_for(tool_name, params)
            if self.policies.policy_for(tool_name, category).volatile:
                return True
        return False

    def promote(self, unit: MemoryUnit, now: Optional[datetime] = None) -> Optional[Tier]:
        """Move a unit up one tier if it qualifies.

        Expired, zero-confidence and volatile units are never promoted;
        volatile results keep their short expiry however often they are hit.

        Returns:
            The new tier, or None if the unit stayed where it was
        """
        now = now or datetime.now()
        if unit.result.confidence <= 0.0 or unit.is_expired(now):
            return None
        tier = self.next_tier(unit, now)
        if tier is None or self.is_volatile(unit):
            return None

        expires_at = self.policies.expiry_for(tier, now=now)
        if not self.store.set_tier(unit.id, tier, expires_at, now):
            return None
        unit.storage.tier = tier
        unit.storage.expires_at = expires_at
        logger.debug(f"Promoted {unit.id} to {tier.value}")
        return tier

    def promote_all(self, now: Optional[datetime] = None) -> tuple[int, int]:
        """Promote every qualifying short- and mid-term unit one step."""
        now = now or datetime.now()
        promoted = failed = 0
        for tier in (Tier.MID_TERM, Tier.SHORT_TERM):
            for unit in self.store.find_by_tier_expiry(tier=tier):
                try:
                    if self.promote(unit, now):
                        promoted += 1
                except StoreUnavailable as e:
                    failed += 1
                    logger.warning(f"Promotion failed for {unit.id}: {e}", exc_info=True)
        if promoted or failed:
            logger.info(f"Promoted {promoted} units ({failed} failed)")
        return promoted, failed


class LifecycleScheduler:
    """Periodic background driver of the LifecycleManager.

    Runs the expiry/decay sweep, the purge and a stats refresh on their own
    intervals. Sweeps run in a worker thread so request handling on the
    event loop is never blocked. An interval of 0 disables that loop.

    Args:
        manager: LifecycleManager to drive
        settings: QueryMemSettings with the intervals
    """

    def __init__(self, manager: LifecycleManager, settings: Optional[QueryMemSettings] = None):
        self.manager = manager
        self.settings = settings or manager.settings
        self.latest_stats: dict[str, Any] = {}
        self.last_report: Optional[SweepReport] = None
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def _sweep(self) -> None:
        now = datetime.now()
        expired, expiry_failed = self.manager.sweep_expiry(now)
        decayed, decay_failed = self.manager.sweep_decay(now)
        self.last_report = SweepReport(
            decayed=decayed, expired=expired, failed=expiry_failed + decay_failed
        )

    def _purge(self) -> None:
        self.manager.purge()

    def _refresh_stats(self) -> None:
        self.latest_stats = self.manager.store.stats()

    async def _loop(self, name: str, interval: float, job: Callable[[], None]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(job)
            except Exception as exc:
                logger.warning(f"{name} task error: {exc}", exc_info=True)

    def start(self) -> None:
        """Start the background loops on the running event loop."""
        if self.running:
            return
        s = self.settings
        loops = [
            ("Lifecycle sweep", s.sweep_interval_seconds, self._sweep),
            ("Purge", s.purge_interval_seconds, self._purge),
            ("Stats refresh", s.stats_interval_seconds, self._refresh_stats),
        ]
        self._tasks = [
            asyncio.create_task(self._loop(name, interval, job))
            for name, interval, job in loops
            if interval > 0
        ]
        logger.info(f"Started {len(self._tasks)} lifecycle background tasks")

    async def stop(self) -> None:
        """Cancel the background loops and wait for them to finish."""
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
