"""Tests for LifecycleManager and LifecycleScheduler."""

import asyncio
from datetime import datetime, timedelta
from typing import Optional

import pytest

from querymem.config import QueryMemSettings
from querymem.errors import StoreUnavailable
from querymem.memory.compound import COMPOUND_TOOL_NAME
from querymem.memory.lifecycle import LifecycleManager, LifecycleScheduler
from querymem.memory.types import (
    MemoryUnit,
    QueryInfo,
    ResultInfo,
    StorageInfo,
    SweepReport,
    Tier,
    UsageStats,
)
from querymem.storage.sqlite import MemoryStore

NOW = datetime(2026, 3, 1, 12, 0, 0)


def add(
    store: MemoryStore,
    tier: Tier,
    expires_at: Optional[datetime] = None,
    confidence: float = 0.8,
    access_count: int = 1,
    created_at: datetime = NOW,
    last_accessed_at: datetime = NOW,
    updated_at: datetime = NOW,
    tool_name: str = "query_location",
    params: Optional[dict] = None,
) -> str:
    params = params or {"name": "图书馆"}
    unit = MemoryUnit(
        id=store.generate_id(),
        query=QueryInfo(
            tool_name=tool_name,
            fingerprint="fp",
            original_parameters=params,
            abstract_parameters=params,
            is_compound=tool_name == COMPOUND_TOOL_NAME,
        ),
        result=ResultInfo(payload={"floor": 3}, computed_at=created_at, confidence=confidence),
        usage=UsageStats(access_count=access_count, last_accessed_at=last_accessed_at, created_at=created_at),
        storage=StorageInfo(tier=tier, expires_at=expires_at, updated_at=updated_at),
    )
    return store.add_unit(unit)


class TestSweeps:
    """Tests for expiry, decay and purge sweeps."""

    @pytest.fixture
    def store(self):
        store = MemoryStore(ephemeral=True)
        yield store
        store.close()

    @pytest.fixture
    def manager(self, store):
        return LifecycleManager(store)

    def test_expiry_sweep(self, store, manager):
        long_term = add(store, Tier.LONG_TERM, expires_at=None)
        expired = add(store, Tier.SHORT_TERM, expires_at=NOW - timedelta(days=1))
        fresh = add(store, Tier.MID_TERM, expires_at=NOW + timedelta(days=1))

        assert manager.sweep_expiry(NOW) == (1, 0)
        assert store.get_unit(long_term).storage.tier == Tier.LONG_TERM
        assert store.get_unit(expired).storage.tier == Tier.ARCHIVED
        assert store.get_unit(fresh).storage.tier == Tier.MID_TERM

    def test_expiry_sweep_idempotent(self, store, manager):
        add(store, Tier.SHORT_TERM, expires_at=NOW - timedelta(days=1))
        assert manager.sweep_expiry(NOW) == (1, 0)
        assert manager.sweep_expiry(NOW) == (0, 0)

    def test_expiry_sweep_in_batches(self, store):
        manager = LifecycleManager(store, settings=QueryMemSettings(sweep_batch_size=2))
        for _ in range(5):
            add(store, Tier.SHORT_TERM, expires_at=NOW - timedelta(hours=1))
        assert manager.sweep_expiry(NOW) == (5, 0)
        assert store.count_units(Tier.ARCHIVED) == 5

    def test_decay_sweep(self, store, manager):
        idle = NOW - timedelta(days=31)
        stale = add(store, Tier.SHORT_TERM, confidence=0.2, last_accessed_at=idle)
        popular = add(store, Tier.SHORT_TERM, confidence=0.2, last_accessed_at=idle, access_count=3)
        trusted = add(store, Tier.SHORT_TERM, confidence=0.3, last_accessed_at=idle)
        recent = add(store, Tier.SHORT_TERM, confidence=0.2, last_accessed_at=NOW - timedelta(days=29))

        assert manager.sweep_decay(NOW) == (1, 0)
        assert store.get_unit(stale).storage.tier == Tier.ARCHIVED
        for unit_id in (popular, trusted, recent):
            assert store.get_unit(unit_id).storage.tier == Tier.SHORT_TERM

    def test_purge(self, store, manager):
        old = add(store, Tier.ARCHIVED, confidence=0.2, updated_at=NOW - timedelta(days=181))
        young = add(store, Tier.ARCHIVED, confidence=0.2, updated_at=NOW - timedelta(days=10))
        live = add(store, Tier.MID_TERM, confidence=0.2, updated_at=NOW - timedelta(days=365))

        assert manager.purge(NOW) == (1, 0)
        assert store.get_unit(old) is None
        assert store.get_unit(young) is not None
        assert store.get_unit(live) is not None

    def test_purge_keeps_trusted_archived_units(self, store, manager):
        trusted = add(store, Tier.ARCHIVED, confidence=0.8, updated_at=NOW - timedelta(days=400))
        assert manager.purge(NOW) == (0, 0)
        assert store.get_unit(trusted) is not None

    def test_purge_confidence_ceiling_configurable(self, store):
        manager = LifecycleManager(store, settings=QueryMemSettings(purge_max_confidence=1.0))
        trusted = add(store, Tier.ARCHIVED, confidence=0.8, updated_at=NOW - timedelta(days=400))
        assert manager.purge(NOW) == (1, 0)
        assert store.get_unit(trusted) is None

    def test_cleanup_old(self, store, manager):
        idle = NOW - timedelta(days=31)
        stale = add(store, Tier.MID_TERM, confidence=0.4, last_accessed_at=idle)
        trusted = add(store, Tier.MID_TERM, confidence=0.5, last_accessed_at=idle)
        long_term = add(store, Tier.LONG_TERM, confidence=0.1, last_accessed_at=idle)
        recent = add(store, Tier.SHORT_TERM, confidence=0.1, last_accessed_at=NOW - timedelta(days=29))

        assert manager.cleanup_old(now=NOW) == (1, 0)
        assert store.get_unit(stale) is None
        for unit_id in (trusted, long_term, recent):
            assert store.get_unit(unit_id) is not None

    def test_cleanup_old_custom_bounds(self, store, manager):
        unit_id = add(store, Tier.SHORT_TERM, confidence=0.6, last_accessed_at=NOW - timedelta(days=8))
        assert manager.cleanup_old(days=30, confidence_threshold=0.7, now=NOW) == (0, 0)
        assert manager.cleanup_old(days=7, confidence_threshold=0.7, now=NOW) == (1, 0)
        assert store.get_unit(unit_id) is None

    def test_cleanup_old_rejects_bad_bounds(self, manager):
        with pytest.raises(ValueError):
            manager.cleanup_old(days=-1, now=NOW)
        with pytest.raises(ValueError):
            manager.cleanup_old(confidence_threshold=1.5, now=NOW)

    def test_run_all(self, store, manager):
        add(store, Tier.SHORT_TERM, expires_at=NOW - timedelta(days=1))
        add(store, Tier.SHORT_TERM, confidence=0.1, last_accessed_at=NOW - timedelta(days=60),
            expires_at=NOW + timedelta(days=1))
        add(store, Tier.ARCHIVED, confidence=0.2, updated_at=NOW - timedelta(days=200))

        report = manager.run_all(NOW)
        assert report == SweepReport(decayed=1, expired=1, purged=1, failed=0)

    def test_failed_record_counted_and_skipped(self, store, manager, mocker):
        first = add(store, Tier.SHORT_TERM, expires_at=NOW - timedelta(days=2))
        second = add(store, Tier.SHORT_TERM, expires_at=NOW - timedelta(days=1))
        original = store.archive_unit

        def flaky(unit_id, now=None):
            if unit_id == first:
                raise StoreUnavailable("database is locked")
            return original(unit_id, now)

        mocker.patch.object(store, "archive_unit", side_effect=flaky)
        assert manager.sweep_expiry(NOW) == (1, 1)
        assert store.get_unit(second).storage.tier == Tier.ARCHIVED


class TestPromotion:
    """Tests for usage- and age-driven tier promotion."""

    @pytest.fixture
    def store(self):
        store = MemoryStore(ephemeral=True)
        yield store
        store.close()

    @pytest.fixture
    def manager(self, store):
        return LifecycleManager(store)

    def test_short_to_mid_by_access(self, store, manager):
        unit_id = add(store, Tier.SHORT_TERM, expires_at=NOW + timedelta(days=1), access_count=6)
        unit = store.get_unit(unit_id)
        assert manager.promote(unit, NOW) == Tier.MID_TERM
        loaded = store.get_unit(unit_id)
        assert loaded.storage.tier == Tier.MID_TERM
        assert loaded.storage.expires_at == NOW + timedelta(days=14)
        assert unit.storage.tier == Tier.MID_TERM

    def test_short_to_mid_by_age(self, store, manager):
        unit_id = add(store, Tier.SHORT_TERM, expires_at=NOW + timedelta(days=1),
                      created_at=NOW - timedelta(days=4))
        assert manager.promote(store.get_unit(unit_id), NOW) == Tier.MID_TERM

    def test_mid_to_long_clears_expiry(self, store, manager):
        unit_id = add(store, Tier.MID_TERM, expires_at=NOW + timedelta(days=5), access_count=21)
        assert manager.promote(store.get_unit(unit_id), NOW) == Tier.LONG_TERM
        assert store.get_unit(unit_id).storage.expires_at is None

    def test_one_step_at_a_time(self, store, manager):
        unit_id = add(store, Tier.SHORT_TERM, expires_at=NOW + timedelta(days=1), access_count=50)
        assert manager.promote(store.get_unit(unit_id), NOW) == Tier.MID_TERM

    def test_not_qualified(self, store, manager):
        unit_id = add(store, Tier.SHORT_TERM, expires_at=NOW + timedelta(days=1), access_count=5)
        assert manager.promote(store.get_unit(unit_id), NOW) is None

    def test_long_term_stays(self, store, manager):
        unit_id = add(store, Tier.LONG_TERM, access_count=100)
        assert manager.promote(store.get_unit(unit_id), NOW) is None

    def test_expired_not_promoted(self, store, manager):
        unit_id = add(store, Tier.SHORT_TERM, expires_at=NOW - timedelta(days=1), access_count=10)
        assert manager.promote(store.get_unit(unit_id), NOW) is None

    def test_zero_confidence_not_promoted(self, store, manager):
        unit_id = add(store, Tier.MID_TERM, expires_at=NOW + timedelta(days=1), confidence=0.0, access_count=30)
        assert manager.promote(store.get_unit(unit_id), NOW) is None

    def test_volatile_not_promoted(self, store, manager):
        unit_id = add(
            store,
            Tier.SHORT_TERM,
            expires_at=NOW + timedelta(hours=1),
            access_count=10,
            tool_name="query_task",
            params={"taskId": "t1", "detail": True},
        )
        assert manager.promote(store.get_unit(unit_id), NOW) is None
        assert store.get_unit(unit_id).storage.tier == Tier.SHORT_TERM

    def test_compound_with_volatile_step_not_promoted(self, store, manager):
        steps = [
            {"toolName": "query_contact", "parameters": {"search": "王小明"}},
            {"toolName": "query_task", "parameters": {"taskId": "t1"}},
        ]
        unit_id = add(
            store,
            Tier.SHORT_TERM,
            expires_at=NOW + timedelta(days=1),
            access_count=10,
            tool_name=COMPOUND_TOOL_NAME,
            params={"steps": steps},
        )
        assert manager.promote(store.get_unit(unit_id), NOW) is None

    def test_promote_all(self, store, manager):
        add(store, Tier.SHORT_TERM, expires_at=NOW + timedelta(days=1), access_count=6)
        add(store, Tier.MID_TERM, expires_at=NOW + timedelta(days=1), access_count=25)
        add(store, Tier.SHORT_TERM, expires_at=NOW + timedelta(days=1))
        assert manager.promote_all(NOW) == (2, 0)
        assert store.count_units(Tier.LONG_TERM) == 1
        assert store.count_units(Tier.MID_TERM) == 1


class TestLifecycleScheduler:
    """Tests for the periodic background driver."""

    @pytest.fixture
    def store(self):
        store = MemoryStore(ephemeral=True)
        yield store
        store.close()

    @pytest.mark.asyncio
    async def test_runs_jobs_and_stops(self, store):
        settings = QueryMemSettings(
            sweep_interval_seconds=0.01, purge_interval_seconds=0, stats_interval_seconds=0.01
        )
        add(store, Tier.SHORT_TERM, expires_at=datetime.now() - timedelta(days=1))
        scheduler = LifecycleScheduler(LifecycleManager(store, settings=settings), settings)

        scheduler.start()
        assert scheduler.running is True
        assert len(scheduler._tasks) == 2

        for _ in range(100):
            if scheduler.last_report is not None and scheduler.latest_stats:
                break
            await asyncio.sleep(0.01)

        await scheduler.stop()
        assert scheduler.running is False
        assert scheduler.last_report is not None
        assert store.count_units(Tier.ARCHIVED) == 1
        assert scheduler.latest_stats["total"] == 1

    @pytest.mark.asyncio
    async def test_job_failure_keeps_loop_alive(self, store, mocker):
        settings = QueryMemSettings(
            sweep_interval_seconds=0.01, purge_interval_seconds=0, stats_interval_seconds=0
        )
        manager = LifecycleManager(store, settings=settings)
        sweep = mocker.patch.object(manager, "sweep_expiry", side_effect=RuntimeError("boom"))
        scheduler = LifecycleScheduler(manager)

        scheduler.start()
        for _ in range(100):
            if sweep.call_count >= 2:
                break
            await asyncio.sleep(0.01)
        assert scheduler.running is True
        await scheduler.stop()
        assert sweep.call_count >= 2

    @pytest.mark.asyncio
    async def test_all_intervals_disabled(self, store):
        settings = QueryMemSettings(
            sweep_interval_seconds=0, purge_interval_seconds=0, stats_interval_seconds=0
        )
        scheduler = LifecycleScheduler(LifecycleManager(store, settings=settings))
        scheduler.start()
        assert scheduler.running is False
        await scheduler.stop()
