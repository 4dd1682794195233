"""QueryMemory: the service object tool executors talk to.

All components are wired together here around one injected MemoryStore:

    store = MemoryStore(ephemeral=True)
    memory = QueryMemory(store)

    unit = await memory.lookup("find_item", {"itemName": "笔", "exactMatch": True})
    if unit is None:
        result = run_find_item(...)
        await memory.store("find_item", {"itemName": "笔", "exactMatch": True}, result)

Hit statistics, tier promotion and link discovery run on a bounded
BackgroundTasks queue; call drain() before shutdown (or in tests) to wait
for them.
"""

import asyncio
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

from querymem.config import QueryMemSettings
from querymem.errors import NotFoundError, PolicyViolation, StoreUnavailable, ValidationError
from querymem.memory.canonical import Canonicalizer
from querymem.memory.compound import CompoundAggregator, ContextTracker
from querymem.memory.invalidation import InvalidationEngine
from querymem.memory.lifecycle import LifecycleManager
from querymem.memory.policy import Policy, PolicyTable
from querymem.memory.retrieval import RetrievalPipeline
from querymem.memory.similarity import SimilarityScorer
from querymem.memory.tasks import BackgroundTasks
from querymem.memory.types import (
    ChangeKind,
    CompoundStep,
    Dependency,
    JSONValue,
    MemoryStats,
    MemoryUnit,
    QueryInfo,
    ResultInfo,
    StorageInfo,
    StoreOptions,
    SweepReport,
    UsageStats,
)
from querymem.storage.sqlite import MemoryStore

logger = logging.getLogger(__name__)

StepLike = Union[CompoundStep, Mapping[str, Any]]


def _coerce_step(step: StepLike) -> CompoundStep:
    """Accept CompoundStep objects or {toolName, parameters, result} dicts."""
    if isinstance(step, CompoundStep):
        return step
    tool_name = step.get("toolName") or step.get("tool_name")
    parameters = step.get("parameters", step.get("params", {}))
    if not isinstance(tool_name, str) or not isinstance(parameters, Mapping):
        raise ValueError(f"Malformed compound step: {step!r}")
    return CompoundStep(tool_name=tool_name, parameters=dict(parameters), result=step.get("result"))


class QueryMemory:
    """Semantic query memory over a single store.

    Args:
        store: MemoryStore to read and write units
        settings: QueryMemSettings (default: loaded from environment)
        canonicalizer: Optional Canonicalizer override
        scorer: Optional SimilarityScorer override
        policies: Optional PolicyTable override
        tasks: Optional BackgroundTasks queue override
    """

    def __init__(
        self,
        store: MemoryStore,
        settings: Optional[QueryMemSettings] = None,
        canonicalizer: Optional[Canonicalizer] = None,
        scorer: Optional[SimilarityScorer] = None,
        policies: Optional[PolicyTable] = None,
        tasks: Optional[BackgroundTasks] = None,
    ):
        self.settings = settings or QueryMemSettings()
        self.memory_store = store
        self.canonicalizer = canonicalizer or Canonicalizer(self.settings)
        self.scorer = scorer or SimilarityScorer(self.settings)
        self.policies = policies or PolicyTable(self.settings)
        self.tasks = tasks or BackgroundTasks(self.settings.task_concurrency)

        self.pipeline = RetrievalPipeline(
            store, self.canonicalizer, self.scorer, self.policies, self.settings
        )
        self.aggregator = CompoundAggregator(self.canonicalizer, self.policies, self.settings)
        self.contexts = ContextTracker(self.canonicalizer, self.settings)
        self.invalidation = InvalidationEngine(store, self.settings)
        self.lifecycle = LifecycleManager(store, self.policies, self.settings, self.canonicalizer)

    # =========================================================================
    # Read path
    # =========================================================================

    async def lookup(
        self,
        tool_name: str,
        params: Any,
        context_id: Optional[str] = None,
        confidence_threshold: Optional[float] = None,
    ) -> Optional[MemoryUnit]:
        """Return a reusable unit for the call, or None on miss.

        Never raises for bad input or store failures; those are misses.
        The returned unit already reflects this hit in its usage counters;
        the durable update happens in the background.
        """
        match = self.pipeline.lookup(tool_name, params, context_id, confidence_threshold)
        if match is None:
            self.tasks.submit("record_lookup", self._record_lookup, "miss")
            return None

        unit = match.unit
        now = datetime.now()
        unit.usage.access_count += 1
        unit.usage.hit_count += 1
        unit.usage.last_accessed_at = now
        self.tasks.submit("record_hit", self._record_hit, unit.id, now)
        return unit

    def _record_lookup(self, outcome: str) -> None:
        self.memory_store.record_lookup(outcome)

    def _record_hit(self, unit_id: str, now: datetime) -> None:
        self.memory_store.record_access(unit_id, now=now)
        self.memory_store.record_lookup("hit")
        fresh = self.memory_store.get_unit(unit_id)
        if fresh is not None:
            self.lifecycle.promote(fresh, now)

    # =========================================================================
    # Write path
    # =========================================================================

    def _policy_for(self, tool_name: str, params: Any) -> Policy:
        """Resolve the policy of a call.

        Raises:
            PolicyViolation: If memory is disabled for the tool or category
        """
        category = self.canonicalizer.category_for(tool_name, params)
        policy = self.policies.policy_for(tool_name, category)
        if not policy.memory_enabled:
            raise PolicyViolation(tool_name, category)
        return policy

    async def store(
        self,
        tool_name: str,
        params: Any,
        result: JSONValue,
        options: Optional[StoreOptions] = None,
    ) -> Optional[MemoryUnit]:
        """Cache the result of a tool call.

        Args:
            tool_name: Name of the tool that produced the result
            params: Parameters the tool was called with
            result: Result payload, stored verbatim
            options: Context, extra dependencies and tier/expiry/confidence
                overrides

        Returns:
            The stored unit, or None if memory is disabled for this call

        Raises:
            ValidationError: If params cannot be canonicalized
            StoreUnavailable: If the store write fails
        """
        options = options or StoreOptions()
        canon = self.canonicalizer
        abstract = canon.abstract(tool_name, params)

        try:
            policy = self._policy_for(tool_name, params)
        except PolicyViolation as e:
            logger.debug(f"Store skipped: {e}")
            return None

        now = datetime.now()
        tier = options.tier or policy.tier
        confidence = (
            policy.initial_confidence
            if options.initial_confidence is None
            else options.initial_confidence
        )
        dependencies = list(options.dependencies) + canon.extract_dependencies(tool_name, params)

        unit = MemoryUnit(
            id=self.memory_store.generate_id(),
            query=QueryInfo(
                tool_name=tool_name,
                fingerprint=canon.fingerprint_abstract(tool_name, abstract),
                original_parameters=dict(params),
                abstract_parameters=abstract,
                complexity_score=canon.complexity_score(tool_name, params),
                context_id=options.context_id,
                signature=canon.key_signature(tool_name, params),
            ),
            result=ResultInfo(payload=result, computed_at=now, confidence=confidence),
            usage=UsageStats(last_accessed_at=now, created_at=now),
            storage=StorageInfo(
                tier=tier,
                expires_at=self.policies.expiry_for(tier, policy, options.expiry_days, now),
                tags=canon.generate_tags(tool_name, params),
                updated_at=now,
            ),
            dependencies=dependencies,
        )
        self.memory_store.add_unit(unit)
        logger.debug(
            f"Stored {unit.id} for {tool_name} "
            f"(tier={tier.value}, confidence={confidence:.2f})"
        )

        if options.context_id and self.contexts.get(options.context_id) is not None:
            self.contexts.add_step(options.context_id, tool_name, dict(params), result, now)

        self.tasks.submit(
            "link_discovery", self._discover_links, unit.id, unit.query.fingerprint, options.context_id
        )
        return unit

    async def store_compound(
        self,
        context_id: str,
        steps: list[StepLike],
        dependencies: Optional[list[Dependency]] = None,
    ) -> Optional[MemoryUnit]:
        """Cache a chain of tool calls as one compound unit.

        Steps whose tool or category has memory disabled are left out.

        Compounds scoring below compound_mid_term_complexity are stored
        short-term at compound_short_term_confidence (0.7). Under the default
        confidence threshold of 0.8 they are only served to lookups passing a
        threshold of 0.7 or lower, unless that setting is raised.

        Returns:
            The stored compound unit, or None when no step may be cached

        Raises:
            ValidationError: If context_id is missing or a step is malformed
            StoreUnavailable: If the store write fails
        """
        allowed: list[CompoundStep] = []
        for step in (_coerce_step(s) for s in steps):
            try:
                self._policy_for(step.tool_name, step.parameters)
            except PolicyViolation as e:
                logger.debug(f"Compound step skipped: {e}")
                continue
            allowed.append(step)

        if not allowed:
            logger.debug(f"Compound store skipped for context {context_id}: no cacheable steps")
            return None

        unit = self.aggregator.build(context_id, allowed, dependencies)
        self.memory_store.add_unit(unit)
        logger.info(
            f"Stored compound {unit.id} for context {context_id} "
            f"({len(allowed)} steps, complexity={unit.query.complexity_score:.1f}, "
            f"tier={unit.storage.tier.value})"
        )
        self.tasks.submit(
            "link_discovery", self._discover_links, unit.id, unit.query.fingerprint, context_id
        )
        return unit

    async def store_context(self, context_id: str) -> Optional[MemoryUnit]:
        """Store a tracked context as a compound unit and mark it complete.

        Returns:
            The compound unit, or None if the context is unknown or not
            complex enough to be a compound query
        """
        context = self.contexts.get(context_id)
        if context is None or not self.contexts.is_compound(context_id):
            return None
        unit = await self.store_compound(context_id, list(context.steps))
        self.contexts.complete(context_id)
        return unit

    def _discover_links(self, unit_id: str, fingerprint: str, context_id: Optional[str]) -> None:
        """Relate a new unit to units of the same template or context."""
        related = self.memory_store.find_by_fingerprint(fingerprint, live_only=False)
        if context_id:
            related += self.memory_store.find_by_context(context_id, live_only=False)

        linked: set[str] = set()
        for other in related:
            if other.id == unit_id or other.id in linked:
                continue
            if len(linked) >= self.settings.fuzzy_scan_limit:
                break
            self.memory_store.add_link(unit_id, other.id)
            linked.add(other.id)
        if linked:
            logger.debug(f"Linked {unit_id} to {len(linked)} related units")

    async def cached_call(
        self,
        tool_name: str,
        params: Mapping[str, Any],
        execute: Callable[[], Awaitable[JSONValue]],
        options: Optional[StoreOptions] = None,
        confidence_threshold: Optional[float] = None,
    ) -> tuple[JSONValue, bool]:
        """Serve a tool call from memory or execute and cache it.

        A truthy 'skipMemory' parameter bypasses both lookup and store.
        Failing to cache the fresh result is logged; the result is still
        returned.

        Returns:
            (payload, from_memory)
        """
        skip = bool(params.get("skipMemory"))
        context_id = options.context_id if options else None
        if not skip:
            unit = await self.lookup(tool_name, params, context_id, confidence_threshold)
            if unit is not None:
                return unit.result.payload, True

        result = await execute()
        if not skip:
            try:
                await self.store(tool_name, params, result, options)
            except (ValidationError, StoreUnavailable) as e:
                logger.warning(f"Result of {tool_name} not cached: {e}")
        return result, False

    # =========================================================================
    # Explicit trust management
    # =========================================================================

    async def get(self, memory_id: str) -> Optional[MemoryUnit]:
        return self.memory_store.get_unit(memory_id)

    async def require(self, memory_id: str) -> MemoryUnit:
        """Get a unit or raise NotFoundError."""
        unit = self.memory_store.get_unit(memory_id)
        if unit is None:
            raise NotFoundError(memory_id)
        return unit

    async def validate(self, memory_id: str) -> bool:
        """Confirm a unit: confidence 1.0 and validated. False if unknown."""
        ok = self.memory_store.validate_unit(memory_id)
        if ok:
            logger.info(f"Validated memory {memory_id}")
        return ok

    async def invalidate(self, memory_id: str) -> bool:
        """Force-expire a unit: confidence 0, expires now. False if unknown."""
        ok = self.memory_store.expire_unit(memory_id)
        if ok:
            logger.info(f"Invalidated memory {memory_id}")
        return ok

    async def on_entity_change(
        self,
        entity_type: str,
        entity_id: str,
        change_kind: Union[ChangeKind, str],
    ) -> int:
        """Propagate an entity change to dependent units.

        Returns:
            Number of affected units
        """
        return await asyncio.to_thread(
            self.invalidation.on_entity_change, entity_type, entity_id, change_kind
        )

    # =========================================================================
    # Maintenance and statistics
    # =========================================================================

    async def sweep(self) -> SweepReport:
        """Run the expiry, decay and purge sweeps."""
        return await asyncio.to_thread(self.lifecycle.run_all)

    async def promote_all(self) -> int:
        promoted, _ = await asyncio.to_thread(self.lifecycle.promote_all)
        return promoted

    async def cleanup_old(
        self, days: Optional[float] = None, confidence_threshold: Optional[float] = None
    ) -> int:
        """Delete non-long-term units idle for `days` and trusted below the threshold."""
        removed, _ = await asyncio.to_thread(self.lifecycle.cleanup_old, days, confidence_threshold)
        return removed

    async def stats(self) -> MemoryStats:
        raw = self.memory_store.stats()
        lookups = raw["hits"] + raw["misses"]
        return MemoryStats(
            total=raw["total"],
            by_tier=raw["by_tier"],
            by_confidence_band=raw["by_confidence_band"],
            expired_count=raw["expired_count"],
            validated_count=raw["validated_count"],
            hit_rate=raw["hits"] / lookups if lookups else 0.0,
            tasks=self.tasks.counters(),
        )

    async def drain(self) -> None:
        """Wait for outstanding background work."""
        await self.tasks.drain()

    async def close(self) -> None:
        """Drain background work and close the store."""
        await self.drain()
        self.memory_store.close()
