"""Compound queries: session context tracking and aggregate memory units.

A compound context is a chain of related tool calls made within one
session (look up a contact, then estimate the time to reach them). The
ContextTracker records such chains while they happen; the
CompoundAggregator turns a finished chain into a single MemoryUnit whose
tier and confidence follow the aggregate complexity of the chain.
"""

import logging
import uuid
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any, Optional

from querymem.config import QueryMemSettings
from querymem.errors import ValidationError
from querymem.memory.canonical import Canonicalizer
from querymem.memory.policy import PolicyTable
from querymem.memory.types import (
    CompoundContext,
    CompoundStep,
    Dependency,
    MemoryUnit,
    QueryInfo,
    ResultInfo,
    StorageInfo,
    Tier,
    UsageStats,
)
from querymem.storage.sqlite import MemoryStore

logger = logging.getLogger(__name__)

COMPOUND_TOOL_NAME = "compound_query"


class CompoundAggregator:
    """Builds compound memory units from a sequence of steps.

    Args:
        canonicalizer: Canonicalizer for per-step fingerprints and metadata
        policies: PolicyTable for tier expiry defaults
        settings: QueryMemSettings with the complexity breakpoints
    """

    def __init__(
        self,
        canonicalizer: Optional[Canonicalizer] = None,
        policies: Optional[PolicyTable] = None,
        settings: Optional[QueryMemSettings] = None,
    ):
        self.settings = settings or QueryMemSettings()
        self.canonicalizer = canonicalizer or Canonicalizer(self.settings)
        self.policies = policies or PolicyTable(self.settings)

    def complexity(self, steps: list[CompoundStep]) -> float:
        """Sum of step complexities plus a relational bonus for the chain."""
        total = sum(self.canonicalizer.complexity_score(s.tool_name, s.parameters) for s in steps)
        return total + min(0.5 * len(steps), 2.0)

    def classify(self, complexity: float) -> tuple[Tier, float]:
        """Tier and initial confidence for an aggregate complexity."""
        s = self.settings
        if complexity >= s.compound_long_term_complexity:
            return Tier.LONG_TERM, s.compound_long_term_confidence
        if complexity >= s.compound_mid_term_complexity:
            return Tier.MID_TERM, s.compound_mid_term_confidence
        return Tier.SHORT_TERM, s.compound_short_term_confidence

    def signature(self, steps: list[CompoundStep]) -> Optional[str]:
        """Pipe-joined key-field signatures of the steps."""
        parts: list[str] = []
        for step in steps:
            part = self.canonicalizer.key_signature(step.tool_name, step.parameters)
            if part and part not in parts:
                parts.append(part)
        return "|".join(parts) if parts else None

    def build(
        self,
        context_id: str,
        steps: list[CompoundStep],
        dependencies: Optional[list[Dependency]] = None,
        now: Optional[datetime] = None,
    ) -> MemoryUnit:
        """Build (but do not store) a compound memory unit.

        Args:
            context_id: Session context the steps belong to
            steps: Tool calls in invocation order
            dependencies: Caller-supplied dependencies, merged with those
                extracted from each step
            now: Creation time (default: now)

        Returns:
            The compound MemoryUnit

        Raises:
            ValidationError: If context_id is missing, steps is empty or a
                step has malformed parameters
        """
        if not context_id:
            raise ValidationError("Compound memory units require a context_id")
        if not steps:
            raise ValidationError("Compound memory units require at least one step")

        canon = self.canonicalizer
        now = now or datetime.now()

        original_steps: list[dict[str, Any]] = []
        abstract_steps: list[dict[str, Any]] = []
        payload_steps: list[dict[str, Any]] = []
        merged = list(dependencies or [])
        tags = {"compound"}
        for step in steps:
            abstract = canon.abstract(step.tool_name, step.parameters)
            original_steps.append({
                "toolName": step.tool_name,
                "parameters": dict(step.parameters),
                "fingerprint": canon.fingerprint_abstract(step.tool_name, abstract),
            })
            abstract_steps.append({"toolName": step.tool_name, "abstract": abstract})
            payload_steps.append({"toolName": step.tool_name, "result": step.result})
            merged.extend(canon.extract_dependencies(step.tool_name, step.parameters))
            tags |= canon.generate_tags(step.tool_name, step.parameters)

        complexity = self.complexity(steps)
        tier, confidence = self.classify(complexity)
        abstract_parameters = {"steps": abstract_steps}

        return MemoryUnit(
            id=MemoryStore.generate_id(),
            query=QueryInfo(
                tool_name=COMPOUND_TOOL_NAME,
                fingerprint=canon.fingerprint_abstract(COMPOUND_TOOL_NAME, abstract_parameters),
                original_parameters={"steps": original_steps},
                abstract_parameters=abstract_parameters,
                complexity_score=complexity,
                is_compound=True,
                context_id=context_id,
                signature=self.signature(steps),
            ),
            result=ResultInfo(payload={"steps": payload_steps}, computed_at=now, confidence=confidence),
            usage=UsageStats(last_accessed_at=now, created_at=now),
            storage=StorageInfo(
                tier=tier,
                expires_at=self.policies.expiry_for(tier, now=now),
                tags=tags,
                updated_at=now,
            ),
            dependencies=merged,
        )


def _detect_relation(previous: CompoundStep, current: CompoundStep) -> Optional[str]:
    """How a step builds on the previous one, if recognizable."""
    prev_result = previous.result if isinstance(previous.result, Mapping) else {}
    entity_id = prev_result.get("entityId")
    if entity_id and current.parameters.get("entityId") == entity_id:
        return "entity_transfer"

    location = prev_result.get("location")
    if (
        previous.tool_name == "query_location"
        and current.tool_name == "estimate_time"
        and isinstance(location, Mapping)
        and location.get("name")
        and current.parameters.get("origin") == location.get("name")
    ):
        return "location_transfer"
    return None


class ContextTracker:
    """In-process registry of open compound contexts.

    Contexts idle longer than context_max_age_seconds are dropped, and at
    most context_max_count contexts are kept (oldest activity evicted first).

    Args:
        canonicalizer: Canonicalizer used to score step complexity
        settings: QueryMemSettings with the compound limits
    """

    def __init__(
        self,
        canonicalizer: Optional[Canonicalizer] = None,
        settings: Optional[QueryMemSettings] = None,
    ):
        self.settings = settings or QueryMemSettings()
        self.canonicalizer = canonicalizer or Canonicalizer(self.settings)
        self._contexts: dict[str, CompoundContext] = {}

    def create(self, context_id: Optional[str] = None, now: Optional[datetime] = None) -> str:
        """Open a new context and return its id."""
        now = now or datetime.now()
        self.cleanup(now)
        context_id = context_id or str(uuid.uuid4())
        self._contexts[context_id] = CompoundContext(
            context_id=context_id, created_at=now, last_activity=now
        )
        return context_id

    def get(self, context_id: str) -> Optional[CompoundContext]:
        return self._contexts.get(context_id)

    def add_step(
        self,
        context_id: str,
        tool_name: str,
        parameters: dict[str, Any],
        result: Any = None,
        now: Optional[datetime] = None,
    ) -> Optional[CompoundStep]:
        """Append a tool call to a context.

        Returns:
            The recorded step, or None if the context does not exist

        Raises:
            ValidationError: If the parameters cannot be canonicalized
        """
        context = self._contexts.get(context_id)
        if context is None:
            return None

        complexity = self.canonicalizer.complexity_score(tool_name, parameters)
        step = CompoundStep(tool_name=tool_name, parameters=dict(parameters), result=result)
        if context.steps:
            step.relation = _detect_relation(context.steps[-1], step)

        context.steps.append(step)
        context.complexity += complexity
        context.last_activity = now or datetime.now()
        return step

    def is_compound(self, context_id: str) -> bool:
        """More than one step and enough aggregate complexity to cache."""
        context = self._contexts.get(context_id)
        if context is None or len(context.steps) <= 1:
            return False
        return context.complexity >= self.settings.compound_min_complexity

    def complete(self, context_id: str) -> bool:
        context = self._contexts.get(context_id)
        if context is None:
            return False
        context.completed = True
        return True

    def all(self) -> list[CompoundContext]:
        return list(self._contexts.values())

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """Drop idle contexts and enforce the context limit.

        Returns:
            Number of contexts removed
        """
        now = now or datetime.now()
        max_age = timedelta(seconds=self.settings.context_max_age_seconds)
        stale = [cid for cid, ctx in self._contexts.items() if now - ctx.last_activity > max_age]
        for cid in stale:
            del self._contexts[cid]

        removed = len(stale)
        overflow = len(self._contexts) - self.settings.context_max_count
        if overflow > 0:
            oldest = sorted(self._contexts.values(), key=lambda ctx: ctx.last_activity)[:overflow]
            for ctx in oldest:
                del self._contexts[ctx.context_id]
            removed += overflow

        if removed:
            logger.debug(f"Removed {removed} stale compound contexts")
        return removed
