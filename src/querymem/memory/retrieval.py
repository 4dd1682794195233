"""Retrieval pipeline: complexity gate, exact, context and fuzzy lookup.

A lookup tries, in order:
1. Complexity gate: trivial queries without a context are never served
2. Exact match on the query fingerprint
3. Context match against units recorded in the caller's context
4. Fuzzy match over the most recent units of the same tool

Malformed parameters, disabled tools and store failures all end in a miss;
the cache is an optimization and never fails the caller.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from querymem.config import QueryMemSettings
from querymem.errors import StoreUnavailable, ValidationError
from querymem.memory.canonical import Canonicalizer
from querymem.memory.policy import PolicyTable
from querymem.memory.similarity import SimilarityScorer
from querymem.memory.types import MemoryUnit
from querymem.storage.sqlite import MemoryStore

logger = logging.getLogger(__name__)


class MatchPath(Enum):
    """Which stage of the pipeline produced a hit."""
    EXACT = "exact"
    CONTEXT = "context"
    FUZZY = "fuzzy"


@dataclass
class Match:
    """A lookup hit.

    Attributes:
        unit: The matched memory unit
        path: Pipeline stage that matched
        similarity: Structural similarity between the query and the unit
    """
    unit: MemoryUnit
    path: MatchPath
    similarity: float = 1.0


@dataclass
class _Query:
    tool_name: str
    normalized: dict[str, Any]
    fingerprint: str
    category: Optional[str]
    signature: Optional[str]


class RetrievalPipeline:
    """Exact, context-scoped and fuzzy lookup over a MemoryStore.

    Args:
        store: MemoryStore holding the units
        canonicalizer: Canonicalizer for fingerprints and metadata
        scorer: SimilarityScorer for context and fuzzy matching
        policies: PolicyTable deciding which tools may be served
        settings: QueryMemSettings with gates and thresholds
    """

    def __init__(
        self,
        store: MemoryStore,
        canonicalizer: Optional[Canonicalizer] = None,
        scorer: Optional[SimilarityScorer] = None,
        policies: Optional[PolicyTable] = None,
        settings: Optional[QueryMemSettings] = None,
    ):
        self.settings = settings or QueryMemSettings()
        self.store = store
        self.canonicalizer = canonicalizer or Canonicalizer(self.settings)
        self.scorer = scorer or SimilarityScorer(self.settings)
        self.policies = policies or PolicyTable(self.settings)

    def lookup(
        self,
        tool_name: str,
        params: Any,
        context_id: Optional[str] = None,
        confidence_threshold: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Match]:
        """Find a reusable result for a tool call.

        Args:
            tool_name: Name of the tool being invoked
            params: Raw tool parameters
            context_id: Session context of the call, if any
            confidence_threshold: Minimum confidence (default from settings)
            now: Reference time for expiry checks (default: now)

        Returns:
            Match on hit, None on miss
        """
        threshold = (
            self.settings.default_confidence_threshold
            if confidence_threshold is None
            else confidence_threshold
        )
        now = now or datetime.now()

        try:
            query = self._prepare(tool_name, params, context_id)
        except ValidationError as e:
            logger.debug(f"Lookup miss for {tool_name!r}: invalid parameters ({e})")
            return None
        if query is None:
            return None

        try:
            match = self._exact(query, threshold, now)
            if match is None and context_id:
                match = self._context(query, context_id, threshold, now)
            if match is None:
                match = self._fuzzy(query, threshold, now)
        except StoreUnavailable as e:
            logger.warning(f"Lookup for {tool_name} degraded to miss: {e}")
            return None

        if match is None:
            logger.debug(f"Lookup miss for {tool_name}")
        else:
            if match.path == MatchPath.FUZZY:
                match.unit.similarity = match.similarity
            logger.debug(
                f"Lookup hit for {tool_name} via {match.path.value} "
                f"(unit={match.unit.id}, similarity={match.similarity:.2f})"
            )
        return match

    def _prepare(self, tool_name: str, params: Any, context_id: Optional[str]) -> Optional[_Query]:
        canon = self.canonicalizer
        complexity = canon.complexity_score(tool_name, params)
        category = canon.category_for(tool_name, params)

        if not self.policies.is_enabled(tool_name, category):
            logger.debug(f"Lookup skipped: memory disabled for {tool_name} ({category})")
            return None
        if complexity < self.settings.min_complexity and not context_id:
            logger.debug(
                f"Lookup skipped: {tool_name} complexity {complexity:.2f} "
                f"below {self.settings.min_complexity}"
            )
            return None

        abstract = canon.abstract(tool_name, params)
        return _Query(
            tool_name=tool_name,
            normalized=canon.normalize(params),
            fingerprint=canon.fingerprint_abstract(tool_name, abstract),
            category=category,
            signature=canon.key_signature(tool_name, params),
        )

    def _similarity_to(self, query: _Query, parameters: Any) -> float:
        try:
            return self.scorer.similarity(query.normalized, self.canonicalizer.normalize(parameters))
        except ValidationError:
            return 0.0

    # =========================================================================
    # Stages
    # =========================================================================

    def _exact(self, query: _Query, threshold: float, now: datetime) -> Optional[Match]:
        candidates = [
            unit
            for unit in self.store.find_by_fingerprint(query.fingerprint, threshold, now=now)
            if unit.is_retrievable(threshold, now)
        ]
        if not candidates:
            return None

        scored = [(self._similarity_to(query, unit.query.original_parameters), unit) for unit in candidates]
        similarity, best = max(scored, key=lambda pair: (pair[0], pair[1].confidence))
        return Match(best, MatchPath.EXACT, similarity)

    def _context(
        self, query: _Query, context_id: str, threshold: float, now: datetime
    ) -> Optional[Match]:
        units = [
            unit
            for unit in self.store.find_by_context(context_id, min_confidence=threshold, now=now)
            if unit.is_retrievable(threshold, now)
        ]
        if not units:
            return None
        compounds = [unit for unit in units if unit.query.is_compound]

        # (a) a compound step with the same fingerprint
        for unit in compounds:
            if any(step.get("fingerprint") == query.fingerprint for step in unit.steps()):
                return Match(unit, MatchPath.CONTEXT, 1.0)

        # (b) the most similar same-tool compound step
        best: Optional[tuple[float, MemoryUnit]] = None
        for unit in compounds:
            for step in unit.steps():
                if step.get("toolName") != query.tool_name:
                    continue
                score = self._similarity_to(query, step.get("parameters", {}))
                if score > self.settings.context_similarity_threshold and (best is None or score > best[0]):
                    best = (score, unit)
        if best is not None:
            return Match(best[1], MatchPath.CONTEXT, best[0])

        # (c) key-parameter heuristics
        if query.signature:
            for unit in compounds:
                parts = (unit.query.signature or "").split("|")
                if query.signature in parts:
                    return Match(unit, MatchPath.CONTEXT, self.settings.context_similarity_threshold)

        # (d) most recently accessed unit of this tool in the context
        for unit in units:
            if unit.tool_name == query.tool_name or any(
                step.get("toolName") == query.tool_name for step in unit.steps()
            ):
                score = self._similarity_to(query, unit.query.original_parameters)
                return Match(unit, MatchPath.CONTEXT, score)
        return None

    def _fuzzy(self, query: _Query, threshold: float, now: datetime) -> Optional[Match]:
        min_confidence = self.settings.fuzzy_confidence_factor * threshold
        candidates = self.store.find_by_tool(
            query.tool_name,
            min_confidence=min_confidence,
            limit=self.settings.fuzzy_scan_limit,
            now=now,
        )

        scored: list[tuple[float, float, MemoryUnit]] = []
        for unit in candidates:
            if not unit.is_retrievable(min_confidence, now):
                continue
            similarity = self._similarity_to(query, unit.query.original_parameters)
            score = similarity
            if query.category is not None and query.category == self.canonicalizer.category_for(
                unit.tool_name, unit.query.original_parameters
            ):
                score += self.settings.metadata_bonus
            if score > self.settings.fuzzy_threshold:
                scored.append((score, similarity, unit))

        if not scored:
            return None
        scored.sort(key=lambda entry: (entry[0], entry[2].confidence), reverse=True)
        _, similarity, unit = scored[0]
        return Match(unit, MatchPath.FUZZY, similarity)
