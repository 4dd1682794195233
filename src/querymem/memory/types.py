"""Core data types for the query memory engine.

This module defines the data structures used throughout querymem:
- Tier: Retention class of a memory unit (short/mid/long term, archived)
- Relationship: How strongly a memory unit depends on an entity
- ChangeKind: Entity change events consumed by the invalidation engine
- Dependency: Link from a memory unit to an entity in the system of record
- MemoryUnit: A cached tool result with its query, usage and storage metadata
- CompoundStep / CompoundContext: Session-scoped chains of tool calls
- StoreOptions: Caller overrides for the store-write path
- MemoryStats / SweepReport: Aggregate results
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

# Opaque result payload; the cache never inspects its shape
JSONValue = Union[None, bool, int, float, str, list[Any], dict[str, Any]]


class Tier(Enum):
    """Retention tiers of a memory unit.

    - SHORT_TERM: Default expiry of a few days
    - MID_TERM: Default expiry of two weeks
    - LONG_TERM: Never expires on its own
    - ARCHIVED: Retired by the lifecycle manager, never served
    """
    SHORT_TERM = "short_term"
    MID_TERM = "mid_term"
    LONG_TERM = "long_term"
    ARCHIVED = "archived"


class Relationship(Enum):
    """Dependency relationship between a memory unit and an entity.

    - PRIMARY: The result is about this entity
    - SECONDARY: The entity shaped the result indirectly
    - REFERENCE: The entity is only mentioned by the result
    """
    PRIMARY = "primary"
    SECONDARY = "secondary"
    REFERENCE = "reference"

    @property
    def strength(self) -> int:
        """Ordering used when de-duplicating dependencies (higher wins)."""
        return {"primary": 3, "secondary": 2, "reference": 1}[self.value]


class ChangeKind(Enum):
    """Entity change events.

    CREATED, UPDATED and DELETED are the core events. TRANSFERRED,
    STATUS_CHANGED and NOTE_ADDED are finer-grained events emitted by
    item, task and note mutations.
    """
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    TRANSFERRED = "transferred"
    STATUS_CHANGED = "status_changed"
    NOTE_ADDED = "note_added"


@dataclass(frozen=True)
class Dependency:
    """Link from a memory unit to an entity whose changes affect its trust.

    Attributes:
        entity_type: Kind of entity (item, location, contact, task, biodata)
        entity_id: Identifier of the entity
        relationship: Relationship strength (Relationship enum)
    """
    entity_type: str
    entity_id: str
    relationship: Relationship = Relationship.PRIMARY

    @property
    def key(self) -> tuple[str, str]:
        return (self.entity_type, self.entity_id)


def normalize_dependencies(dependencies: list[Dependency]) -> list[Dependency]:
    """Collapse duplicate (entity_type, entity_id) pairs.

    The strongest relationship wins; first-seen order is preserved.

    Args:
        dependencies: Dependencies possibly containing duplicates

    Returns:
        Ordered list with one dependency per entity
    """
    merged: dict[tuple[str, str], Dependency] = {}
    for dep in dependencies:
        current = merged.get(dep.key)
        if current is None or dep.relationship.strength > current.relationship.strength:
            merged[dep.key] = dep
    return list(merged.values())


@dataclass
class QueryInfo:
    """What was asked.

    Attributes:
        tool_name: Name of the tool that produced the result
        fingerprint: Hash of tool name and abstract parameters
        original_parameters: Parameters exactly as supplied by the caller
        abstract_parameters: Canonicalized and abstracted parameters
        complexity_score: Tool weight plus parameter-shape weight
        is_compound: Whether this unit aggregates a multi-step context
        context_id: Session context the unit was recorded in
        signature: Key-field signature of a compound unit
    """
    tool_name: str
    fingerprint: str
    original_parameters: dict[str, Any]
    abstract_parameters: dict[str, Any]
    complexity_score: float = 0.0
    is_compound: bool = False
    context_id: Optional[str] = None
    signature: Optional[str] = None


@dataclass
class ResultInfo:
    """What was answered.

    Attributes:
        payload: The tool result, stored verbatim
        computed_at: When the real operation produced the result
        confidence: Trust score from 0.0 to 1.0
        validated: Whether the result was explicitly confirmed

    Raises:
        ValueError: If confidence is out of range
    """
    payload: JSONValue
    computed_at: datetime = field(default_factory=datetime.now)
    confidence: float = 0.8
    validated: bool = False

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(
                f"Confidence must be between 0.0 and 1.0, got {self.confidence}"
            )


@dataclass
class UsageStats:
    """Access statistics of a memory unit."""
    access_count: int = 1
    hit_count: int = 0
    last_accessed_at: datetime = field(default_factory=datetime.now)
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class StorageInfo:
    """Retention metadata of a memory unit.

    Attributes:
        tier: Retention tier (Tier enum)
        expires_at: Expiry time, None for units that never expire
        tags: Free-form tags (tool name, tool family, measurement type)
        updated_at: Time of the last mutation of the unit
    """
    tier: Tier = Tier.MID_TERM
    expires_at: Optional[datetime] = None
    tags: set[str] = field(default_factory=set)
    updated_at: datetime = field(default_factory=datetime.now)


@dataclass
class MemoryUnit:
    """A cached tool result.

    Attributes:
        id: Unique identifier, immutable
        query: QueryInfo describing the request
        result: ResultInfo holding the payload and its confidence
        usage: UsageStats tracking accesses and hits
        storage: StorageInfo with tier, expiry and tags
        dependencies: Entities whose changes affect this unit
        related_memories: Ids of associated units (not owned)
        similarity: Match score when returned by fuzzy retrieval

    Raises:
        ValueError: If the unit violates a data model invariant
    """
    id: str
    query: QueryInfo
    result: ResultInfo
    usage: UsageStats = field(default_factory=UsageStats)
    storage: StorageInfo = field(default_factory=StorageInfo)
    dependencies: list[Dependency] = field(default_factory=list)
    related_memories: set[str] = field(default_factory=set)
    similarity: Optional[float] = None

    def __post_init__(self) -> None:
        """Validate invariants after initialization."""
        if self.storage.tier == Tier.LONG_TERM and self.storage.expires_at is not None:
            raise ValueError("Long-term memory units cannot have an expiry time")

        if self.query.is_compound:
            if not self.query.context_id:
                raise ValueError("Compound memory units require a context_id")
            steps = self.query.original_parameters.get("steps")
            if not isinstance(steps, list) or not steps:
                raise ValueError("Compound memory units require a non-empty steps list")

        self.dependencies = normalize_dependencies(self.dependencies)

    @property
    def tool_name(self) -> str:
        return self.query.tool_name

    @property
    def confidence(self) -> float:
        return self.result.confidence

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check whether the unit has passed its expiry time."""
        if self.storage.expires_at is None:
            return False
        return self.storage.expires_at <= (now or datetime.now())

    def is_retrievable(self, threshold: float, now: Optional[datetime] = None) -> bool:
        """Check whether retrieval may serve this unit.

        Args:
            threshold: Minimum confidence required by the caller
            now: Reference time (default: now)

        Returns:
            True if not archived, not expired, confidence > 0 and >= threshold
        """
        return (
            self.storage.tier != Tier.ARCHIVED
            and not self.is_expired(now)
            and self.result.confidence > 0.0
            and self.result.confidence >= threshold
        )

    def steps(self) -> list[dict[str, Any]]:
        """Embedded steps of a compound unit (empty for simple units)."""
        if not self.query.is_compound:
            return []
        return list(self.query.original_parameters.get("steps", []))

    def as_dict(self) -> dict[str, Any]:
        """JSON-friendly view of the unit (timestamps as ISO strings)."""
        expires_at = self.storage.expires_at
        return {
            "id": self.id,
            "query": {
                "tool_name": self.query.tool_name,
                "fingerprint": self.query.fingerprint,
                "original_parameters": self.query.original_parameters,
                "abstract_parameters": self.query.abstract_parameters,
                "complexity_score": self.query.complexity_score,
                "is_compound": self.query.is_compound,
                "context_id": self.query.context_id,
                "signature": self.query.signature,
            },
            "result": {
                "payload": self.result.payload,
                "computed_at": self.result.computed_at.isoformat(),
                "confidence": self.result.confidence,
                "validated": self.result.validated,
            },
            "usage": {
                "access_count": self.usage.access_count,
                "hit_count": self.usage.hit_count,
                "last_accessed_at": self.usage.last_accessed_at.isoformat(),
                "created_at": self.usage.created_at.isoformat(),
            },
            "storage": {
                "tier": self.storage.tier.value,
                "expires_at": expires_at.isoformat() if expires_at else None,
                "tags": sorted(self.storage.tags),
                "updated_at": self.storage.updated_at.isoformat(),
            },
            "dependencies": [
                {
                    "entity_type": dep.entity_type,
                    "entity_id": dep.entity_id,
                    "relationship": dep.relationship.value,
                }
                for dep in self.dependencies
            ],
            "related_memories": sorted(self.related_memories),
            "similarity": self.similarity,
        }


@dataclass
class StoreOptions:
    """Caller overrides for the store-write path.

    Attributes:
        context_id: Session context the call belongs to
        dependencies: Extra entity dependencies
        tier: Force a tier instead of the policy default
        expiry_days: Force an expiry (days) instead of the tier default
        initial_confidence: Force the initial confidence
    """
    context_id: Optional[str] = None
    dependencies: list[Dependency] = field(default_factory=list)
    tier: Optional[Tier] = None
    expiry_days: Optional[float] = None
    initial_confidence: Optional[float] = None


@dataclass
class CompoundStep:
    """One tool call inside a compound context.

    relation names how the step builds on the previous one
    ('entity_transfer', 'location_transfer'), if detected.
    """
    tool_name: str
    parameters: dict[str, Any]
    result: JSONValue = None
    relation: Optional[str] = None


@dataclass
class CompoundContext:
    """Ephemeral chain of tool calls recorded for one session.

    Attributes:
        context_id: Session context identifier
        steps: Tool calls in invocation order
        created_at: When the context was opened
        last_activity: When the last step was added
        complexity: Sum of per-step complexity scores
        completed: Whether the caller closed the context
    """
    context_id: str
    steps: list[CompoundStep] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    last_activity: datetime = field(default_factory=datetime.now)
    complexity: float = 0.0
    completed: bool = False


@dataclass
class SweepReport:
    """Result of a lifecycle maintenance run.

    Attributes:
        decayed: Short-term units archived for disuse
        expired: Units archived because they passed their expiry
        purged: Archived units hard-deleted
        failed: Records whose transition raised an error
    """
    decayed: int = 0
    expired: int = 0
    purged: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "decayed": self.decayed,
            "expired": self.expired,
            "purged": self.purged,
            "failed": self.failed,
        }


@dataclass
class MemoryStats:
    """Aggregate statistics of the memory store.

    Attributes:
        total: Number of stored units
        by_tier: Unit count per tier value
        by_confidence_band: Unit count per band (high >= 0.8, medium >= 0.5,
            low >= 0.3, minimal below)
        expired_count: Units past their expiry time
        validated_count: Units explicitly validated
        hit_rate: Hits divided by lookups (0.0 when no lookups yet)
        tasks: Background task counters
    """
    total: int = 0
    by_tier: dict[str, int] = field(default_factory=dict)
    by_confidence_band: dict[str, int] = field(default_factory=dict)
    expired_count: int = 0
    validated_count: int = 0
    hit_rate: float = 0.0
    tasks: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "by_tier": dict(self.by_tier),
            "by_confidence_band": dict(self.by_confidence_band),
            "expired_count": self.expired_count,
            "validated_count": self.validated_count,
            "hit_rate": self.hit_rate,
            "tasks": dict(self.tasks),
        }
