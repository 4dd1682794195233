"""Memory module for querymem.

This module provides the data model and the pure building blocks of the
memory engine: canonicalization, similarity scoring and cache policies.
The store-backed components live in their own modules (service, retrieval,
compound, invalidation, lifecycle).
"""

from querymem.memory.canonical import Canonicalizer, canonical_json
from querymem.memory.policy import Policy, PolicyTable
from querymem.memory.similarity import SimilarityScorer
from querymem.memory.types import (
    ChangeKind,
    CompoundStep,
    Dependency,
    MemoryStats,
    MemoryUnit,
    Relationship,
    StoreOptions,
    SweepReport,
    Tier,
)

__all__ = [
    "Canonicalizer",
    "ChangeKind",
    "CompoundStep",
    "Dependency",
    "MemoryStats",
    "MemoryUnit",
    "Policy",
    "PolicyTable",
    "Relationship",
    "SimilarityScorer",
    "StoreOptions",
    "SweepReport",
    "Tier",
    "canonical_json",
]
