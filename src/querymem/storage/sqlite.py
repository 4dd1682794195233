"""SQLite storage layer for memory units.

This module provides the durable store of the query memory engine with:
- Memory units (query, result, usage and storage metadata in one row)
- Entity dependencies (unique per unit and entity, indexed by entity)
- Bidirectional links between related units
- Lookup outcome counters for hit-rate statistics

Every mutation is a single statement or a single transaction per unit, so a
concurrent reader sees either the old or the new record, never a mix.
Timestamps are stored as epoch seconds.
"""

import json
import logging
import secrets
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from querymem.errors import StoreUnavailable
from querymem.memory.types import (
    Dependency,
    MemoryUnit,
    QueryInfo,
    Relationship,
    ResultInfo,
    StorageInfo,
    Tier,
    UsageStats,
)

logger = logging.getLogger(__name__)

_UNIT_COLUMNS = """
    id, tool_name, fingerprint, context_id, is_compound, signature,
    original_parameters, abstract_parameters, complexity_score,
    payload, computed_at, confidence, validated,
    access_count, hit_count, last_accessed_at, created_at,
    tier, expires_at, tags, updated_at
"""

# Not archived, not zero-confidence, not past expiry
_LIVE_FILTER = (
    "tier != 'archived' AND confidence > 0 "
    "AND (expires_at IS NULL OR expires_at > ?)"
)


def _to_ts(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value is not None else None


def _from_ts(value: Optional[float]) -> Optional[datetime]:
    return datetime.fromtimestamp(value) if value is not None else None


def _json_default(value: Any) -> Any:
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=_json_default)


class MemoryStore:
    """SQLite store for memory units, dependencies and links.

    Args:
        db_path: Path to SQLite database file.
                 Defaults to ~/.querymem/querymem.db
        ephemeral: If True, use in-memory storage for testing (default: False)

    Attributes:
        db_path: Path to database file (None if ephemeral)
        ephemeral: Whether using ephemeral storage
        _conn: SQLite connection instance
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        ephemeral: bool = False,
    ):
        """Initialize MemoryStore with persistent or ephemeral storage.

        Raises:
            StoreUnavailable: If database initialization fails
        """
        self.ephemeral = ephemeral
        # Sweeps run in worker threads; statements and their commit stay paired
        self._lock = threading.RLock()

        if ephemeral:
            self.db_path = None
        else:
            self.db_path = db_path or Path.home() / ".querymem" / "querymem.db"

        try:
            if ephemeral:
                self._conn = sqlite3.connect(":memory:", check_same_thread=False)
            else:
                if self.db_path is not None:
                    self.db_path.parent.mkdir(parents=True, exist_ok=True)
                self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)

            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._init_schema()

        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to initialize SQLite storage: {e}") from e

        logger.debug(f"Memory store ready at {self.db_path or ':memory:'}")

    def _init_schema(self) -> None:
        """Create tables and indexes.

        Raises:
            StoreUnavailable: If schema initialization fails
        """
        try:
            cursor = self._conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS memory_units (
                    id TEXT PRIMARY KEY,
                    tool_name TEXT NOT NULL,
                    fingerprint TEXT NOT NULL,
                    context_id TEXT,
                    is_compound INTEGER NOT NULL DEFAULT 0,
                    signature TEXT,
                    original_parameters TEXT NOT NULL,
                    abstract_parameters TEXT NOT NULL,
                    complexity_score REAL NOT NULL DEFAULT 0,
                    payload TEXT,
                    computed_at REAL NOT NULL,
                    confidence REAL NOT NULL,
                    validated INTEGER NOT NULL DEFAULT 0,
                    access_count INTEGER NOT NULL DEFAULT 1,
                    hit_count INTEGER NOT NULL DEFAULT 0,
                    last_accessed_at REAL NOT NULL,
                    created_at REAL NOT NULL,
                    tier TEXT NOT NULL,
                    expires_at REAL,
                    tags TEXT,
                    updated_at REAL NOT NULL,
                    CHECK (confidence >= 0.0 AND confidence <= 1.0)
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_units_fingerprint
                ON memory_units(fingerprint)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_units_tool_context
                ON memory_units(tool_name, context_id)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_units_context
                ON memory_units(context_id)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_units_tier_expires
                ON memory_units(tier, expires_at)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_units_confidence
                ON memory_units(confidence)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_units_last_accessed
                ON memory_units(last_accessed_at)
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS unit_dependencies (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    unit_id TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    relationship TEXT NOT NULL,
                    FOREIGN KEY (unit_id) REFERENCES memory_units(id) ON DELETE CASCADE,
                    UNIQUE(unit_id, entity_type, entity_id)
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_dependencies_entity
                ON unit_dependencies(entity_type, entity_id)
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS unit_links (
                    source_id TEXT NOT NULL,
                    target_id TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    FOREIGN KEY (source_id) REFERENCES memory_units(id) ON DELETE CASCADE,
                    FOREIGN KEY (target_id) REFERENCES memory_units(id) ON DELETE CASCADE,
                    PRIMARY KEY (source_id, target_id)
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_links_target
                ON unit_links(target_id)
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS lookup_stats (
                    outcome TEXT PRIMARY KEY,
                    count INTEGER NOT NULL DEFAULT 0
                )
            """)

            self._conn.commit()

        except sqlite3.Error as e:
            self._conn.rollback()
            raise StoreUnavailable(f"Failed to initialize schema: {e}") from e

    @staticmethod
    def generate_id() -> str:
        """Generate unique, sortable ID using timestamp and random suffix.

        Returns:
            Unique ID string in format: mem_timestamp_random
        """
        timestamp = int(time.time() * 1000000)
        return f"mem_{timestamp}_{secrets.token_hex(4)}"

    @contextmanager
    def _transaction(self, action: str) -> Iterator[sqlite3.Cursor]:
        """Run statements as one transaction: commit, or roll back and raise.

        Raises:
            StoreUnavailable: If any statement fails
        """
        with self._lock:
            try:
                yield self._conn.cursor()
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StoreUnavailable(f"Failed to {action}: {e}") from e

    # =========================================================================
    # Row mapping
    # =========================================================================

    def _load_dependencies(self, unit_id: str) -> list[Dependency]:
        cursor = self._conn.execute(
            """
            SELECT entity_type, entity_id, relationship
            FROM unit_dependencies WHERE unit_id = ? ORDER BY id
            """,
            (unit_id,),
        )
        return [
            Dependency(row["entity_type"], row["entity_id"], Relationship(row["relationship"]))
            for row in cursor.fetchall()
        ]

    def _load_links(self, unit_id: str) -> set[str]:
        cursor = self._conn.execute(
            "SELECT target_id FROM unit_links WHERE source_id = ?",
            (unit_id,),
        )
        return {row["target_id"] for row in cursor.fetchall()}

    def _row_to_unit(self, row: sqlite3.Row) -> MemoryUnit:
        """Build a MemoryUnit from a memory_units row plus its relations."""
        query = QueryInfo(
            tool_name=row["tool_name"],
            fingerprint=row["fingerprint"],
            original_parameters=json.loads(row["original_parameters"]),
            abstract_parameters=json.loads(row["abstract_parameters"]),
            complexity_score=row["complexity_score"],
            is_compound=bool(row["is_compound"]),
            context_id=row["context_id"],
            signature=row["signature"],
        )
        result = ResultInfo(
            payload=json.loads(row["payload"]) if row["payload"] is not None else None,
            computed_at=datetime.fromtimestamp(row["computed_at"]),
            confidence=row["confidence"],
            validated=bool(row["validated"]),
        )
        usage = UsageStats(
            access_count=row["access_count"],
            hit_count=row["hit_count"],
            last_accessed_at=datetime.fromtimestamp(row["last_accessed_at"]),
            created_at=datetime.fromtimestamp(row["created_at"]),
        )
        storage = StorageInfo(
            tier=Tier(row["tier"]),
            expires_at=_from_ts(row["expires_at"]),
            tags=set(json.loads(row["tags"])) if row["tags"] else set(),
            updated_at=datetime.fromtimestamp(row["updated_at"]),
        )
        return MemoryUnit(
            id=row["id"],
            query=query,
            result=result,
            usage=usage,
            storage=storage,
            dependencies=self._load_dependencies(row["id"]),
            related_memories=self._load_links(row["id"]),
        )

    def _select(self, where: str, params: list[Any], order: str, limit: Optional[int]) -> list[MemoryUnit]:
        sql = f"SELECT {_UNIT_COLUMNS} FROM memory_units WHERE {where} ORDER BY {order}"
        if limit is not None:
            sql += " LIMIT ?"
            params = [*params, limit]
        with self._lock:
            cursor = self._conn.execute(sql, params)
            return [self._row_to_unit(row) for row in cursor.fetchall()]

    # =========================================================================
    # CRUD
    # =========================================================================

    def add_unit(self, unit: MemoryUnit) -> str:
        """Insert a memory unit with its dependencies and links.

        Args:
            unit: The unit to persist (its id must be set)

        Returns:
            The ID of the stored unit

        Raises:
            StoreUnavailable: If the insert fails
        """
        with self._transaction("add memory unit") as cursor:
            cursor.execute(
                f"""
                INSERT INTO memory_units ({_UNIT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    unit.id,
                    unit.query.tool_name,
                    unit.query.fingerprint,
                    unit.query.context_id,
                    int(unit.query.is_compound),
                    unit.query.signature,
                    _dumps(unit.query.original_parameters),
                    _dumps(unit.query.abstract_parameters),
                    unit.query.complexity_score,
                    _dumps(unit.result.payload),
                    unit.result.computed_at.timestamp(),
                    unit.result.confidence,
                    int(unit.result.validated),
                    unit.usage.access_count,
                    unit.usage.hit_count,
                    unit.usage.last_accessed_at.timestamp(),
                    unit.usage.created_at.timestamp(),
                    unit.storage.tier.value,
                    _to_ts(unit.storage.expires_at),
                    _dumps(sorted(unit.storage.tags)),
                    unit.storage.updated_at.timestamp(),
                ),
            )
            cursor.executemany(
                """
                INSERT INTO unit_dependencies (unit_id, entity_type, entity_id, relationship)
                VALUES (?, ?, ?, ?)
                """,
                [
                    (unit.id, dep.entity_type, dep.entity_id, dep.relationship.value)
                    for dep in unit.dependencies
                ],
            )
            now = time.time()
            for related_id in unit.related_memories:
                self._insert_link(cursor, unit.id, related_id, now)
        return unit.id

    def get_unit(self, unit_id: str) -> Optional[MemoryUnit]:
        """Get a memory unit by ID, None if not found.

        Raises:
            StoreUnavailable: If the read fails
        """
        try:
            units = self._select("id = ?", [unit_id], "id", None)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to get memory unit: {e}") from e
        return units[0] if units else None

    def delete_unit(self, unit_id: str) -> bool:
        """Hard-delete a unit; dependencies and links go with it (CASCADE).

        Returns:
            True if the unit was deleted, False if not found
        """
        with self._transaction("delete memory unit") as cursor:
            cursor.execute("DELETE FROM memory_units WHERE id = ?", (unit_id,))
            return cursor.rowcount > 0

    # =========================================================================
    # Indexed queries
    # =========================================================================

    def find_by_fingerprint(
        self,
        fingerprint: str,
        min_confidence: float = 0.0,
        live_only: bool = True,
        now: Optional[datetime] = None,
    ) -> list[MemoryUnit]:
        """Units sharing a fingerprint, highest confidence first.

        Args:
            fingerprint: Query template hash
            min_confidence: Minimum confidence to include
            live_only: Exclude archived, zero-confidence and expired units
            now: Reference time for expiry (default: now)
        """
        where = "fingerprint = ? AND confidence >= ?"
        params: list[Any] = [fingerprint, min_confidence]
        if live_only:
            where += f" AND {_LIVE_FILTER}"
            params.append((now or datetime.now()).timestamp())
        try:
            return self._select(where, params, "confidence DESC, last_accessed_at DESC", None)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to query by fingerprint: {e}") from e

    def find_by_context(
        self,
        context_id: str,
        tool_name: Optional[str] = None,
        min_confidence: float = 0.0,
        live_only: bool = True,
        now: Optional[datetime] = None,
    ) -> list[MemoryUnit]:
        """Units recorded in a context, most recently accessed first."""
        where = "context_id = ? AND confidence >= ?"
        params: list[Any] = [context_id, min_confidence]
        if tool_name is not None:
            where += " AND tool_name = ?"
            params.append(tool_name)
        if live_only:
            where += f" AND {_LIVE_FILTER}"
            params.append((now or datetime.now()).timestamp())
        try:
            return self._select(where, params, "last_accessed_at DESC, created_at DESC", None)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to query by context: {e}") from e

    def find_by_tool(
        self,
        tool_name: str,
        min_confidence: float = 0.0,
        limit: Optional[int] = None,
        live_only: bool = True,
        now: Optional[datetime] = None,
    ) -> list[MemoryUnit]:
        """Units produced by a tool, most recently accessed first."""
        where = "tool_name = ? AND confidence >= ?"
        params: list[Any] = [tool_name, min_confidence]
        if live_only:
            where += f" AND {_LIVE_FILTER}"
            params.append((now or datetime.now()).timestamp())
        try:
            return self._select(where, params, "last_accessed_at DESC, created_at DESC", limit)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to query by tool: {e}") from e

    def find_by_dependency(self, entity_type: str, entity_id: str) -> list[tuple[str, Relationship]]:
        """Units depending on an entity.

        Returns:
            List of (unit_id, relationship) tuples
        """
        try:
            with self._lock:
                cursor = self._conn.execute(
                    """
                    SELECT unit_id, relationship FROM unit_dependencies
                    WHERE entity_type = ? AND entity_id = ?
                    ORDER BY id
                    """,
                    (entity_type, entity_id),
                )
                rows = cursor.fetchall()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to query by dependency: {e}") from e
        return [(row["unit_id"], Relationship(row["relationship"])) for row in rows]

    def find_by_tier_expiry(
        self,
        tier: Optional[Tier] = None,
        expires_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[MemoryUnit]:
        """Units by tier and/or expiry.

        Args:
            tier: Restrict to a tier; None means every tier except archived
            expires_before: Only units with an expiry strictly before this time
            limit: Maximum number of units
        """
        if tier is None:
            where = "tier != 'archived'"
            params: list[Any] = []
        else:
            where = "tier = ?"
            params = [tier.value]
        if expires_before is not None:
            where += " AND expires_at IS NOT NULL AND expires_at < ?"
            params.append(expires_before.timestamp())
        try:
            return self._select(where, params, "expires_at, id", limit)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to query by tier: {e}") from e

    def find_by_confidence(
        self,
        min_confidence: float = 0.0,
        max_confidence: float = 1.0,
        limit: Optional[int] = None,
    ) -> list[MemoryUnit]:
        """Units with confidence in [min_confidence, max_confidence]."""
        try:
            return self._select(
                "confidence >= ? AND confidence <= ?",
                [min_confidence, max_confidence],
                "confidence DESC, id",
                limit,
            )
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to query by confidence: {e}") from e

    def find_decay_candidates(
        self,
        idle_before: datetime,
        max_access: int,
        max_confidence: float,
        limit: Optional[int] = None,
    ) -> list[str]:
        """Short-term units that are idle, rarely used and barely trusted."""
        sql = """
            SELECT id FROM memory_units
            WHERE tier = 'short_term' AND last_accessed_at < ?
              AND access_count < ? AND confidence < ?
            ORDER BY last_accessed_at
        """
        params: list[Any] = [idle_before.timestamp(), max_access, max_confidence]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        try:
            with self._lock:
                rows = self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to query decay candidates: {e}") from e
        return [row["id"] for row in rows]

    def find_purge_candidates(
        self,
        updated_before: datetime,
        max_confidence: float,
        limit: Optional[int] = None,
    ) -> list[str]:
        """Archived units untouched since updated_before and trusted below max_confidence."""
        sql = """
            SELECT id FROM memory_units
            WHERE tier = 'archived' AND updated_at < ? AND confidence < ?
            ORDER BY updated_at
        """
        params: list[Any] = [updated_before.timestamp(), max_confidence]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        try:
            with self._lock:
                rows = self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to query purge candidates: {e}") from e
        return [row["id"] for row in rows]

    def find_stale_candidates(
        self,
        accessed_before: datetime,
        max_confidence: float,
        limit: Optional[int] = None,
    ) -> list[str]:
        """Units of any tier but long-term, unused since accessed_before and trusted below max_confidence."""
        sql = """
            SELECT id FROM memory_units
            WHERE tier != 'long_term' AND last_accessed_at < ? AND confidence < ?
            ORDER BY last_accessed_at
        """
        params: list[Any] = [accessed_before.timestamp(), max_confidence]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        try:
            with self._lock:
                rows = self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to query stale candidates: {e}") from e
        return [row["id"] for row in rows]

    # =========================================================================
    # Single-unit mutations
    # =========================================================================

    def _update(self, sql: str, params: tuple[Any, ...], action: str) -> bool:
        with self._transaction(action) as cursor:
            cursor.execute(sql, params)
            return cursor.rowcount > 0

    def record_access(self, unit_id: str, hit: bool = True, now: Optional[datetime] = None) -> bool:
        """Increment access (and hit) counters and bump last_accessed_at."""
        return self._update(
            """
            UPDATE memory_units
            SET access_count = access_count + 1,
                hit_count = hit_count + ?,
                last_accessed_at = ?
            WHERE id = ?
            """,
            (1 if hit else 0, (now or datetime.now()).timestamp(), unit_id),
            "record access",
        )

    def scale_confidence(self, unit_id: str, factor: float, now: Optional[datetime] = None) -> bool:
        """Multiply confidence by factor in one read-modify-write statement."""
        if factor < 0.0 or factor > 1.0:
            raise ValueError("Confidence factor must be between 0.0 and 1.0")
        return self._update(
            """
            UPDATE memory_units
            SET confidence = confidence * ?, updated_at = ?
            WHERE id = ?
            """,
            (factor, (now or datetime.now()).timestamp(), unit_id),
            "scale confidence",
        )

    def set_confidence(self, unit_id: str, confidence: float, now: Optional[datetime] = None) -> bool:
        if confidence < 0.0 or confidence > 1.0:
            raise ValueError("Confidence must be between 0.0 and 1.0")
        return self._update(
            "UPDATE memory_units SET confidence = ?, updated_at = ? WHERE id = ?",
            (confidence, (now or datetime.now()).timestamp(), unit_id),
            "set confidence",
        )

    def expire_unit(self, unit_id: str, now: Optional[datetime] = None) -> bool:
        """Force-expire a unit: confidence 0, expires now.

        Long-term units cannot carry an expiry, so they drop to short-term.
        """
        ts = (now or datetime.now()).timestamp()
        return self._update(
            """
            UPDATE memory_units
            SET confidence = 0.0,
                expires_at = ?,
                tier = CASE WHEN tier = 'long_term' THEN 'short_term' ELSE tier END,
                updated_at = ?
            WHERE id = ?
            """,
            (ts, ts, unit_id),
            "expire memory unit",
        )

    def validate_unit(self, unit_id: str, now: Optional[datetime] = None) -> bool:
        """Mark a unit as confirmed: confidence 1.0, validated."""
        return self._update(
            """
            UPDATE memory_units
            SET confidence = 1.0, validated = 1, updated_at = ?
            WHERE id = ?
            """,
            ((now or datetime.now()).timestamp(), unit_id),
            "validate memory unit",
        )

    def set_tier(
        self,
        unit_id: str,
        tier: Tier,
        expires_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Move a unit to a tier with a new expiry (None for long-term)."""
        if tier == Tier.LONG_TERM and expires_at is not None:
            raise ValueError("Long-term memory units cannot have an expiry time")
        return self._update(
            "UPDATE memory_units SET tier = ?, expires_at = ?, updated_at = ? WHERE id = ?",
            (tier.value, _to_ts(expires_at), (now or datetime.now()).timestamp(), unit_id),
            "set tier",
        )

    def archive_unit(self, unit_id: str, now: Optional[datetime] = None) -> bool:
        """Move a unit to the archived tier, keeping its expiry."""
        return self._update(
            "UPDATE memory_units SET tier = 'archived', updated_at = ? WHERE id = ? AND tier != 'archived'",
            ((now or datetime.now()).timestamp(), unit_id),
            "archive memory unit",
        )

    # =========================================================================
    # Links
    # =========================================================================

    @staticmethod
    def _insert_link(cursor: sqlite3.Cursor, source_id: str, target_id: str, now: float) -> None:
        cursor.execute(
            "INSERT OR IGNORE INTO unit_links (source_id, target_id, created_at) VALUES (?, ?, ?)",
            (source_id, target_id, now),
        )
        cursor.execute(
            "INSERT OR IGNORE INTO unit_links (source_id, target_id, created_at) VALUES (?, ?, ?)",
            (target_id, source_id, now),
        )

    def add_link(self, source_id: str, target_id: str) -> bool:
        """Relate two units in both directions.

        Returns:
            True if the link exists afterwards, False for self-links
        """
        if source_id == target_id:
            return False
        with self._transaction("link memory units") as cursor:
            self._insert_link(cursor, source_id, target_id, time.time())
        return True

    def get_links(self, unit_id: str) -> set[str]:
        try:
            with self._lock:
                return self._load_links(unit_id)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to read links: {e}") from e

    # =========================================================================
    # Statistics
    # =========================================================================

    def record_lookup(self, outcome: str) -> None:
        """Count a lookup outcome ('hit' or 'miss')."""
        with self._transaction("record lookup") as cursor:
            cursor.execute(
                """
                INSERT INTO lookup_stats (outcome, count) VALUES (?, 1)
                ON CONFLICT(outcome) DO UPDATE SET count = count + 1
                """,
                (outcome,),
            )

    def count_units(self, tier: Optional[Tier] = None) -> int:
        """Count units, optionally restricted to a tier."""
        try:
            with self._lock:
                if tier is None:
                    row = self._conn.execute("SELECT COUNT(*) FROM memory_units").fetchone()
                else:
                    row = self._conn.execute(
                        "SELECT COUNT(*) FROM memory_units WHERE tier = ?", (tier.value,)
                    ).fetchone()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to count memory units: {e}") from e
        return row[0]

    def stats(self, now: Optional[datetime] = None) -> dict[str, Any]:
        """Aggregate counts over all units plus lookup counters.

        Returns:
            Dict with total, by_tier, by_confidence_band, expired_count,
            validated_count, hits and misses
        """
        ts = (now or datetime.now()).timestamp()
        try:
            with self._lock:
                cursor = self._conn.cursor()
                cursor.execute("SELECT tier, COUNT(*) AS n FROM memory_units GROUP BY tier")
                by_tier = {row["tier"]: row["n"] for row in cursor.fetchall()}

                cursor.execute("""
                    SELECT
                        SUM(CASE WHEN confidence >= 0.8 THEN 1 ELSE 0 END) AS high,
                        SUM(CASE WHEN confidence >= 0.5 AND confidence < 0.8 THEN 1 ELSE 0 END) AS medium,
                        SUM(CASE WHEN confidence >= 0.3 AND confidence < 0.5 THEN 1 ELSE 0 END) AS low,
                        SUM(CASE WHEN confidence < 0.3 THEN 1 ELSE 0 END) AS minimal,
                        SUM(CASE WHEN validated = 1 THEN 1 ELSE 0 END) AS validated
                    FROM memory_units
                """)
                bands = cursor.fetchone()

                cursor.execute(
                    "SELECT COUNT(*) FROM memory_units WHERE expires_at IS NOT NULL AND expires_at <= ?",
                    (ts,),
                )
                expired = cursor.fetchone()[0]

                cursor.execute("SELECT outcome, count FROM lookup_stats")
                lookups = {row["outcome"]: row["count"] for row in cursor.fetchall()}
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to compute stats: {e}") from e

        return {
            "total": sum(by_tier.values()),
            "by_tier": by_tier,
            "by_confidence_band": {
                "high": bands["high"] or 0,
                "medium": bands["medium"] or 0,
                "low": bands["low"] or 0,
                "minimal": bands["minimal"] or 0,
            },
            "expired_count": expired,
            "validated_count": bands["validated"] or 0,
            "hits": lookups.get("hit", 0),
            "misses": lookups.get("miss", 0),
        }

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()

    def __enter__(self) -> "MemoryStore":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
