"""Configuration settings for the query memory engine.

This module provides Pydantic Settings for configuration management with:
- Environment variable support (QUERYMEM_ prefix)
- CLI argument override support
- Type validation and defaults

Every numeric constant of the cache policy (similarity floors, decay
multipliers, complexity breakpoints, sweep thresholds) lives here so it can
be tuned without code changes.
"""

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_tool_weights() -> dict[str, float]:
    return {
        "find_item": 2.0,
        "estimate_time": 3.0,
        "query_item": 2.0,
        "query_location": 2.0,
        "query_contact": 2.0,
        "query_biodata": 2.0,
        "query_task": 2.0,
        "search_notes": 2.0,
    }


class QueryMemSettings(BaseSettings):
    """Configuration settings for the query memory engine.

    Settings are loaded from environment variables with the QUERYMEM_ prefix.
    CLI arguments can override these settings when provided.

    Example:
        >>> settings = QueryMemSettings()
        >>> settings.min_complexity
        3.0

        >>> # Override via environment
        >>> # QUERYMEM_FUZZY_SCAN_LIMIT=25
        >>> QueryMemSettings().fuzzy_scan_limit
        25
    """

    model_config = SettingsConfigDict(
        env_prefix="QUERYMEM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Storage
    sqlite_path: Optional[Path] = Field(
        default=None,
        description="Path to SQLite database (default: ~/.querymem/querymem.db)",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    # Retrieval
    default_confidence_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    min_complexity: float = Field(
        default=3.0,
        description="Queries below this complexity are never served from memory without a context",
    )
    context_similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    fuzzy_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    fuzzy_confidence_factor: float = Field(default=0.8, ge=0.0, le=1.0)
    fuzzy_scan_limit: int = Field(default=10, ge=1)
    metadata_bonus: float = Field(default=0.05, ge=0.0, le=1.0)

    # Similarity
    string_floor: float = Field(default=0.6, ge=0.0, le=1.0)
    sensitive_match_score: float = Field(default=0.8, ge=0.0, le=1.0)
    array_match_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    category_mismatch_score: float = Field(default=0.3, ge=0.0, le=1.0)
    route_mismatch_score: float = Field(default=0.2, ge=0.0, le=1.0)

    # Complexity
    default_tool_weight: float = Field(default=1.0, ge=0.0)
    tool_weights: dict[str, float] = Field(default_factory=_default_tool_weights)

    # Invalidation
    primary_update_factor: float = Field(default=0.5, ge=0.0, le=1.0)
    secondary_update_factor: float = Field(default=0.7, ge=0.0, le=1.0)
    reference_update_factor: float = Field(default=0.9, ge=0.0, le=1.0)
    created_reference_factor: float = Field(default=0.95, ge=0.0, le=1.0)

    # Expiry (days, None = never)
    short_term_days: Optional[float] = Field(default=3)
    mid_term_days: Optional[float] = Field(default=14)
    long_term_days: Optional[float] = Field(default=None)
    volatile_expiry_hours: float = Field(default=1.0, gt=0.0)

    # Lifecycle
    decay_idle_days: float = Field(default=30)
    decay_max_access: int = Field(default=3)
    decay_max_confidence: float = Field(default=0.3, ge=0.0, le=1.0)
    purge_after_days: float = Field(default=180)
    purge_max_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    cleanup_old_days: float = Field(default=30, ge=0)
    cleanup_old_max_confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    promote_mid_access: int = Field(default=5)
    promote_mid_age_days: float = Field(default=3)
    promote_long_access: int = Field(default=20)
    promote_long_age_days: float = Field(default=30)
    sweep_batch_size: int = Field(default=500, ge=1)

    # Compound queries
    compound_long_term_complexity: float = Field(default=12)
    compound_long_term_confidence: float = Field(default=0.9, ge=0.0, le=1.0)
    compound_mid_term_complexity: float = Field(default=8)
    compound_mid_term_confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    compound_short_term_confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    compound_min_complexity: float = Field(default=6)
    context_max_age_seconds: int = Field(default=1800)
    context_max_count: int = Field(default=100)

    # Background work
    task_concurrency: int = Field(default=4, ge=1)
    sweep_interval_seconds: float = Field(default=3600, ge=0)
    purge_interval_seconds: float = Field(default=86400, ge=0)
    stats_interval_seconds: float = Field(default=300, ge=0)

    def get_sqlite_path(self) -> Optional[Path]:
        """Get the SQLite path, resolving to default if not set."""
        if self.sqlite_path:
            return self.sqlite_path.expanduser().resolve()
        return None

    def tool_weight(self, tool_name: str) -> float:
        """Base complexity weight of a tool."""
        return self.tool_weights.get(tool_name, self.default_tool_weight)
