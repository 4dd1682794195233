"""Shared error types for the query memory engine.

- ValidationError: malformed fingerprint inputs (never surfaced past lookup)
- NotFoundError: operations referencing an unknown memory id
- PolicyViolation: caching a tool/category whose policy disables memory
- StoreUnavailable: failure of the durable store
"""

from typing import Optional


class QueryMemError(Exception):
    """Base class for all query memory errors."""

    pass


class ValidationError(QueryMemError, ValueError):
    """Raised when tool parameters cannot be canonicalized."""

    pass


class NotFoundError(QueryMemError, KeyError):
    """Raised when a memory id does not exist in the store."""

    def __init__(self, memory_id: str):
        super().__init__(memory_id)
        self.memory_id = memory_id

    def __str__(self) -> str:
        return f"Memory '{self.memory_id}' not found"


class PolicyViolation(QueryMemError):
    """Raised when memory is disabled for a tool or category."""

    def __init__(self, tool_name: str, category: Optional[str] = None):
        target = f"{tool_name}/{category}" if category else tool_name
        super().__init__(f"Memory is disabled for '{target}'")
        self.tool_name = tool_name
        self.category = category


class StoreUnavailable(QueryMemError):
    """Raised when the durable store cannot complete an operation."""

    pass
