"""Storage layer for querymem."""

from querymem.storage.sqlite import MemoryStore

__all__ = ["MemoryStore"]
