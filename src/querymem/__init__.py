"""querymem - semantic memory for tool-query results.

This package caches the results of tool calls (item search, travel-time
estimates, contact/location/task queries) and serves later equivalent calls
from memory.

Main components:
- memory.service: QueryMemory, the lookup/store/invalidate service object
- storage.sqlite: SQLite-backed memory store
- config: Pydantic Settings for configuration management

Usage:
    # Run the admin MCP server
    python -m querymem

    # Or use the CLI
    querymem --help
"""

__all__ = ["main"]
__version__ = "0.1.0"


def main() -> None:
    """Main entry point for the querymem admin server."""
    from querymem.__main__ import main as _main
    _main()
