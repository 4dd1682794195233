"""MCP server entry point for query memory administration.

This module provides the admin surface of the query memory engine with:
- CLI argument parsing for flexible configuration
- Pydantic Settings for environment variable support
- FastMCP tools for status, validation, invalidation and maintenance
- A lifecycle scheduler running decay/expiry sweeps in the background
- Direct tool invocation (--call) printing JSON to stdout
- Logging to stderr (CRITICAL for MCP stdio)

Usage:
    python -m querymem [options]

    Options:
        --sqlite-path PATH              SQLite database path
        --confidence-threshold FLOAT    Default lookup confidence threshold
        --sweep-interval SECONDS        Lifecycle sweep interval (0 disables)
        --log-level LEVEL               Logging level (default: INFO)
        --call TOOL --args JSON         Invoke one tool and print its result
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Optional

from mcp.server.fastmcp import FastMCP

from querymem.config import QueryMemSettings
from querymem.errors import NotFoundError, StoreUnavailable
from querymem.memory.lifecycle import LifecycleScheduler
from querymem.memory.service import QueryMemory
from querymem.memory.types import ChangeKind
from querymem.storage.sqlite import MemoryStore

# Global components (initialized in main)
memory: Optional[QueryMemory] = None

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Run the lifecycle scheduler while the server is up."""
    scheduler: Optional[LifecycleScheduler] = None
    if memory is not None:
        scheduler = LifecycleScheduler(memory.lifecycle, memory.settings)
        scheduler.start()
    try:
        yield
    finally:
        if scheduler is not None:
            await scheduler.stop()
        if memory is not None:
            await memory.drain()


# Initialize FastMCP server
mcp = FastMCP("querymem", lifespan=lifespan)


def setup_logging(log_level: str) -> None:
    """Configure logging to stderr (never stdout for MCP servers).

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    logger.info(f"Logging initialized at {log_level.upper()} level")


def parse_arguments(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse CLI arguments with configuration defaults.

    Configuration precedence:
        1. CLI arguments (highest priority)
        2. Environment variables (QUERYMEM_ prefix)
        3. Defaults (lowest priority)
    """
    settings = QueryMemSettings()

    parser = argparse.ArgumentParser(
        description="Query memory administration server",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    # Direct tool invocation mode
    parser.add_argument(
        "--call",
        type=str,
        metavar="TOOL_NAME",
        help="Directly invoke a tool by name (memory_status, memory_manager, memory_maintenance, ...)",
    )
    parser.add_argument(
        "--args",
        type=str,
        default="{}",
        help="JSON arguments for the tool (used with --call)",
    )

    parser.add_argument(
        "--sqlite-path",
        type=str,
        default=str(settings.sqlite_path) if settings.sqlite_path else None,
        help="SQLite database path (default: ~/.querymem/querymem.db)",
    )
    parser.add_argument(
        "--confidence-threshold",
        type=float,
        default=settings.default_confidence_threshold,
        help="Default minimum confidence for lookups",
    )
    parser.add_argument(
        "--sweep-interval",
        type=float,
        default=settings.sweep_interval_seconds,
        help="Seconds between lifecycle sweeps (0 disables the scheduler loop)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=settings.log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level",
    )

    return parser.parse_args(argv)


def initialize_components(args: argparse.Namespace, ephemeral: bool = False) -> QueryMemory:
    """Create the store and the QueryMemory service.

    Args:
        args: Parsed CLI arguments
        ephemeral: Use an in-memory store (tests)

    Returns:
        Configured QueryMemory instance

    Raises:
        StoreUnavailable: If the store cannot be opened
    """
    logger.info("Initializing components...")

    settings = QueryMemSettings().model_copy(
        update={
            "default_confidence_threshold": args.confidence_threshold,
            "sweep_interval_seconds": args.sweep_interval,
            "log_level": args.log_level,
        }
    )
    sqlite_path = Path(args.sqlite_path).expanduser() if args.sqlite_path else None

    logger.info(
        f"Configuration: "
        f"sqlite_path={sqlite_path}, "
        f"confidence_threshold={settings.default_confidence_threshold}, "
        f"sweep_interval={settings.sweep_interval_seconds}"
    )

    store = MemoryStore(db_path=sqlite_path, ephemeral=ephemeral)
    service = QueryMemory(store, settings)
    logger.info("QueryMemory initialized successfully")
    return service


# =============================================================================
# MCP Tool Handlers - Status
# =============================================================================


@mcp.tool()
async def memory_status() -> dict[str, Any]:
    """Report memory statistics and the active retrieval thresholds.

    Returns:
        Result dictionary with:
        - success: Boolean indicating operation success
        - stats: total, by_tier, by_confidence_band, expired_count,
          validated_count, hit_rate and background task counters
        - thresholds: default confidence threshold, minimum complexity and
          fuzzy threshold
        - error: Error message (if failed)
    """
    if memory is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        stats = await memory.stats()
        return {
            "success": True,
            "stats": stats.as_dict(),
            "thresholds": {
                "confidence": memory.settings.default_confidence_threshold,
                "min_complexity": memory.settings.min_complexity,
                "fuzzy": memory.settings.fuzzy_threshold,
            },
        }
    except Exception as e:
        logger.error(f"memory_status failed: {e}", exc_info=True)
        return {"success": False, "error": str(e)}


# =============================================================================
# MCP Tool Handlers - Manager
# =============================================================================


@mcp.tool()
async def memory_manager(action: str, memory_id: Optional[str] = None) -> dict[str, Any]:
    """Manage individual memories and inspect the store.

    Args:
        action: One of get_stats, get_memory, validate_memory,
            invalidate_memory, cleanup_expired
        memory_id: Target memory (required for get/validate/invalidate)

    Returns:
        Result dictionary with success, action-specific fields and error
    """
    if memory is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        if action == "get_stats":
            stats = await memory.stats()
            return {"success": True, "stats": stats.as_dict()}

        if action == "cleanup_expired":
            archived, failed = await asyncio.to_thread(memory.lifecycle.sweep_expiry)
            return {"success": True, "archived": archived, "failed": failed}

        if action not in ("get_memory", "validate_memory", "invalidate_memory"):
            return {
                "success": False,
                "error": f"Unknown action: {action}. Must be one of: "
                "get_stats, get_memory, validate_memory, invalidate_memory, cleanup_expired",
            }
        if not memory_id:
            return {"success": False, "error": f"{action} requires memory_id"}

        unit = await memory.require(memory_id)
        if action == "get_memory":
            return {"success": True, "memory": unit.as_dict()}
        if action == "validate_memory":
            ok = await memory.validate(memory_id)
        else:
            ok = await memory.invalidate(memory_id)
        return {"success": ok, "id": memory_id}

    except NotFoundError as e:
        return {"success": False, "error": str(e)}
    except Exception as e:
        logger.error(f"memory_manager failed: {e}", exc_info=True)
        return {"success": False, "error": str(e)}


# =============================================================================
# MCP Tool Handlers - Maintenance
# =============================================================================


@mcp.tool()
async def memory_maintenance(
    action: str,
    days: Optional[float] = None,
    confidence_threshold: Optional[float] = None,
) -> dict[str, Any]:
    """Run a lifecycle maintenance operation.

    Args:
        action: One of sweep_decay, sweep_expiry, purge, promote, cleanup_old,
            sweep_all
        days: For cleanup_old, idle age in days (default 30)
        confidence_threshold: For cleanup_old, units below this confidence
            are deleted (default 0.5)

    Returns:
        Result dictionary with success, counts and error
    """
    if memory is None:
        return {"success": False, "error": "Server not initialized"}

    lifecycle = memory.lifecycle
    operations = {
        "sweep_decay": ("archived", lifecycle.sweep_decay),
        "sweep_expiry": ("archived", lifecycle.sweep_expiry),
        "purge": ("purged", lifecycle.purge),
        "promote": ("promoted", lifecycle.promote_all),
        "cleanup_old": ("removed", lambda: lifecycle.cleanup_old(days, confidence_threshold)),
    }

    try:
        if action == "sweep_all":
            report = await memory.sweep()
            return {"success": True, **report.as_dict()}

        operation = operations.get(action)
        if operation is None:
            return {
                "success": False,
                "error": f"Unknown action: {action}. Must be one of: "
                f"{sorted([*operations, 'sweep_all'])}",
            }
        label, func = operation
        count, failed = await asyncio.to_thread(func)
        return {"success": True, label: count, "failed": failed}

    except Exception as e:
        logger.error(f"memory_maintenance failed: {e}", exc_info=True)
        return {"success": False, "error": str(e)}


# =============================================================================
# MCP Tool Handlers - Entity Changes
# =============================================================================


@mcp.tool()
async def memory_entity_change(entity_type: str, entity_id: str, change_kind: str) -> dict[str, Any]:
    """Propagate an entity change to dependent memories.

    Args:
        entity_type: Kind of entity (item, location, contact, task, biodata)
        entity_id: Identifier of the changed entity
        change_kind: created, updated, deleted, transferred, status_changed
            or note_added

    Returns:
        Result dictionary with success, affected count and error
    """
    if memory is None:
        return {"success": False, "error": "Server not initialized"}

    try:
        kind = ChangeKind(change_kind)
    except ValueError:
        return {
            "success": False,
            "error": f"Invalid change_kind: {change_kind}. "
            f"Must be one of: {[k.value for k in ChangeKind]}",
        }

    try:
        affected = await memory.on_entity_change(entity_type, entity_id, kind)
        return {"success": True, "affected": affected}
    except StoreUnavailable as e:
        logger.error(f"memory_entity_change failed: {e}", exc_info=True)
        return {"success": False, "error": str(e)}


# =============================================================================
# Direct Tool Invocation
# =============================================================================


async def call_tool_directly(
    tool_name: str,
    args_json: str,
    service: QueryMemory,
) -> dict[str, Any]:
    """Directly invoke a tool without MCP protocol overhead.

    Args:
        tool_name: Name of the tool to call (memory_status, memory_manager, ...)
        args_json: JSON string of arguments for the tool
        service: Initialized QueryMemory

    Returns:
        Tool result as dictionary
    """
    global memory
    memory = service

    try:
        tool_args = json.loads(args_json)
    except json.JSONDecodeError as e:
        return {"success": False, "error": f"Invalid JSON arguments: {e}"}

    tool_handlers = {
        "memory_status": memory_status,
        "memory_manager": memory_manager,
        "memory_maintenance": memory_maintenance,
        "memory_entity_change": memory_entity_change,
    }

    handler = tool_handlers.get(tool_name)
    if not handler:
        return {
            "success": False,
            "error": f"Unknown tool: {tool_name}. Available: {list(tool_handlers.keys())}",
        }

    try:
        result = await handler(**tool_args)
        return result
    except TypeError as e:
        return {"success": False, "error": f"Invalid arguments for {tool_name}: {e}"}
    except Exception as e:
        return {"success": False, "error": f"Tool execution failed: {e}"}


def run_direct_call(args: argparse.Namespace) -> None:
    """Run a direct tool call and print result to stdout.

    Args:
        args: Parsed CLI arguments with --call and --args
    """
    setup_logging("WARNING")  # Quiet logging for direct calls

    async def _run() -> None:
        service = initialize_components(args)
        try:
            result = await call_tool_directly(args.call, args.args, service)
            print(json.dumps(result, ensure_ascii=False))
        finally:
            await service.close()

    asyncio.run(_run())


# =============================================================================
# Signal Handling
# =============================================================================


def handle_shutdown(signum: int, frame: Any) -> None:
    """Handle SIGINT/SIGTERM for graceful shutdown."""
    logger.info(f"Received signal {signum}, shutting down gracefully...")
    sys.exit(0)


# =============================================================================
# Main Entry Point
# =============================================================================


def main() -> None:
    """Main entry point for the admin server.

    Workflow:
    1. Parse CLI arguments
    2. If --call provided, run direct tool invocation and exit
    3. Setup logging
    4. Initialize components
    5. Register signal handlers
    6. Run MCP server with stdio transport
    """
    global memory

    args = parse_arguments()

    if args.call:
        run_direct_call(args)
        return

    setup_logging(args.log_level)

    logger.info("Starting querymem MCP server...")

    try:
        memory = initialize_components(args)

        signal.signal(signal.SIGINT, handle_shutdown)
        signal.signal(signal.SIGTERM, handle_shutdown)

        logger.info("MCP server ready, starting stdio transport...")
        mcp.run(transport="stdio")

    except Exception as e:
        logger.error(f"Server failed: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if memory is not None:
            memory.memory_store.close()


if __name__ == "__main__":
    main()
