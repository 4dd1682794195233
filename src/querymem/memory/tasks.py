"""Bounded background task queue.

Work that must not delay a caller (hit statistics, tier promotion, link
discovery) is submitted here instead of being fired into the event loop
unobserved. Concurrency is bounded by a semaphore, every task is kept
referenced until it finishes, and failures are logged and counted.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Fire-and-forget execution with bounded concurrency and counters.

    Args:
        concurrency: Maximum number of jobs running at once

    Example:
        >>> tasks = BackgroundTasks(concurrency=2)
        >>> tasks.submit("record_access", store.record_access, unit_id)
        >>> await tasks.drain()
    """

    def __init__(self, concurrency: int = 4):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._semaphore = asyncio.Semaphore(concurrency)
        self._tasks: set[asyncio.Task[None]] = set()
        self.submitted = 0
        self.completed = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, name: str, func: Callable[..., Any], *args: Any) -> asyncio.Task[None]:
        """Schedule func(*args) in the background.

        Coroutine functions are awaited; plain callables run in a worker
        thread so blocking store calls never stall the event loop.

        Must be called from within a running event loop.
        """
        task = asyncio.get_running_loop().create_task(self._run(name, func, args))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self.submitted += 1
        return task

    async def _run(self, name: str, func: Callable[..., Any], args: tuple[Any, ...]) -> None:
        async with self._semaphore:
            try:
                if inspect.iscoroutinefunction(func):
                    await func(*args)
                else:
                    await asyncio.to_thread(func, *args)
                self.completed += 1
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.failed += 1
                logger.warning(f"Background task '{name}' failed: {exc}", exc_info=True)

    async def drain(self) -> None:
        """Wait until every submitted task has finished.

        Tasks submitted by running tasks are awaited as well.
        """
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        """Cancel outstanding tasks and wait for them to unwind."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def counters(self) -> dict[str, int]:
        return {
            "submitted": self.submitted,
            "completed": self.completed,
            "failed": self.failed,
            "pending": self.pending,
        }
