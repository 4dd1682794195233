"""Tests for BackgroundTasks - bounded fire-and-forget execution."""

import asyncio
import logging
import threading

import pytest

from querymem.memory.tasks import BackgroundTasks


class TestBackgroundTasks:
    """Tests for submission, draining, failures and concurrency."""

    def test_invalid_concurrency(self):
        with pytest.raises(ValueError):
            BackgroundTasks(concurrency=0)

    @pytest.mark.asyncio
    async def test_coroutine_function_awaited(self):
        tasks = BackgroundTasks()
        seen = []

        async def job(value):
            seen.append(value)

        tasks.submit("job", job, 1)
        await tasks.drain()
        assert seen == [1]
        assert tasks.counters() == {"submitted": 1, "completed": 1, "failed": 0, "pending": 0}

    @pytest.mark.asyncio
    async def test_sync_function_runs_in_thread(self):
        tasks = BackgroundTasks()
        threads = []

        def job():
            threads.append(threading.get_ident())

        tasks.submit("job", job)
        await tasks.drain()
        assert threads and threads[0] != threading.get_ident()

    @pytest.mark.asyncio
    async def test_failure_logged_and_counted(self, caplog):
        tasks = BackgroundTasks()

        def boom():
            raise RuntimeError("disk full")

        with caplog.at_level(logging.WARNING, logger="querymem.memory.tasks"):
            tasks.submit("boom", boom)
            await tasks.drain()

        assert tasks.failed == 1
        assert tasks.completed == 0
        assert "Background task 'boom' failed" in caplog.text

    @pytest.mark.asyncio
    async def test_failure_does_not_affect_other_tasks(self):
        tasks = BackgroundTasks()
        seen = []

        async def boom():
            raise RuntimeError("nope")

        async def ok():
            seen.append("ok")

        tasks.submit("boom", boom)
        tasks.submit("ok", ok)
        await tasks.drain()
        assert seen == ["ok"]
        assert tasks.counters()["failed"] == 1
        assert tasks.counters()["completed"] == 1

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self):
        tasks = BackgroundTasks(concurrency=2)
        running = 0
        peak = 0

        async def job():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        for _ in range(6):
            tasks.submit("job", job)
        assert tasks.pending == 6
        await tasks.drain()
        assert peak == 2
        assert tasks.pending == 0

    @pytest.mark.asyncio
    async def test_drain_waits_for_nested_submissions(self):
        tasks = BackgroundTasks()
        seen = []

        async def child():
            seen.append("child")

        async def parent():
            tasks.submit("child", child)

        tasks.submit("parent", parent)
        await tasks.drain()
        assert seen == ["child"]

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        tasks = BackgroundTasks()

        async def slow():
            await asyncio.sleep(10)

        tasks.submit("slow", slow)
        await asyncio.sleep(0)
        await tasks.cancel_all()
        assert tasks.pending == 0
        assert tasks.completed == 0

    def test_submit_requires_running_loop(self):
        tasks = BackgroundTasks()

        async def job():
            pass

        with pytest.raises(RuntimeError):
            tasks.submit("job", job)
