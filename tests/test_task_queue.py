from __future__ import annotations

import asyncio

import pytest

from harness.queue.manager import TaskQueueManager
from tests.helpers.stubs import build_settings


@pytest.mark.asyncio
async def test_jobs_run_in_order_with_single_worker() -> None:
    queue = TaskQueueManager()
    seen: list[int] = []

    def job_for(value: int):
        async def _job() -> None:
            seen.append(value)

        return _job

    async with queue.lifecycle():
        assert queue.running
        for value in range(3):
            await queue.enqueue(job_for(value))
        await asyncio.wait_for(queue.join(), timeout=1.0)

    assert seen == [0, 1, 2]
    assert not queue.running
    assert queue.pending == 0


@pytest.mark.asyncio
async def test_failing_job_does_not_stop_the_worker() -> None:
    queue = TaskQueueManager()
    seen: list[str] = []

    async def broken() -> None:
        raise RuntimeError("boom")

    async def healthy() -> None:
        seen.append("ok")

    async with queue.lifecycle():
        await queue.enqueue(broken)
        await queue.enqueue(healthy)
        await asyncio.wait_for(queue.join(), timeout=1.0)

    assert seen == ["ok"]


@pytest.mark.asyncio
async def test_jobs_wait_until_started() -> None:
    queue = TaskQueueManager()
    done = asyncio.Event()

    async def job() -> None:
        done.set()

    await queue.enqueue(job)
    assert queue.pending == 1
    assert not done.is_set()

    await queue.start()
    try:
        await asyncio.wait_for(done.wait(), timeout=1.0)
    finally:
        await queue.stop()


@pytest.mark.asyncio
async def test_concurrency_comes_from_settings() -> None:
    settings = build_settings()
    queue = TaskQueueManager.from_settings(settings)
    release = asyncio.Event()
    active = 0
    peak = 0

    async def job() -> None:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await release.wait()
        active -= 1

    async with queue.lifecycle():
        for _ in range(settings.scheduling.max_concurrency + 1):
            await queue.enqueue(job)
        await asyncio.sleep(0.05)
        release.set()
        await asyncio.wait_for(queue.join(), timeout=1.0)

    assert peak == settings.scheduling.max_concurrency
