from __future__ import annotations

import asyncio
import contextlib
from asyncio import Queue
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from ..core.config import Settings
from ..core.logging import get_logger

logger = get_logger(name=__name__)

Job = Callable[[], Awaitable[Any]]


class TaskQueueManager:
    """In-process job queue drained by a fixed pool of consumer tasks."""

    def __init__(self, *, max_concurrency: int = 1) -> None:
        self._queue: Queue[Job] = Queue()
        self._max_concurrency = max(1, max_concurrency)
        self._consumers: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return any(not consumer.done() for consumer in self._consumers)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def enqueue(self, job: Job) -> None:
        await self._queue.put(job)
        logger.info("task_enqueued", queue_size=self._queue.qsize())

    async def join(self) -> None:
        """Block until every enqueued job has been processed."""
        await self._queue.join()

    async def _consumer(self, worker_id: int) -> None:
        logger.info("task_queue_worker_started", worker_id=worker_id)
        while True:
            job = await self._queue.get()
            try:
                await job()
            except Exception as exc:  # noqa: BLE001 - a failing job must not stop the worker
                logger.exception("task_execution_failed", worker_id=worker_id, error=str(exc))
            finally:
                self._queue.task_done()

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["TaskQueueManager"]:
        await self.start()
        try:
            yield self
        finally:
            await self.stop()

    async def start(self) -> None:
        self._consumers = [consumer for consumer in self._consumers if not consumer.done()]
        while len(self._consumers) < self._max_concurrency:
            self._consumers.append(asyncio.create_task(self._consumer(len(self._consumers))))

    async def stop(self) -> None:
        for consumer in self._consumers:
            consumer.cancel()
        for consumer in self._consumers:
            with contextlib.suppress(asyncio.CancelledError):
                await consumer
        self._consumers = []

    @classmethod
    def from_settings(cls, settings: Settings) -> "TaskQueueManager":
        return cls(max_concurrency=settings.scheduling.max_concurrency)


__all__ = ["Job", "TaskQueueManager"]
