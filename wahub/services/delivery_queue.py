"""
Delay queue for webhook delivery work.

Jobs scheduled with a delay sit on an event-loop timer, not on a worker:
thousands of pending retries cost one TimerHandle each. When a timer fires
the job moves to an asyncio.Queue drained by a fixed pool of workers, which
bounds the number of concurrent HTTP deliveries.

A job may come with an on_drop handler. Whenever the queue gives up on a
job during shutdown it awaits that handler exactly once, so the owner can
record a terminal state for the work that never ran.
"""
import asyncio
from typing import Awaitable, Callable, Optional, Protocol

import structlog

from wahub.routes.metrics import update_webhook_queue_depth
from wahub.sentry_config import capture_exception

logger = structlog.get_logger()

Job = Callable[[], Awaitable[None]]
DropHandler = Callable[[], Awaitable[None]]


class Scheduler(Protocol):
    """Anything that can run a job after a delay."""

    def schedule(self, delay: float, job: Job, on_drop: Optional[DropHandler] = None) -> None: ...


class DelayQueue:
    """
    Timer-fed work queue with a fixed worker pool.

    Usage:
        queue = DelayQueue(workers=10)
        await queue.start()
        queue.schedule(2.0, job, on_drop=record_shutdown)
        ...
        await queue.stop()
    """

    def __init__(self, workers: int = 10):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self._worker_count = workers
        self._queue: asyncio.Queue[tuple[Job, Optional[DropHandler]]] = asyncio.Queue()
        self._timers: dict[asyncio.TimerHandle, Optional[DropHandler]] = {}
        self._workers: list[asyncio.Task] = []
        self._dropped: list[DropHandler] = []
        self._dropped_count = 0
        self._closing = False
        self._closed = False

    @property
    def pending(self) -> int:
        """Jobs waiting on a timer or in the ready queue."""
        return len(self._timers) + self._queue.qsize()

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"webhook-worker-{n}")
            for n in range(self._worker_count)
        ]
        logger.info("delivery_queue_started", workers=self._worker_count)

    def schedule(self, delay: float, job: Job, on_drop: Optional[DropHandler] = None) -> None:
        """
        Run job after delay seconds (immediately when delay <= 0).

        While stopping, delayed jobs are dropped at once; after stop() the
        queue refuses new work.
        """
        if self._closed:
            raise RuntimeError("Delivery queue is stopped")
        if delay <= 0:
            self._put(job, on_drop)
            return
        if self._closing:
            self._drop(on_drop)
            return

        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle | None = None

        def fire():
            self._timers.pop(handle, None)
            self._put(job, on_drop)

        handle = loop.call_later(delay, fire)
        self._timers[handle] = on_drop
        update_webhook_queue_depth(self.pending)

    def _put(self, job: Job, on_drop: Optional[DropHandler]) -> None:
        self._queue.put_nowait((job, on_drop))
        update_webhook_queue_depth(self.pending)

    def _drop(self, on_drop: Optional[DropHandler]) -> None:
        self._dropped_count += 1
        if on_drop is not None:
            self._dropped.append(on_drop)

    async def _worker(self, n: int) -> None:
        while True:
            job, on_drop = await self._queue.get()
            try:
                await job()
            except asyncio.CancelledError:
                self._drop(on_drop)
                raise
            except Exception as e:
                logger.error("delivery_job_crashed", worker=n, error=str(e))
                capture_exception()
            finally:
                self._queue.task_done()
                update_webhook_queue_depth(self.pending)

    async def join(self) -> None:
        """Wait until every ready job has been processed."""
        await self._queue.join()

    async def stop(self, timeout: float = 10.0) -> None:
        """
        Drain ready jobs, stop the workers, then drop what is left.

        Backoff timers still pending are not persisted across restarts:
        each dropped job has its on_drop handler awaited before stop()
        returns.
        """
        self._closing = True

        if self._workers:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("delivery_queue_drain_timeout", pending=self._queue.qsize())

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._closed = True

        for handle, on_drop in self._timers.items():
            handle.cancel()
            self._drop(on_drop)
        self._timers.clear()
        while not self._queue.empty():
            _, on_drop = self._queue.get_nowait()
            self._queue.task_done()
            self._drop(on_drop)

        if self._dropped_count:
            logger.warning("delivery_queue_dropped_jobs", count=self._dropped_count)
        dropped, self._dropped = self._dropped, []
        for on_drop in dropped:
            try:
                await on_drop()
            except Exception as e:
                logger.error("delivery_drop_handler_failed", error=str(e))
                capture_exception()

        update_webhook_queue_depth(0)
        logger.info("delivery_queue_stopped")
