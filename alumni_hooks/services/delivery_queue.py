"""
Delivery work queue.

Dispatch only writes delivery ids onto a queue; workers pick them up and run
the delivery pipeline. Two backends share one interface:

- ArqDeliveryQueue: Redis-backed ARQ jobs, consumed by ``arq alumni_hooks.worker.WorkerSettings``
- LocalDeliveryQueue: in-process asyncio queue drained by a fixed number of tasks

Both give at-least-once semantics; the pipeline tolerates duplicates.
"""
import asyncio
from typing import Awaitable, Callable, Protocol

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings

from alumni_hooks.config import settings
from alumni_hooks.logging_config import get_logger
from alumni_hooks.sentry_config import capture_exception


DELIVER_JOB_NAME = "deliver_webhook"

logger = get_logger(component="delivery_queue")


class DeliveryQueue(Protocol):
    async def enqueue(
        self,
        delivery_id: str,
        attempt: int = 0,
        delay: float | None = None,
        dedupe: bool = True,
    ) -> None:
        ...


class ArqDeliveryQueue:
    """Enqueue deliveries as ARQ jobs."""

    def __init__(self, pool: ArqRedis | None = None, redis_url: str | None = None):
        self._pool = pool
        self._owns_pool = pool is None
        self.redis_url = redis_url or settings.REDIS_URL

    async def get_pool(self) -> ArqRedis:
        if self._pool is None:
            self._pool = await create_pool(RedisSettings.from_dsn(self.redis_url))
        return self._pool

    async def enqueue(
        self,
        delivery_id: str,
        attempt: int = 0,
        delay: float | None = None,
        dedupe: bool = True,
    ) -> None:
        """
        Enqueue a delivery attempt.

        With ``dedupe`` the ARQ job id is ``<delivery_id>:<attempt>`` so the same
        attempt is not queued twice.
        """
        pool = await self.get_pool()
        job = await pool.enqueue_job(
            DELIVER_JOB_NAME,
            delivery_id,
            _job_id=f"{delivery_id}:{attempt}" if dedupe else None,
            _defer_by=delay if delay and delay > 0 else None,
        )
        if job is None:
            logger.info("delivery_already_queued", delivery_id=delivery_id, attempt=attempt)

    async def close(self) -> None:
        if self._pool is not None and self._owns_pool:
            await self._pool.close()
            self._pool = None


class LocalDeliveryQueue:
    """
    In-process delivery queue.

    ``concurrency`` worker tasks pull ids off an asyncio.Queue, which bounds the
    number of simultaneous outbound connections. Delayed items are put on the
    queue by the event loop once their delay elapses.
    """

    def __init__(self, concurrency: int | None = None):
        self.concurrency = concurrency or settings.WEBHOOK_WORKER_CONCURRENCY
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._workers: list[asyncio.Task] = []
        self._timers: set[asyncio.TimerHandle] = set()
        self._handler: Callable[[str], Awaitable[object]] | None = None

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self, handler: Callable[[str], Awaitable[object]]) -> None:
        """Start the worker tasks. ``handler`` processes one delivery id."""
        if self._workers:
            return
        self._handler = handler
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"delivery-worker-{i}")
            for i in range(self.concurrency)
        ]

    async def stop(self) -> None:
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    async def enqueue(
        self,
        delivery_id: str,
        attempt: int = 0,
        delay: float | None = None,
        dedupe: bool = True,
    ) -> None:
        if not delay or delay <= 0:
            self._queue.put_nowait(delivery_id)
            return

        loop = asyncio.get_running_loop()
        timer: asyncio.TimerHandle | None = None

        def _release():
            self._timers.discard(timer)
            self._queue.put_nowait(delivery_id)

        timer = loop.call_later(delay, _release)
        self._timers.add(timer)

    async def join(self) -> None:
        """Wait until every item currently on the queue has been processed."""
        await self._queue.join()

    async def _worker(self, index: int) -> None:
        while True:
            delivery_id = await self._queue.get()
            try:
                await self._handler(delivery_id)
            except Exception:
                logger.exception("delivery_worker_error", worker=index, delivery_id=delivery_id)
                capture_exception(delivery_id=delivery_id)
            finally:
                self._queue.task_done()
