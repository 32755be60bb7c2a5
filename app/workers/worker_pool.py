"""
In-process worker pool for freshly received webhook events.

A fixed number of asyncio workers drain a bounded queue. When the queue is
full the event is simply left pending; the periodic sweep picks it up. The
in-flight set only avoids obvious double submission, the database claim is
what guarantees a single processor.
"""
import asyncio
from typing import Awaitable, Callable

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


class WebhookWorkerPool:

    def __init__(
        self,
        handler: Callable[[int], Awaitable[object]],
        concurrency: int | None = None,
        queue_size: int | None = None,
    ):
        self._handler = handler
        self.concurrency = concurrency or settings.WEBHOOK_CONCURRENCY
        self.queue_size = queue_size or settings.WEBHOOK_QUEUE_SIZE
        self._queue: asyncio.Queue[int | None] | None = None
        self._workers: list[asyncio.Task] = []
        self._in_flight: set[int] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def start(self) -> None:
        if self._running:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"webhook-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info(
            "Webhook worker pool started",
            extra_data={"concurrency": self.concurrency, "queue_size": self.queue_size}
        )

    async def stop(self) -> None:
        """Stop accepting work, let queued and running events finish"""
        if not self._running:
            return
        self._running = False
        for _ in self._workers:
            await self._queue.put(None)
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Webhook worker pool stopped")

    def submit(self, event_id: int) -> bool:
        """Queue an event. False means backpressure: leave it for the sweep."""
        if not self._running or event_id in self._in_flight:
            return False
        try:
            self._queue.put_nowait(event_id)
        except asyncio.QueueFull:
            logger.warning(
                "Webhook queue full, event left for sweep",
                extra_data={"webhook_event_id": event_id, "queue_size": self.queue_size}
            )
            return False
        self._in_flight.add(event_id)
        return True

    async def _worker(self, index: int) -> None:
        while True:
            event_id = await self._queue.get()
            try:
                if event_id is None:
                    return
                await self._handler(event_id)
            except Exception:
                logger.error(
                    "Webhook worker failed to process event",
                    extra_data={"webhook_event_id": event_id, "worker": index},
                    exc_info=True
                )
            finally:
                if event_id is not None:
                    self._in_flight.discard(event_id)
                self._queue.task_done()
