"""
Inbound dispatcher: bounded asyncio queue between the webhook handler and
the inbound processor.

The webhook route only normalizes and enqueues, then returns 200. Consumers
pull events and run :class:`InboundProcessor` in a thread executor with a
session of their own, so slow AI calls never hold up the acknowledgement.
No external message queue is involved; events still queued at shutdown are
lost and will not be redelivered by the provider.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable

from sqlalchemy.orm import Session

from metahub.monitoring.metrics import DISPATCH_QUEUE_DEPTH, WEBHOOK_EVENTS
from metahub.services.inbound_processor import InboundProcessor
from metahub.webhooks.events import InboundEvent

logger = logging.getLogger(__name__)


class InboundDispatcher:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        processor: InboundProcessor,
        workers: int = 4,
        queue_size: int = 1000,
    ) -> None:
        self._session_factory = session_factory
        self._processor = processor
        self._workers = max(workers, 1)
        self._queue: asyncio.Queue[InboundEvent] = asyncio.Queue(maxsize=queue_size)
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._consume(), name=f"inbound-dispatcher-{index}")
            for index in range(self._workers)
        ]
        logger.info("Inbound dispatcher started (workers=%d)", self._workers)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        if not self._queue.empty():
            logger.warning("Inbound dispatcher stopped with %d queued events", self._queue.qsize())
        logger.info("Inbound dispatcher stopped")

    def submit(self, events: Iterable[InboundEvent]) -> int:
        """Enqueue without waiting. Returns how many events were accepted."""
        accepted = 0
        for event in events:
            try:
                self._queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.error(
                    "Dispatch queue full, dropping %s",
                    event.dedup_key,
                    extra={"workspace_id": event.workspace_id},
                )
                continue
            accepted += 1
            WEBHOOK_EVENTS.labels(channel=event.channel.value, event_type=event.event_type.value).inc()
        DISPATCH_QUEUE_DEPTH.set(self._queue.qsize())
        return accepted

    async def drain(self) -> None:
        await self._queue.join()

    # ── Consumers ─────────────────────────────────────────────────────────

    async def _consume(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            event = await self._queue.get()
            try:
                await loop.run_in_executor(None, self._process_sync, event)
            finally:
                self._queue.task_done()
                DISPATCH_QUEUE_DEPTH.set(self._queue.qsize())

    def _process_sync(self, event: InboundEvent) -> None:
        try:
            with self._session_factory() as db:
                result = self._processor.process(db, event)
            if result.errors:
                logger.warning(
                    "Inbound event processed with errors: %s",
                    "; ".join(result.errors),
                    extra={"workspace_id": event.workspace_id, "thread_id": result.thread_id},
                )
        except Exception:
            logger.exception("Inbound event processing failed", extra={"workspace_id": event.workspace_id})
