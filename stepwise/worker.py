"""Queue worker that pulls jobs from one logical queue with bounded concurrency."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

from .contracts import JobMessage
from .transports import BaseTransport

logger = logging.getLogger(__name__)

JobHandler = Callable[[JobMessage], Awaitable[None]]


class QueueWorker:
    """Consumes one topic, running at most ``concurrency`` handlers at once.

    A job is acked after its handler returns. If the handler raises, the
    error is logged and the job is nacked so the transport redelivers it.
    """

    def __init__(
        self,
        transport: BaseTransport,
        topic: str,
        handler: JobHandler,
        concurrency: int,
        poll_interval: Optional[float] = None,
    ) -> None:
        self._transport = transport
        self.topic = topic
        self._handler = handler
        self.concurrency = concurrency
        self._poll_interval = poll_interval or transport.poll_interval
        self._semaphore = asyncio.Semaphore(concurrency)
        self._tasks: Set[asyncio.Task] = set()
        self._stopping = False
        self.processed = 0
        self.failed = 0

    async def process(self, raw_message: Any, message: JobMessage) -> None:
        """Run the handler for one claimed job and settle it with the transport."""
        try:
            await self._handler(message)
        except Exception:
            self.failed += 1
            logger.exception(
                f"Handler for {self.topic} failed on message_id={message.message_id} "
                f"execution_id={message.execution_id}; requeueing"
            )
            await self._transport.nack(raw_message, requeue=True)
            return
        self.processed += 1
        await self._transport.ack(raw_message)

    async def _process_and_release(self, raw_message: Any, message: JobMessage) -> None:
        try:
            await self.process(raw_message, message)
        finally:
            self._semaphore.release()

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Consume jobs until :meth:`stop` is called or ``lifespan`` seconds pass."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        logger.info(f"Worker for {self.topic} started (concurrency={self.concurrency})")
        try:
            while not self._stopping:
                if deadline is not None and loop.time() >= deadline:
                    break
                await self._semaphore.acquire()
                try:
                    item = await self._transport.receive(
                        self.topic, timeout=self._poll_interval
                    )
                except Exception:
                    self._semaphore.release()
                    raise
                if item is None:
                    self._semaphore.release()
                    continue
                raw_message, message = item
                task = asyncio.create_task(self._process_and_release(raw_message, message))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        finally:
            await self.drain()
            logger.info(f"Worker for {self.topic} stopped")

    async def drain(self) -> None:
        """Wait for in-flight handlers to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def stop(self) -> None:
        self._stopping = True
