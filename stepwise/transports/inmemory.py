"""In-memory transport for testing and single-process use."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Tuple

from ..contracts import JobMessage
from .base import BaseTransport

# (topic, sequence number, message)
InMemoryRaw = Tuple[str, int, JobMessage]


class InMemoryTransport(BaseTransport[InMemoryRaw]):
    """Simple in-process delayed queue.

    ``clock`` defaults to :func:`time.monotonic`; tests pass a controllable
    clock and use :meth:`advance_time` to release delayed messages without
    sleeping.
    """

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        poll_interval: float = 0.01,
    ) -> None:
        self._clock = clock or time.monotonic
        self._offset = 0.0
        self.poll_interval = poll_interval
        self._queues: Dict[str, List[Tuple[float, int, JobMessage]]] = defaultdict(list)
        self._in_flight: Dict[int, Tuple[str, JobMessage]] = {}
        self._sequence = itertools.count()
        self._lock = asyncio.Lock()

    def now(self) -> float:
        return self._clock() + self._offset

    def advance_time(self, seconds: float) -> None:
        """Move the transport clock forward."""
        self._offset += seconds

    async def publish(self, topic: str, message: JobMessage, delay: float = 0) -> None:
        """Publish message to in-memory queue."""
        async with self._lock:
            heapq.heappush(
                self._queues[topic],
                (self.now() + max(delay, 0), next(self._sequence), message),
            )

    async def receive(
        self, topic: str, timeout: float = 0
    ) -> Optional[Tuple[InMemoryRaw, JobMessage]]:
        deadline = asyncio.get_running_loop().time() + timeout
        while True:
            async with self._lock:
                queue = self._queues[topic]
                if queue and queue[0][0] <= self.now():
                    _, seq, message = heapq.heappop(queue)
                    self._in_flight[seq] = (topic, message)
                    return (topic, seq, message), message
            if asyncio.get_running_loop().time() >= deadline:
                return None
            await asyncio.sleep(self.poll_interval)

    async def ack(self, raw_message: InMemoryRaw) -> None:
        self._in_flight.pop(raw_message[1], None)

    async def nack(self, raw_message: InMemoryRaw, requeue: bool = True) -> None:
        topic, seq, message = raw_message
        if self._in_flight.pop(seq, None) is None or not requeue:
            return
        async with self._lock:
            heapq.heappush(self._queues[topic], (self.now(), seq, message))

    async def remove_pending(self, topic: str, execution_id: str) -> int:
        async with self._lock:
            queue = self._queues[topic]
            kept = [entry for entry in queue if entry[2].execution_id != execution_id]
            removed = len(queue) - len(kept)
            heapq.heapify(kept)
            self._queues[topic] = kept
        return removed

    async def depth(self, topic: str) -> int:
        return len(self._queues[topic])

    def scheduled_delays(self, topic: str) -> List[float]:
        """Remaining delay of every pending message on ``topic``, soonest first."""
        now = self.now()
        return sorted(max(available_at - now, 0.0) for available_at, _, _ in self._queues[topic])

    def in_flight(self) -> int:
        return len(self._in_flight)
