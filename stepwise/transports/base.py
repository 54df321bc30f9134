"""Base transport interface for stepwise job delivery."""

from __future__ import annotations

import abc
from typing import Generic, Optional, Tuple, TypeVar

from ..contracts import JobMessage

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract at-least-once job transport.

    A message received from a topic stays claimed until it is acked; nacked
    messages are redelivered. Delayed messages become visible once their
    delay has elapsed.
    """

    poll_interval: float = 0.1

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    async def ping(self) -> bool:
        """Return ``True`` when the broker is reachable."""
        return True

    @abc.abstractmethod
    async def publish(self, topic: str, message: JobMessage, delay: float = 0) -> None:
        """Send a message to a topic, visible after ``delay`` seconds."""
        raise NotImplementedError

    @abc.abstractmethod
    async def receive(
        self, topic: str, timeout: float = 0
    ) -> Optional[Tuple[RawMessageT, JobMessage]]:
        """Claim the next due message, waiting up to ``timeout`` seconds."""
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    @abc.abstractmethod
    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Release a claimed message, optionally making it visible again."""
        raise NotImplementedError

    @abc.abstractmethod
    async def remove_pending(self, topic: str, execution_id: str) -> int:
        """Drop unclaimed messages of an execution; returns how many were removed."""
        raise NotImplementedError

    @abc.abstractmethod
    async def depth(self, topic: str) -> int:
        """Number of unclaimed messages (ready or delayed) on a topic."""
        raise NotImplementedError
