"""Redis transport for cross-process job delivery."""

from __future__ import annotations

import logging
import time
from typing import Any, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import JobMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)

# Move every delayed message whose score (due time) has passed onto the ready list.
_PROMOTE_DUE = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
for _, member in ipairs(due) do
    redis.call('ZREM', KEYS[1], member)
    redis.call('LPUSH', KEYS[2], member)
end
return #due
"""

# Return claims older than the visibility timeout to the ready list.
_REQUEUE_EXPIRED = """
local stale = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
for _, member in ipairs(stale) do
    redis.call('ZREM', KEYS[1], member)
    redis.call('LREM', KEYS[2], 1, member)
    redis.call('LPUSH', KEYS[3], member)
end
return #stale
"""

# (topic, message json)
RedisRaw = Tuple[str, str]


class RedisTransport(BaseTransport[RedisRaw]):
    """Redis-based transport for distributed job delivery.

    Each topic uses a ready list, a sorted set of delayed messages scored by
    due time, and a processing list plus claim set that make delivery
    at-least-once: a claimed message that is not acked within
    ``visibility_timeout`` seconds is handed out again.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "stepwise",
        visibility_timeout: float = 300.0,
        poll_interval: float = 1.0,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self.visibility_timeout = visibility_timeout
        self.poll_interval = poll_interval
        self._redis: Optional[Any] = None
        self._promote_due: Optional[Any] = None
        self._requeue_expired: Optional[Any] = None

    def _key(self, topic: str, kind: str) -> str:
        return f"{self.prefix}:{topic}:{kind}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        # Test connection
        await self._redis.ping()
        self._promote_due = self._redis.register_script(_PROMOTE_DUE)
        self._requeue_expired = self._redis.register_script(_REQUEUE_EXPIRED)

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    async def ping(self) -> bool:
        try:
            client = await self._client()
            return bool(await client.ping())
        except (redis.RedisError, OSError):
            return False

    async def publish(self, topic: str, message: JobMessage, delay: float = 0) -> None:
        """Publish message to the ready list, or the delayed set when ``delay`` > 0."""
        client = await self._client()
        payload = message.to_json()
        if delay > 0:
            await client.zadd(self._key(topic, "delayed"), {payload: time.time() + delay})
        else:
            await client.lpush(self._key(topic, "ready"), payload)

    async def receive(
        self, topic: str, timeout: float = 0
    ) -> Optional[Tuple[RedisRaw, JobMessage]]:
        client = await self._client()
        ready = self._key(topic, "ready")
        processing = self._key(topic, "processing")
        claims = self._key(topic, "claims")
        now = time.time()

        await self._promote_due(keys=[self._key(topic, "delayed"), ready], args=[now])
        await self._requeue_expired(
            keys=[claims, processing, ready], args=[now - self.visibility_timeout]
        )

        if timeout > 0:
            payload = await client.blmove(ready, processing, timeout, "RIGHT", "LEFT")
        else:
            payload = await client.lmove(ready, processing, "RIGHT", "LEFT")
        if payload is None:
            return None

        try:
            message = JobMessage.from_json(payload)
        except ValidationError as e:
            logger.warning(f"Dropping unparseable message on {topic}: {e}")
            await client.lrem(processing, 1, payload)
            return None

        await client.zadd(claims, {payload: time.time()})
        return (topic, payload), message

    async def ack(self, raw_message: RedisRaw) -> None:
        topic, payload = raw_message
        client = await self._client()
        await client.lrem(self._key(topic, "processing"), 1, payload)
        await client.zrem(self._key(topic, "claims"), payload)

    async def nack(self, raw_message: RedisRaw, requeue: bool = True) -> None:
        topic, payload = raw_message
        await self.ack(raw_message)
        if requeue:
            client = await self._client()
            await client.lpush(self._key(topic, "ready"), payload)

    async def remove_pending(self, topic: str, execution_id: str) -> int:
        client = await self._client()
        ready = self._key(topic, "ready")
        delayed = self._key(topic, "delayed")
        removed = 0
        for payload in await client.lrange(ready, 0, -1):
            if self._belongs_to(payload, execution_id):
                removed += await client.lrem(ready, 1, payload)
        for payload in await client.zrange(delayed, 0, -1):
            if self._belongs_to(payload, execution_id):
                removed += await client.zrem(delayed, payload)
        return removed

    async def depth(self, topic: str) -> int:
        client = await self._client()
        ready = await client.llen(self._key(topic, "ready"))
        delayed = await client.zcard(self._key(topic, "delayed"))
        return ready + delayed

    @staticmethod
    def _belongs_to(payload: str, execution_id: str) -> bool:
        try:
            return JobMessage.from_json(payload).execution_id == execution_id
        except ValidationError:
            return False
