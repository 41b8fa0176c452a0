"""Redis transport for cross-process messaging."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Iterable, Optional, Tuple

import redis.asyncio as redis

from ..contracts import StepMessage
from .base import BaseTransport, topic_matches

logger = logging.getLogger(__name__)

BINDINGS_KEY = "chainflow:bindings"


def queue_key(queue: str) -> str:
    return f"chainflow:queue:{queue}"


class RedisTransport(BaseTransport[Tuple[str, str]]):
    """Redis-based transport for distributed messaging.

    Bindings live in a hash (queue -> JSON list of patterns); each queue is a
    list fed with LPUSH and drained with BRPOP. Delivery is at-most-once:
    a message is off the list as soon as it is popped, so ``ack`` is a no-op
    and ``nack(requeue=True)`` pushes it back.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

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

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def declare_queue(self, queue: str, topics: Iterable[str]) -> None:
        if not self._redis:
            await self.connect()
        current = await self._redis.hget(BINDINGS_KEY, queue)
        patterns = json.loads(current) if current else []
        for topic in topics:
            if topic not in patterns:
                patterns.append(topic)
        await self._redis.hset(BINDINGS_KEY, queue, json.dumps(patterns))

    async def publish(self, topic: str, message: StepMessage) -> None:
        """Push the message onto every queue whose bindings match ``topic``."""
        if not self._redis:
            await self.connect()

        bindings = await self._redis.hgetall(BINDINGS_KEY)
        message_json = message.to_json()
        routed = 0
        for queue, patterns in bindings.items():
            if any(topic_matches(p, topic) for p in json.loads(patterns)):
                await self._redis.lpush(queue_key(queue), message_json)
                routed += 1
        if not routed:
            logger.warning(f"No queue bound for topic {topic}; message dropped")

    async def subscribe(
        self,
        queue: str,
        topics: Optional[Iterable[str]] = None,
        prefetch_count: int = 1,
        lifespan: Optional[float] = None,
    ) -> AsyncIterator[Tuple[Tuple[str, str], StepMessage]]:
        """Subscribe to messages from a Redis queue."""
        if not self._redis:
            await self.connect()
        if topics:
            await self.declare_queue(queue, topics)

        key = queue_key(queue)
        start_time = asyncio.get_event_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_event_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            # Blocking pop with timeout
            result = await self._redis.brpop(key, timeout=1)

            if result:
                _, message_json = result
                try:
                    message = StepMessage.from_json(message_json)
                except ValueError as e:
                    logger.error(f"Dropping unparseable message on {queue}: {e}")
                    continue
                yield (queue, message_json), message

    async def ack(self, raw_message: Tuple[str, str]) -> None:
        """No-op acknowledgment for Redis transport (message already consumed)."""
        pass

    async def nack(self, raw_message: Tuple[str, str], requeue: bool = True) -> None:
        if not requeue:
            return
        if not self._redis:
            await self.connect()
        queue, message_json = raw_message
        await self._redis.lpush(queue_key(queue), message_json)
