"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Iterable, List, Optional, Tuple

from ..contracts import StepMessage
from .base import BaseTransport, topic_matches

logger = logging.getLogger(__name__)

# (queue, serialized body, message)
InMemoryRaw = Tuple[str, str, StepMessage]


class InMemoryTransport(BaseTransport[InMemoryRaw]):
    """Simple in-process topic exchange for unit tests."""

    def __init__(self) -> None:
        self._bindings: Dict[str, List[str]] = {}
        self._queues: Dict[str, Deque[InMemoryRaw]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.acked: List[InMemoryRaw] = []
        self.rejected: List[InMemoryRaw] = []

    async def declare_queue(self, queue: str, topics: Iterable[str]) -> None:
        async with self._lock:
            patterns = self._bindings.setdefault(queue, [])
            for topic in topics:
                if topic not in patterns:
                    patterns.append(topic)

    async def publish(self, topic: str, message: StepMessage) -> None:
        """Copy the message into every queue bound to a matching pattern."""
        body = message.to_json()
        async with self._lock:
            routed = [
                queue
                for queue, patterns in self._bindings.items()
                if any(topic_matches(p, topic) for p in patterns)
            ]
            for queue in routed:
                self._queues[queue].append((queue, body, StepMessage.from_json(body)))
        if not routed:
            logger.warning(f"No queue bound for topic {topic}; message dropped")

    def pop(self, queue: str) -> Optional[InMemoryRaw]:
        """Take the next message off ``queue`` without blocking."""
        if self._queues[queue]:
            return self._queues[queue].popleft()
        return None

    def pending(self, queue: str) -> int:
        return len(self._queues[queue])

    async def subscribe(
        self,
        queue: str,
        topics: Optional[Iterable[str]] = None,
        prefetch_count: int = 1,
        lifespan: Optional[float] = None,
    ) -> AsyncIterator[Tuple[InMemoryRaw, StepMessage]]:
        """Subscribe to messages from queue.

        Args:
            queue: The queue to consume from
            topics: Patterns to bind before consuming
            prefetch_count: Ignored; the consumer applies its own limit
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        if topics:
            await self.declare_queue(queue, topics)
        start_time = asyncio.get_event_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_event_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            async with self._lock:
                raw_message = self.pop(queue)
            if raw_message is not None:
                yield raw_message, raw_message[2]
                continue

            await asyncio.sleep(0.05)

    async def ack(self, raw_message: InMemoryRaw) -> None:
        """Record the acknowledgment; the message is already off the queue."""
        self.acked.append(raw_message)

    async def nack(self, raw_message: InMemoryRaw, requeue: bool = True) -> None:
        if not requeue:
            self.rejected.append(raw_message)
            return
        queue, body, _ = raw_message
        async with self._lock:
            self._queues[queue].append((queue, body, StepMessage.from_json(body)))
