"""Base transport interface for chainflow messaging."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Iterable, Optional, Tuple, TypeVar

from ..contracts import StepMessage

RawMessageT = TypeVar("RawMessageT")


def topic_matches(pattern: str, topic: str) -> bool:
    """AMQP topic matching: ``*`` is exactly one word, ``#`` zero or more."""

    return _match(pattern.split("."), topic.split("."))


def _match(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match(rest, words[1:])
    return False


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract base transport for message brokers.

    Publishers address a *topic*; consumers read from a named *queue* that
    is bound to one or more topic patterns.
    """

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def declare_queue(self, queue: str, topics: Iterable[str]) -> None:
        """Create ``queue`` if needed and bind it to the topic patterns."""
        raise NotImplementedError

    @abc.abstractmethod
    async def publish(self, topic: str, message: StepMessage) -> None:
        """Route a message to every queue bound to a matching pattern."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self,
        queue: str,
        topics: Optional[Iterable[str]] = None,
        prefetch_count: int = 1,
        lifespan: Optional[float] = None,
    ) -> AsyncIterator[Tuple[RawMessageT, StepMessage]]:
        """Yield raw transport message and StepMessage pairs.

        Args:
            queue: The queue to consume from
            topics: Patterns to bind ``queue`` to before consuming
            prefetch_count: In-flight message bound; pull-based backends leave it
                to the caller (see ``WorkflowWorker``)
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Negatively acknowledge (default to ack if unsupported)."""
        await self.ack(raw_message)
