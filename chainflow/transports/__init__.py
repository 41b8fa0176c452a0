"""Transport factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ChainflowConfig, load_config
from .base import BaseTransport, topic_matches
from .inmemory import InMemoryTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[ChainflowConfig] = None
) -> BaseTransport:
    """Factory function to get the configured transport."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("CHAINFLOW_TRANSPORT")
        or config.transport.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryTransport()
    elif backend == "redis":
        from .redis import RedisTransport

        redis_conf = config.transport.redis
        return RedisTransport(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    elif backend == "rabbitmq":
        from .rabbitmq import RabbitMQTransport

        rabbit_conf = config.transport.rabbitmq
        return RabbitMQTransport(url=rabbit_conf.url, exchange=rabbit_conf.exchange)
    else:
        raise ValueError(f"Unsupported transport backend: {backend}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport", "topic_matches"]
