"""Shared counters and locks backing the nonce source."""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Dict, Optional, Protocol

import redis.asyncio as redis

from ..config import CacheConfig

# Increment only when the counter exists, so a missing key always forces a chain sync.
INCR_IF_EXISTS = """
if redis.call('exists', KEYS[1]) == 1 then
  return redis.call('incr', KEYS[1])
end
return nil
"""

RELEASE_IF_OWNER = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('del', KEYS[1])
end
return 0
"""


class NonceCache(Protocol):
    async def increment_if_present(self, key: str) -> Optional[int]:
        """Atomically increment ``key`` and return the new value, or ``None`` if unset."""

    async def set(self, key: str, value: int) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...

    async def acquire_lock(self, key: str, ttl: float) -> Optional[str]:
        """Take a short-lived exclusive lock; return its token or ``None`` if held."""

    async def release_lock(self, key: str, token: str) -> None:
        ...


class InMemoryNonceCache(NonceCache):
    """Process-local cache for tests and single-worker deployments."""

    def __init__(self) -> None:
        self._values: Dict[str, int] = {}
        self._locks: Dict[str, tuple[str, float]] = {}

    async def increment_if_present(self, key: str) -> Optional[int]:
        if key not in self._values:
            return None
        self._values[key] += 1
        return self._values[key]

    async def set(self, key: str, value: int) -> None:
        self._values[key] = value

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)

    async def acquire_lock(self, key: str, ttl: float) -> Optional[str]:
        now = asyncio.get_running_loop().time()
        held = self._locks.get(key)
        if held and held[1] > now:
            return None
        token = uuid.uuid4().hex
        self._locks[key] = (token, now + ttl)
        return token

    async def release_lock(self, key: str, token: str) -> None:
        held = self._locks.get(key)
        if held and held[0] == token:
            del self._locks[key]


class RedisNonceCache(NonceCache):
    """Counters and locks shared by every worker process through Redis."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self._redis: Any = redis.Redis(
            host=host, port=port, db=db, password=password, decode_responses=True
        )
        self._incr = self._redis.register_script(INCR_IF_EXISTS)
        self._release = self._redis.register_script(RELEASE_IF_OWNER)

    async def increment_if_present(self, key: str) -> Optional[int]:
        value = await self._incr(keys=[key])
        return None if value is None else int(value)

    async def set(self, key: str, value: int) -> None:
        await self._redis.set(key, value)

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def acquire_lock(self, key: str, ttl: float) -> Optional[str]:
        token = uuid.uuid4().hex
        acquired = await self._redis.set(key, token, nx=True, px=int(ttl * 1000))
        return token if acquired else None

    async def release_lock(self, key: str, token: str) -> None:
        await self._release(keys=[key], args=[token])

    async def aclose(self) -> None:
        await self._redis.aclose()


def get_nonce_cache(config: Optional[CacheConfig] = None) -> NonceCache:
    """Factory selecting the nonce cache backend from configuration."""

    config = config or CacheConfig()
    if config.backend == "inmemory":
        return InMemoryNonceCache()
    if config.backend == "redis":
        return RedisNonceCache(
            host=config.redis.host,
            port=config.redis.port,
            db=config.redis.db,
            password=config.redis.password,
        )
    raise ValueError(f"Unsupported cache backend: {config.backend}")
