"""Cache-first nonce source with chain synchronisation on a cache miss."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

from ..chain import ChainClient, ChainRegistry
from ..config import NonceConfig
from .cache import NonceCache
from .errors import NonceSourceUnavailable

logger = logging.getLogger(__name__)


def nonce_key(chain_id: int, address: str) -> str:
    return f"chainflow:nonce:{chain_id}:{address.lower()}"


def _lock_key(chain_id: int, address: str) -> str:
    return f"chainflow:nonce_lock:{chain_id}:{address.lower()}"


def _unmined_nonces(txpool: dict, address: str) -> Iterable[int]:
    """Nonces held by ``address`` in the node's pending and queued pools."""
    wanted = address.lower()
    for section in ("pending", "queued"):
        for sender, transactions in (txpool.get(section) or {}).items():
            if sender.lower() != wanted:
                continue
            for nonce in transactions:
                yield int(nonce)


class NonceSource:
    """Hand out the next nonce for an address.

    The cached counter holds the last nonce handed out; allocation is an
    atomic increment. When no counter exists, one caller (under a short
    cache lock) syncs it from every configured node while others wait.
    """

    def __init__(
        self,
        cache: NonceCache,
        chains: ChainRegistry,
        config: Optional[NonceConfig] = None,
    ) -> None:
        self.cache = cache
        self.chains = chains
        self.config = config or NonceConfig()

    async def next_nonce(self, chain_id: int, address: str) -> int:
        key = nonce_key(chain_id, address)
        nonce = await self.cache.increment_if_present(key)
        if nonce is not None:
            return nonce

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.wait_timeout
        lock_key = _lock_key(chain_id, address)
        while True:
            token = await self.cache.acquire_lock(lock_key, self.config.lock_ttl)
            if token is not None:
                try:
                    nonce = await self.cache.increment_if_present(key)
                    if nonce is None:
                        nonce = await self._sync_from_chain(chain_id, address)
                        await self.cache.set(key, nonce)
                    return nonce
                finally:
                    await self.cache.release_lock(lock_key, token)

            if loop.time() >= deadline:
                raise NonceSourceUnavailable(
                    f"Timed out waiting for nonce sync of {address} on chain {chain_id}"
                )
            await asyncio.sleep(self.config.wait_interval)
            nonce = await self.cache.increment_if_present(key)
            if nonce is not None:
                return nonce

    async def invalidate(self, chain_id: int, address: str) -> None:
        """Forget the cached counter so the next allocation re-syncs from chain."""
        await self.cache.delete(nonce_key(chain_id, address))

    async def _sync_from_chain(self, chain_id: int, address: str) -> int:
        clients = self.chains.clients(chain_id)
        results = await asyncio.gather(
            *(self._node_nonce(client, address) for client in clients),
            return_exceptions=True,
        )
        nonces = []
        for result in results:
            if isinstance(result, BaseException):
                logger.warning(f"Nonce sync for {address} on chain {chain_id} failed on one node: {result}")
            else:
                nonces.append(result)
        if not nonces:
            raise NonceSourceUnavailable(
                f"No node of chain {chain_id} returned a nonce for {address}"
            )
        nonce = max(nonces)
        logger.info(f"Synced nonce {nonce} for {address} on chain {chain_id}")
        return nonce

    @staticmethod
    async def _node_nonce(client: ChainClient, address: str) -> int:
        mined = await client.get_transaction_count(address)
        unmined = list(_unmined_nonces(await client.txpool_content(), address))
        if unmined:
            return max(mined, max(unmined) + 1)
        return mined
