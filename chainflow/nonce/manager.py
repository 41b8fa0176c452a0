"""Sequential nonce manager: one allocator actor per (chain, signer)."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Dict, Tuple

from pydantic import BaseModel

from ..chain import ChainRegistry
from ..constants import TransactionMetaStatus
from ..persistence import WorkflowRepository
from .errors import (
    NonceAllocationError,
    NonceAllocationInterrupted,
    NonceSourceUnavailable,
    SignerAddressNotFound,
    TransactionMetaLocked,
)
from .source import NonceSource

logger = logging.getLogger(__name__)

SignerKey = Tuple[int, str]


class NonceAllocation(BaseModel):
    transaction_meta_id: int
    chain_id: int
    address: str
    nonce: int
    lock_id: str


class NonceManager:
    """Serialize nonce allocation per signer, in-process and across processes.

    Callers queue behind a single drain task for their ``(chain_id,
    signer_ref)``; the task is started on demand and exits once the queue
    is empty. Before asking for a nonce the drain task wins the
    compare-and-swap lock on the caller's transaction meta row, which keeps
    other worker processes out of the same allocation.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        source: NonceSource,
        chains: ChainRegistry,
    ) -> None:
        self.repository = repository
        self.source = source
        self.chains = chains
        self._queues: Dict[SignerKey, asyncio.Queue] = {}
        self._drainers: Dict[SignerKey, asyncio.Task] = {}

    async def allocate(
        self, chain_id: int, signer_ref: str, transaction_meta_id: int
    ) -> NonceAllocation:
        key = (int(chain_id), signer_ref)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        queue = self._queues.setdefault(key, asyncio.Queue())
        queue.put_nowait((transaction_meta_id, future))
        drainer = self._drainers.get(key)
        if drainer is None or drainer.done():
            self._drainers[key] = asyncio.create_task(self._drain(key, queue))
        return await future

    async def _drain(self, key: SignerKey, queue: asyncio.Queue) -> None:
        chain_id, signer_ref = key
        try:
            while not queue.empty():
                meta_id, future = queue.get_nowait()
                try:
                    if future.done():
                        logger.debug(f"Caller for meta {meta_id} went away before allocation; skipping")
                        continue
                    allocation = await self._allocate_one(chain_id, signer_ref, meta_id)
                except NonceAllocationError as e:
                    if not future.done():
                        future.set_exception(e)
                except Exception as e:
                    logger.exception(
                        f"Unexpected error allocating nonce for meta {meta_id} ({signer_ref} on chain {chain_id})"
                    )
                    if not future.done():
                        future.set_exception(NonceAllocationInterrupted(str(e)))
                else:
                    if not future.done():
                        future.set_result(allocation)
                    else:
                        logger.warning(
                            f"Caller for meta {meta_id} went away after nonce {allocation.nonce} was allocated; "
                            "releasing the row as gethDown"
                        )
                        await self.mark_submission_failed(allocation)
                finally:
                    queue.task_done()
        finally:
            if self._drainers.get(key) is asyncio.current_task():
                del self._drainers[key]
                if queue.empty():
                    self._queues.pop(key, None)

    async def _allocate_one(
        self, chain_id: int, signer_ref: str, meta_id: int
    ) -> NonceAllocation:
        lock_id = uuid.uuid4().hex
        if not await self.repository.acquire_transaction_meta_lock(meta_id, lock_id):
            raise TransactionMetaLocked(f"Transaction meta {meta_id} is locked or no longer queued")

        try:
            address = self.chains.resolve_signer(chain_id, signer_ref)
            if not address:
                await self.repository.release_lock_and_mark_status(
                    meta_id, TransactionMetaStatus.ROLLBACK_NEEDED
                )
                raise SignerAddressNotFound(f"No address for signer {signer_ref!r} on chain {chain_id}")

            try:
                nonce = await self.source.next_nonce(chain_id, address)
            except NonceSourceUnavailable:
                logger.error(f"Nonce source down for {address} on chain {chain_id}; meta {meta_id} marked gethDown")
                await self.repository.release_lock_and_mark_status(
                    meta_id, TransactionMetaStatus.GETH_DOWN
                )
                raise
        except NonceAllocationError:
            raise
        except BaseException:
            # Lock won but no nonce handed out: never leave the row locked.
            await asyncio.shield(
                self.repository.release_lock_and_mark_status(
                    meta_id, TransactionMetaStatus.GETH_DOWN
                )
            )
            raise

        logger.debug(f"Allocated nonce {nonce} to meta {meta_id} ({address} on chain {chain_id})")
        return NonceAllocation(
            transaction_meta_id=meta_id,
            chain_id=chain_id,
            address=address,
            nonce=nonce,
            lock_id=lock_id,
        )

    async def mark_submitted(self, allocation: NonceAllocation, transaction_hash: str) -> None:
        await self.repository.release_lock_and_mark_status(
            allocation.transaction_meta_id,
            TransactionMetaStatus.SUBMITTED,
            transaction_hash=transaction_hash,
        )

    async def mark_submission_failed(self, allocation: NonceAllocation) -> None:
        """Release the row as ``gethDown`` and drop the cached counter."""
        await self.repository.release_lock_and_mark_status(
            allocation.transaction_meta_id, TransactionMetaStatus.GETH_DOWN
        )
        await self.source.invalidate(allocation.chain_id, allocation.address)

    async def close(self) -> None:
        for task in list(self._drainers.values()):
            task.cancel()
        await asyncio.gather(*self._drainers.values(), return_exceptions=True)
        self._drainers.clear()
        self._queues.clear()
