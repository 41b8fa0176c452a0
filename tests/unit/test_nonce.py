import asyncio

import pytest

from chainflow.chain import ChainRegistry
from chainflow.config import ChainConfig
from chainflow.constants import TransactionMetaStatus
from chainflow.nonce import (
    InMemoryNonceCache,
    NonceAllocationInterrupted,
    NonceManager,
    NonceSource,
    NonceSourceUnavailable,
    SignerAddressNotFound,
    TransactionMetaLocked,
    nonce_key,
)

from tests.fakes import CHAIN_ID, GRANTER, FakeChainClient


def _pool(address: str, *nonces: int) -> dict:
    return {"pending": {address: {str(n): {} for n in nonces}}, "queued": {}}


@pytest.mark.asyncio
async def test_source_syncs_from_highest_node_then_counts_up(chain_config):
    nodes = {
        "http://node-1": FakeChainClient(mined=5),
        "http://node-2": FakeChainClient(mined=4, txpool=_pool(GRANTER.upper().replace("0X", "0x"), 6, 7)),
    }
    config = chain_config.model_copy(update={"rpc_providers": list(nodes)})
    source = NonceSource(InMemoryNonceCache(), ChainRegistry([config], client_factory=nodes.__getitem__))

    assert await source.next_nonce(CHAIN_ID, GRANTER) == 8
    assert await source.next_nonce(CHAIN_ID, GRANTER) == 9


@pytest.mark.asyncio
async def test_source_tolerates_one_dead_node(chain_config):
    dead = FakeChainClient(mined=100)
    dead.down = True
    nodes = {"http://node-1": FakeChainClient(mined=2), "http://node-2": dead}
    config = chain_config.model_copy(update={"rpc_providers": list(nodes)})
    source = NonceSource(InMemoryNonceCache(), ChainRegistry([config], client_factory=nodes.__getitem__))

    assert await source.next_nonce(CHAIN_ID, GRANTER) == 2


@pytest.mark.asyncio
async def test_source_unavailable_when_every_node_is_down(nonce_source, fake_client):
    fake_client.down = True
    with pytest.raises(NonceSourceUnavailable):
        await nonce_source.next_nonce(CHAIN_ID, GRANTER)


@pytest.mark.asyncio
async def test_invalidate_forces_resync(nonce_source, fake_client):
    fake_client.mined = 3
    assert await nonce_source.next_nonce(CHAIN_ID, GRANTER) == 3
    assert await nonce_source.next_nonce(CHAIN_ID, GRANTER) == 4

    await nonce_source.invalidate(CHAIN_ID, GRANTER)
    fake_client.mined = 4
    assert await nonce_source.next_nonce(CHAIN_ID, GRANTER) == 4
    assert await nonce_source.cache.increment_if_present(nonce_key(CHAIN_ID, GRANTER)) == 5


@pytest.mark.asyncio
async def test_concurrent_allocations_are_contiguous(repo, nonce_manager, fake_client):
    fake_client.mined = 10
    metas = [await repo.create_transaction_meta(CHAIN_ID, "granter") for _ in range(20)]

    allocations = await asyncio.gather(
        *(nonce_manager.allocate(CHAIN_ID, "granter", meta.id) for meta in metas)
    )

    assert sorted(a.nonce for a in allocations) == list(range(10, 30))
    assert {a.address for a in allocations} == {GRANTER}


@pytest.mark.asyncio
async def test_signers_do_not_block_each_other(repo, fake_client):
    other = "0x00000000000000000000000000000000000000ee"
    config = ChainConfig(chain_id=CHAIN_ID, rpc_providers=["http://node-1"], signers={"granter": GRANTER, "deployer": other})
    chains = ChainRegistry([config], client_factory=lambda url: fake_client)
    manager = NonceManager(repo, NonceSource(InMemoryNonceCache(), chains), chains)
    try:
        first = await repo.create_transaction_meta(CHAIN_ID, "granter")
        second = await repo.create_transaction_meta(CHAIN_ID, "deployer")
        a, b = await asyncio.gather(
            manager.allocate(CHAIN_ID, "granter", first.id),
            manager.allocate(CHAIN_ID, "deployer", second.id),
        )
        assert (a.address, a.nonce) == (GRANTER, 0)
        assert (b.address, b.nonce) == (other, 0)
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_locked_meta_is_rejected(repo, nonce_manager):
    meta = await repo.create_transaction_meta(CHAIN_ID, "granter")
    assert await repo.acquire_transaction_meta_lock(meta.id, "someone-else")

    with pytest.raises(TransactionMetaLocked):
        await nonce_manager.allocate(CHAIN_ID, "granter", meta.id)


@pytest.mark.asyncio
async def test_unknown_signer_marks_rollback_needed(repo, nonce_manager):
    meta = await repo.create_transaction_meta(CHAIN_ID, "nobody")

    with pytest.raises(SignerAddressNotFound):
        await nonce_manager.allocate(CHAIN_ID, "nobody", meta.id)

    loaded = await repo.get_transaction_meta(meta.id)
    assert loaded.status == TransactionMetaStatus.ROLLBACK_NEEDED
    assert loaded.lock_id is None


@pytest.mark.asyncio
async def test_nonce_source_down_marks_geth_down(repo, nonce_manager, fake_client):
    fake_client.down = True
    meta = await repo.create_transaction_meta(CHAIN_ID, "granter")

    with pytest.raises(NonceSourceUnavailable):
        await nonce_manager.allocate(CHAIN_ID, "granter", meta.id)

    assert (await repo.get_transaction_meta(meta.id)).status == TransactionMetaStatus.GETH_DOWN


@pytest.mark.asyncio
async def test_submission_bookkeeping(repo, nonce_manager, nonce_source):
    meta = await repo.create_transaction_meta(CHAIN_ID, "granter")
    allocation = await nonce_manager.allocate(CHAIN_ID, "granter", meta.id)

    await nonce_manager.mark_submitted(allocation, "0xfeed")
    loaded = await repo.get_transaction_meta(meta.id)
    assert loaded.status == TransactionMetaStatus.SUBMITTED
    assert loaded.transaction_hash == "0xfeed"

    meta = await repo.create_transaction_meta(CHAIN_ID, "granter")
    allocation = await nonce_manager.allocate(CHAIN_ID, "granter", meta.id)
    await nonce_manager.mark_submission_failed(allocation)
    assert (await repo.get_transaction_meta(meta.id)).status == TransactionMetaStatus.GETH_DOWN
    assert await nonce_source.cache.increment_if_present(nonce_key(CHAIN_ID, GRANTER)) is None


@pytest.mark.asyncio
async def test_infrastructure_error_releases_meta_and_is_retryable(
    repo, nonce_manager, nonce_source, monkeypatch
):
    async def _blip(chain_id, address):
        raise ConnectionError("cache connection reset")

    monkeypatch.setattr(nonce_source, "next_nonce", _blip)
    meta = await repo.create_transaction_meta(CHAIN_ID, "granter")

    with pytest.raises(NonceAllocationInterrupted) as excinfo:
        await nonce_manager.allocate(CHAIN_ID, "granter", meta.id)

    assert excinfo.value.retryable
    loaded = await repo.get_transaction_meta(meta.id)
    assert loaded.status == TransactionMetaStatus.GETH_DOWN
    assert loaded.lock_id is None


@pytest.mark.asyncio
async def test_abandoned_allocation_releases_meta(repo, nonce_manager, nonce_source, monkeypatch):
    entered = asyncio.Event()
    proceed = asyncio.Event()

    async def _slow(chain_id, address):
        entered.set()
        await proceed.wait()
        return 7

    monkeypatch.setattr(nonce_source, "next_nonce", _slow)
    meta = await repo.create_transaction_meta(CHAIN_ID, "granter")

    caller = asyncio.create_task(nonce_manager.allocate(CHAIN_ID, "granter", meta.id))
    await entered.wait()
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller
    proceed.set()

    for _ in range(50):
        loaded = await repo.get_transaction_meta(meta.id)
        if loaded.lock_id is None:
            break
        await asyncio.sleep(0)
    assert loaded.status == TransactionMetaStatus.GETH_DOWN
    assert loaded.lock_id is None
