"""Shared fixtures wiring the in-memory stack around a fake chain."""

from __future__ import annotations

import pytest
import pytest_asyncio

import chainflow.persistence as persistence
from chainflow.chain import ChainRegistry
from chainflow.config import ChainConfig
from chainflow.handlers import StepServices
from chainflow.nonce import InMemoryNonceCache, NonceManager, NonceSource
from chainflow.persistence import InMemoryWorkflowRepository
from chainflow.transports import InMemoryTransport
from chainflow.utils import retry

from tests.fakes import CHAIN_ID, GRANTER, SIMPLE_TOKEN, FakeChainClient, StubMessageStatusReader, drain


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    """Retries and polls re-run immediately in tests."""

    async def _no_sleep(attempt: int) -> None:
        return None

    monkeypatch.setattr(retry, "schedule_retry", _no_sleep)


@pytest.fixture(autouse=True)
def reset_repository_singleton(monkeypatch):
    monkeypatch.setattr(persistence, "_repository_instance", None)
    monkeypatch.delenv("CHAINFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("CHAINFLOW_TRANSPORT", raising=False)


@pytest.fixture
def fake_client() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
def chain_config() -> ChainConfig:
    return ChainConfig(
        chain_id=CHAIN_ID,
        kind="origin",
        rpc_providers=["http://node-1"],
        signers={"granter": GRANTER},
        contracts={
            "simpleToken": SIMPLE_TOKEN,
            "gateway": "0x00000000000000000000000000000000000000cc",
            "coGateway": "0x00000000000000000000000000000000000000dd",
        },
    )


@pytest.fixture
def chains(chain_config, fake_client) -> ChainRegistry:
    return ChainRegistry([chain_config], client_factory=lambda url: fake_client)


@pytest.fixture
def repo() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def nonce_source(chains) -> NonceSource:
    return NonceSource(InMemoryNonceCache(), chains)


@pytest_asyncio.fixture
async def nonce_manager(repo, nonce_source, chains):
    manager = NonceManager(repo, nonce_source, chains)
    yield manager
    await manager.close()


@pytest.fixture
def services(repo, chains, nonce_manager) -> StepServices:
    return StepServices(
        repository=repo,
        chains=chains,
        nonce_manager=nonce_manager,
        message_status_reader=StubMessageStatusReader(),
    )


@pytest_asyncio.fixture
async def transport() -> InMemoryTransport:
    transport = InMemoryTransport()
    await transport.declare_queue("workflow", ["workflow.#", "auxWorkflow.#"])
    return transport


@pytest.fixture
def run_queue():
    return drain
