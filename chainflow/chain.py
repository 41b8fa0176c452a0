"""Chain RPC collaborators: JSON-RPC client, per-chain registry, bridge message status."""

from __future__ import annotations

import itertools
import logging
from enum import IntEnum
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

import httpx

from .config import ChainConfig
from .contracts import ChainflowError, EngineError

logger = logging.getLogger(__name__)


class ChainRpcError(ChainflowError):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, method: str, code: Optional[int], message: str) -> None:
        super().__init__(f"{method} failed ({code}): {message}")
        self.method = method
        self.code = code


class ChainUnavailable(ChainRpcError):
    """The node could not be reached or returned an HTTP error."""

    def __init__(self, method: str, message: str) -> None:
        super().__init__(method, None, message)


class UnknownChain(EngineError):
    def __init__(self, chain_id: int) -> None:
        super().__init__(f"No chain configured for chain id {chain_id}")
        self.chain_id = chain_id


class MessageStatus(IntEnum):
    """Status of a bridge message in a gateway inbox or outbox."""

    UNDECLARED = 0
    DECLARED = 1
    PROGRESSED = 2
    DECLARED_REVOCATION = 3
    REVOKED = 4


class ChainClient(Protocol):
    """The subset of node RPC the engine and its handlers rely on."""

    async def get_transaction_receipt(self, transaction_hash: str) -> Optional[dict]:
        ...

    async def get_transaction_count(self, address: str, block: str = "latest") -> int:
        ...

    async def txpool_content(self) -> dict:
        ...

    async def send_transaction(self, transaction: dict) -> str:
        ...

    async def call(self, transaction: dict, block: str = "latest") -> str:
        ...


class MessageStatusReader(Protocol):
    """Reads bridge message status from the gateway contracts."""

    async def inbox_status(
        self, chain_id: int, gateway: str, message_hash: str
    ) -> MessageStatus:
        ...

    async def outbox_status(
        self, chain_id: int, gateway: str, message_hash: str
    ) -> MessageStatus:
        ...


class JsonRpcChainClient:
    """Ethereum JSON-RPC over HTTP using httpx."""

    _ids = itertools.count(1)

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await self._client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ChainUnavailable(method, f"{self.url}: {e}") from e
        body = response.json()
        if body.get("error"):
            error = body["error"]
            raise ChainRpcError(method, error.get("code"), error.get("message", ""))
        return body.get("result")

    async def get_transaction_receipt(self, transaction_hash: str) -> Optional[dict]:
        return await self._request("eth_getTransactionReceipt", [transaction_hash])

    async def get_transaction_count(self, address: str, block: str = "latest") -> int:
        return int(await self._request("eth_getTransactionCount", [address, block]), 16)

    async def txpool_content(self) -> dict:
        return await self._request("txpool_content", []) or {}

    async def send_transaction(self, transaction: dict) -> str:
        return await self._request("eth_sendTransaction", [transaction])

    async def call(self, transaction: dict, block: str = "latest") -> str:
        return await self._request("eth_call", [transaction, block])


ClientFactory = Callable[[str], ChainClient]


class ChainRegistry:
    """Endpoints, signer addresses and contract addresses per chain id."""

    def __init__(
        self,
        chains: Iterable[ChainConfig],
        client_factory: ClientFactory = JsonRpcChainClient,
    ) -> None:
        self._chains: Dict[int, ChainConfig] = {c.chain_id: c for c in chains}
        self._client_factory = client_factory
        self._clients: Dict[int, List[ChainClient]] = {}

    def _config(self, chain_id: int) -> ChainConfig:
        try:
            return self._chains[int(chain_id)]
        except (KeyError, TypeError, ValueError):
            raise UnknownChain(chain_id) from None

    @property
    def chain_ids(self) -> List[int]:
        return list(self._chains)

    def kind(self, chain_id: int) -> str:
        return self._config(chain_id).kind

    def clients(self, chain_id: int) -> List[ChainClient]:
        """One client per configured RPC provider, created on first use."""
        config = self._config(chain_id)
        if config.chain_id not in self._clients:
            self._clients[config.chain_id] = [
                self._client_factory(url) for url in config.rpc_providers
            ]
        return self._clients[config.chain_id]

    def client(self, chain_id: int) -> ChainClient:
        clients = self.clients(chain_id)
        if not clients:
            raise UnknownChain(chain_id)
        return clients[0]

    def resolve_signer(self, chain_id: int, signer_ref: str) -> Optional[str]:
        return self._config(chain_id).signers.get(signer_ref)

    def contract(self, chain_id: int, name: str) -> str:
        address = self._config(chain_id).contracts.get(name)
        if not address:
            raise EngineError(f"Contract {name!r} is not configured for chain {chain_id}")
        return address

    async def aclose(self) -> None:
        for clients in self._clients.values():
            for client in clients:
                close = getattr(client, "aclose", None)
                if close is not None:
                    await close()
        self._clients.clear()
