"""Status-check handlers that poll a submitted transaction until it settles."""

from __future__ import annotations

import functools
import logging
from typing import Any, Dict, FrozenSet, Literal, Optional

from ..chain import ChainRpcError, MessageStatus
from ..contracts import StepResult
from .base import HandlerFactory, StepHandler, StepServices

logger = logging.getLogger(__name__)


class CheckTransactionStatusHandler(StepHandler):
    """Check the receipt of the transaction submitted by the parent step.

    A mined receipt with status 1 completes the step. A missing receipt
    (not mined yet, or the node could not be asked) asks the router to poll
    again later; a reverted receipt fails the step.
    """

    async def perform(
        self, request_params: Dict[str, Any], prior_step_payload: Dict[str, Any]
    ) -> StepResult:
        transaction_hash = prior_step_payload.get("transaction_hash") or request_params.get(
            "transaction_hash"
        )
        chain_id = request_params.get("chain_id")
        if not transaction_hash or chain_id is None:
            return StepResult.failed(
                {"error": "nothing to check", "transaction_hash": transaction_hash, "chain_id": chain_id}
            )

        client = self.services.require_chains().client(chain_id)
        try:
            receipt = await client.get_transaction_receipt(transaction_hash)
        except ChainRpcError as e:
            logger.warning(f"Receipt lookup for {transaction_hash} on chain {chain_id} failed: {e}")
            receipt = None

        if receipt is None:
            return await self.on_receipt_missing(request_params, transaction_hash)
        if int(receipt.get("status", "0x0"), 16) == 1:
            return StepResult.done(self._response(request_params, transaction_hash, receipt))
        return await self.on_receipt_failed(request_params, transaction_hash, receipt)

    @staticmethod
    def _response(
        request_params: Dict[str, Any], transaction_hash: str, receipt: Optional[dict]
    ) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "transaction_hash": transaction_hash,
            "chain_id": request_params.get("chain_id"),
        }
        if receipt and receipt.get("blockNumber"):
            data["block_number"] = int(receipt["blockNumber"], 16)
        return data

    async def on_receipt_missing(
        self, request_params: Dict[str, Any], transaction_hash: str
    ) -> StepResult:
        return StepResult.pending()

    async def on_receipt_failed(
        self, request_params: Dict[str, Any], transaction_hash: str, receipt: dict
    ) -> StepResult:
        return StepResult.failed(
            {"error": "transaction reverted", "transaction_hash": transaction_hash}
        )


class CheckMessageStatusHandler(CheckTransactionStatusHandler):
    """Receipt check backed by the bridge message status.

    When the receipt is missing or reverted, the gateway's inbox or outbox
    status for ``message_hash`` decides: a status in ``allowed`` means the
    message effect already landed and the step succeeds anyway.
    """

    def __init__(
        self,
        services: StepServices,
        box: Literal["inbox", "outbox"],
        allowed: FrozenSet[MessageStatus],
    ) -> None:
        super().__init__(services)
        self.box = box
        self.allowed = allowed

    @property
    def gateway_contract(self) -> str:
        return "coGateway" if self.box == "inbox" else "gateway"

    async def _message_landed(self, request_params: Dict[str, Any]) -> Optional[MessageStatus]:
        message_hash = request_params.get("message_hash")
        if not message_hash:
            return None
        chain_id = request_params["chain_id"]
        gateway = self.services.require_chains().contract(chain_id, self.gateway_contract)
        reader = self.services.require_message_status_reader()
        if self.box == "inbox":
            status = await reader.inbox_status(chain_id, gateway, message_hash)
        else:
            status = await reader.outbox_status(chain_id, gateway, message_hash)
        logger.info(f"Message {message_hash} {self.box} status on chain {chain_id}: {status.name}")
        return status if status in self.allowed else None

    async def on_receipt_missing(
        self, request_params: Dict[str, Any], transaction_hash: str
    ) -> StepResult:
        status = await self._message_landed(request_params)
        if status is None:
            return StepResult.pending()
        return StepResult.done(self._landed(request_params, transaction_hash, status))

    async def on_receipt_failed(
        self, request_params: Dict[str, Any], transaction_hash: str, receipt: dict
    ) -> StepResult:
        status = await self._message_landed(request_params)
        if status is None:
            return StepResult.failed(
                {
                    "error": "transaction reverted and message not settled",
                    "transaction_hash": transaction_hash,
                    "message_hash": request_params.get("message_hash"),
                }
            )
        return StepResult.done(self._landed(request_params, transaction_hash, status))

    def _landed(
        self, request_params: Dict[str, Any], transaction_hash: str, status: MessageStatus
    ) -> Dict[str, Any]:
        data = self._response(request_params, transaction_hash, None)
        data["message_status"] = status.name
        return data


MESSAGE_STATUS_CHECKS: Dict[str, tuple[str, FrozenSet[MessageStatus]]] = {
    "checkConfirmStakeStatus": (
        "inbox",
        frozenset({MessageStatus.DECLARED, MessageStatus.PROGRESSED}),
    ),
    "checkProgressMintStatus": ("inbox", frozenset({MessageStatus.PROGRESSED})),
    "checkProgressStakeStatus": ("outbox", frozenset({MessageStatus.PROGRESSED})),
}


def message_status_check(kind: str) -> HandlerFactory:
    """Handler factory for one of the bridge status-check kinds."""
    box, allowed = MESSAGE_STATUS_CHECKS[kind]
    return functools.partial(CheckMessageStatusHandler, box=box, allowed=allowed)
