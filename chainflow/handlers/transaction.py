"""Handlers that sign and submit a transaction through the nonce manager."""

from __future__ import annotations

import abc
import logging
from typing import Any, Dict

from ..chain import ChainRpcError
from ..contracts import RetryableStepError, StepResult
from ..nonce import NonceAllocationError
from .base import StepHandler, missing_params_result

logger = logging.getLogger(__name__)

ERC20_TRANSFER_SELECTOR = "0xa9059cbb"


def encode_erc20_transfer(to: str, amount: int) -> str:
    """ABI-encode ``transfer(address,uint256)`` call data."""
    address = to.lower().removeprefix("0x")
    return ERC20_TRANSFER_SELECTOR + address.rjust(64, "0") + format(amount, "x").rjust(64, "0")


class SubmitTransactionHandler(StepHandler):
    """Allocate a nonce for ``signer_ref`` and submit ``build_transaction()``.

    Returns ``taskPending`` with the transaction hash; the router then
    schedules the paired status-check step.
    """

    signer_ref: str = "granter"
    required_params = ("chain_id",)

    @abc.abstractmethod
    async def build_transaction(self, request_params: Dict[str, Any]) -> Dict[str, Any]:
        """Unsigned transaction fields other than ``from`` and ``nonce``."""
        raise NotImplementedError

    async def perform(
        self, request_params: Dict[str, Any], prior_step_payload: Dict[str, Any]
    ) -> StepResult:
        missing = self.missing_params(request_params)
        if missing:
            return missing_params_result(missing)

        chain_id = int(request_params["chain_id"])
        chains = self.services.require_chains()
        nonce_manager = self.services.require_nonce_manager()
        transaction = await self.build_transaction(request_params)

        meta = await self.services.repository.create_transaction_meta(chain_id, self.signer_ref)
        try:
            allocation = await nonce_manager.allocate(chain_id, self.signer_ref, meta.id)
        except NonceAllocationError as e:
            if e.retryable:
                raise RetryableStepError(str(e)) from e
            return StepResult.failed(
                {"error": str(e), "error_type": type(e).__name__, "transaction_meta_id": meta.id}
            )

        transaction.update({"from": allocation.address, "nonce": hex(allocation.nonce)})
        try:
            transaction_hash = await chains.client(chain_id).send_transaction(transaction)
        except ChainRpcError as e:
            logger.error(
                f"Submitting nonce {allocation.nonce} from {allocation.address} on chain {chain_id} failed: {e}"
            )
            await nonce_manager.mark_submission_failed(allocation)
            raise RetryableStepError(str(e)) from e

        await nonce_manager.mark_submitted(allocation, transaction_hash)
        logger.info(
            f"Submitted {transaction_hash} from {allocation.address} nonce {allocation.nonce} on chain {chain_id}"
        )
        return StepResult.pending(
            transaction_hash,
            {
                "transaction_hash": transaction_hash,
                "transaction_meta_id": meta.id,
                "from_address": allocation.address,
                "nonce": allocation.nonce,
            },
        )


class GrantEthHandler(SubmitTransactionHandler):
    """Fund ``address`` with the configured amount of base currency."""

    required_params = ("chain_id", "address")

    async def build_transaction(self, request_params: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "to": request_params["address"],
            "value": hex(self.services.grants.eth_amount_wei),
            "gas": hex(21000),
        }


class GrantOstHandler(SubmitTransactionHandler):
    """Transfer the configured amount of the simple token to ``address``."""

    required_params = ("chain_id", "address")

    async def build_transaction(self, request_params: Dict[str, Any]) -> Dict[str, Any]:
        chain_id = int(request_params["chain_id"])
        token = self.services.require_chains().contract(chain_id, "simpleToken")
        return {
            "to": token,
            "value": "0x0",
            "gas": hex(60000),
            "data": encode_erc20_transfer(
                request_params["address"], self.services.grants.ost_amount_wei
            ),
        }
