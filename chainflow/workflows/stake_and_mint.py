"""StPrime StakeAndMint: stake simple token on origin and mint ST' on the auxiliary chain.

Only the step graph, the status checks and the terminal steps ship here.
The transaction-submitting and bookkeeping steps depend on the deployed
gateway contracts, so integrators supply them to ``definition``.
"""

from __future__ import annotations

from typing import Dict, Mapping

from ..handlers import (
    CheckTransactionStatusHandler,
    HandlerFactory,
    InitHandler,
    MarkFailureHandler,
    MarkSuccessHandler,
    message_status_check,
)
from ..registry import MARK_FAILURE, MARK_SUCCESS, StepRegistry, TransitionRule, terminal_rules
from .definition import WorkflowDefinition

WORKFLOW_KIND = "stPrimeStakeAndMint"
TOPIC = "auxWorkflow.stPrimeStakeAndMint"

INIT = "stPrimeStakeAndMintInit"
APPROVE = "stPrimeApprove"
CHECK_APPROVE_STATUS = "checkApproveStatus"
SIMPLE_TOKEN_STAKE = "simpleTokenStake"
CHECK_STAKE_STATUS = "checkStakeStatus"
FETCH_STAKE_INTENT_MESSAGE_HASH = "fetchStakeIntentMessageHash"
COMMIT_STATE_ROOT = "commitStateRoot"
UPDATE_COMMITTED_STATE_ROOT_INFO = "updateCommittedStateRootInfo"
PROVE_GATEWAY_ON_CO_GATEWAY = "proveGatewayOnCoGateway"
CHECK_PROVE_GATEWAY_STATUS = "checkProveGatewayStatus"
CONFIRM_STAKE_INTENT = "confirmStakeIntent"
CHECK_CONFIRM_STAKE_STATUS = "checkConfirmStakeStatus"
PROGRESS_STAKE = "progressStake"
CHECK_PROGRESS_STAKE_STATUS = "checkProgressStakeStatus"
PROGRESS_MINT = "progressMint"
CHECK_PROGRESS_MINT_STATUS = "checkProgressMintStatus"


def _rule(kind: str, next_kind: str, **kwargs) -> TransitionRule:
    return TransitionRule(kind=kind, on_success=[next_kind], on_failure=MARK_FAILURE, **kwargs)


registry = StepRegistry(
    WORKFLOW_KIND,
    [
        _rule(INIT, APPROVE, chain="origin"),
        _rule(APPROVE, CHECK_APPROVE_STATUS, status_check=CHECK_APPROVE_STATUS, chain="origin"),
        _rule(CHECK_APPROVE_STATUS, SIMPLE_TOKEN_STAKE, read_data_from=[APPROVE], chain="origin"),
        _rule(
            SIMPLE_TOKEN_STAKE,
            CHECK_STAKE_STATUS,
            status_check=CHECK_STAKE_STATUS,
            chain="origin",
        ),
        _rule(CHECK_STAKE_STATUS, FETCH_STAKE_INTENT_MESSAGE_HASH, read_data_from=[SIMPLE_TOKEN_STAKE], chain="origin"),
        _rule(
            FETCH_STAKE_INTENT_MESSAGE_HASH,
            COMMIT_STATE_ROOT,
            read_data_from=[SIMPLE_TOKEN_STAKE],
            chain="origin",
        ),
        _rule(
            COMMIT_STATE_ROOT,
            UPDATE_COMMITTED_STATE_ROOT_INFO,
            read_data_from=[FETCH_STAKE_INTENT_MESSAGE_HASH],
            chain="aux",
        ),
        TransitionRule(
            kind=UPDATE_COMMITTED_STATE_ROOT_INFO,
            on_success=[PROVE_GATEWAY_ON_CO_GATEWAY],
            read_data_from=[COMMIT_STATE_ROOT],
            chain="aux",
        ),
        _rule(
            PROVE_GATEWAY_ON_CO_GATEWAY,
            CHECK_PROVE_GATEWAY_STATUS,
            status_check=CHECK_PROVE_GATEWAY_STATUS,
            chain="aux",
        ),
        _rule(
            CHECK_PROVE_GATEWAY_STATUS,
            CONFIRM_STAKE_INTENT,
            read_data_from=[PROVE_GATEWAY_ON_CO_GATEWAY],
            chain="aux",
        ),
        _rule(
            CONFIRM_STAKE_INTENT,
            CHECK_CONFIRM_STAKE_STATUS,
            read_data_from=[FETCH_STAKE_INTENT_MESSAGE_HASH, SIMPLE_TOKEN_STAKE],
            status_check=CHECK_CONFIRM_STAKE_STATUS,
            chain="aux",
        ),
        _rule(
            CHECK_CONFIRM_STAKE_STATUS,
            PROGRESS_STAKE,
            read_data_from=[FETCH_STAKE_INTENT_MESSAGE_HASH, CONFIRM_STAKE_INTENT],
            chain="aux",
        ),
        _rule(
            PROGRESS_STAKE,
            CHECK_PROGRESS_STAKE_STATUS,
            read_data_from=[FETCH_STAKE_INTENT_MESSAGE_HASH, SIMPLE_TOKEN_STAKE],
            status_check=CHECK_PROGRESS_STAKE_STATUS,
            chain="origin",
        ),
        _rule(
            CHECK_PROGRESS_STAKE_STATUS,
            PROGRESS_MINT,
            read_data_from=[FETCH_STAKE_INTENT_MESSAGE_HASH, PROGRESS_STAKE],
            chain="origin",
        ),
        _rule(
            PROGRESS_MINT,
            CHECK_PROGRESS_MINT_STATUS,
            read_data_from=[FETCH_STAKE_INTENT_MESSAGE_HASH, SIMPLE_TOKEN_STAKE],
            status_check=CHECK_PROGRESS_MINT_STATUS,
            chain="aux",
        ),
        _rule(
            CHECK_PROGRESS_MINT_STATUS,
            MARK_SUCCESS,
            read_data_from=[FETCH_STAKE_INTENT_MESSAGE_HASH, PROGRESS_MINT],
            chain="aux",
        ),
        *terminal_rules(),
    ],
)

BUILTIN_HANDLERS: Dict[str, HandlerFactory] = {
    INIT: InitHandler,
    CHECK_APPROVE_STATUS: CheckTransactionStatusHandler,
    CHECK_STAKE_STATUS: CheckTransactionStatusHandler,
    CHECK_PROVE_GATEWAY_STATUS: CheckTransactionStatusHandler,
    CHECK_CONFIRM_STAKE_STATUS: message_status_check(CHECK_CONFIRM_STAKE_STATUS),
    CHECK_PROGRESS_STAKE_STATUS: message_status_check(CHECK_PROGRESS_STAKE_STATUS),
    CHECK_PROGRESS_MINT_STATUS: message_status_check(CHECK_PROGRESS_MINT_STATUS),
    MARK_SUCCESS: MarkSuccessHandler,
    MARK_FAILURE: MarkFailureHandler,
}

# Kinds whose handlers must be supplied by the integrator.
INTEGRATOR_KINDS = sorted(set(registry.kinds) - set(BUILTIN_HANDLERS))


def definition(handlers: Mapping[str, HandlerFactory]) -> WorkflowDefinition:
    """Build the StakeAndMint definition from integrator-supplied handlers."""
    return WorkflowDefinition(
        kind=WORKFLOW_KIND,
        topic=TOPIC,
        init_kind=INIT,
        registry=registry,
        handlers={**BUILTIN_HANDLERS, **handlers},
    )
