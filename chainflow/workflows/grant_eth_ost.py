"""GrantEthOst: fund a fresh address with base currency and simple token."""

from __future__ import annotations

from typing import Dict, Mapping, Optional

from ..handlers import (
    CheckTransactionStatusHandler,
    GrantEthHandler,
    GrantOstHandler,
    HandlerFactory,
    InitHandler,
    MarkFailureHandler,
    MarkSuccessHandler,
)
from ..registry import MARK_FAILURE, MARK_SUCCESS, StepRegistry, TransitionRule, terminal_rules
from .definition import WorkflowDefinition

WORKFLOW_KIND = "grantEthOst"
TOPIC = "workflow.grantEthOst"

GRANT_ETH_OST_INIT = "grantEthOstInit"
GRANT_ETH = "grantEth"
VERIFY_GRANT_ETH = "verifyGrantEth"
GRANT_OST = "grantOst"
VERIFY_GRANT_OST = "verifyGrantOst"

registry = StepRegistry(
    WORKFLOW_KIND,
    [
        TransitionRule(
            kind=GRANT_ETH_OST_INIT, on_success=[GRANT_ETH], on_failure=MARK_FAILURE
        ),
        TransitionRule(
            kind=GRANT_ETH,
            on_success=[VERIFY_GRANT_ETH],
            on_failure=MARK_FAILURE,
            status_check=VERIFY_GRANT_ETH,
            chain="origin",
        ),
        TransitionRule(
            kind=VERIFY_GRANT_ETH,
            on_success=[GRANT_OST],
            on_failure=MARK_FAILURE,
            read_data_from=[GRANT_ETH],
            chain="origin",
        ),
        TransitionRule(
            kind=GRANT_OST,
            on_success=[VERIFY_GRANT_OST],
            on_failure=MARK_FAILURE,
            status_check=VERIFY_GRANT_OST,
            chain="origin",
        ),
        TransitionRule(
            kind=VERIFY_GRANT_OST,
            on_success=[MARK_SUCCESS],
            on_failure=MARK_FAILURE,
            read_data_from=[GRANT_OST],
            chain="origin",
        ),
        *terminal_rules(),
    ],
)

DEFAULT_HANDLERS: Dict[str, HandlerFactory] = {
    GRANT_ETH_OST_INIT: InitHandler,
    GRANT_ETH: GrantEthHandler,
    VERIFY_GRANT_ETH: CheckTransactionStatusHandler,
    GRANT_OST: GrantOstHandler,
    VERIFY_GRANT_OST: CheckTransactionStatusHandler,
    MARK_SUCCESS: MarkSuccessHandler,
    MARK_FAILURE: MarkFailureHandler,
}


def definition(handlers: Optional[Mapping[str, HandlerFactory]] = None) -> WorkflowDefinition:
    """Build the GrantEthOst definition, optionally overriding handlers by kind."""
    return WorkflowDefinition(
        kind=WORKFLOW_KIND,
        topic=TOPIC,
        init_kind=GRANT_ETH_OST_INIT,
        registry=registry,
        handlers={**DEFAULT_HANDLERS, **(handlers or {})},
    )
