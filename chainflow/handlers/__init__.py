"""Step handlers and the contract the router invokes them through."""

from .base import HandlerFactory, StepHandler, StepServices
from .builtin import InitHandler, MarkFailureHandler, MarkSuccessHandler
from .status_check import (
    MESSAGE_STATUS_CHECKS,
    CheckMessageStatusHandler,
    CheckTransactionStatusHandler,
    message_status_check,
)
from .transaction import (
    GrantEthHandler,
    GrantOstHandler,
    SubmitTransactionHandler,
    encode_erc20_transfer,
)

__all__ = [
    "MESSAGE_STATUS_CHECKS",
    "CheckMessageStatusHandler",
    "CheckTransactionStatusHandler",
    "GrantEthHandler",
    "GrantOstHandler",
    "HandlerFactory",
    "InitHandler",
    "MarkFailureHandler",
    "MarkSuccessHandler",
    "StepHandler",
    "StepServices",
    "SubmitTransactionHandler",
    "encode_erc20_transfer",
    "message_status_check",
]
