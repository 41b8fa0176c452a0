"""Step handler contract consumed by the workflow router."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..chain import ChainRegistry, MessageStatusReader
from ..config import GrantConfig
from ..contracts import EngineError, StepResult
from ..nonce import NonceManager
from ..persistence import WorkflowRepository


@dataclass
class StepServices:
    """Collaborators handed to every handler factory."""

    repository: WorkflowRepository
    chains: Optional[ChainRegistry] = None
    nonce_manager: Optional[NonceManager] = None
    message_status_reader: Optional[MessageStatusReader] = None
    grants: GrantConfig = field(default_factory=GrantConfig)

    def require_chains(self) -> ChainRegistry:
        if self.chains is None:
            raise EngineError("No chain registry configured for chain-facing steps")
        return self.chains

    def require_nonce_manager(self) -> NonceManager:
        if self.nonce_manager is None:
            raise EngineError("No nonce manager configured for transaction-submitting steps")
        return self.nonce_manager

    def require_message_status_reader(self) -> MessageStatusReader:
        if self.message_status_reader is None:
            raise EngineError("No message status reader configured for bridge status checks")
        return self.message_status_reader


class StepHandler(metaclass=abc.ABCMeta):
    """One unit of business logic, invoked by the router for a single step.

    Handlers report expected business failures through
    ``StepResult.failed``; they raise only for unexpected conditions (which
    the router turns into a failed step) or ``RetryableStepError`` for
    transient ones.
    """

    required_params: Iterable[str] = ()

    def __init__(self, services: StepServices) -> None:
        self.services = services

    def missing_params(self, request_params: Dict[str, Any]) -> List[str]:
        return [name for name in self.required_params if request_params.get(name) is None]

    @abc.abstractmethod
    async def perform(
        self, request_params: Dict[str, Any], prior_step_payload: Dict[str, Any]
    ) -> StepResult:
        """Run the step with merged request params and the parent's output."""
        raise NotImplementedError


HandlerFactory = Callable[[StepServices], StepHandler]


def missing_params_result(missing: List[str]) -> StepResult:
    return StepResult.failed({"error": "missing request params", "missing": missing})
