"""chainflow: durable step workflows for blockchain transactions."""

from .contracts import StepMessage, StepResult
from .dispatch import WorkflowDispatcher
from .nonce import NonceManager
from .persistence import get_repository
from .processes import ProcessRegistry
from .registry import StepRegistry, TransitionRule
from .router import WorkflowRouter
from .transports import get_transport
from .worker import WorkflowWorker

__version__ = "0.1.0"
__all__ = [
    "NonceManager",
    "ProcessRegistry",
    "StepMessage",
    "StepRegistry",
    "StepResult",
    "TransitionRule",
    "WorkflowDispatcher",
    "WorkflowRouter",
    "WorkflowWorker",
    "get_repository",
    "get_transport",
]
