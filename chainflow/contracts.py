"""Core message contracts and error taxonomy for the chainflow engine."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .constants import TaskStatus

logger = logging.getLogger(__name__)


class ChainflowError(Exception):
    """Base class for chainflow errors."""


class EngineError(ChainflowError):
    """Programming or configuration error; never a business failure."""


class UnknownStepKind(EngineError):
    def __init__(self, kind: str, workflow_kind: Optional[str] = None) -> None:
        self.kind = kind
        self.workflow_kind = workflow_kind
        super().__init__(f"Unknown step kind {kind!r} for workflow {workflow_kind!r}")


class UnknownWorkflow(EngineError):
    """Raised when a message references a workflow or topic nobody knows."""


class MissingDependencyData(EngineError):
    """A ``read_data_from`` dependency is absent, not done, or not an ancestor."""


class InvalidStepState(EngineError):
    """A message cannot be applied to the step row in its current state."""


class RegistryValidationError(EngineError):
    """The step graph of a workflow definition is not closed or inconsistent."""


class RetryableStepError(ChainflowError):
    """Raised by handlers for transient conditions worth another attempt."""


class TransientStepError(ChainflowError):
    """Raised by the router when the worker should requeue the message."""

    def __init__(self, message: str, attempt: int = 1) -> None:
        super().__init__(message)
        self.attempt = attempt


class StepResult(BaseModel):
    """Structured result returned by every step handler."""

    task_status: TaskStatus
    transaction_hash: Optional[str] = None
    task_response_data: Optional[Dict[str, Any]] = None
    fe_response_data: Optional[Dict[str, Any]] = None
    debug_params: Optional[Dict[str, Any]] = None
    retry_from_step_id: Optional[int] = None

    @classmethod
    def done(cls, data: Optional[Dict[str, Any]] = None, **kwargs: Any) -> "StepResult":
        return cls(task_status=TaskStatus.DONE, task_response_data=data, **kwargs)

    @classmethod
    def pending(
        cls, transaction_hash: Optional[str] = None, data: Optional[Dict[str, Any]] = None
    ) -> "StepResult":
        return cls(
            task_status=TaskStatus.PENDING,
            transaction_hash=transaction_hash,
            task_response_data=data,
        )

    @classmethod
    def failed(cls, debug_params: Optional[Dict[str, Any]] = None, **kwargs: Any) -> "StepResult":
        return cls(task_status=TaskStatus.FAILED, debug_params=debug_params, **kwargs)


class StepMessage(BaseModel):
    """
    Envelope exchanged over the bus. One message asks a worker to run (or
    re-evaluate) exactly one step of one workflow.
    """

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    workflow_id: int
    workflow_kind: str
    step_kind: str
    current_step_id: Optional[int] = None
    parent_step_id: Optional[int] = None
    task_status: TaskStatus = TaskStatus.READY_TO_START
    # Request params the step starts from; the router rebuilds them from the store.
    payload: Dict[str, Any] = Field(default_factory=dict)
    # Only set on completion callbacks for pending transactions.
    transaction_hash: Optional[str] = None
    task_response_data: Optional[Dict[str, Any]] = None
    attempt: int = 1

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "StepMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)

    def next_attempt(self) -> "StepMessage":
        """Return a copy addressed to the same step with ``attempt`` bumped."""
        return self.model_copy(
            update={
                "message_id": str(uuid.uuid4()),
                "timestamp": datetime.now(timezone.utc),
                "attempt": self.attempt + 1,
            }
        )
