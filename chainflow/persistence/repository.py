"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Protocol

from ..constants import (
    CronProcessStatus,
    StepStatus,
    TransactionMetaStatus,
    WorkflowStatus,
)
from .models import CronProcess, TransactionMeta, Workflow, WorkflowStep

# Columns callers may change through ``update_step``.
STEP_UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "request_params",
        "response_data",
        "transaction_hash",
        "debug_params",
        "attempts",
        "published",
    }
)


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends."""

    # -- workflows -------------------------------------------------------
    async def create_workflow(
        self,
        kind: str,
        request_params: dict | None = None,
        chain_id: int | None = None,
        client_id: int | None = None,
    ) -> Workflow:
        """Persist a new in-progress workflow."""

    async def get_workflow(self, workflow_id: int) -> Workflow | None:
        """Retrieve a workflow by id."""

    async def list_workflows(self, status: WorkflowStatus | None = None) -> list[Workflow]:
        """Return persisted workflows, optionally filtered by status."""

    async def update_workflow_status(
        self,
        workflow_id: int,
        status: WorkflowStatus,
        debug_params: dict | None = None,
    ) -> bool:
        """Set the workflow status; return ``True`` if a row was updated."""

    async def merge_workflow_response(self, workflow_id: int, response_data: dict) -> None:
        """Merge ``response_data`` into the workflow's stored response data."""

    # -- steps -----------------------------------------------------------
    async def insert_step(self, step: WorkflowStep) -> WorkflowStep | None:
        """Insert a step row; return ``None`` if its unique key already exists."""

    async def get_step(self, step_id: int) -> WorkflowStep | None:
        """Retrieve a step by id."""

    async def list_steps(
        self, workflow_id: int, include_retried: bool = False
    ) -> list[WorkflowStep]:
        """Return the steps of a workflow ordered by id."""

    async def update_step(self, step_id: int, **fields: Any) -> None:
        """Update the given columns of a step row in place."""

    async def claim_step(self, step_id: int, from_statuses: Iterable[StepStatus]) -> bool:
        """Move the step to ``inProgress`` if it is in one of ``from_statuses``
        and has no transaction hash. Only one concurrent caller wins."""

    async def mark_steps_retried(self, workflow_id: int, from_step_id: int) -> int:
        """Supersede every step with id >= ``from_step_id``; return the count."""

    async def list_unpublished_steps(self) -> list[WorkflowStep]:
        """Queued steps whose message was never confirmed as published."""

    # -- transaction meta ------------------------------------------------
    async def create_transaction_meta(self, chain_id: int, address_ref: str) -> TransactionMeta:
        """Create a queued, unlocked transaction meta row."""

    async def get_transaction_meta(self, meta_id: int) -> TransactionMeta | None:
        """Retrieve a transaction meta row."""

    async def acquire_transaction_meta_lock(self, meta_id: int, lock_id: str) -> bool:
        """Compare-and-swap the lock of a queued, unlocked row."""

    async def release_lock_and_mark_status(
        self,
        meta_id: int,
        status: TransactionMetaStatus,
        transaction_hash: str | None = None,
    ) -> None:
        """Clear the lock and move the row out of ``queued``."""

    # -- cron processes --------------------------------------------------
    async def create_cron_process(
        self,
        kind: str,
        params: dict | None = None,
        status: CronProcessStatus = CronProcessStatus.STOPPED,
        ip_address: str | None = None,
    ) -> CronProcess:
        """Register a worker process."""

    async def get_cron_process(self, process_id: int) -> CronProcess | None:
        """Retrieve a process row."""

    async def list_cron_processes(self, kind: str | None = None) -> list[CronProcess]:
        """Return process rows, optionally filtered by kind."""

    async def update_cron_process(
        self,
        process_id: int,
        status: CronProcessStatus,
        last_started_at: datetime | None = None,
        last_ended_at: datetime | None = None,
    ) -> None:
        """Update status and start/end timestamps of a process row."""


def step_unique_key(workflow_id: int, kind: str) -> str:
    return f"{workflow_id}:{kind}"


def check_step_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - STEP_UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update step columns: {sorted(unknown)}")


__all__ = [
    "STEP_UPDATABLE_FIELDS",
    "StepStatus",
    "WorkflowRepository",
    "check_step_fields",
    "step_unique_key",
]
