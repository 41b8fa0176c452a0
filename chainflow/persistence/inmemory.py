"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable

from ..constants import (
    CronProcessStatus,
    StepStatus,
    TransactionMetaStatus,
    WorkflowStatus,
)
from .models import CronProcess, TransactionMeta, Workflow, WorkflowStep
from .repository import WorkflowRepository, check_step_fields


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Every method completes without
    yielding to the event loop, so each call is atomic for coroutines
    sharing one loop.
    """

    def __init__(self) -> None:
        self._workflows: Dict[int, Workflow] = {}
        self._steps: Dict[int, WorkflowStep] = {}
        self._metas: Dict[int, TransactionMeta] = {}
        self._processes: Dict[int, CronProcess] = {}
        self._ids = {"workflow": 0, "step": 0, "meta": 0, "process": 0}

    def _next_id(self, table: str) -> int:
        self._ids[table] += 1
        return self._ids[table]

    # ------------------------------------------------------------------
    async def create_workflow(
        self,
        kind: str,
        request_params: dict | None = None,
        chain_id: int | None = None,
        client_id: int | None = None,
    ) -> Workflow:
        now = _now()
        workflow = Workflow(
            id=self._next_id("workflow"),
            kind=kind,
            request_params=dict(request_params or {}),
            chain_id=chain_id,
            client_id=client_id,
            created_at=now,
            updated_at=now,
        )
        self._workflows[workflow.id] = workflow
        return workflow.model_copy(deep=True)

    async def get_workflow(self, workflow_id: int) -> Workflow | None:
        workflow = self._workflows.get(workflow_id)
        return workflow.model_copy(deep=True) if workflow else None

    async def list_workflows(self, status: WorkflowStatus | None = None) -> list[Workflow]:
        return [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if status is None or wf.status == status
        ]

    async def update_workflow_status(
        self,
        workflow_id: int,
        status: WorkflowStatus,
        debug_params: dict | None = None,
    ) -> bool:
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            return False
        workflow.status = status
        if debug_params is not None:
            workflow.debug_params = debug_params
        workflow.updated_at = _now()
        return True

    async def merge_workflow_response(self, workflow_id: int, response_data: dict) -> None:
        workflow = self._workflows.get(workflow_id)
        if workflow:
            workflow.response_data = {**workflow.response_data, **response_data}
            workflow.updated_at = _now()

    # ------------------------------------------------------------------
    async def insert_step(self, step: WorkflowStep) -> WorkflowStep | None:
        if step.unique_key is not None and any(
            existing.unique_key == step.unique_key for existing in self._steps.values()
        ):
            return None
        now = _now()
        stored = step.model_copy(
            deep=True,
            update={"id": self._next_id("step"), "created_at": now, "updated_at": now},
        )
        self._steps[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get_step(self, step_id: int) -> WorkflowStep | None:
        step = self._steps.get(step_id)
        return step.model_copy(deep=True) if step else None

    async def list_steps(
        self, workflow_id: int, include_retried: bool = False
    ) -> list[WorkflowStep]:
        return [
            step.model_copy(deep=True)
            for step_id, step in sorted(self._steps.items())
            if step.workflow_id == workflow_id
            and (include_retried or step.status != StepStatus.RETRIED)
        ]

    async def update_step(self, step_id: int, **fields: Any) -> None:
        check_step_fields(fields)
        step = self._steps.get(step_id)
        if step is None:
            return
        for name, value in fields.items():
            setattr(step, name, value)
        step.updated_at = _now()

    async def claim_step(self, step_id: int, from_statuses: Iterable[StepStatus]) -> bool:
        step = self._steps.get(step_id)
        if step is None or step.status not in set(from_statuses) or step.transaction_hash:
            return False
        step.status = StepStatus.IN_PROGRESS
        step.updated_at = _now()
        return True

    async def mark_steps_retried(self, workflow_id: int, from_step_id: int) -> int:
        count = 0
        for step in self._steps.values():
            if (
                step.workflow_id == workflow_id
                and step.id >= from_step_id
                and step.status != StepStatus.RETRIED
            ):
                step.status = StepStatus.RETRIED
                step.unique_key = None
                step.updated_at = _now()
                count += 1
        return count

    async def list_unpublished_steps(self) -> list[WorkflowStep]:
        return [
            step.model_copy(deep=True)
            for _, step in sorted(self._steps.items())
            if step.status == StepStatus.QUEUED and not step.published
        ]

    # ------------------------------------------------------------------
    async def create_transaction_meta(self, chain_id: int, address_ref: str) -> TransactionMeta:
        now = _now()
        meta = TransactionMeta(
            id=self._next_id("meta"),
            chain_id=chain_id,
            address_ref=address_ref,
            created_at=now,
            updated_at=now,
        )
        self._metas[meta.id] = meta
        return meta.model_copy()

    async def get_transaction_meta(self, meta_id: int) -> TransactionMeta | None:
        meta = self._metas.get(meta_id)
        return meta.model_copy() if meta else None

    async def acquire_transaction_meta_lock(self, meta_id: int, lock_id: str) -> bool:
        meta = self._metas.get(meta_id)
        if meta is None or meta.lock_id is not None or meta.status != TransactionMetaStatus.QUEUED:
            return False
        meta.lock_id = lock_id
        meta.updated_at = _now()
        return True

    async def release_lock_and_mark_status(
        self,
        meta_id: int,
        status: TransactionMetaStatus,
        transaction_hash: str | None = None,
    ) -> None:
        meta = self._metas.get(meta_id)
        if meta is None:
            return
        meta.lock_id = None
        meta.status = status
        if transaction_hash is not None:
            meta.transaction_hash = transaction_hash
        meta.updated_at = _now()

    # ------------------------------------------------------------------
    async def create_cron_process(
        self,
        kind: str,
        params: dict | None = None,
        status: CronProcessStatus = CronProcessStatus.STOPPED,
        ip_address: str | None = None,
    ) -> CronProcess:
        process = CronProcess(
            id=self._next_id("process"),
            kind=kind,
            params=dict(params or {}),
            status=status,
            ip_address=ip_address,
        )
        self._processes[process.id] = process
        return process.model_copy(deep=True)

    async def get_cron_process(self, process_id: int) -> CronProcess | None:
        process = self._processes.get(process_id)
        return process.model_copy(deep=True) if process else None

    async def list_cron_processes(self, kind: str | None = None) -> list[CronProcess]:
        return [
            p.model_copy(deep=True)
            for _, p in sorted(self._processes.items())
            if kind is None or p.kind == kind
        ]

    async def update_cron_process(
        self,
        process_id: int,
        status: CronProcessStatus,
        last_started_at: datetime | None = None,
        last_ended_at: datetime | None = None,
    ) -> None:
        process = self._processes.get(process_id)
        if process is None:
            return
        process.status = status
        if last_started_at is not None:
            process.last_started_at = last_started_at
        if last_ended_at is not None:
            process.last_ended_at = last_ended_at
