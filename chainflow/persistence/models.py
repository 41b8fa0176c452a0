"""Data models for persisted workflow, step, transaction and process state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..constants import (
    CronProcessStatus,
    StepStatus,
    TransactionMetaStatus,
    WorkflowStatus,
)


class Workflow(BaseModel):
    """One externally triggered business process."""

    id: int
    kind: str
    status: WorkflowStatus = WorkflowStatus.IN_PROGRESS
    request_params: dict[str, Any] = Field(default_factory=dict)
    response_data: dict[str, Any] = Field(default_factory=dict)
    debug_params: Optional[dict[str, Any]] = None
    chain_id: Optional[int] = None
    client_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class WorkflowStep(BaseModel):
    """Record of one step invocation within a workflow."""

    id: Optional[int] = None
    workflow_id: int
    parent_id: Optional[int] = None
    kind: str
    status: StepStatus = StepStatus.QUEUED
    request_params: dict[str, Any] = Field(default_factory=dict)
    response_data: Optional[dict[str, Any]] = None
    transaction_hash: Optional[str] = None
    debug_params: Optional[dict[str, Any]] = None
    # "<workflow_id>:<kind>" while active; cleared when superseded by a retry.
    unique_key: Optional[str] = None
    attempts: int = 0
    published: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TransactionMeta(BaseModel):
    """A transaction waiting for a nonce; the lock is a one-shot gate."""

    id: int
    chain_id: int
    address_ref: str
    status: TransactionMetaStatus = TransactionMetaStatus.QUEUED
    lock_id: Optional[str] = None
    transaction_hash: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CronProcess(BaseModel):
    """Bookkeeping row for one long-running worker process."""

    id: int
    kind: str
    params: dict[str, Any] = Field(default_factory=dict)
    status: CronProcessStatus = CronProcessStatus.STOPPED
    ip_address: Optional[str] = None
    last_started_at: Optional[datetime] = None
    last_ended_at: Optional[datetime] = None
