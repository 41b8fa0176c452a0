"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable

import asyncpg

from ..constants import (
    CronProcessStatus,
    StepStatus,
    TransactionMetaStatus,
    WorkflowStatus,
)
from .models import CronProcess, TransactionMeta, Workflow, WorkflowStep
from .repository import WorkflowRepository, check_step_fields

_JSON_STEP_COLUMNS = {"request_params", "response_data", "debug_params"}


def _loads(value: Any) -> Any:
    if value is None:
        return None
    return json.loads(value) if isinstance(value, str) else value


def _dumps(value: Any) -> str | None:
    return None if value is None else json.dumps(value)


def _affected(status: str) -> int:
    # asyncpg returns command tags such as "UPDATE 1".
    return int(status.split()[-1])


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id SERIAL PRIMARY KEY,
                kind TEXT NOT NULL,
                status TEXT NOT NULL,
                request_params JSONB,
                response_data JSONB,
                debug_params JSONB,
                chain_id BIGINT,
                client_id BIGINT,
                created_at TIMESTAMPTZ DEFAULT now(),
                updated_at TIMESTAMPTZ DEFAULT now()
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                id SERIAL PRIMARY KEY,
                workflow_id INTEGER NOT NULL REFERENCES workflows(id),
                parent_id INTEGER,
                kind TEXT NOT NULL,
                status TEXT NOT NULL,
                request_params JSONB,
                response_data JSONB,
                transaction_hash TEXT,
                debug_params JSONB,
                unique_key TEXT UNIQUE,
                attempts INTEGER NOT NULL DEFAULT 0,
                published BOOLEAN NOT NULL DEFAULT FALSE,
                created_at TIMESTAMPTZ DEFAULT now(),
                updated_at TIMESTAMPTZ DEFAULT now()
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS transaction_meta (
                id SERIAL PRIMARY KEY,
                chain_id BIGINT NOT NULL,
                address_ref TEXT NOT NULL,
                status TEXT NOT NULL,
                lock_id TEXT,
                transaction_hash TEXT,
                created_at TIMESTAMPTZ DEFAULT now(),
                updated_at TIMESTAMPTZ DEFAULT now()
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS cron_processes (
                id SERIAL PRIMARY KEY,
                kind TEXT NOT NULL,
                params JSONB,
                status TEXT NOT NULL,
                ip_address TEXT,
                last_started_at TIMESTAMPTZ,
                last_ended_at TIMESTAMPTZ
            )
            """
        )

    @staticmethod
    def _workflow(row: asyncpg.Record) -> Workflow:
        return Workflow(
            id=row["id"],
            kind=row["kind"],
            status=row["status"],
            request_params=_loads(row["request_params"]) or {},
            response_data=_loads(row["response_data"]) or {},
            debug_params=_loads(row["debug_params"]),
            chain_id=row["chain_id"],
            client_id=row["client_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _step(row: asyncpg.Record) -> WorkflowStep:
        return WorkflowStep(
            id=row["id"],
            workflow_id=row["workflow_id"],
            parent_id=row["parent_id"],
            kind=row["kind"],
            status=row["status"],
            request_params=_loads(row["request_params"]) or {},
            response_data=_loads(row["response_data"]),
            transaction_hash=row["transaction_hash"],
            debug_params=_loads(row["debug_params"]),
            unique_key=row["unique_key"],
            attempts=row["attempts"],
            published=row["published"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _meta(row: asyncpg.Record) -> TransactionMeta:
        return TransactionMeta(**dict(row))

    @staticmethod
    def _process(row: asyncpg.Record) -> CronProcess:
        data = dict(row)
        data["params"] = _loads(data["params"]) or {}
        return CronProcess(**data)

    # ------------------------------------------------------------------
    async def create_workflow(
        self,
        kind: str,
        request_params: dict | None = None,
        chain_id: int | None = None,
        client_id: int | None = None,
    ) -> Workflow:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "INSERT INTO workflows (kind, status, request_params, response_data, chain_id, client_id) "
                "VALUES ($1, $2, $3, $4, $5, $6) RETURNING *",
                kind,
                WorkflowStatus.IN_PROGRESS.value,
                json.dumps(request_params or {}),
                json.dumps({}),
                chain_id,
                client_id,
            )
        finally:
            await conn.close()
        return self._workflow(row)

    async def get_workflow(self, workflow_id: int) -> Workflow | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM workflows WHERE id = $1", workflow_id)
        finally:
            await conn.close()
        return self._workflow(row) if row else None

    async def list_workflows(self, status: WorkflowStatus | None = None) -> list[Workflow]:
        conn = await self._connect()
        try:
            if status is None:
                rows = await conn.fetch("SELECT * FROM workflows ORDER BY id")
            else:
                rows = await conn.fetch(
                    "SELECT * FROM workflows WHERE status = $1 ORDER BY id",
                    WorkflowStatus(status).value,
                )
        finally:
            await conn.close()
        return [self._workflow(r) for r in rows]

    async def update_workflow_status(
        self,
        workflow_id: int,
        status: WorkflowStatus,
        debug_params: dict | None = None,
    ) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "UPDATE workflows SET status = $1, debug_params = COALESCE($2::jsonb, debug_params), "
                "updated_at = now() WHERE id = $3",
                WorkflowStatus(status).value,
                _dumps(debug_params),
                workflow_id,
            )
        finally:
            await conn.close()
        return _affected(result) > 0

    async def merge_workflow_response(self, workflow_id: int, response_data: dict) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE workflows SET response_data = COALESCE(response_data, '{}'::jsonb) || $1::jsonb, "
                "updated_at = now() WHERE id = $2",
                json.dumps(response_data),
                workflow_id,
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def insert_step(self, step: WorkflowStep) -> WorkflowStep | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "INSERT INTO workflow_steps (workflow_id, parent_id, kind, status, request_params, "
                "response_data, transaction_hash, debug_params, unique_key, attempts, published) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11) "
                "ON CONFLICT (unique_key) DO NOTHING RETURNING *",
                step.workflow_id,
                step.parent_id,
                step.kind,
                StepStatus(step.status).value,
                json.dumps(step.request_params),
                _dumps(step.response_data),
                step.transaction_hash,
                _dumps(step.debug_params),
                step.unique_key,
                step.attempts,
                step.published,
            )
        finally:
            await conn.close()
        return self._step(row) if row else None

    async def get_step(self, step_id: int) -> WorkflowStep | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM workflow_steps WHERE id = $1", step_id)
        finally:
            await conn.close()
        return self._step(row) if row else None

    async def list_steps(
        self, workflow_id: int, include_retried: bool = False
    ) -> list[WorkflowStep]:
        conn = await self._connect()
        try:
            if include_retried:
                rows = await conn.fetch(
                    "SELECT * FROM workflow_steps WHERE workflow_id = $1 ORDER BY id",
                    workflow_id,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM workflow_steps WHERE workflow_id = $1 AND status != $2 ORDER BY id",
                    workflow_id,
                    StepStatus.RETRIED.value,
                )
        finally:
            await conn.close()
        return [self._step(r) for r in rows]

    async def update_step(self, step_id: int, **fields: Any) -> None:
        check_step_fields(fields)
        if not fields:
            return
        assignments = []
        values: list[Any] = []
        for index, (name, value) in enumerate(fields.items(), start=1):
            if name in _JSON_STEP_COLUMNS:
                assignments.append(f"{name} = ${index}::jsonb")
                value = _dumps(value)
            else:
                assignments.append(f"{name} = ${index}")
                if name == "status":
                    value = StepStatus(value).value
            values.append(value)
        conn = await self._connect()
        try:
            await conn.execute(
                f"UPDATE workflow_steps SET {', '.join(assignments)}, updated_at = now() "
                f"WHERE id = ${len(values) + 1}",
                *values,
                step_id,
            )
        finally:
            await conn.close()

    async def claim_step(self, step_id: int, from_statuses: Iterable[StepStatus]) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "UPDATE workflow_steps SET status = $1, updated_at = now() "
                "WHERE id = $2 AND status = ANY($3::text[]) AND transaction_hash IS NULL",
                StepStatus.IN_PROGRESS.value,
                step_id,
                [StepStatus(s).value for s in from_statuses],
            )
        finally:
            await conn.close()
        return _affected(result) == 1

    async def mark_steps_retried(self, workflow_id: int, from_step_id: int) -> int:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "UPDATE workflow_steps SET status = $1, unique_key = NULL, updated_at = now() "
                "WHERE workflow_id = $2 AND id >= $3 AND status != $1",
                StepStatus.RETRIED.value,
                workflow_id,
                from_step_id,
            )
        finally:
            await conn.close()
        return _affected(result)

    async def list_unpublished_steps(self) -> list[WorkflowStep]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM workflow_steps WHERE status = $1 AND NOT published ORDER BY id",
                StepStatus.QUEUED.value,
            )
        finally:
            await conn.close()
        return [self._step(r) for r in rows]

    # ------------------------------------------------------------------
    async def create_transaction_meta(self, chain_id: int, address_ref: str) -> TransactionMeta:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "INSERT INTO transaction_meta (chain_id, address_ref, status) VALUES ($1, $2, $3) RETURNING *",
                chain_id,
                address_ref,
                TransactionMetaStatus.QUEUED.value,
            )
        finally:
            await conn.close()
        return self._meta(row)

    async def get_transaction_meta(self, meta_id: int) -> TransactionMeta | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM transaction_meta WHERE id = $1", meta_id)
        finally:
            await conn.close()
        return self._meta(row) if row else None

    async def acquire_transaction_meta_lock(self, meta_id: int, lock_id: str) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "UPDATE transaction_meta SET lock_id = $1, updated_at = now() "
                "WHERE id = $2 AND lock_id IS NULL AND status = $3",
                lock_id,
                meta_id,
                TransactionMetaStatus.QUEUED.value,
            )
        finally:
            await conn.close()
        return _affected(result) == 1

    async def release_lock_and_mark_status(
        self,
        meta_id: int,
        status: TransactionMetaStatus,
        transaction_hash: str | None = None,
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE transaction_meta SET lock_id = NULL, status = $1, "
                "transaction_hash = COALESCE($2, transaction_hash), updated_at = now() WHERE id = $3",
                TransactionMetaStatus(status).value,
                transaction_hash,
                meta_id,
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def create_cron_process(
        self,
        kind: str,
        params: dict | None = None,
        status: CronProcessStatus = CronProcessStatus.STOPPED,
        ip_address: str | None = None,
    ) -> CronProcess:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "INSERT INTO cron_processes (kind, params, status, ip_address) VALUES ($1, $2, $3, $4) RETURNING *",
                kind,
                json.dumps(params or {}),
                CronProcessStatus(status).value,
                ip_address,
            )
        finally:
            await conn.close()
        return self._process(row)

    async def get_cron_process(self, process_id: int) -> CronProcess | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM cron_processes WHERE id = $1", process_id)
        finally:
            await conn.close()
        return self._process(row) if row else None

    async def list_cron_processes(self, kind: str | None = None) -> list[CronProcess]:
        conn = await self._connect()
        try:
            if kind is None:
                rows = await conn.fetch("SELECT * FROM cron_processes ORDER BY id")
            else:
                rows = await conn.fetch(
                    "SELECT * FROM cron_processes WHERE kind = $1 ORDER BY id", kind
                )
        finally:
            await conn.close()
        return [self._process(r) for r in rows]

    async def update_cron_process(
        self,
        process_id: int,
        status: CronProcessStatus,
        last_started_at: datetime | None = None,
        last_ended_at: datetime | None = None,
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE cron_processes SET status = $1, "
                "last_started_at = COALESCE($2, last_started_at), "
                "last_ended_at = COALESCE($3, last_ended_at) WHERE id = $4",
                CronProcessStatus(status).value,
                last_started_at,
                last_ended_at,
                process_id,
            )
        finally:
            await conn.close()