"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from ..constants import (
    CronProcessStatus,
    StepStatus,
    TransactionMetaStatus,
    WorkflowStatus,
)
from .models import CronProcess, TransactionMeta, Workflow, WorkflowStep
from .repository import WorkflowRepository, check_step_fields

_JSON_STEP_COLUMNS = {"request_params", "response_data", "debug_params"}

_WORKFLOW_COLUMNS = (
    "id, kind, status, request_params, response_data, debug_params, "
    "chain_id, client_id, created_at, updated_at"
)
_STEP_COLUMNS = (
    "id, workflow_id, parent_id, kind, status, request_params, response_data, "
    "transaction_hash, debug_params, unique_key, attempts, published, created_at, updated_at"
)
_META_COLUMNS = "id, chain_id, address_ref, status, lock_id, transaction_hash, created_at, updated_at"
_PROCESS_COLUMNS = "id, kind, params, status, ip_address, last_started_at, last_ended_at"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dumps(value: Any) -> str | None:
    return None if value is None else json.dumps(value)


def _loads(value: str | None) -> Any:
    return json.loads(value) if value else None


def _ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        # One connection shared by worker threads.
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT NOT NULL,
                status TEXT NOT NULL,
                request_params TEXT,
                response_data TEXT,
                debug_params TEXT,
                chain_id INTEGER,
                client_id INTEGER,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                workflow_id INTEGER NOT NULL REFERENCES workflows(id),
                parent_id INTEGER,
                kind TEXT NOT NULL,
                status TEXT NOT NULL,
                request_params TEXT,
                response_data TEXT,
                transaction_hash TEXT,
                debug_params TEXT,
                unique_key TEXT UNIQUE,
                attempts INTEGER NOT NULL DEFAULT 0,
                published INTEGER NOT NULL DEFAULT 0,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS transaction_meta (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chain_id INTEGER NOT NULL,
                address_ref TEXT NOT NULL,
                status TEXT NOT NULL,
                lock_id TEXT,
                transaction_hash TEXT,
                created_at TEXT,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS cron_processes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT NOT NULL,
                params TEXT,
                status TEXT NOT NULL,
                ip_address TEXT,
                last_started_at TEXT,
                last_ended_at TEXT
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> sqlite3.Cursor:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur

    def _insert(self, query: str, *params: Any) -> int | None:
        """Run an INSERT and return the new row id, or ``None`` on a unique clash."""
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute(query, params)
            except sqlite3.IntegrityError:
                self._conn.rollback()
                return None
            self._conn.commit()
            return cur.lastrowid

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _workflow(row: sqlite3.Row) -> Workflow:
        return Workflow(
            id=row["id"],
            kind=row["kind"],
            status=row["status"],
            request_params=_loads(row["request_params"]) or {},
            response_data=_loads(row["response_data"]) or {},
            debug_params=_loads(row["debug_params"]),
            chain_id=row["chain_id"],
            client_id=row["client_id"],
            created_at=_ts(row["created_at"]),
            updated_at=_ts(row["updated_at"]),
        )

    @staticmethod
    def _step(row: sqlite3.Row) -> WorkflowStep:
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
            published=bool(row["published"]),
            created_at=_ts(row["created_at"]),
            updated_at=_ts(row["updated_at"]),
        )

    @staticmethod
    def _meta(row: sqlite3.Row) -> TransactionMeta:
        return TransactionMeta(
            id=row["id"],
            chain_id=row["chain_id"],
            address_ref=row["address_ref"],
            status=row["status"],
            lock_id=row["lock_id"],
            transaction_hash=row["transaction_hash"],
            created_at=_ts(row["created_at"]),
            updated_at=_ts(row["updated_at"]),
        )

    @staticmethod
    def _process(row: sqlite3.Row) -> CronProcess:
        return CronProcess(
            id=row["id"],
            kind=row["kind"],
            params=_loads(row["params"]) or {},
            status=row["status"],
            ip_address=row["ip_address"],
            last_started_at=_ts(row["last_started_at"]),
            last_ended_at=_ts(row["last_ended_at"]),
        )

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(
        self,
        kind: str,
        request_params: dict | None = None,
        chain_id: int | None = None,
        client_id: int | None = None,
    ) -> Workflow:
        now = _now()
        workflow_id = await asyncio.to_thread(
            self._insert,
            "INSERT INTO workflows (kind, status, request_params, response_data, chain_id, client_id, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            kind,
            WorkflowStatus.IN_PROGRESS.value,
            json.dumps(request_params or {}),
            json.dumps({}),
            chain_id,
            client_id,
            now,
            now,
        )
        workflow = await self.get_workflow(workflow_id)
        assert workflow is not None
        return workflow

    async def get_workflow(self, workflow_id: int) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE id = ?",
            workflow_id,
        )
        return self._workflow(row) if row else None

    async def list_workflows(self, status: WorkflowStatus | None = None) -> list[Workflow]:
        if status is None:
            rows = await asyncio.to_thread(
                self._fetchall, f"SELECT {_WORKFLOW_COLUMNS} FROM workflows ORDER BY id"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE status = ? ORDER BY id",
                WorkflowStatus(status).value,
            )
        return [self._workflow(r) for r in rows]

    async def update_workflow_status(
        self,
        workflow_id: int,
        status: WorkflowStatus,
        debug_params: dict | None = None,
    ) -> bool:
        cur = await asyncio.to_thread(
            self._execute,
            "UPDATE workflows SET status = ?, debug_params = COALESCE(?, debug_params), updated_at = ? WHERE id = ?",
            WorkflowStatus(status).value,
            _dumps(debug_params),
            _now(),
            workflow_id,
        )
        return cur.rowcount > 0

    async def merge_workflow_response(self, workflow_id: int, response_data: dict) -> None:
        workflow = await self.get_workflow(workflow_id)
        if workflow is None:
            return
        merged = {**workflow.response_data, **response_data}
        await asyncio.to_thread(
            self._execute,
            "UPDATE workflows SET response_data = ?, updated_at = ? WHERE id = ?",
            json.dumps(merged),
            _now(),
            workflow_id,
        )

    # ------------------------------------------------------------------
    # Steps
    async def insert_step(self, step: WorkflowStep) -> WorkflowStep | None:
        now = _now()
        step_id = await asyncio.to_thread(
            self._insert,
            "INSERT INTO workflow_steps (workflow_id, parent_id, kind, status, request_params, response_data, "
            "transaction_hash, debug_params, unique_key, attempts, published, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
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
            int(step.published),
            now,
            now,
        )
        if step_id is None:
            return None
        return await self.get_step(step_id)

    async def get_step(self, step_id: int) -> WorkflowStep | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_STEP_COLUMNS} FROM workflow_steps WHERE id = ?",
            step_id,
        )
        return self._step(row) if row else None

    async def list_steps(
        self, workflow_id: int, include_retried: bool = False
    ) -> list[WorkflowStep]:
        query = f"SELECT {_STEP_COLUMNS} FROM workflow_steps WHERE workflow_id = ?"
        params: list[Any] = [workflow_id]
        if not include_retried:
            query += " AND status != ?"
            params.append(StepStatus.RETRIED.value)
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY id", *params)
        return [self._step(r) for r in rows]

    async def update_step(self, step_id: int, **fields: Any) -> None:
        check_step_fields(fields)
        if not fields:
            return
        assignments = []
        values: list[Any] = []
        for name, value in fields.items():
            assignments.append(f"{name} = ?")
            if name in _JSON_STEP_COLUMNS:
                value = _dumps(value)
            elif name == "status":
                value = StepStatus(value).value
            elif name == "published":
                value = int(value)
            values.append(value)
        assignments.append("updated_at = ?")
        values.append(_now())
        await asyncio.to_thread(
            self._execute,
            f"UPDATE workflow_steps SET {', '.join(assignments)} WHERE id = ?",
            *values,
            step_id,
        )

    async def claim_step(self, step_id: int, from_statuses: Iterable[StepStatus]) -> bool:
        statuses = [StepStatus(s).value for s in from_statuses]
        placeholders = ", ".join("?" for _ in statuses)
        cur = await asyncio.to_thread(
            self._execute,
            "UPDATE workflow_steps SET status = ?, updated_at = ? "
            f"WHERE id = ? AND status IN ({placeholders}) AND transaction_hash IS NULL",
            StepStatus.IN_PROGRESS.value,
            _now(),
            step_id,
            *statuses,
        )
        return cur.rowcount == 1

    async def mark_steps_retried(self, workflow_id: int, from_step_id: int) -> int:
        cur = await asyncio.to_thread(
            self._execute,
            "UPDATE workflow_steps SET status = ?, unique_key = NULL, updated_at = ? "
            "WHERE workflow_id = ? AND id >= ? AND status != ?",
            StepStatus.RETRIED.value,
            _now(),
            workflow_id,
            from_step_id,
            StepStatus.RETRIED.value,
        )
        return cur.rowcount

    async def list_unpublished_steps(self) -> list[WorkflowStep]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_STEP_COLUMNS} FROM workflow_steps WHERE status = ? AND published = 0 ORDER BY id",
            StepStatus.QUEUED.value,
        )
        return [self._step(r) for r in rows]

    # ------------------------------------------------------------------
    # Transaction meta
    async def create_transaction_meta(self, chain_id: int, address_ref: str) -> TransactionMeta:
        now = _now()
        meta_id = await asyncio.to_thread(
            self._insert,
            "INSERT INTO transaction_meta (chain_id, address_ref, status, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
            chain_id,
            address_ref,
            TransactionMetaStatus.QUEUED.value,
            now,
            now,
        )
        meta = await self.get_transaction_meta(meta_id)
        assert meta is not None
        return meta

    async def get_transaction_meta(self, meta_id: int) -> TransactionMeta | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_META_COLUMNS} FROM transaction_meta WHERE id = ?",
            meta_id,
        )
        return self._meta(row) if row else None

    async def acquire_transaction_meta_lock(self, meta_id: int, lock_id: str) -> bool:
        cur = await asyncio.to_thread(
            self._execute,
            "UPDATE transaction_meta SET lock_id = ?, updated_at = ? "
            "WHERE id = ? AND lock_id IS NULL AND status = ?",
            lock_id,
            _now(),
            meta_id,
            TransactionMetaStatus.QUEUED.value,
        )
        return cur.rowcount == 1

    async def release_lock_and_mark_status(
        self,
        meta_id: int,
        status: TransactionMetaStatus,
        transaction_hash: str | None = None,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE transaction_meta SET lock_id = NULL, status = ?, "
            "transaction_hash = COALESCE(?, transaction_hash), updated_at = ? WHERE id = ?",
            TransactionMetaStatus(status).value,
            transaction_hash,
            _now(),
            meta_id,
        )

    # ------------------------------------------------------------------
    # Cron processes
    async def create_cron_process(
        self,
        kind: str,
        params: dict | None = None,
        status: CronProcessStatus = CronProcessStatus.STOPPED,
        ip_address: str | None = None,
    ) -> CronProcess:
        process_id = await asyncio.to_thread(
            self._insert,
            "INSERT INTO cron_processes (kind, params, status, ip_address) VALUES (?, ?, ?, ?)",
            kind,
            json.dumps(params or {}),
            CronProcessStatus(status).value,
            ip_address,
        )
        process = await self.get_cron_process(process_id)
        assert process is not None
        return process

    async def get_cron_process(self, process_id: int) -> CronProcess | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_PROCESS_COLUMNS} FROM cron_processes WHERE id = ?",
            process_id,
        )
        return self._process(row) if row else None

    async def list_cron_processes(self, kind: str | None = None) -> list[CronProcess]:
        if kind is None:
            rows = await asyncio.to_thread(
                self._fetchall, f"SELECT {_PROCESS_COLUMNS} FROM cron_processes ORDER BY id"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                f"SELECT {_PROCESS_COLUMNS} FROM cron_processes WHERE kind = ? ORDER BY id",
                kind,
            )
        return [self._process(r) for r in rows]

    async def update_cron_process(
        self,
        process_id: int,
        status: CronProcessStatus,
        last_started_at: datetime | None = None,
        last_ended_at: datetime | None = None,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE cron_processes SET status = ?, "
            "last_started_at = COALESCE(?, last_started_at), "
            "last_ended_at = COALESCE(?, last_ended_at) WHERE id = ?",
            CronProcessStatus(status).value,
            last_started_at.isoformat() if last_started_at else None,
            last_ended_at.isoformat() if last_ended_at else None,
            process_id,
        )
