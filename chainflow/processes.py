"""Process registry: bookkeeping for long-running worker processes."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

from .constants import RESTART_INTERVALS, CronProcessStatus
from .contracts import ChainflowError
from .persistence import CronProcess, WorkflowRepository

logger = logging.getLogger(__name__)


class ProcessStartRejected(ChainflowError):
    """Starting the process would double-run a worker."""


class ProcessNotRegistered(ChainflowError):
    pass


class DuplicateProcess(ChainflowError):
    """A process of the same kind is already registered for the chain."""


def _kind(kind: Any) -> str:
    return getattr(kind, "value", kind)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ProcessRegistry:
    """Guarantee at most one running process per kind and chain.

    Rejections are reported at ``critical`` level, which is what operators
    alert on.
    """

    def __init__(self, repository: WorkflowRepository) -> None:
        self.repository = repository

    async def register(
        self,
        kind: str,
        params: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
    ) -> CronProcess:
        kind = _kind(kind)
        params = dict(params or {})
        chain_id = params.get("chain_id")
        for existing in await self.repository.list_cron_processes(kind):
            if existing.params.get("chain_id") == chain_id:
                raise DuplicateProcess(
                    f"{kind} already registered as process {existing.id} for chain {chain_id}"
                )
        process = await self.repository.create_cron_process(
            kind, params, status=CronProcessStatus.STOPPED, ip_address=ip_address
        )
        logger.info(f"Registered {kind} process {process.id} for chain {chain_id}")
        return process

    async def can_start(self, process_id: int, kind: Optional[str] = None) -> CronProcess:
        """Mark ``process_id`` running, or raise ``ProcessStartRejected``."""
        process = await self.repository.get_cron_process(process_id)
        if process is None:
            raise ProcessNotRegistered(f"Process {process_id} is not registered")
        if kind is not None and process.kind != _kind(kind):
            raise ProcessStartRejected(
                f"Process {process_id} is a {process.kind}, not a {_kind(kind)}"
            )
        if process.status == CronProcessStatus.INACTIVE:
            raise ProcessStartRejected(f"Process {process_id} is inactive")
        if process.status == CronProcessStatus.RUNNING:
            logger.critical(
                f"Process {process_id} ({process.kind}) is already running since {process.last_started_at}"
            )
            raise ProcessStartRejected(f"Process {process_id} is already running")

        chain_id = process.params.get("chain_id")
        for other in await self.repository.list_cron_processes(process.kind):
            if (
                other.id != process.id
                and other.status == CronProcessStatus.RUNNING
                and other.params.get("chain_id") == chain_id
            ):
                logger.critical(
                    f"Process {other.id} ({process.kind}) already runs for chain {chain_id}; refusing {process_id}"
                )
                raise ProcessStartRejected(
                    f"Another {process.kind} ({other.id}) is running for chain {chain_id}"
                )

        started_at = _now()
        await self.repository.update_cron_process(
            process_id, CronProcessStatus.RUNNING, last_started_at=started_at
        )
        return process.model_copy(
            update={"status": CronProcessStatus.RUNNING, "last_started_at": started_at}
        )

    async def stop(self, process_id: int) -> None:
        await self.repository.update_cron_process(
            process_id, CronProcessStatus.STOPPED, last_ended_at=_now()
        )
        logger.info(f"Process {process_id} stopped")

    async def find_stuck(
        self,
        restart_intervals: Optional[Mapping[str, float]] = None,
        now: Optional[datetime] = None,
    ) -> List[CronProcess]:
        """Running processes that outlived their restart interval."""
        intervals = {
            _kind(kind): seconds
            for kind, seconds in (restart_intervals or RESTART_INTERVALS).items()
        }
        now = now or _now()
        stuck = []
        for process in await self.repository.list_cron_processes():
            interval = intervals.get(process.kind)
            if (
                interval is None
                or process.status != CronProcessStatus.RUNNING
                or process.last_started_at is None
            ):
                continue
            started = process.last_started_at
            if started.tzinfo is None:
                started = started.replace(tzinfo=timezone.utc)
            if now - started > timedelta(seconds=interval):
                logger.critical(
                    f"Process {process.id} ({process.kind}) running since {started}, "
                    f"past its {interval}s restart interval"
                )
                stuck.append(process)
        return stuck
