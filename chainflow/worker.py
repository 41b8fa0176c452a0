"""Dispatch worker: consume step messages and hand them to workflow routers."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any, Dict, Optional, Set

from .config import WorkerConfig
from .contracts import EngineError, StepMessage, TransientStepError
from .handlers import StepServices
from .processes import ProcessRegistry
from .router import WorkflowRouter
from .transports import BaseTransport
from .utils import retry
from .workflows import WorkflowCatalog, default_catalog

logger = logging.getLogger(__name__)


class WorkflowWorker:
    """Long-running consumer for one queue.

    Messages are processed concurrently up to ``prefetch_count``; each is
    acknowledged only after its router call returns. The worker stops on
    SIGINT/SIGTERM or once ``lifespan`` seconds have passed, waits for
    in-flight messages, and records the stop in the process registry.
    """

    def __init__(
        self,
        transport: BaseTransport,
        services: StepServices,
        catalog: Optional[WorkflowCatalog] = None,
        config: Optional[WorkerConfig] = None,
        process_registry: Optional[ProcessRegistry] = None,
        cron_process_id: Optional[int] = None,
    ) -> None:
        self.transport = transport
        self.services = services
        self.config = config or WorkerConfig()
        self.process_registry = process_registry
        self.cron_process_id = cron_process_id
        catalog = catalog or default_catalog()
        self._routers: Dict[str, WorkflowRouter] = {
            definition.kind: WorkflowRouter(
                definition,
                services.repository,
                transport,
                services=services,
                max_step_attempts=self.config.max_step_attempts,
                max_poll_attempts=self.config.max_poll_attempts,
            )
            for definition in catalog
        }
        self._stopping = asyncio.Event()
        self._in_flight: Set[asyncio.Task] = set()

    def stop(self) -> None:
        """Ask the worker to stop consuming; in-flight messages still finish."""
        if not self._stopping.is_set():
            logger.info("Worker stop requested")
            self._stopping.set()

    async def start(self) -> None:
        if self.process_registry is not None and self.cron_process_id is not None:
            await self.process_registry.can_start(self.cron_process_id)

        loop = asyncio.get_running_loop()
        installed = self._install_signal_handlers(loop)
        try:
            for router in self._routers.values():
                await router.flush_outbox()

            consumer = asyncio.create_task(self._consume())
            stopper = asyncio.create_task(self._stopping.wait())
            done, _ = await asyncio.wait(
                {consumer, stopper}, return_when=asyncio.FIRST_COMPLETED
            )
            if consumer not in done:
                consumer.cancel()
            stopper.cancel()
            await asyncio.gather(consumer, stopper, return_exceptions=True)
            if consumer.done() and not consumer.cancelled() and consumer.exception():
                raise consumer.exception()
        finally:
            if self._in_flight:
                logger.info(f"Waiting for {len(self._in_flight)} in-flight messages")
                await asyncio.gather(*self._in_flight, return_exceptions=True)
            for sig in installed:
                loop.remove_signal_handler(sig)
            if self.process_registry is not None and self.cron_process_id is not None:
                await self.process_registry.stop(self.cron_process_id)
            logger.info("Worker stopped")

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> list:
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                # Not the main thread, or a platform without signal support.
                continue
            installed.append(sig)
        return installed

    async def _consume(self) -> None:
        limit = asyncio.Semaphore(self.config.prefetch_count)
        async for raw_message, message in self.transport.subscribe(
            self.config.queue,
            topics=self.config.topics,
            prefetch_count=self.config.prefetch_count,
            lifespan=self.config.lifespan,
        ):
            try:
                await limit.acquire()
            except asyncio.CancelledError:
                await self.transport.nack(raw_message, requeue=True)
                raise
            task = asyncio.create_task(self._handle(raw_message, message, limit))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
        logger.info("Worker lifespan reached")

    async def _handle(
        self, raw_message: Any, message: StepMessage, limit: asyncio.Semaphore
    ) -> None:
        try:
            router = self._routers.get(message.workflow_kind)
            if router is None:
                logger.critical(f"No router for workflow kind {message.workflow_kind!r}; rejecting")
                await self.transport.nack(raw_message, requeue=False)
                return
            try:
                await asyncio.wait_for(router.perform(message), timeout=self.config.message_timeout)
            except TransientStepError as e:
                await retry.schedule_retry(e.attempt)
                await self.transport.nack(raw_message, requeue=True)
            except EngineError as e:
                logger.critical(
                    f"Rejecting {message.step_kind} of workflow {message.workflow_id}: {e}"
                )
                await self.transport.nack(raw_message, requeue=False)
            except asyncio.TimeoutError:
                # The step stays inProgress; reconciliation is left to operators.
                logger.error(
                    f"{message.step_kind} of workflow {message.workflow_id} timed out after "
                    f"{self.config.message_timeout}s"
                )
                await self.transport.ack(raw_message)
            except Exception:
                logger.exception(
                    f"Infrastructure error on {message.step_kind} of workflow {message.workflow_id}; requeueing"
                )
                await retry.schedule_retry(message.attempt)
                await self.transport.nack(raw_message, requeue=True)
            else:
                await self.transport.ack(raw_message)
        finally:
            limit.release()
