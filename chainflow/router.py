"""Workflow router: run one step, persist its outcome, schedule what comes next."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from .constants import (
    CLAIMABLE_STEP_STATUSES,
    DEFAULT_MAX_POLL_ATTEMPTS,
    DEFAULT_MAX_STEP_ATTEMPTS,
    RUNNABLE_STEP_STATUSES,
    StepStatus,
    TaskStatus,
    WorkflowStatus,
)
from .contracts import (
    EngineError,
    InvalidStepState,
    MissingDependencyData,
    RetryableStepError,
    StepMessage,
    StepResult,
    TransientStepError,
    UnknownWorkflow,
)
from .handlers import StepServices
from .persistence import Workflow, WorkflowRepository, WorkflowStep, step_unique_key
from .registry import TransitionRule
from .transports import BaseTransport
from .utils import retry
from .workflows import WorkflowDefinition

logger = logging.getLogger(__name__)

_TASK_TO_STEP_STATUS = {
    TaskStatus.DONE: StepStatus.TASK_DONE,
    TaskStatus.PENDING: StepStatus.TASK_PENDING,
    TaskStatus.FAILED: StepStatus.TASK_FAILED,
}


def _submitted(step: WorkflowStep) -> bool:
    return step.status == StepStatus.TASK_PENDING and bool(step.transaction_hash)


class WorkflowRouter:
    """Drive every workflow of one kind, one step message at a time.

    The router keeps no per-workflow state in memory: each ``perform`` call
    reloads the workflow and its steps, so any worker process may handle
    any message. Successor rows carry a unique ``<workflow>:<kind>`` key,
    which makes redelivered messages re-publish existing children instead
    of creating new ones. A handler only runs after its row is claimed, so
    concurrent deliveries of one message execute it once.
    """

    def __init__(
        self,
        definition: WorkflowDefinition,
        repository: WorkflowRepository,
        transport: BaseTransport,
        services: Optional[StepServices] = None,
        max_step_attempts: int = DEFAULT_MAX_STEP_ATTEMPTS,
        max_poll_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS,
    ) -> None:
        self.definition = definition
        self.registry = definition.registry
        self.repository = repository
        self.transport = transport
        self.services = services or StepServices(repository=repository)
        self.max_step_attempts = max_step_attempts
        self.max_poll_attempts = max_poll_attempts

    # ------------------------------------------------------------------
    # Entry points
    async def perform(self, message: StepMessage) -> None:
        """Apply one step message.

        Raises ``TransientStepError`` when the message should be requeued and
        ``EngineError`` for programming errors; in the latter case the
        workflow has already been marked failed.
        """
        workflow = await self.repository.get_workflow(message.workflow_id)
        if workflow is None:
            raise UnknownWorkflow(f"Workflow {message.workflow_id} does not exist")
        if workflow.kind != self.definition.kind:
            raise UnknownWorkflow(
                f"Workflow {workflow.id} is {workflow.kind!r}, not {self.definition.kind!r}"
            )

        try:
            await self._perform(workflow, message)
        except EngineError as e:
            logger.critical(
                f"Engine error in workflow {workflow.id} at {message.step_kind}: {e}"
            )
            await self.repository.update_workflow_status(
                workflow.id,
                WorkflowStatus.FAILED,
                debug_params={
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "step_kind": message.step_kind,
                    "step_id": message.current_step_id,
                },
            )
            raise

    async def retry_from_step(self, step_id: int) -> WorkflowStep:
        """Supersede ``step_id`` and everything after it, then run its kind again."""
        step = await self.repository.get_step(step_id)
        if step is None:
            raise InvalidStepState(f"Step {step_id} does not exist")
        workflow = await self.repository.get_workflow(step.workflow_id)
        if workflow is None or workflow.kind != self.definition.kind:
            raise UnknownWorkflow(f"Step {step_id} does not belong to a {self.definition.kind} workflow")

        superseded = await self.repository.mark_steps_retried(workflow.id, step.id)
        await self.repository.update_workflow_status(workflow.id, WorkflowStatus.IN_PROGRESS)
        fresh = await self.repository.insert_step(
            WorkflowStep(
                workflow_id=workflow.id,
                parent_id=step.parent_id,
                kind=step.kind,
                unique_key=step_unique_key(workflow.id, step.kind),
            )
        )
        if fresh is None:
            raise InvalidStepState(f"Could not re-insert {step.kind} for workflow {workflow.id}")
        logger.info(
            f"Workflow {workflow.id}: retrying from {step.kind} (step {step.id}), {superseded} steps superseded"
        )
        await self._publish(workflow, fresh)
        return fresh

    async def flush_outbox(self) -> int:
        """Publish queued steps of this workflow kind whose message never went out."""
        published = 0
        for step in await self.repository.list_unpublished_steps():
            workflow = await self.repository.get_workflow(step.workflow_id)
            if (
                workflow is None
                or workflow.kind != self.definition.kind
                or workflow.status != WorkflowStatus.IN_PROGRESS
            ):
                continue
            await self._publish(workflow, step)
            published += 1
        if published:
            logger.info(f"Re-published {published} unpublished {self.definition.kind} steps")
        return published

    # ------------------------------------------------------------------
    # Message handling
    async def _perform(self, workflow: Workflow, message: StepMessage) -> None:
        rule = self.registry.next(message.step_kind)
        step = await self._load_step(workflow, message)

        if workflow.status != WorkflowStatus.IN_PROGRESS:
            logger.warning(
                f"Workflow {workflow.id} is {workflow.status.value}; ignoring {step.kind} (step {step.id})"
            )
            return

        if message.task_status in (TaskStatus.DONE, TaskStatus.FAILED):
            await self._apply_callback(workflow, step, rule, message)
            return
        if message.task_status != TaskStatus.READY_TO_START:
            raise InvalidStepState(
                f"Unsupported task status {message.task_status.value} for step {step.id}"
            )

        if step.status == StepStatus.RETRIED:
            logger.warning(f"Step {step.id} ({step.kind}) was superseded by a retry; skipping")
            return
        if step.status in (StepStatus.TASK_DONE, StepStatus.TASK_FAILED) or _submitted(step):
            logger.warning(
                f"Redelivery of {step.kind} (step {step.id}) in status {step.status.value}; re-routing"
            )
            await self._route(workflow, step, rule)
            return
        if step.status not in RUNNABLE_STEP_STATUSES and step.status != StepStatus.TASK_PENDING:
            raise InvalidStepState(f"Step {step.id} cannot run from status {step.status.value}")

        await self._execute(workflow, step, rule, message)

    async def _load_step(self, workflow: Workflow, message: StepMessage) -> WorkflowStep:
        if message.current_step_id is None:
            if message.step_kind != self.definition.init_kind:
                raise InvalidStepState(
                    f"Only {self.definition.init_kind} may arrive without a step id, got {message.step_kind}"
                )
            root = await self.repository.insert_step(
                WorkflowStep(
                    workflow_id=workflow.id,
                    kind=message.step_kind,
                    unique_key=step_unique_key(workflow.id, message.step_kind),
                    published=True,
                )
            )
            if root is not None:
                return root
            existing = await self._active_step(workflow.id, message.step_kind)
            if existing is None:
                raise InvalidStepState(f"Root step of workflow {workflow.id} vanished")
            return existing

        step = await self.repository.get_step(message.current_step_id)
        if step is None:
            raise InvalidStepState(f"Step {message.current_step_id} does not exist")
        if step.workflow_id != workflow.id or step.kind != message.step_kind:
            raise InvalidStepState(
                f"Step {step.id} is {step.kind} of workflow {step.workflow_id}, "
                f"message says {message.step_kind} of workflow {workflow.id}"
            )
        return step

    async def _execute(
        self,
        workflow: Workflow,
        step: WorkflowStep,
        rule: TransitionRule,
        message: StepMessage,
    ) -> None:
        params = await self._build_params(workflow, step, rule)
        prior = await self._prior_payload(step)
        if not await self.repository.claim_step(step.id, CLAIMABLE_STEP_STATUSES):
            await self._lost_claim(workflow, step, rule)
            return
        await self.repository.update_step(step.id, request_params=params)
        logger.info(f"Workflow {workflow.id}: running {step.kind} (step {step.id})")

        handler = self.definition.handler(step.kind, self.services)
        try:
            result = await handler.perform(dict(params), prior)
        except RetryableStepError as e:
            await self._retry_later(workflow, step, rule, message, e)
            return
        except EngineError:
            raise
        except Exception as e:
            logger.exception(f"Workflow {workflow.id}: {step.kind} (step {step.id}) raised")
            result = StepResult.failed({"error": str(e), "error_type": type(e).__name__})

        await self._record(workflow, step, rule, result, message)

    async def _lost_claim(
        self, workflow: Workflow, step: WorkflowStep, rule: TransitionRule
    ) -> None:
        """Another delivery owns the step; re-route only if it already settled."""
        current = await self.repository.get_step(step.id)
        if current is not None and (
            current.status in (StepStatus.TASK_DONE, StepStatus.TASK_FAILED) or _submitted(current)
        ):
            await self._route(workflow, current, rule)
            return
        status = current.status.value if current is not None else "missing"
        logger.warning(
            f"Workflow {workflow.id}: {step.kind} (step {step.id}) is {status} under another delivery; skipping"
        )

    async def _retry_later(
        self,
        workflow: Workflow,
        step: WorkflowStep,
        rule: TransitionRule,
        message: StepMessage,
        error: RetryableStepError,
    ) -> None:
        attempts = step.attempts + 1
        if attempts >= self.max_step_attempts:
            logger.error(
                f"Workflow {workflow.id}: {step.kind} (step {step.id}) failed after {attempts} attempts: {error}"
            )
            await self.repository.update_step(step.id, attempts=attempts)
            await self._record(
                workflow,
                step,
                rule,
                StepResult.failed({"error": str(error), "attempts": attempts}),
                message,
            )
            return
        logger.warning(
            f"Workflow {workflow.id}: {step.kind} (step {step.id}) attempt {attempts} hit a transient error: {error}"
        )
        await self.repository.update_step(
            step.id,
            status=StepStatus.RETRYING,
            attempts=attempts,
            debug_params={"error": str(error), "attempts": attempts},
        )
        raise TransientStepError(str(error), attempt=attempts) from error

    async def _record(
        self,
        workflow: Workflow,
        step: WorkflowStep,
        rule: TransitionRule,
        result: StepResult,
        message: StepMessage,
    ) -> None:
        status = _TASK_TO_STEP_STATUS.get(result.task_status)
        if status is None:
            raise InvalidStepState(
                f"{step.kind} returned unsupported task status {result.task_status.value}"
            )

        fields: Dict[str, Any] = {"status": status}
        if result.task_response_data is not None:
            fields["response_data"] = result.task_response_data
        if result.transaction_hash:
            fields["transaction_hash"] = result.transaction_hash
        if result.debug_params:
            fields["debug_params"] = result.debug_params
        await self.repository.update_step(step.id, **fields)
        if result.fe_response_data:
            await self.repository.merge_workflow_response(workflow.id, result.fe_response_data)
        step = step.model_copy(update=fields)
        logger.info(f"Workflow {workflow.id}: {step.kind} (step {step.id}) -> {status.value}")

        if status == StepStatus.TASK_FAILED and result.retry_from_step_id:
            await self.retry_from_step(result.retry_from_step_id)
            return
        if status == StepStatus.TASK_PENDING and not step.transaction_hash:
            await self._poll_again(workflow, step, rule, message)
            return
        await self._route(workflow, step, rule)

    async def _poll_again(
        self,
        workflow: Workflow,
        step: WorkflowStep,
        rule: TransitionRule,
        message: StepMessage,
    ) -> None:
        if message.attempt >= self.max_poll_attempts:
            logger.error(
                f"Workflow {workflow.id}: {step.kind} (step {step.id}) still pending after {message.attempt} polls"
            )
            debug = {"error": "still pending after polling", "polls": message.attempt}
            await self.repository.update_step(
                step.id, status=StepStatus.TASK_FAILED, debug_params=debug
            )
            step = step.model_copy(update={"status": StepStatus.TASK_FAILED})
            await self._route(workflow, step, rule)
            return
        logger.debug(f"Workflow {workflow.id}: polling {step.kind} (step {step.id}) again")
        await retry.schedule_retry(message.attempt)
        await self.transport.publish(self.definition.topic, message.next_attempt())

    async def _apply_callback(
        self,
        workflow: Workflow,
        step: WorkflowStep,
        rule: TransitionRule,
        message: StepMessage,
    ) -> None:
        if step.status != StepStatus.TASK_PENDING:
            logger.warning(
                f"Ignoring {message.task_status.value} callback for step {step.id} in status {step.status.value}"
            )
            return
        fields: Dict[str, Any] = {"status": _TASK_TO_STEP_STATUS[message.task_status]}
        if message.task_response_data:
            fields["response_data"] = {**(step.response_data or {}), **message.task_response_data}
        if message.transaction_hash and not step.transaction_hash:
            fields["transaction_hash"] = message.transaction_hash
        await self.repository.update_step(step.id, **fields)
        step = step.model_copy(update=fields)
        logger.info(
            f"Workflow {workflow.id}: {step.kind} (step {step.id}) confirmed {step.status.value} by callback"
        )
        await self._route(workflow, step, rule)

    # ------------------------------------------------------------------
    # Transitions
    async def _route(self, workflow: Workflow, step: WorkflowStep, rule: TransitionRule) -> None:
        """Schedule what follows ``step`` given its persisted status."""
        if step.status == StepStatus.TASK_DONE:
            await self._settle_submitter(step, StepStatus.TASK_DONE)
            if rule.is_terminal:
                await self._finish(workflow, step, rule.marks)
            else:
                await self._schedule(workflow, step, rule.on_success)
        elif step.status == StepStatus.TASK_FAILED:
            await self._settle_submitter(step, StepStatus.TASK_FAILED)
            if rule.on_failure and not rule.is_terminal:
                await self._schedule(workflow, step, [rule.on_failure])
            else:
                await self._finish(workflow, step, WorkflowStatus.FAILED)
        elif _submitted(step):
            if rule.status_check:
                await self._schedule(workflow, step, [rule.status_check])
            else:
                logger.info(
                    f"Workflow {workflow.id}: {step.kind} (step {step.id}) awaits external confirmation"
                )

    async def _settle_submitter(self, step: WorkflowStep, status: StepStatus) -> None:
        """Close the submitting parent once its status-check step has an answer."""
        if step.parent_id is None:
            return
        parent = await self.repository.get_step(step.parent_id)
        if parent is None or not _submitted(parent):
            return
        if self.registry.next(parent.kind).status_check != step.kind:
            return
        await self.repository.update_step(parent.id, status=status)

    async def _finish(
        self, workflow: Workflow, step: WorkflowStep, status: Optional[WorkflowStatus]
    ) -> None:
        status = status or WorkflowStatus.FAILED
        debug = None
        if status == WorkflowStatus.FAILED:
            debug = {"failed_step": step.kind, "failed_step_id": step.id}
        await self.repository.update_workflow_status(workflow.id, status, debug_params=debug)
        logger.info(f"Workflow {workflow.id} ({workflow.kind}) {status.value} at {step.kind}")

    async def _schedule(
        self, workflow: Workflow, parent: WorkflowStep, kinds: Iterable[str]
    ) -> None:
        for kind in kinds:
            next_rule = self.registry.next(kind)
            if next_rule.prerequisites and not await self._prerequisites_done(
                workflow.id, next_rule
            ):
                logger.debug(f"Workflow {workflow.id}: {kind} waits for {next_rule.prerequisites}")
                continue

            child = await self.repository.insert_step(
                WorkflowStep(
                    workflow_id=workflow.id,
                    parent_id=parent.id,
                    kind=kind,
                    unique_key=step_unique_key(workflow.id, kind),
                )
            )
            if child is None:
                existing = await self._active_step(workflow.id, kind)
                if (
                    existing is None
                    or existing.status != StepStatus.QUEUED
                    or existing.published
                ):
                    continue
                child = existing
            await self._publish(workflow, child)

    async def _publish(self, workflow: Workflow, step: WorkflowStep) -> None:
        message = StepMessage(
            workflow_id=workflow.id,
            workflow_kind=workflow.kind,
            step_kind=step.kind,
            current_step_id=step.id,
            parent_step_id=step.parent_id,
            payload={**workflow.request_params, **step.request_params},
        )
        await self.transport.publish(self.definition.topic, message)
        await self.repository.update_step(step.id, published=True)
        logger.debug(f"Workflow {workflow.id}: published {step.kind} (step {step.id})")

    async def _prerequisites_done(self, workflow_id: int, rule: TransitionRule) -> bool:
        steps = await self.repository.list_steps(workflow_id)
        done = {s.kind for s in steps if s.status == StepStatus.TASK_DONE}
        return all(kind in done for kind in rule.prerequisites)

    async def _active_step(self, workflow_id: int, kind: str) -> Optional[WorkflowStep]:
        matches = [s for s in await self.repository.list_steps(workflow_id) if s.kind == kind]
        return matches[-1] if matches else None

    # ------------------------------------------------------------------
    # Parameters
    async def _build_params(
        self, workflow: Workflow, step: WorkflowStep, rule: TransitionRule
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {**workflow.request_params, **step.request_params}

        if rule.read_data_from:
            steps = await self.repository.list_steps(workflow.id)
            ancestors = self._ancestors(step, {s.id: s for s in steps})
            for kind in rule.read_data_from:
                source = next((s for s in ancestors if s.kind == kind), None)
                if source is None and kind in rule.prerequisites:
                    source = next((s for s in steps if s.kind == kind), None)
                if source is None:
                    raise MissingDependencyData(
                        f"{step.kind} (step {step.id}) reads from {kind}, which is not an ancestor"
                    )
                if source.status != StepStatus.TASK_DONE and not _submitted(source):
                    raise MissingDependencyData(
                        f"{step.kind} (step {step.id}) reads from {kind} (step {source.id}) "
                        f"in status {source.status.value}"
                    )
                params.update(source.response_data or {})

        if rule.chain is not None:
            chain_id = params.get(f"{rule.chain}_chain_id")
            if chain_id is None and rule.chain == "origin":
                chain_id = workflow.chain_id
            if chain_id is None:
                raise EngineError(
                    f"{step.kind} runs on the {rule.chain} chain but workflow {workflow.id} has no {rule.chain}_chain_id"
                )
            params["chain_id"] = chain_id
        return params

    @staticmethod
    def _ancestors(step: WorkflowStep, by_id: Dict[int, WorkflowStep]) -> List[WorkflowStep]:
        ancestors: List[WorkflowStep] = []
        parent_id = step.parent_id
        while parent_id is not None and parent_id in by_id:
            parent = by_id[parent_id]
            if parent.workflow_id != step.workflow_id:
                raise InvalidStepState(
                    f"Step {step.id} has parent {parent.id} from workflow {parent.workflow_id}"
                )
            ancestors.append(parent)
            parent_id = parent.parent_id
        return ancestors

    async def _prior_payload(self, step: WorkflowStep) -> Dict[str, Any]:
        if step.parent_id is None:
            return {}
        parent = await self.repository.get_step(step.parent_id)
        if parent is None:
            return {}
        payload = dict(parent.response_data or {})
        if parent.transaction_hash:
            payload["transaction_hash"] = parent.transaction_hash
        return payload
