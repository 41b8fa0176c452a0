"""Workflow dispatcher for chainflow."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .contracts import InvalidStepState, StepMessage
from .persistence import Workflow, WorkflowRepository, WorkflowStep, get_repository, step_unique_key
from .router import WorkflowRouter
from .transports import BaseTransport
from .workflows import WorkflowCatalog, default_catalog

logger = logging.getLogger(__name__)


class WorkflowDispatcher:
    """Service responsible for starting workflows and retrying them from a step."""

    def __init__(
        self,
        transport: BaseTransport,
        repository: Optional[WorkflowRepository] = None,
        catalog: Optional[WorkflowCatalog] = None,
    ) -> None:
        self._transport = transport
        self._repository = repository or get_repository()
        self._catalog = catalog or default_catalog()

    async def start_workflow(
        self,
        kind: str,
        request_params: Optional[Dict[str, Any]] = None,
        chain_id: Optional[int] = None,
        client_id: Optional[int] = None,
    ) -> Workflow:
        """Persist a new workflow and publish its init step.

        Args:
            kind: Workflow kind registered in the catalog.
            request_params: Top-level parameters, immutable after creation.
            chain_id: Chain the workflow primarily acts on.
            client_id: Owning client or token.

        Returns:
            The accepted workflow; progress is observable only through its
            persisted status and steps.
        """
        definition = self._catalog.get(kind)
        workflow = await self._repository.create_workflow(
            kind, request_params or {}, chain_id=chain_id, client_id=client_id
        )
        root = await self._repository.insert_step(
            WorkflowStep(
                workflow_id=workflow.id,
                kind=definition.init_kind,
                unique_key=step_unique_key(workflow.id, definition.init_kind),
            )
        )
        if root is None:
            raise InvalidStepState(f"Workflow {workflow.id} already has a root step")

        message = StepMessage(
            workflow_id=workflow.id,
            workflow_kind=kind,
            step_kind=definition.init_kind,
            current_step_id=root.id,
            payload=dict(workflow.request_params),
        )
        await self._transport.publish(definition.topic, message)
        await self._repository.update_step(root.id, published=True)
        logger.info(f"Started workflow {workflow.id} ({kind}) on topic {definition.topic}")
        return workflow

    async def retry_from_step(self, step_id: int) -> WorkflowStep:
        """Re-run a workflow from ``step_id``; later steps are marked retried."""
        step = await self._repository.get_step(step_id)
        if step is None:
            raise InvalidStepState(f"Step {step_id} does not exist")
        workflow = await self._repository.get_workflow(step.workflow_id)
        if workflow is None:
            raise InvalidStepState(f"Step {step_id} has no workflow")
        router = WorkflowRouter(
            self._catalog.get(workflow.kind), self._repository, self._transport
        )
        return await router.retry_from_step(step_id)
