from __future__ import annotations

from typing import Any, Dict

from ..contracts import StepResult
from .base import StepHandler


class InitHandler(StepHandler):
    """Root step of a workflow; nothing to do but open the graph."""

    async def perform(
        self, request_params: Dict[str, Any], prior_step_payload: Dict[str, Any]
    ) -> StepResult:
        return StepResult.done()


class MarkSuccessHandler(StepHandler):
    async def perform(
        self, request_params: Dict[str, Any], prior_step_payload: Dict[str, Any]
    ) -> StepResult:
        return StepResult.done()


class MarkFailureHandler(StepHandler):
    """Terminal failure step.

    Subclass and override ``compensate`` to roll back entity state before the
    workflow is marked failed.
    """

    async def compensate(self, request_params: Dict[str, Any]) -> Dict[str, Any] | None:
        return None

    async def perform(
        self, request_params: Dict[str, Any], prior_step_payload: Dict[str, Any]
    ) -> StepResult:
        return StepResult.done(await self.compensate(request_params))
