"""Pydantic models describing step transition rules."""

from __future__ import annotations

from typing import Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from ..constants import WorkflowStatus
from ..contracts import RegistryValidationError, UnknownStepKind


class TransitionRule(BaseModel):
    """Where a workflow goes after one step kind succeeds or fails."""

    kind: str
    on_success: List[str] = Field(default_factory=list)
    on_failure: Optional[str] = None
    read_data_from: List[str] = Field(default_factory=list)
    # Join: only schedule this kind once all of these are done.
    prerequisites: List[str] = Field(default_factory=list)
    # Kind that polls a submitted transaction of this kind until it is mined.
    status_check: Optional[str] = None
    chain: Optional[Literal["origin", "aux"]] = None
    # Set on terminal kinds (empty ``on_success``).
    marks: Optional[WorkflowStatus] = None

    model_config = {"frozen": True}

    @property
    def is_terminal(self) -> bool:
        return not self.on_success

    @model_validator(mode="after")
    def _terminal_marks_workflow(self) -> "TransitionRule":
        if self.marks is not None and self.on_success:
            raise ValueError(f"{self.kind}: only terminal kinds may mark the workflow")
        return self


class StepRegistry:
    """Static map from step kind to its transition rule for one workflow kind."""

    def __init__(self, workflow_kind: str, rules: Iterable[TransitionRule]) -> None:
        self.workflow_kind = workflow_kind
        self._rules: Dict[str, TransitionRule] = {}
        for rule in rules:
            if rule.kind in self._rules:
                raise RegistryValidationError(
                    f"{workflow_kind}: step kind {rule.kind!r} declared twice"
                )
            self._rules[rule.kind] = rule

    def next(self, kind: str) -> TransitionRule:
        try:
            return self._rules[kind]
        except KeyError:
            raise UnknownStepKind(kind, self.workflow_kind) from None

    def __contains__(self, kind: object) -> bool:
        return kind in self._rules

    def __iter__(self):
        return iter(self._rules.values())

    @property
    def kinds(self) -> List[str]:
        return list(self._rules)

    def validate(self, init_kind: str) -> None:
        """Check graph closure and terminal conventions.

        Every kind referenced from ``on_success``, ``on_failure``,
        ``read_data_from``, ``prerequisites`` or ``status_check`` must itself be
        registered, the init kind must exist, and every terminal kind must
        declare which workflow status it sets.
        """
        if init_kind not in self._rules:
            raise RegistryValidationError(
                f"{self.workflow_kind}: init kind {init_kind!r} is not registered"
            )
        for rule in self._rules.values():
            referenced = [
                *rule.on_success,
                *rule.read_data_from,
                *rule.prerequisites,
                *([rule.on_failure] if rule.on_failure else []),
                *([rule.status_check] if rule.status_check else []),
            ]
            missing = [kind for kind in referenced if kind not in self._rules]
            if missing:
                raise RegistryValidationError(
                    f"{self.workflow_kind}: {rule.kind!r} references unknown kinds {missing}"
                )
            if rule.is_terminal and rule.marks is None:
                raise RegistryValidationError(
                    f"{self.workflow_kind}: terminal kind {rule.kind!r} must mark the workflow"
                )
