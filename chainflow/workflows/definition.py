"""Workflow definitions: a step graph, its handlers and its topic."""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Mapping

from ..contracts import RegistryValidationError, UnknownStepKind, UnknownWorkflow
from ..handlers import HandlerFactory, StepHandler, StepServices
from ..registry import StepRegistry


class WorkflowDefinition:
    """Everything the engine needs to run one workflow kind.

    Built once at startup; construction validates that the step graph is
    closed and that every step kind has exactly one handler.
    """

    def __init__(
        self,
        kind: str,
        topic: str,
        init_kind: str,
        registry: StepRegistry,
        handlers: Mapping[str, HandlerFactory],
    ) -> None:
        self.kind = kind
        self.topic = topic
        self.init_kind = init_kind
        self.registry = registry
        self.handlers: Dict[str, HandlerFactory] = dict(handlers)
        self.validate()

    def validate(self) -> None:
        self.registry.validate(self.init_kind)
        kinds = set(self.registry.kinds)
        missing = sorted(kinds - set(self.handlers))
        if missing:
            raise RegistryValidationError(f"{self.kind}: no handler for step kinds {missing}")
        unknown = sorted(set(self.handlers) - kinds)
        if unknown:
            raise RegistryValidationError(f"{self.kind}: handlers for unregistered kinds {unknown}")

    def handler(self, step_kind: str, services: StepServices) -> StepHandler:
        try:
            factory = self.handlers[step_kind]
        except KeyError:
            raise UnknownStepKind(step_kind, self.kind) from None
        return factory(services)


class WorkflowCatalog:
    """Static map from workflow kind (and topic) to its definition."""

    def __init__(self, definitions: Iterable[WorkflowDefinition] = ()) -> None:
        self._by_kind: Dict[str, WorkflowDefinition] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: WorkflowDefinition) -> None:
        if definition.kind in self._by_kind:
            raise RegistryValidationError(f"Workflow kind {definition.kind!r} registered twice")
        self._by_kind[definition.kind] = definition

    def get(self, kind: str) -> WorkflowDefinition:
        try:
            return self._by_kind[kind]
        except KeyError:
            raise UnknownWorkflow(f"Unknown workflow kind {kind!r}") from None

    def for_topic(self, topic: str) -> WorkflowDefinition:
        for definition in self._by_kind.values():
            if definition.topic == topic:
                return definition
        raise UnknownWorkflow(f"No workflow published on topic {topic!r}")

    @property
    def kinds(self) -> List[str]:
        return list(self._by_kind)

    def __contains__(self, kind: object) -> bool:
        return kind in self._by_kind

    def __iter__(self) -> Iterator[WorkflowDefinition]:
        return iter(self._by_kind.values())
