"""Step registry: declarative transition rules per workflow kind."""

from __future__ import annotations

from ..constants import WorkflowStatus
from .models import StepRegistry, TransitionRule

MARK_SUCCESS = "markSuccess"
MARK_FAILURE = "markFailure"


def terminal_rules() -> list[TransitionRule]:
    """The shared ``markSuccess`` / ``markFailure`` terminal kinds."""

    return [
        TransitionRule(kind=MARK_SUCCESS, marks=WorkflowStatus.COMPLETED),
        TransitionRule(kind=MARK_FAILURE, marks=WorkflowStatus.FAILED),
    ]


__all__ = [
    "MARK_FAILURE",
    "MARK_SUCCESS",
    "StepRegistry",
    "TransitionRule",
    "terminal_rules",
]
