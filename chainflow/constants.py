"""Status vocabularies and default timings shared across chainflow."""

from __future__ import annotations

from enum import Enum


class WorkflowStatus(str, Enum):
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "inProgress"
    TASK_DONE = "taskDone"
    TASK_PENDING = "taskPending"
    TASK_FAILED = "taskFailed"
    RETRYING = "retrying"
    # Superseded by a retry-from-step; kept for the audit trail only.
    RETRIED = "retried"


class TaskStatus(str, Enum):
    """Outcome reported by a step handler (or carried by a callback message)."""

    READY_TO_START = "taskReadyToStart"
    DONE = "taskDone"
    PENDING = "taskPending"
    FAILED = "taskFailed"


class TransactionMetaStatus(str, Enum):
    QUEUED = "queued"
    SUBMITTED = "submitted"
    ROLLBACK_NEEDED = "rollbackNeeded"
    GETH_DOWN = "gethDown"


class CronProcessStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    INACTIVE = "inactive"


class CronProcessKind(str, Enum):
    WORKFLOW_WORKER = "workflowWorker"
    AUX_WORKFLOW_WORKER = "auxWorkflowWorker"
    CRON_PROCESSES_MONITOR = "cronProcessesMonitor"


# Steps that may be (re)executed when a message for them arrives.
RUNNABLE_STEP_STATUSES = (
    StepStatus.QUEUED,
    StepStatus.IN_PROGRESS,
    StepStatus.RETRYING,
)

# Statuses a worker may move to inProgress; a pending row only while it has no hash.
CLAIMABLE_STEP_STATUSES = (
    StepStatus.QUEUED,
    StepStatus.RETRYING,
    StepStatus.TASK_PENDING,
)

DEFAULT_PREFETCH_COUNT = 25
DEFAULT_WORKER_LIFESPAN = 45 * 60
DEFAULT_MESSAGE_TIMEOUT = 3 * 60
DEFAULT_MAX_STEP_ATTEMPTS = 3
DEFAULT_MAX_POLL_ATTEMPTS = 20

NONCE_LOCK_TTL = 5
NONCE_WAIT_TIMEOUT = 50
NONCE_WAIT_INTERVAL = 2

# Seconds a continuous process may run before the monitor raises an alert.
RESTART_INTERVALS = {
    CronProcessKind.WORKFLOW_WORKER: DEFAULT_WORKER_LIFESPAN + 15 * 60,
    CronProcessKind.AUX_WORKFLOW_WORKER: DEFAULT_WORKER_LIFESPAN + 15 * 60,
}
