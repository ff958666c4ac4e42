"""Constants and enums for the workflow execution engine."""

from enum import Enum


class ExecutionStatus(str, Enum):
    """Workflow execution status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class StepStatus(str, Enum):
    """Status of a single recorded step."""

    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class TriggerType(str, Enum):
    """How an execution was started."""

    MANUAL = "manual"
    SCHEDULED = "schedule"
    WEBHOOK = "webhook"


# Reserved context key holding the trigger payload
TRIGGER_KEY = "trigger"

# Outgoing edge handles with special meaning
HANDLE_TRUE = "true"
HANDLE_FALSE = "false"
HANDLE_DEFAULT = "default"
HANDLE_BODY = "body"
HANDLE_AFTER = "after"

# A loop's exit edge: unlabelled, "after", or the editor's single "out" handle
LOOP_EXIT_HANDLES = (None, HANDLE_AFTER, "out")
