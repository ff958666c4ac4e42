"""Execution recorder: the single writer of an execution's record.

Step results are appended in execution order under an asyncio lock so
that concurrently running loop iterations can record safely. The record
moves through ``pending -> running -> completed | failed | cancelled``
and never leaves a terminal state.
"""

import asyncio
import inspect
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog

from core.constants import TERMINAL_STATUSES, ExecutionStatus, StepStatus, TriggerType
from core.exceptions import InvalidTransition

logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass(frozen=True)
class StepResult:
    """Outcome of running one node. Immutable once recorded."""

    node_id: str
    kind: str
    status: StepStatus
    started_at: datetime
    completed_at: datetime
    duration_ms: int = 0
    output: Any = None
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    handle: Optional[str] = None
    attempts: int = 1
    warnings: tuple[str, ...] = ()
    iteration: Optional[tuple[int, ...]] = None

    @property
    def failed(self) -> bool:
        return self.status == StepStatus.FAILED

    def to_dict(self) -> dict:
        return {
            "nodeId": self.node_id,
            "kind": self.kind,
            "status": self.status.value,
            "output": self.output,
            "errorMessage": self.error_message,
            "errorType": self.error_type,
            "handle": self.handle,
            "attempts": self.attempts,
            "warnings": list(self.warnings),
            "iteration": list(self.iteration) if self.iteration else None,
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
            "durationMs": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StepResult":
        iteration = data.get("iteration")
        return cls(
            node_id=data["nodeId"],
            kind=data.get("kind", ""),
            status=StepStatus(data["status"]),
            output=data.get("output"),
            error_message=data.get("errorMessage"),
            error_type=data.get("errorType"),
            handle=data.get("handle"),
            attempts=data.get("attempts", 1),
            warnings=tuple(data.get("warnings") or ()),
            iteration=tuple(iteration) if iteration else None,
            started_at=_parse_dt(data.get("startedAt")),
            completed_at=_parse_dt(data.get("completedAt")),
            duration_ms=data.get("durationMs", 0),
        )


@dataclass
class ExecutionRecord:
    """Durable record of one workflow execution."""

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    trigger_type: str = TriggerType.MANUAL.value
    trigger_payload: Any = None
    steps: list[StepResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    error_node_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def step_for(self, node_id: str) -> Optional[StepResult]:
        """Most recent result recorded for ``node_id``."""
        for step in reversed(self.steps):
            if step.node_id == node_id:
                return step
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "workflowId": self.workflow_id,
            "status": self.status.value,
            "triggerType": self.trigger_type,
            "triggerPayload": self.trigger_payload,
            "steps": [step.to_dict() for step in self.steps],
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
            "durationMs": self.duration_ms,
            "errorMessage": self.error_message,
            "errorNodeId": self.error_node_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionRecord":
        return cls(
            id=data["id"],
            workflow_id=data.get("workflowId"),
            status=ExecutionStatus(data.get("status", ExecutionStatus.PENDING.value)),
            trigger_type=data.get("triggerType", TriggerType.MANUAL.value),
            trigger_payload=data.get("triggerPayload"),
            steps=[StepResult.from_dict(s) for s in data.get("steps") or []],
            started_at=_parse_dt(data.get("startedAt")) or utcnow(),
            completed_at=_parse_dt(data.get("completedAt")),
            duration_ms=data.get("durationMs"),
            error_message=data.get("errorMessage"),
            error_node_id=data.get("errorNodeId"),
        )


_ALLOWED_TRANSITIONS = {
    ExecutionStatus.PENDING: {
        ExecutionStatus.RUNNING,
        ExecutionStatus.FAILED,
    },
    ExecutionStatus.RUNNING: {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    },
}


class ExecutionRecorder:
    """Owns an ExecutionRecord and is the only code that mutates it."""

    def __init__(
        self,
        record: ExecutionRecord,
        listeners: Optional[list[Callable]] = None,
    ):
        self._record = record
        self._lock = asyncio.Lock()
        self._listeners: list[Callable] = list(listeners or [])

    @property
    def record(self) -> ExecutionRecord:
        return self._record

    @property
    def status(self) -> ExecutionStatus:
        return self._record.status

    def add_listener(self, listener: Callable) -> None:
        """Register a sync or async callable receiving each appended StepResult."""
        self._listeners.append(listener)

    async def append(self, step: StepResult) -> None:
        async with self._lock:
            if self._record.is_terminal:
                logger.warning(
                    "Ignoring step recorded after execution finished",
                    execution_id=self._record.id,
                    node_id=step.node_id,
                    status=self._record.status.value,
                )
                return
            self._record.steps.append(step)

        for listener in self._listeners:
            try:
                outcome = listener(step)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning(
                    "Step listener failed",
                    execution_id=self._record.id,
                    node_id=step.node_id,
                    error=str(e),
                )

    # ─── State machine ────────────────────────────────────────

    def _transition(self, target: ExecutionStatus) -> None:
        current = self._record.status
        if target not in _ALLOWED_TRANSITIONS.get(current, set()):
            raise InvalidTransition(
                f"Execution {self._record.id} cannot move from "
                f"'{current.value}' to '{target.value}'"
            )
        self._record.status = target
        if target in TERMINAL_STATUSES:
            completed_at = utcnow()
            self._record.completed_at = completed_at
            self._record.duration_ms = int(
                (completed_at - self._record.started_at).total_seconds() * 1000
            )

    def start(self) -> None:
        self._transition(ExecutionStatus.RUNNING)

    def complete(self) -> None:
        self._transition(ExecutionStatus.COMPLETED)

    def fail(self, message: str, node_id: Optional[str] = None) -> None:
        self._transition(ExecutionStatus.FAILED)
        self._record.error_message = message
        self._record.error_node_id = node_id

    def cancel(self, message: Optional[str] = None) -> None:
        self._transition(ExecutionStatus.CANCELLED)
        if message:
            self._record.error_message = message

    def snapshot(self) -> dict:
        return self._record.to_dict()
