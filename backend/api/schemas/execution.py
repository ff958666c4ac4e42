"""Execution request and response schemas."""

from typing import Any, List, Optional

from pydantic import Field

from api.schemas.common import CamelModel


class ExecuteRequest(CamelModel):
    """Manual run of a stored workflow."""

    payload: Any = Field(default_factory=dict, description="Trigger payload exposed as {{trigger.*}}")
    wait: bool = Field(default=True, description="Run to completion before responding")


class StepResultResponse(CamelModel):
    """One recorded step, as shown in the debug panel."""

    node_id: str
    kind: str
    status: str
    output: Any = None
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    handle: Optional[str] = None
    attempts: int = 1
    warnings: List[str] = Field(default_factory=list)
    iteration: Optional[List[int]] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_ms: int = 0


class ExecutionResponse(CamelModel):
    """Execution record snapshot."""

    id: str = Field(description="Execution ID")
    workflow_id: Optional[str] = Field(default=None, description="Workflow ID")
    status: str = Field(description="pending, running, completed, failed or cancelled")
    trigger_type: str = Field(description="manual, schedule or webhook")
    trigger_payload: Any = None
    steps: List[StepResultResponse] = Field(default_factory=list)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    error_node_id: Optional[str] = None


class ExecutionAccepted(CamelModel):
    """Returned when a run was started in the background."""

    execution_id: str
    status: str = "running"


class CancelResponse(CamelModel):
    execution_id: str
    cancel_requested: bool
