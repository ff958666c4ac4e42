"""Execution record and its ordered steps."""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import ExecutionStatus, TriggerType
from db.base import BaseModel


class Execution(BaseModel):
    """One run of a workflow.

    Attributes:
        id: Same id as the in-memory ExecutionRecord
        workflow_id: Workflow that ran (nullable for ad-hoc graphs)
        trigger_type: manual, schedule or webhook
        status: pending, running, completed, failed or cancelled
        error_message / error_node_id: set when the run failed
    """

    __tablename__ = "executions"

    workflow_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    trigger_type: Mapped[str] = mapped_column(
        default=TriggerType.MANUAL.value, index=True
    )
    trigger_payload: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(
        default=ExecutionStatus.PENDING.value, index=True
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(nullable=True)
    error_node_id: Mapped[Optional[str]] = mapped_column(nullable=True)

    workflow: Mapped[Optional["WorkflowDefinition"]] = relationship(
        "WorkflowDefinition", back_populates="executions", lazy="raise"
    )
    steps: Mapped[list["ExecutionStep"]] = relationship(
        "ExecutionStep",
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="ExecutionStep.sequence",
        lazy="raise",
    )


class ExecutionStep(BaseModel):
    """One StepResult, ordered within its execution by ``sequence``."""

    __tablename__ = "execution_steps"

    execution_id: Mapped[str] = mapped_column(
        ForeignKey("executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence: Mapped[int] = mapped_column(nullable=False)
    node_id: Mapped[str] = mapped_column(nullable=False, index=True)
    kind: Mapped[str] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(nullable=False)
    handle: Mapped[Optional[str]] = mapped_column(nullable=True)
    output: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(nullable=True)
    error_type: Mapped[Optional[str]] = mapped_column(nullable=True)
    attempts: Mapped[int] = mapped_column(default=1)
    warnings: Mapped[list] = mapped_column(JSON, default=list)
    iteration: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int] = mapped_column(default=0)

    execution: Mapped["Execution"] = relationship("Execution", back_populates="steps")
