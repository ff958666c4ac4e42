"""SQL-backed persistence collaborator.

Stores workflow definitions and execution records through SQLAlchemy
async sessions. Step rows are append-only: each save inserts the steps
recorded since the previous save and updates the execution row.
"""

import asyncio
import json
from typing import Any, Optional

import structlog
from sqlalchemy import func, select

from core.exceptions import NotFoundError
from db import database
from db.models import Execution, ExecutionStep, WorkflowDefinition
from workflow.graph import WorkflowGraph
from workflow.recorder import ExecutionRecord, StepResult

logger = structlog.get_logger(__name__)


def _jsonable(value: Any) -> Any:
    """Round-trip through JSON so JSON columns never see datetimes or sets."""
    return json.loads(json.dumps(value, default=str))


class SqlPersistence:
    """PersistenceCollaborator over the application database."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory
        self._lock = asyncio.Lock()

    def _session(self):
        factory = self._session_factory or database.AsyncSessionLocal
        return factory()

    # ─── Workflows ────────────────────────────────────────────

    async def create_workflow(
        self,
        name: str,
        graph: dict,
        description: str = "",
        is_active: bool = True,
        webhook_secret: Optional[str] = None,
        workflow_id: Optional[str] = None,
    ) -> WorkflowDefinition:
        """Validate and store a workflow graph."""
        parsed = WorkflowGraph.parse(graph)
        parsed.validate_structure()
        workflow = WorkflowDefinition(
            name=name,
            description=description,
            graph=_jsonable(graph),
            is_active=is_active,
            webhook_secret=webhook_secret,
        )
        if workflow_id:
            workflow.id = workflow_id
        async with self._session() as session:
            session.add(workflow)
            await session.commit()
        logger.info("Workflow stored", workflow_id=workflow.id, nodes=len(parsed.nodes))
        return workflow

    async def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        async with self._session() as session:
            workflow = await session.get(WorkflowDefinition, workflow_id)
        if workflow is None:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        return workflow

    async def load_graph(self, workflow_id: str) -> WorkflowGraph:
        workflow = await self.get_workflow(workflow_id)
        return WorkflowGraph.parse(workflow.graph)

    # ─── Executions ───────────────────────────────────────────

    async def save_execution(self, record: ExecutionRecord) -> None:
        """Upsert the execution row and append any new step rows."""
        async with self._lock:
            async with self._session() as session:
                execution = await session.get(Execution, record.id)
                if execution is None:
                    execution = Execution(id=record.id)
                    session.add(execution)

                execution.workflow_id = record.workflow_id
                execution.trigger_type = record.trigger_type
                execution.trigger_payload = _jsonable(record.trigger_payload)
                execution.status = record.status.value
                execution.started_at = record.started_at
                execution.completed_at = record.completed_at
                execution.duration_ms = record.duration_ms
                execution.error_message = record.error_message
                execution.error_node_id = record.error_node_id

                stored = await session.scalar(
                    select(func.count())
                    .select_from(ExecutionStep)
                    .where(ExecutionStep.execution_id == record.id)
                )
                for sequence, step in enumerate(record.steps[stored or 0:], start=stored or 0):
                    session.add(self._step_row(record.id, sequence, step))

                await session.commit()

    async def get_execution(self, execution_id: str) -> Optional[dict]:
        """Execution snapshot in the same shape as ExecutionRecord.to_dict()."""
        async with self._session() as session:
            execution = await session.get(Execution, execution_id)
            if execution is None:
                return None
            steps = (
                await session.scalars(
                    select(ExecutionStep)
                    .where(ExecutionStep.execution_id == execution_id)
                    .order_by(ExecutionStep.sequence)
                )
            ).all()

        return {
            "id": execution.id,
            "workflowId": execution.workflow_id,
            "status": execution.status,
            "triggerType": execution.trigger_type,
            "triggerPayload": execution.trigger_payload,
            "steps": [self._step_dict(row) for row in steps],
            "startedAt": execution.started_at.isoformat() if execution.started_at else None,
            "completedAt": execution.completed_at.isoformat() if execution.completed_at else None,
            "durationMs": execution.duration_ms,
            "errorMessage": execution.error_message,
            "errorNodeId": execution.error_node_id,
        }

    @staticmethod
    def _step_row(execution_id: str, sequence: int, step: StepResult) -> ExecutionStep:
        return ExecutionStep(
            execution_id=execution_id,
            sequence=sequence,
            node_id=step.node_id,
            kind=step.kind,
            status=step.status.value,
            handle=step.handle,
            output=_jsonable(step.output),
            error_message=step.error_message,
            error_type=step.error_type,
            attempts=step.attempts,
            warnings=list(step.warnings),
            iteration=list(step.iteration) if step.iteration else None,
            started_at=step.started_at,
            completed_at=step.completed_at,
            duration_ms=step.duration_ms,
        )

    @staticmethod
    def _step_dict(row: ExecutionStep) -> dict:
        return {
            "nodeId": row.node_id,
            "kind": row.kind,
            "status": row.status,
            "output": row.output,
            "errorMessage": row.error_message,
            "errorType": row.error_type,
            "handle": row.handle,
            "attempts": row.attempts,
            "warnings": row.warnings or [],
            "iteration": row.iteration,
            "startedAt": row.started_at.isoformat() if row.started_at else None,
            "completedAt": row.completed_at.isoformat() if row.completed_at else None,
            "durationMs": row.duration_ms,
        }
