"""Trigger Manager: turns manual, scheduled and webhook events into runs.

Every entry point loads the stored workflow, refuses inactive ones and
hands the graph to the workflow engine with the matching trigger type.
Webhook deliveries are verified (HMAC-SHA256) before anything runs.
"""

import asyncio
import json
import uuid
from typing import Any, Optional

import structlog

from app.config import get_settings
from core.constants import TriggerType
from core.exceptions import WorkflowInactiveError
from core.webhook_signing import verify_signature
from integrations.base import Services
from workflow.engine import WorkflowEngine, get_workflow_engine
from workflow.recorder import ExecutionRecord

logger = structlog.get_logger(__name__)


def parse_webhook_body(body: bytes) -> Any:
    """JSON payload of a delivery; non-JSON bodies arrive as ``{"raw": text}``."""
    if not body:
        return {}
    text = body.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return {"raw": text}


class TriggerManager:
    """Central entry point for starting workflow executions.

    Singleton pattern, use get_trigger_manager() to access.
    """

    def __init__(
        self,
        services: Optional[Services] = None,
        engine: Optional[WorkflowEngine] = None,
    ):
        self._services = services or Services()
        self._engine = engine or get_workflow_engine()
        self._tasks: set[asyncio.Task] = set()

    @property
    def services(self) -> Services:
        return self._services

    @property
    def engine(self) -> WorkflowEngine:
        return self._engine

    async def _load_active(self, workflow_id: str):
        persistence = self._services.persistence
        if persistence is None:
            raise RuntimeError("Trigger manager has no persistence collaborator")
        workflow = await persistence.get_workflow(workflow_id)
        if not workflow.is_active:
            raise WorkflowInactiveError(f"Workflow {workflow_id} is not active")
        return workflow

    async def _run(
        self,
        workflow_id: str,
        payload: Any,
        trigger_type: TriggerType,
        execution_id: Optional[str] = None,
    ) -> ExecutionRecord:
        workflow = await self._load_active(workflow_id)
        logger.info("Trigger fired", workflow_id=workflow_id, trigger_type=trigger_type.value)
        return await self._engine.execute(
            workflow.graph,
            payload,
            self._services,
            workflow_id=workflow_id,
            trigger_type=trigger_type.value,
            execution_id=execution_id,
        )

    # ─── Entry points ─────────────────────────────────────────

    async def run_manual(self, workflow_id: str, payload: Any = None) -> ExecutionRecord:
        return await self._run(workflow_id, payload, TriggerType.MANUAL)

    async def run_scheduled(self, workflow_id: str, payload: Any = None) -> ExecutionRecord:
        return await self._run(workflow_id, payload, TriggerType.SCHEDULED)

    async def run_webhook(
        self,
        workflow_id: str,
        body: bytes,
        signature: Optional[str],
        timestamp: Optional[str],
        secret: Optional[str] = None,
    ) -> ExecutionRecord:
        """Verify a signed delivery, then run the workflow with its JSON body.

        ``secret`` defaults to the workflow's stored webhook secret.

        Raises:
            WebhookSignatureError: the signature does not verify
            WorkflowInactiveError: the workflow is switched off
        """
        workflow = await self._load_active(workflow_id)
        verify_signature(
            body,
            secret or workflow.webhook_secret or "",
            signature,
            timestamp,
            tolerance=get_settings().WEBHOOK_TOLERANCE_SECONDS,
        )
        return await self._run(workflow_id, parse_webhook_body(body), TriggerType.WEBHOOK)

    async def submit(
        self,
        workflow_id: str,
        payload: Any = None,
        trigger_type: TriggerType = TriggerType.MANUAL,
    ) -> str:
        """Start an execution in the background and return its id.

        The workflow is checked before returning so inactive or unknown
        workflows fail the caller rather than the background task.
        """
        await self._load_active(workflow_id)
        execution_id = str(uuid.uuid4())
        task = asyncio.create_task(
            self._run(workflow_id, payload, trigger_type, execution_id=execution_id)
        )
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return execution_id

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background execution crashed", error=str(task.exception()))

    async def shutdown(self) -> None:
        """Wait for background executions to settle."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


# Singleton
_manager: Optional[TriggerManager] = None


def get_trigger_manager() -> TriggerManager:
    """Get the singleton TriggerManager (configured by the app lifespan)."""
    global _manager
    if _manager is None:
        _manager = TriggerManager()
    return _manager


def set_trigger_manager(manager: Optional[TriggerManager]) -> None:
    global _manager
    _manager = manager
