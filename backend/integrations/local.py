"""In-process collaborators for embedding the engine and for tests."""

import asyncio
import copy
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

from core.exceptions import NotFoundError, StepExecutionError
from integrations.base import CredentialHandle

logger = structlog.get_logger(__name__)


@dataclass
class StoredWorkflow:
    id: str
    graph: Any
    is_active: bool = True
    webhook_secret: Optional[str] = None


class InMemoryPersistence:
    """Keeps workflows and execution snapshots in dictionaries."""

    def __init__(self, graphs: Optional[dict[str, Any]] = None):
        self._workflows: dict[str, StoredWorkflow] = {}
        self._executions: dict[str, dict] = {}
        self._lock = asyncio.Lock()
        for workflow_id, graph in (graphs or {}).items():
            self.add_graph(workflow_id, graph)

    def add_graph(
        self,
        workflow_id: str,
        graph: Any,
        is_active: bool = True,
        webhook_secret: Optional[str] = None,
    ) -> StoredWorkflow:
        workflow = StoredWorkflow(workflow_id, graph, is_active, webhook_secret)
        self._workflows[workflow_id] = workflow
        return workflow

    async def get_workflow(self, workflow_id: str) -> StoredWorkflow:
        workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        return workflow

    async def load_graph(self, workflow_id: str) -> Any:
        return (await self.get_workflow(workflow_id)).graph

    async def save_execution(self, record) -> None:
        snapshot = record.to_dict() if hasattr(record, "to_dict") else dict(record)
        async with self._lock:
            self._executions[snapshot["id"]] = copy.deepcopy(snapshot)

    async def get_execution(self, execution_id: str) -> Optional[dict]:
        snapshot = self._executions.get(execution_id)
        return copy.deepcopy(snapshot) if snapshot is not None else None

    @property
    def executions(self) -> dict[str, dict]:
        return self._executions


class StaticCredentials:
    """Credential collaborator backed by a fixed mapping."""

    def __init__(self, credentials: Optional[dict[str, Any]] = None):
        self._credentials: dict[str, CredentialHandle] = {}
        for integration_id, value in (credentials or {}).items():
            self.add(integration_id, value)

    def add(self, integration_id: str, value: Any) -> None:
        if isinstance(value, CredentialHandle):
            handle = value
        elif isinstance(value, dict):
            handle = CredentialHandle(
                integration_id=integration_id,
                provider=value.get("provider"),
                access_token=value.get("accessToken", value.get("access_token")),
                metadata=value.get("metadata", {}),
            )
        else:
            handle = CredentialHandle(integration_id=integration_id, access_token=str(value))
        self._credentials[integration_id] = handle

    async def resolve(self, integration_id: str) -> CredentialHandle:
        handle = self._credentials.get(integration_id)
        if handle is None:
            raise StepExecutionError(f"Integration '{integration_id}' is not connected")
        return handle


class LocalToolRegistry:
    """Tool collaborator dispatching to registered Python callables."""

    def __init__(self):
        self._tools: dict[str, Callable] = {}

    def register(self, tool_id: str, handler: Callable) -> None:
        self._tools[tool_id] = handler

    @property
    def tool_ids(self) -> list[str]:
        return list(self._tools.keys())

    async def run(self, tool_id: str, inputs: dict[str, Any]) -> dict[str, Any]:
        handler = self._tools.get(tool_id)
        if handler is None:
            raise StepExecutionError(f"Tool '{tool_id}' not found")
        result = handler(**inputs) if _accepts_kwargs(handler) else handler(inputs)
        if inspect.isawaitable(result):
            result = await result
        if not isinstance(result, dict):
            result = {"result": result}
        logger.debug("Tool executed", tool_id=tool_id)
        return result


def _accepts_kwargs(handler: Callable) -> bool:
    try:
        params = inspect.signature(handler).parameters.values()
    except (TypeError, ValueError):
        return False
    return any(p.kind == inspect.Parameter.VAR_KEYWORD for p in params)
