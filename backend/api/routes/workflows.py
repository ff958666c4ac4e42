"""Workflow definition and manual execution endpoints."""

from typing import Union

import structlog
from fastapi import APIRouter, Depends, status

from api.schemas.execution import ExecuteRequest, ExecutionAccepted, ExecutionResponse
from api.schemas.workflow import WorkflowCreate, WorkflowResponse
from app.dependencies import get_manager, get_persistence
from core.constants import TriggerType
from triggers.manager import TriggerManager

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["workflows"])


def _workflow_to_response(workflow) -> WorkflowResponse:
    return WorkflowResponse(
        id=workflow.id,
        name=getattr(workflow, "name", workflow.id),
        description=getattr(workflow, "description", ""),
        graph=workflow.graph,
        is_active=workflow.is_active,
        has_webhook_secret=bool(workflow.webhook_secret),
    )


@router.post("/", response_model=WorkflowResponse, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    request: WorkflowCreate,
    persistence=Depends(get_persistence),
) -> WorkflowResponse:
    """
    Store a workflow graph. The graph is validated first, so a malformed
    graph is rejected with 422 and never stored.
    """
    workflow = await persistence.create_workflow(
        name=request.name,
        graph=request.graph,
        description=request.description,
        is_active=request.is_active,
        webhook_secret=request.webhook_secret,
    )
    logger.info("Workflow created", workflow_id=workflow.id, nodes=len(request.graph.get("nodes", [])))
    return _workflow_to_response(workflow)


@router.get("/{workflow_id}", response_model=WorkflowResponse)
async def get_workflow(
    workflow_id: str,
    persistence=Depends(get_persistence),
) -> WorkflowResponse:
    workflow = await persistence.get_workflow(workflow_id)
    return _workflow_to_response(workflow)


@router.post(
    "/{workflow_id}/execute",
    response_model=Union[ExecutionResponse, ExecutionAccepted],
)
async def execute_workflow(
    workflow_id: str,
    request: ExecuteRequest,
    manager: TriggerManager = Depends(get_manager),
):
    """
    Run a workflow manually.

    With ``wait`` (the default) the final execution record is returned;
    otherwise the run starts in the background and its id is returned for
    polling via ``GET /executions/{id}``.
    """
    if not request.wait:
        execution_id = await manager.submit(workflow_id, request.payload, TriggerType.MANUAL)
        return ExecutionAccepted(execution_id=execution_id)

    record = await manager.run_manual(workflow_id, request.payload)
    return ExecutionResponse.model_validate(record.to_dict())
