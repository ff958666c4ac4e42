"""Execution status and cancellation endpoints."""

import structlog
from fastapi import APIRouter, Depends

from api.schemas.execution import CancelResponse, ExecutionResponse
from app.dependencies import get_engine, get_persistence
from core.exceptions import InvalidTransition, NotFoundError
from workflow.engine import WorkflowEngine

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["executions"])


@router.get("/{execution_id}", response_model=ExecutionResponse)
async def get_execution(
    execution_id: str,
    persistence=Depends(get_persistence),
) -> ExecutionResponse:
    """
    Latest persisted snapshot of an execution, including every step
    recorded so far. Polled by the debug panel while a run is in flight.
    """
    snapshot = await persistence.get_execution(execution_id)
    if snapshot is None:
        raise NotFoundError(f"Execution {execution_id} not found")
    return ExecutionResponse.model_validate(snapshot)


@router.post("/{execution_id}/cancel", response_model=CancelResponse)
async def cancel_execution(
    execution_id: str,
    engine: WorkflowEngine = Depends(get_engine),
    persistence=Depends(get_persistence),
) -> CancelResponse:
    """
    Request cooperative cancellation. The run stops at the next node or
    loop iteration boundary and is recorded as ``cancelled``.
    """
    if engine.cancel(execution_id):
        logger.info("Cancellation requested", execution_id=execution_id)
        return CancelResponse(execution_id=execution_id, cancel_requested=True)

    snapshot = await persistence.get_execution(execution_id)
    if snapshot is None:
        raise NotFoundError(f"Execution {execution_id} not found")
    raise InvalidTransition(
        f"Execution {execution_id} is already {snapshot['status']} and cannot be cancelled"
    )
