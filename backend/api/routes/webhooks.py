"""Inbound webhook endpoint."""

from fastapi import APIRouter, Depends, Request

from api.schemas.execution import ExecutionResponse
from app.dependencies import get_manager
from core.webhook_signing import SIGNATURE_HEADER, TIMESTAMP_HEADER
from triggers.manager import TriggerManager

router = APIRouter(tags=["webhooks"])


@router.post("/{workflow_id}", response_model=ExecutionResponse)
async def receive_webhook(
    workflow_id: str,
    request: Request,
    manager: TriggerManager = Depends(get_manager),
) -> ExecutionResponse:
    """
    Run a workflow from a signed delivery.

    The raw body is verified against ``X-Signature`` / ``X-Timestamp``
    before it is parsed; a bad signature answers 401.
    """
    body = await request.body()
    record = await manager.run_webhook(
        workflow_id,
        body,
        signature=request.headers.get(SIGNATURE_HEADER),
        timestamp=request.headers.get(TIMESTAMP_HEADER),
    )
    return ExecutionResponse.model_validate(record.to_dict())
