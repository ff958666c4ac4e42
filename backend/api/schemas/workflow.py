"""Workflow definition schemas."""

from typing import Any, Optional

from pydantic import Field

from api.schemas.common import CamelModel


class WorkflowCreate(CamelModel):
    """Request to store a workflow graph."""

    name: str = Field(min_length=1, max_length=255)
    description: str = ""
    graph: dict[str, Any] = Field(description="{nodes, edges} as saved by the editor")
    is_active: bool = True
    webhook_secret: Optional[str] = None


class WorkflowResponse(CamelModel):
    id: str
    name: str
    description: str = ""
    graph: dict[str, Any]
    is_active: bool
    has_webhook_secret: bool = False
