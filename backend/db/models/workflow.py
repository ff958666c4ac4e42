"""Stored workflow definition."""

from typing import Optional

from sqlalchemy import JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import BaseModel


class WorkflowDefinition(BaseModel):
    """A saved workflow graph.

    Attributes:
        id: Unique identifier (UUID string)
        name: Workflow name
        description: Free-form description
        graph: Graph JSON ({nodes, edges}) as saved by the editor
        is_active: Inactive workflows refuse to run
        webhook_secret: Shared secret for signed webhook deliveries
    """

    __tablename__ = "workflows"

    name: Mapped[str] = mapped_column(nullable=False, index=True)
    description: Mapped[str] = mapped_column(nullable=False, default="")
    graph: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(default=True, index=True)
    webhook_secret: Mapped[Optional[str]] = mapped_column(nullable=True)

    executions: Mapped[list["Execution"]] = relationship(
        "Execution",
        back_populates="workflow",
        cascade="all, delete-orphan",
        lazy="raise",
    )
