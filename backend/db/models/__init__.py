"""Database models for the workflow execution engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.workflow import WorkflowDefinition
from db.models.execution import Execution, ExecutionStep

__all__ = [
    "WorkflowDefinition",
    "Execution",
    "ExecutionStep",
]
