"""FastAPI dependency injection functions."""

from integrations.base import PersistenceCollaborator
from triggers.manager import TriggerManager, get_trigger_manager
from workflow.engine import WorkflowEngine


def get_manager() -> TriggerManager:
    """Trigger manager configured by the application lifespan."""
    return get_trigger_manager()


def get_engine() -> WorkflowEngine:
    return get_trigger_manager().engine


def get_persistence() -> PersistenceCollaborator:
    persistence = get_trigger_manager().services.persistence
    if persistence is None:
        raise RuntimeError("No persistence collaborator configured")
    return persistence
