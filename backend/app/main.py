"""Workflow Execution Engine - FastAPI Application."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import health
from api.v1.router import api_v1_router
from app.config import Settings, get_settings
from core.logging_config import setup_logging
from core.middleware import RequestTrackingMiddleware, setup_exception_handlers
from db.database import close_db, init_db
from db.persistence import SqlPersistence
from integrations.base import Services
from integrations.claude_client import ClaudeCollaborator
from integrations.http_client import HttpxCollaborator
from integrations.local import LocalToolRegistry, StaticCredentials
from triggers.manager import TriggerManager, set_trigger_manager
from workflow.engine import get_workflow_engine

logger = structlog.get_logger(__name__)


def build_default_services(settings: Settings) -> Services:
    """Collaborators used by the HTTP application."""
    return Services(
        http=HttpxCollaborator(default_timeout=settings.DEFAULT_STEP_TIMEOUT),
        ai=ClaudeCollaborator(settings) if settings.ANTHROPIC_API_KEY else None,
        tools=LocalToolRegistry(),
        credentials=StaticCredentials(),
        persistence=SqlPersistence(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    setup_logging()

    await init_db()

    services = getattr(app.state, "services", None) or build_default_services(settings)
    manager = TriggerManager(services=services, engine=get_workflow_engine())
    set_trigger_manager(manager)
    logger.info(
        "Application started",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        ai_configured=services.ai is not None,
    )

    yield

    await manager.shutdown()
    for collaborator in (services.http, services.ai):
        aclose = getattr(collaborator, "aclose", None)
        if aclose is not None:
            await aclose()
    await close_db()
    logger.info("Application shutting down")


def create_app(services: Services = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        services: Collaborators to use instead of the defaults (tests)
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Executes visual workflow graphs: triggers, actions, "
                    "branching, loops, API and AI calls.",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(RequestTrackingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.is_development else [],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID", "X-Signature", "X-Timestamp"],
    )

    setup_exception_handlers(app)

    # Unversioned health check for load balancers
    app.include_router(health.router)
    app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)

    return app


app = create_app()
