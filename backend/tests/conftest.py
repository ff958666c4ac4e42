"""Shared pytest fixtures for the workflow engine test suite.

Provides:
- Scripted fake collaborators (HTTP, AI, actions, tools)
- A Services bundle backed by in-memory persistence
- A WorkflowEngine wired to test settings
- In-memory async SQLite database and FastAPI test client
"""

import os
from typing import Any, AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("RETRY_BASE_DELAY", "0")
os.environ.setdefault("RETRY_MAX_DELAY", "0")

from app.config import get_settings  # noqa: E402
from db.base import Base  # noqa: E402
from integrations.base import AiCompletion, HttpResponse, Services  # noqa: E402
from integrations.local import InMemoryPersistence, LocalToolRegistry, StaticCredentials  # noqa: E402
from workflow.engine import WorkflowEngine  # noqa: E402


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

class FakeHttp:
    """Replays scripted responses in order, then answers 200."""

    def __init__(self, responses: Optional[list] = None):
        self.responses = list(responses or [])
        self.requests = []

    async def send(self, request):
        self.requests.append(request)
        if not self.responses:
            return HttpResponse(status=200, headers={}, body={"ok": True})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeAi:
    def __init__(self, text: str = "hello from the model", json_value: Any = None):
        self.text = text
        self.json_value = json_value
        self.calls = []

    async def complete(self, config, prompt):
        self.calls.append((config, prompt))
        return AiCompletion(text=self.text, json=self.json_value, model=config.model or "test-model")


class RecordingActions:
    """Action handler that records every dispatch."""

    def __init__(self, fail_times: int = 0, error: Optional[Exception] = None):
        self.calls = []
        self.fail_times = fail_times
        self.error = error

    async def perform(self, action_type, params, credential=None):
        self.calls.append((action_type, params, credential))
        if len(self.calls) <= self.fail_times:
            raise self.error or ConnectionError("upstream unavailable")
        return {"delivered": True, **params}


def ok_response(body: Any = None, status: int = 200, headers: Optional[dict] = None) -> HttpResponse:
    return HttpResponse(status=status, headers=headers or {}, body=body)


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def fake_http():
    return FakeHttp()


@pytest.fixture
def fake_ai():
    return FakeAi()


@pytest.fixture
def actions():
    return RecordingActions()


@pytest.fixture
def tools():
    registry = LocalToolRegistry()
    registry.register("echo", lambda inputs: {"echo": inputs})
    registry.register("add", lambda inputs: {"sum": inputs.get("a", 0) + inputs.get("b", 0)})
    return registry


@pytest.fixture
def persistence():
    return InMemoryPersistence()


@pytest.fixture
def services(fake_http, fake_ai, actions, tools, persistence):
    return Services(
        http=fake_http,
        ai=fake_ai,
        tools=tools,
        credentials=StaticCredentials({"crm": "token-123"}),
        persistence=persistence,
        actions={"send_email": actions, "notification": actions, "create_record": actions},
    )


@pytest.fixture
def engine(settings):
    return WorkflowEngine(settings=settings)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory database per test, shared across connections."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    # Import all models so Base.metadata knows about them
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    from db.database import create_session_factory

    return create_session_factory(db_engine)


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(db_engine, session_factory, fake_http, fake_ai, actions, tools, settings):
    """FastAPI app wired to the test database and fake collaborators.

    ASGITransport does not run the lifespan, so the trigger manager is
    installed here.
    """
    import db.database as db_mod
    from app.main import create_app
    from db.persistence import SqlPersistence
    from triggers.manager import TriggerManager, set_trigger_manager

    original_engine = db_mod.engine
    original_session = db_mod.AsyncSessionLocal
    db_mod.engine = db_engine
    db_mod.AsyncSessionLocal = session_factory

    services = Services(
        http=fake_http,
        ai=fake_ai,
        tools=tools,
        credentials=StaticCredentials(),
        persistence=SqlPersistence(),
        actions={"send_email": actions},
    )
    manager = TriggerManager(services=services, engine=WorkflowEngine(settings=settings))
    set_trigger_manager(manager)

    test_app = create_app(services=services)

    yield test_app

    await manager.shutdown()
    set_trigger_manager(None)
    db_mod.engine = original_engine
    db_mod.AsyncSessionLocal = original_session


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac
