"""Collaborator interfaces the engine talks to.

The engine never opens sockets or touches a database itself. Every
side effect goes through one of the protocols below, bundled per run
in a ``Services`` object so tests can swap in fakes.
"""

from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, runtime_checkable


# ─── HTTP ─────────────────────────────────────────────────────

@dataclass
class HttpRequest:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)
    json: Any = None
    data: Any = None
    content: Optional[bytes | str] = None
    timeout: Optional[float] = None


@dataclass
class HttpResponse:
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def retry_after(self) -> Optional[float]:
        """Seconds requested by a ``Retry-After`` header, if any."""
        raw = None
        for key, value in self.headers.items():
            if key.lower() == "retry-after":
                raw = value
                break
        if raw is None:
            return None
        try:
            return max(0.0, float(raw))
        except (TypeError, ValueError):
            pass
        try:
            when = parsedate_to_datetime(str(raw))
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


@runtime_checkable
class HttpCollaborator(Protocol):
    async def send(self, request: HttpRequest) -> HttpResponse:
        ...


# ─── AI ───────────────────────────────────────────────────────

@dataclass
class AiProviderConfig:
    provider: str = "anthropic"
    model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 1000
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    stop_sequences: list[str] = field(default_factory=list)
    json_mode: bool = False
    timeout: Optional[float] = None
    api_key: Optional[str] = None


@dataclass
class AiPrompt:
    user: str
    system: Optional[str] = None


@dataclass
class AiCompletion:
    text: str
    json: Any = None
    usage: dict[str, Any] = field(default_factory=dict)
    model: Optional[str] = None


@runtime_checkable
class AiCollaborator(Protocol):
    async def complete(self, config: AiProviderConfig, prompt: AiPrompt) -> AiCompletion:
        ...


# ─── Tools, credentials, actions ──────────────────────────────

@runtime_checkable
class ToolInvocationCollaborator(Protocol):
    async def run(self, tool_id: str, inputs: dict[str, Any]) -> dict[str, Any]:
        ...


@dataclass
class CredentialHandle:
    integration_id: str
    provider: Optional[str] = None
    access_token: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class CredentialCollaborator(Protocol):
    async def resolve(self, integration_id: str) -> CredentialHandle:
        ...


@runtime_checkable
class ActionHandler(Protocol):
    async def perform(
        self,
        action_type: str,
        params: dict[str, Any],
        credential: Optional[CredentialHandle] = None,
    ) -> Any:
        ...


# ─── Persistence ──────────────────────────────────────────────

@runtime_checkable
class PersistenceCollaborator(Protocol):
    async def load_graph(self, workflow_id: str) -> Any:
        ...

    async def save_execution(self, record: Any) -> None:
        ...

    async def get_execution(self, execution_id: str) -> Any:
        ...


@dataclass
class Services:
    """Collaborators available to the runners of one execution."""

    http: Optional[HttpCollaborator] = None
    ai: Optional[AiCollaborator] = None
    tools: Optional[ToolInvocationCollaborator] = None
    credentials: Optional[CredentialCollaborator] = None
    persistence: Optional[PersistenceCollaborator] = None
    actions: dict[str, ActionHandler] = field(default_factory=dict)
