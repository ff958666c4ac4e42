"""
Claude AI collaborator for ai nodes, backed by the Anthropic Messages API.

Features:
- Shared httpx connection pool
- Error classification for the engine's retry policy (429/5xx/529 retryable)
- Smart JSON parsing that extracts clean JSON from mixed text/markdown replies
"""

import json
import re
from typing import Any, Optional

import httpx
import structlog

from app.config import Settings, get_settings
from core.exceptions import NonRetryableHttpError, RetryableTransportError, StepExecutionError
from integrations.base import AiCompletion, AiPrompt, AiProviderConfig, HttpResponse

logger = structlog.get_logger(__name__)


# ─── Smart JSON Extractor ──────────────────────────────────────

_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)


def _balanced_block(text: str, opener: str, closer: str) -> Optional[str]:
    start = text.find(opener)
    if start == -1:
        return None
    depth = 0
    in_string = False
    escape_next = False
    for i in range(start, len(text)):
        c = text[i]
        if escape_next:
            escape_next = False
            continue
        if c == "\\":
            escape_next = True
            continue
        if c == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if c == opener:
            depth += 1
        elif c == closer:
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def extract_json(text: str) -> Any:
    """Extract JSON from a model reply that may contain markdown or prose.

    Tries, in order: a direct parse, the body of a markdown code fence,
    then the first bracket-balanced ``{...}`` or ``[...]`` block.

    Raises:
        ValueError: if no JSON value can be recovered.
    """
    if not text or not text.strip():
        raise ValueError("Empty response")

    clean = text.strip()
    try:
        return json.loads(clean)
    except json.JSONDecodeError:
        pass

    match = _FENCE_PATTERN.search(clean)
    if match:
        try:
            return json.loads(match.group(1).strip())
        except json.JSONDecodeError:
            pass

    for opener, closer in (("{", "}"), ("[", "]")):
        candidate = _balanced_block(clean, opener, closer)
        if candidate is None:
            continue
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue

    raise ValueError(f"Could not extract JSON from response: {clean[:200]}")


# ─── Collaborator ──────────────────────────────────────────────

class ClaudeCollaborator:
    """AI collaborator that serves the ``anthropic`` provider."""

    API_VERSION = "2023-06-01"
    SUPPORTED_PROVIDERS = ("anthropic", "claude")

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._client = client
        self._owns_client = client is None

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.ANTHROPIC_API_KEY)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    connect=10.0,
                    read=float(self.settings.CLAUDE_TIMEOUT),
                    write=30.0,
                    pool=10.0,
                ),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def build_payload(self, config: AiProviderConfig, prompt: AiPrompt) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": config.model or self.settings.CLAUDE_MODEL,
            "max_tokens": config.max_tokens or self.settings.CLAUDE_MAX_TOKENS,
            "temperature": config.temperature,
            "messages": [{"role": "user", "content": prompt.user}],
        }
        system = prompt.system or ""
        if config.json_mode:
            system = (system + "\n\nRespond with valid JSON only.").strip()
        if system:
            payload["system"] = system
        if config.top_p is not None:
            payload["top_p"] = config.top_p
        if config.stop_sequences:
            payload["stop_sequences"] = list(config.stop_sequences)
        return payload

    async def complete(self, config: AiProviderConfig, prompt: AiPrompt) -> AiCompletion:
        provider = (config.provider or "anthropic").lower()
        if provider not in self.SUPPORTED_PROVIDERS:
            raise StepExecutionError(f"AI provider '{config.provider}' is not configured")

        api_key = config.api_key or self.settings.ANTHROPIC_API_KEY
        if not api_key:
            raise StepExecutionError("Claude API key not configured")

        payload = self.build_payload(config, prompt)
        headers = {
            "x-api-key": api_key,
            "anthropic-version": self.API_VERSION,
            "content-type": "application/json",
        }

        try:
            response = await self._get_client().post(
                self.settings.ANTHROPIC_API_URL,
                json=payload,
                headers=headers,
                timeout=config.timeout or float(self.settings.CLAUDE_TIMEOUT),
            )
        except httpx.TimeoutException as e:
            raise RetryableTransportError("Claude request timed out") from e
        except httpx.TransportError as e:
            raise RetryableTransportError(f"Claude connection failed: {e}") from e

        if response.status_code != 200:
            wrapped = HttpResponse(status=response.status_code, headers=dict(response.headers))
            message = f"Claude API error {response.status_code}: {response.text[:200]}"
            if response.status_code in (429, 529) or response.status_code >= 500:
                logger.warning("Claude API unavailable", status=response.status_code)
                raise RetryableTransportError(
                    message, status=response.status_code, retry_after=wrapped.retry_after
                )
            raise NonRetryableHttpError(message, status=response.status_code)

        data = response.json()
        text = "".join(
            block.get("text", "")
            for block in data.get("content", [])
            if block.get("type") == "text"
        )
        return AiCompletion(
            text=text,
            usage=data.get("usage", {}),
            model=data.get("model", payload["model"]),
        )
