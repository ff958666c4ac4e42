"""API runner: configurable HTTP call with status validation and retry.

Config:
    httpMethod / method: GET, POST, PUT, PATCH, DELETE (default GET)
    url: target URL (or urlScheme + urlHost + urlPath)
    queryParams: list of {key, value} or dict
    headers: list of {key, value} or dict
    bodyType: none | json | form | raw | binary
    body: request body (templates resolved)
    authType: none | api_key | bearer | basic | oauth2
        apiKeyHeader / apiKeyValue, bearerToken, basicUsername / basicPassword
    integrationId: credential whose access token authorises the call
    expectedStatusCode: "200-299" (default), "200,201", "204"
    responsePath: dotted path extracted from the response body
    storeFullResponse: include headers and body in the output
    retryOnFailure (default true), maxRetries (default 3), timeout (seconds)
    fallbackValue: output used when every attempt fails
"""

import base64
import json
from typing import Any, Callable, Optional

import structlog

from core.exceptions import NonRetryableHttpError, RetryableTransportError, StepExecutionError
from integrations.base import HttpRequest, HttpResponse
from runners.base_runner import BaseRunner, RunnerOutcome, StepEnvironment, describe_error
from workflow.context import ExecutionContext
from workflow.graph import Node, NodeKind
from workflow.resolver import get_path
from workflow.retry_strategies import RetryStrategy

logger = structlog.get_logger(__name__)

DEFAULT_EXPECTED_STATUS = "200-299"


def headers_to_dict(headers: Any) -> dict[str, str]:
    """Accept ``[{key, value}]`` (editor shape) or a plain mapping."""
    if not headers:
        return {}
    if isinstance(headers, dict):
        return {str(k): str(v) for k, v in headers.items() if str(k).strip()}
    result: dict[str, str] = {}
    for entry in headers:
        if not isinstance(entry, dict):
            continue
        key = str(entry.get("key") or "").strip()
        if key:
            result[key] = "" if entry.get("value") is None else str(entry.get("value"))
    return result


def build_body(request: HttpRequest, body_type: str, body: Any) -> None:
    """Attach ``body`` to ``request`` according to ``body_type``."""
    body_type = str(body_type or "none").lower()
    if body_type == "none" or body in (None, ""):
        return

    if body_type == "json":
        if isinstance(body, str):
            try:
                request.json = json.loads(body)
            except json.JSONDecodeError as e:
                raise StepExecutionError(f"Request body is not valid JSON: {e.msg}") from e
        else:
            request.json = body
    elif body_type == "form":
        if isinstance(body, list):
            request.data = headers_to_dict(body)
        elif isinstance(body, dict):
            request.data = body
        else:
            request.content = str(body)
            request.headers.setdefault("Content-Type", "application/x-www-form-urlencoded")
    elif body_type == "binary":
        request.content = body if isinstance(body, bytes) else str(body).encode()
        request.headers.setdefault("Content-Type", "application/octet-stream")
    else:
        request.content = json.dumps(body) if isinstance(body, (dict, list)) else str(body)


def status_matcher(expected: Any) -> Callable[[int], bool]:
    """Build a predicate from ``"200-299"``, ``"200,201"``, ``204`` or a list.

    Raises:
        StepExecutionError: on an unparseable status expression.
    """
    if expected in (None, ""):
        expected = DEFAULT_EXPECTED_STATUS
    if isinstance(expected, (list, tuple)):
        parts = [str(p) for p in expected]
    else:
        parts = str(expected).split(",")

    ranges: list[tuple[int, int]] = []
    for part in parts:
        part = part.strip()
        if not part:
            continue
        try:
            if "-" in part:
                low, high = part.split("-", 1)
                ranges.append((int(low), int(high)))
            else:
                code = int(part)
                ranges.append((code, code))
        except ValueError as e:
            raise StepExecutionError(f"Invalid expectedStatusCode: {expected!r}") from e

    return lambda status: any(low <= status <= high for low, high in ranges)


def build_url(config: dict) -> str:
    url = config.get("url")
    if url:
        return str(url)
    host = config.get("urlHost")
    if not host:
        raise StepExecutionError("API node requires 'url'")
    scheme = config.get("urlScheme") or "https"
    path = str(config.get("urlPath") or "")
    if path and not path.startswith("/"):
        path = "/" + path
    return f"{scheme}://{host}{path}"


class ApiRunner(BaseRunner):
    """Calls an HTTP endpoint through the HTTP collaborator."""

    kind = NodeKind.API

    async def execute(self, node: Node, context: ExecutionContext, env: StepEnvironment) -> RunnerOutcome:
        warnings: list[str] = []
        config = self.resolve_config(node, context, env, warnings)

        if env.services.http is None:
            raise StepExecutionError("No HTTP client configured")

        request = await self._build_request(config, env)
        is_expected = status_matcher(config.get("expectedStatusCode"))

        async def call() -> HttpResponse:
            response = await env.services.http.send(request)
            if is_expected(response.status):
                return response
            message = f"Unexpected status {response.status} from {request.method} {request.url}"
            if response.status == 429 or response.status >= 500:
                raise RetryableTransportError(
                    message, status=response.status, retry_after=response.retry_after
                )
            raise NonRetryableHttpError(message, status=response.status)

        call_outcome = await self.call_external(
            node,
            env,
            call,
            strategy=RetryStrategy.from_node_config(config, env.settings, default_max_retries=3),
            timeout=self.timeout_for(config, env),
        )

        if not call_outcome.ok:
            message = describe_error(call_outcome.error)
            if config.get("fallbackValue") is not None:
                warnings.append(f"API call failed, using fallback value: {message}")
                logger.warning("API call failed, using fallback", node_id=node.id, error=message)
                return RunnerOutcome(
                    output=config["fallbackValue"],
                    attempts=call_outcome.attempts,
                    warnings=warnings,
                )
            return RunnerOutcome.failed(
                message,
                error_type=type(call_outcome.error).__name__,
                attempts=call_outcome.attempts,
                warnings=warnings,
            )

        response: HttpResponse = call_outcome.value
        path = config.get("responsePath")
        data = get_path(response.body, path) if path else response.body
        output: dict[str, Any] = {"status": response.status, "data": data}
        if config.get("storeFullResponse"):
            output["headers"] = response.headers
            output["body"] = response.body
        if config.get("outputVariable"):
            context.set(str(config["outputVariable"]), data)

        return RunnerOutcome(output=output, attempts=call_outcome.attempts, warnings=warnings)

    async def _build_request(self, config: dict, env: StepEnvironment) -> HttpRequest:
        method = str(config.get("httpMethod") or config.get("method") or "GET").upper()
        headers = headers_to_dict(config.get("headers"))
        request = HttpRequest(
            method=method,
            url=build_url(config),
            headers=headers,
            params=headers_to_dict(config.get("queryParams")),
            timeout=self.timeout_for(config, env),
        )

        auth_type = str(config.get("authType") or "none").lower()
        if auth_type == "api_key":
            header = config.get("apiKeyHeader") or "X-API-Key"
            headers[str(header)] = str(config.get("apiKeyValue") or "")
        elif auth_type == "bearer":
            headers["Authorization"] = f"Bearer {config.get('bearerToken') or ''}"
        elif auth_type == "basic":
            raw = f"{config.get('basicUsername') or ''}:{config.get('basicPassword') or ''}"
            headers["Authorization"] = "Basic " + base64.b64encode(raw.encode()).decode()

        token = await self._credential_token(config, env, required=auth_type == "oauth2")
        if token:
            headers.setdefault("Authorization", f"Bearer {token}")

        if method not in ("GET", "HEAD"):
            body_type = config.get("bodyType") or ("json" if config.get("body") else "none")
            build_body(request, body_type, config.get("body"))
        return request

    async def _credential_token(self, config: dict, env: StepEnvironment, required: bool) -> Optional[str]:
        integration_id = config.get("integrationId")
        if not integration_id:
            if required:
                raise StepExecutionError("OAuth2 authentication requires 'integrationId'")
            return None
        if env.services.credentials is None:
            raise StepExecutionError("No credential provider configured")
        handle = await env.services.credentials.resolve(str(integration_id))
        return handle.access_token
