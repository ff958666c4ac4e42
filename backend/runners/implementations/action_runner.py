"""Action runner: side-effecting operations (email, sms, records, http, ...).

Every action type except ``http_request`` is delegated to the action
handler registered for it in ``Services.actions``; ``http_request`` goes
through the HTTP collaborator.
"""

import re
from typing import Any, Optional

import structlog

from core.exceptions import NonRetryableHttpError, RetryableTransportError, StepExecutionError
from integrations.base import CredentialHandle, HttpRequest
from runners.base_runner import (
    BaseRunner,
    RunnerOutcome,
    StepEnvironment,
    describe_error,
    shape_output,
)
from runners.implementations.api_runner import build_body, headers_to_dict
from workflow.context import ExecutionContext
from workflow.graph import Node, NodeKind
from workflow.retry_strategies import RetryStrategy

logger = structlog.get_logger(__name__)

ACTION_TYPES = (
    "send_email",
    "send_sms",
    "create_record",
    "update_record",
    "http_request",
    "run_script",
    "notification",
    "file_operation",
)

# Editor display labels that do not normalise to their action type
_LABEL_ALIASES = {
    "email": "send_email",
    "sms": "send_sms",
    "http": "http_request",
    "api_request": "http_request",
    "script": "run_script",
    "send_notification": "notification",
    "file": "file_operation",
    "insert_record": "create_record",
}

# action type -> (param name, config key, required)
_PARAM_MAP: dict[str, tuple[tuple[str, str, bool], ...]] = {
    "send_email": (
        ("to", "emailTo", True),
        ("cc", "emailCc", False),
        ("bcc", "emailBcc", False),
        ("subject", "emailSubject", False),
        ("body", "emailBody", False),
    ),
    "send_sms": (
        ("to", "smsTo", True),
        ("from", "smsFrom", False),
        ("body", "smsBody", True),
    ),
    "create_record": (
        ("table", "dbTable", True),
        ("data", "dbData", False),
    ),
    "update_record": (
        ("table", "dbTable", True),
        ("recordId", "dbRecordId", True),
        ("data", "dbData", False),
    ),
    "run_script": (("code", "scriptCode", True),),
    "notification": (
        ("title", "notificationTitle", False),
        ("message", "notificationMessage", True),
    ),
    "file_operation": (
        ("operation", "fileOperation", True),
        ("path", "filePath", True),
        ("content", "fileContent", False),
    ),
}


def normalise_action_type(value: Any) -> str:
    """``"Send SMS"`` -> ``"send_sms"``."""
    text = re.sub(r"[\s\-]+", "_", str(value or "").strip().lower())
    return _LABEL_ALIASES.get(text, text)


def collect_params(action_type: str, config: dict) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for name, key, required in _PARAM_MAP.get(action_type, ()):
        value = config.get(key)
        if required and value in (None, ""):
            raise StepExecutionError(f"Action '{action_type}' requires '{key}'")
        if value not in (None, ""):
            params[name] = value
    return params


class ActionRunner(BaseRunner):
    """
    Config:
        actionType: one of ACTION_TYPES (editor labels accepted)
        integrationId: credential to resolve before dispatch
        runConditionally + conditionExpression: skip unless the expression holds
        outputPath / outputFormat / outputVariable / storeFullResponse
        continueOnError + fallbackValue
        maxRetries (default 3), timeout (seconds, default 60)
    """

    kind = NodeKind.ACTION

    async def execute(self, node: Node, context: ExecutionContext, env: StepEnvironment) -> RunnerOutcome:
        warnings: list[str] = []
        raw = node.config

        if raw.get("runConditionally") and raw.get("conditionExpression") not in (None, ""):
            should_run = env.evaluator.evaluate_expression(
                raw["conditionExpression"], context, warnings=warnings
            )
            if not should_run:
                return RunnerOutcome.skipped(
                    output={"skipped": True, "reason": "Run condition not met"},
                    warnings=warnings,
                )

        config = self.resolve_config(node, context, env, warnings)
        action_type = normalise_action_type(config.get("actionType") or config.get("action"))
        if action_type not in ACTION_TYPES:
            raise StepExecutionError(f"Unknown action type: {config.get('actionType')!r}")

        credential = await self._resolve_credential(config, env)

        if action_type == "http_request":
            request = self._build_http_request(config, credential, self.timeout_for(config, env))

            async def call():
                return await self._send_http(env, request)
        else:
            params = collect_params(action_type, config)
            handler = env.services.actions.get(action_type)
            if handler is None:
                raise StepExecutionError(f"No handler configured for action '{action_type}'")

            async def call():
                return await handler.perform(action_type, params, credential)

        call_outcome = await self.call_external(
            node,
            env,
            call,
            strategy=RetryStrategy.from_node_config(config, env.settings, default_max_retries=3),
            timeout=self.timeout_for(config, env),
        )

        if not call_outcome.ok:
            message = describe_error(call_outcome.error)
            if config.get("continueOnError"):
                fallback = config.get("fallbackValue")
                if config.get("outputVariable"):
                    context.set(str(config["outputVariable"]), fallback)
                logger.warning("Action failed, continuing with fallback", node_id=node.id, error=message)
                warnings.append(f"Action failed, using fallback value: {message}")
                return RunnerOutcome(
                    output=fallback,
                    attempts=call_outcome.attempts,
                    warnings=warnings,
                )
            return RunnerOutcome.failed(
                message,
                error_type=type(call_outcome.error).__name__,
                attempts=call_outcome.attempts,
                warnings=warnings,
            )

        output = shape_output(call_outcome.value, config, context)
        return RunnerOutcome(output=output, attempts=call_outcome.attempts, warnings=warnings)

    async def _resolve_credential(self, config: dict, env: StepEnvironment) -> Optional[CredentialHandle]:
        integration_id = config.get("integrationId")
        if not integration_id:
            return None
        if env.services.credentials is None:
            raise StepExecutionError("No credential provider configured")
        return await env.services.credentials.resolve(str(integration_id))

    def _build_http_request(
        self,
        config: dict,
        credential: Optional[CredentialHandle],
        timeout: Optional[float],
    ) -> HttpRequest:
        url = config.get("httpUrl") or config.get("url")
        if not url:
            raise StepExecutionError("Action 'http_request' requires 'httpUrl'")
        method = str(config.get("httpMethod") or "GET").upper()
        headers = headers_to_dict(config.get("httpHeaders"))
        if credential and credential.access_token:
            headers.setdefault("Authorization", f"Bearer {credential.access_token}")
        request = HttpRequest(method=method, url=str(url), headers=headers, timeout=timeout)
        if method not in ("GET", "HEAD", "DELETE"):
            build_body(request, config.get("httpBodyType") or "json", config.get("httpBody"))
        return request

    async def _send_http(self, env: StepEnvironment, request: HttpRequest) -> Any:
        if env.services.http is None:
            raise StepExecutionError("No HTTP client configured")
        response = await env.services.http.send(request)
        if response.ok:
            return {"status": response.status, "headers": response.headers, "data": response.body}
        message = f"HTTP {response.status} from {request.url}"
        if response.status == 429 or response.status >= 500:
            raise RetryableTransportError(message, status=response.status, retry_after=response.retry_after)
        raise NonRetryableHttpError(message, status=response.status)
