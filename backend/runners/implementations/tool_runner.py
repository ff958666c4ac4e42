"""Tool runner: invokes a registered tool through the tool collaborator."""

import re
from typing import Any, Optional

import structlog

from core.exceptions import StepExecutionError
from runners.base_runner import BaseRunner, RunnerOutcome, StepEnvironment, describe_error
from workflow.conditions import is_truthy, to_number
from workflow.context import ExecutionContext
from workflow.graph import Node, NodeKind
from workflow.resolver import get_path
from workflow.retry_strategies import RetryStrategy

logger = structlog.get_logger(__name__)


def _split_list(text: str) -> list[str]:
    return [part.strip() for part in re.split(r"\r?\n|,", text) if part.strip()]


def coerce_inputs(schema: Any, inputs: dict[str, Any]) -> dict[str, Any]:
    """Validate and coerce tool inputs against a field schema.

    ``schema`` maps field names to ``{type, required, min, max}``. Fields
    outside the schema are dropped; without a schema inputs pass through.

    Raises:
        StepExecutionError: when a field is missing or out of range.
    """
    if not isinstance(schema, dict) or not schema:
        return inputs

    result: dict[str, Any] = {}
    for key, spec in schema.items():
        spec = spec if isinstance(spec, dict) else {"type": spec}
        field_type = str(spec.get("type") or "text").lower()
        required = bool(spec.get("required"))
        value = inputs.get(key)

        if field_type == "number":
            if value in (None, ""):
                if required:
                    raise StepExecutionError(f'Field "{key}" is required')
            else:
                number = to_number(value)
                if number is None:
                    raise StepExecutionError(f'Field "{key}" must be a number')
                if spec.get("min") is not None and number < spec["min"]:
                    raise StepExecutionError(f'Field "{key}" must be >= {spec["min"]}')
                if spec.get("max") is not None and number > spec["max"]:
                    raise StepExecutionError(f'Field "{key}" must be <= {spec["max"]}')
                value = int(number) if number.is_integer() else number
        elif field_type == "boolean":
            value = is_truthy(value)
        elif field_type == "list":
            if isinstance(value, (list, tuple)):
                value = [str(v) for v in value if str(v)]
            elif isinstance(value, str):
                value = _split_list(value)
            elif value is None:
                value = []
            else:
                value = [str(value)]
            if required and not value:
                raise StepExecutionError(f'Field "{key}" must include at least one item')
        else:
            if value in (None, ""):
                if required:
                    raise StepExecutionError(f'Field "{key}" is required')
            elif field_type == "multiselect" and not isinstance(value, list):
                value = _split_list(str(value))

        result[key] = value
    return result


class ToolRunner(BaseRunner):
    """
    Config:
        toolId: tool to invoke (required)
        inputMappings: [{fieldId | fieldName, value}] where value is a static
            value, a template string, or {fromNode, fieldName}
        inputSchema: optional per-field coercion rules
        timeout (seconds)
    """

    kind = NodeKind.TOOL

    async def execute(self, node: Node, context: ExecutionContext, env: StepEnvironment) -> RunnerOutcome:
        warnings: list[str] = []
        config = node.config

        tool_id = env.resolver.resolve_value(config.get("toolId"), context)
        if not tool_id:
            raise StepExecutionError("No tool selected for this node")
        if env.services.tools is None:
            raise StepExecutionError("No tool provider configured")

        inputs: dict[str, Any] = {}
        for mapping in config.get("inputMappings") or []:
            if not isinstance(mapping, dict):
                continue
            field_id = mapping.get("fieldId") or mapping.get("fieldName")
            if not field_id:
                continue
            inputs[str(field_id)] = self._mapped_value(mapping.get("value"), context, env, warnings)

        inputs = coerce_inputs(config.get("inputSchema"), inputs)

        timeout = self.timeout_for(config, env)
        call_outcome = await self.call_external(
            node,
            env,
            lambda: env.services.tools.run(str(tool_id), inputs),
            strategy=RetryStrategy.none(),
            timeout=timeout,
        )
        if not call_outcome.ok:
            return RunnerOutcome.failed(
                f"Tool execution failed: {describe_error(call_outcome.error)}",
                error_type=type(call_outcome.error).__name__,
                attempts=call_outcome.attempts,
                warnings=warnings,
            )

        outputs = call_outcome.value or {}
        if not isinstance(outputs, dict):
            outputs = {"result": outputs}
        logger.debug("Tool returned", node_id=node.id, tool_id=tool_id, keys=list(outputs))
        return RunnerOutcome(
            output={"toolId": tool_id, "toolOutputs": outputs, **outputs},
            attempts=call_outcome.attempts,
            warnings=warnings,
        )

    def _mapped_value(self, value: Any, context: ExecutionContext, env: StepEnvironment, warnings: list[str]) -> Any:
        if isinstance(value, dict) and "fromNode" in value:
            found, output = context.lookup(str(value["fromNode"]))
            if not found:
                warnings.append(f"Unresolved reference to node '{value['fromNode']}'")
                return None
            field_name: Optional[str] = value.get("fieldName")
            return get_path(output, field_name) if field_name else output
        if isinstance(value, str):
            resolution = env.resolver.resolve(value, context)
            warnings.extend(resolution.warnings)
            return resolution.value
        return value
