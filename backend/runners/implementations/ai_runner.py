"""AI runner: sends resolved prompts to the AI collaborator."""

import re
from typing import Any, Optional

from core.exceptions import StepExecutionError
from integrations.base import AiPrompt, AiProviderConfig
from integrations.claude_client import extract_json
from runners.base_runner import BaseRunner, RunnerOutcome, StepEnvironment, describe_error
from workflow.conditions import to_number
from workflow.context import ExecutionContext
from workflow.graph import Node, NodeKind
from workflow.resolver import get_path
from workflow.retry_strategies import RetryStrategy


def parse_stop_sequences(value: Any) -> list[str]:
    """Stop sequences arrive as a list or a comma/newline separated string."""
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if str(v)]
    return [part.strip() for part in re.split(r"[,\n]", str(value)) if part.strip()]


def _number(value: Any, default: Optional[float]) -> Optional[float]:
    number = to_number(value)
    return default if number is None else number


class AiRunner(BaseRunner):
    """
    Config:
        provider: openai | anthropic | google | custom (default anthropic)
        model, systemPrompt, userPrompt (or legacy prompt)
        temperature (0.7), maxTokens (1000), topP, frequencyPenalty, presencePenalty
        stopSequences, jsonMode, outputPath, storeFullResponse
        maxRetries (default 0), timeout (seconds)
    """

    kind = NodeKind.AI

    async def execute(self, node: Node, context: ExecutionContext, env: StepEnvironment) -> RunnerOutcome:
        warnings: list[str] = []
        config = self.resolve_config(node, context, env, warnings)

        if env.services.ai is None:
            raise StepExecutionError("No AI provider configured")

        user_prompt = config.get("userPrompt") or config.get("prompt")
        if not user_prompt:
            raise StepExecutionError("AI node requires 'userPrompt'")

        timeout = self.timeout_for(config, env)
        provider_config = AiProviderConfig(
            provider=str(config.get("provider") or "anthropic"),
            model=config.get("model") or None,
            temperature=_number(config.get("temperature"), 0.7),
            max_tokens=int(_number(config.get("maxTokens"), 1000)),
            top_p=_number(config.get("topP"), None),
            frequency_penalty=_number(config.get("frequencyPenalty"), None),
            presence_penalty=_number(config.get("presencePenalty"), None),
            stop_sequences=parse_stop_sequences(config.get("stopSequences")),
            json_mode=bool(config.get("jsonMode")),
            timeout=timeout,
        )
        prompt = AiPrompt(user=str(user_prompt), system=config.get("systemPrompt") or None)

        call_outcome = await self.call_external(
            node,
            env,
            lambda: env.services.ai.complete(provider_config, prompt),
            strategy=RetryStrategy.from_node_config(config, env.settings, default_max_retries=0),
            timeout=timeout,
        )
        if not call_outcome.ok:
            return RunnerOutcome.failed(
                describe_error(call_outcome.error),
                error_type=type(call_outcome.error).__name__,
                attempts=call_outcome.attempts,
                warnings=warnings,
            )

        completion = call_outcome.value
        result: Any = completion.text
        if provider_config.json_mode:
            if completion.json is not None:
                result = completion.json
            else:
                try:
                    result = extract_json(completion.text)
                except ValueError as e:
                    return RunnerOutcome.failed(
                        f"AI response is not valid JSON: {e}",
                        attempts=call_outcome.attempts,
                        warnings=warnings,
                    )

        path = config.get("outputPath")
        value = get_path(result, path) if path else result
        if config.get("outputVariable"):
            context.set(str(config["outputVariable"]), value)

        output: dict[str, Any] = {"response": value, "model": completion.model}
        if config.get("storeFullResponse"):
            output["fullResponse"] = result
            output["rawText"] = completion.text
            output["usage"] = completion.usage
        return RunnerOutcome(output=output, attempts=call_outcome.attempts, warnings=warnings)
