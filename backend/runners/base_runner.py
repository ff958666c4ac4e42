"""
Base runner interface for all node kinds.

Every node kind (action, api, loop, ...) has exactly one runner that
inherits from BaseRunner and implements execute(). The engine calls
run(), which adds timing, structured logging and exception capture and
turns the outcome into an immutable StepResult.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

import structlog

from app.config import Settings
from core.constants import StepStatus
from core.exceptions import (
    ExecutionCancelled,
    EngineException,
    RetryableTransportError,
    StepExecutionError,
)
from integrations.base import Services
from workflow.conditions import ConditionEvaluator, is_truthy, to_number
from workflow.context import ExecutionContext
from workflow.graph import Node, NodeKind, WorkflowGraph
from workflow.recorder import StepResult, utcnow
from workflow.resolver import TemplateResolver, get_path
from workflow.retry_strategies import RetryStrategy, execute_with_retry

if TYPE_CHECKING:
    from workflow.engine import BodyRun

logger = structlog.get_logger(__name__)


@dataclass
class RunnerOutcome:
    """What a runner reports back; BaseRunner.run adds timing."""

    output: Any = None
    status: StepStatus = StepStatus.COMPLETED
    handle: Optional[str] = None
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    attempts: int = 1
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def failed(cls, message: str, error_type: str = "StepExecutionError", **kwargs) -> "RunnerOutcome":
        return cls(status=StepStatus.FAILED, error_message=message, error_type=error_type, **kwargs)

    @classmethod
    def skipped(cls, output: Any = None, **kwargs) -> "RunnerOutcome":
        return cls(status=StepStatus.SKIPPED, output=output, **kwargs)


@dataclass
class StepEnvironment:
    """Everything a runner may use besides the node and its context."""

    services: Services
    settings: Settings
    graph: WorkflowGraph
    resolver: TemplateResolver
    evaluator: ConditionEvaluator
    run_body: Optional[Callable[[Node, ExecutionContext], Awaitable["BodyRun"]]] = None
    check_interrupt: Optional[Callable[[ExecutionContext], None]] = None


@dataclass
class CallOutcome:
    """Result of an external call made through call_external."""

    value: Any = None
    attempts: int = 0
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BaseRunner(ABC):
    """
    Abstract base class for node runners.

    Subclasses must implement:
    - kind (class attribute)
    - execute(node, context, env) -> RunnerOutcome
    """

    kind: NodeKind

    @abstractmethod
    async def execute(
        self,
        node: Node,
        context: ExecutionContext,
        env: StepEnvironment,
    ) -> RunnerOutcome:
        """
        Execute the node.

        Args:
            node: Node to run (config still holds raw templates)
            context: Scoped variables visible to this node
            env: Collaborators, settings and engine callbacks

        Returns:
            RunnerOutcome with output, status and selected handle
        """

    async def run(
        self,
        node: Node,
        context: ExecutionContext,
        env: StepEnvironment,
    ) -> StepResult:
        """
        Run the node with timing and error handling.

        This is the main entry point called by the workflow engine.
        Cancellation propagates; every other exception becomes a failed
        StepResult.
        """
        started_at = utcnow()
        start = time.monotonic()
        logger.info("Step starting", node_id=node.id, kind=node.kind.value)

        try:
            outcome = await self.execute(node, context, env)
        except ExecutionCancelled:
            raise
        except Exception as e:
            outcome = RunnerOutcome.failed(describe_error(e), error_type=type(e).__name__)
            if not isinstance(e, (EngineException, ValueError)):
                logger.exception("Step raised unexpectedly", node_id=node.id, kind=node.kind.value)

        duration_ms = int((time.monotonic() - start) * 1000)
        result = StepResult(
            node_id=node.id,
            kind=node.kind.value,
            status=outcome.status,
            output=outcome.output,
            error_message=outcome.error_message,
            error_type=outcome.error_type,
            handle=outcome.handle,
            attempts=outcome.attempts,
            warnings=tuple(dict.fromkeys(outcome.warnings)),
            iteration=context.iteration,
            started_at=started_at,
            completed_at=utcnow(),
            duration_ms=duration_ms,
        )

        log = logger.warning if result.failed else logger.info
        log(
            "Step completed",
            node_id=node.id,
            kind=node.kind.value,
            status=result.status.value,
            handle=result.handle,
            attempts=result.attempts,
            duration_ms=duration_ms,
            error=result.error_message,
        )
        return result

    # ─── Helpers for subclasses ───────────────────────────────

    def resolve_config(
        self,
        node: Node,
        context: ExecutionContext,
        env: StepEnvironment,
        warnings: list[str],
        config: Optional[dict] = None,
    ) -> dict:
        resolution = env.resolver.resolve_config(node.config if config is None else config, context)
        warnings.extend(resolution.warnings)
        return resolution.value

    def timeout_for(self, config: dict, env: StepEnvironment) -> Optional[float]:
        """Per-call timeout in seconds; 0 or negative disables it."""
        raw = config.get("timeout")
        value = to_number(raw) if raw not in (None, "") else None
        if value is None:
            value = env.settings.DEFAULT_STEP_TIMEOUT
        return value if value and value > 0 else None

    async def call_external(
        self,
        node: Node,
        env: StepEnvironment,
        call: Callable[[], Awaitable[Any]],
        *,
        strategy: RetryStrategy,
        timeout: Optional[float],
    ) -> CallOutcome:
        """Invoke ``call`` under the node's timeout and retry policy.

        Never raises except for cancellation; failures come back in
        ``CallOutcome.error`` together with the attempt count.
        """
        outcome = CallOutcome()

        async def _attempt():
            outcome.attempts += 1
            try:
                return await asyncio.wait_for(call(), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise RetryableTransportError(
                    f"Call timed out after {timeout:g}s" if timeout else "Call timed out"
                ) from e

        def _on_retry(attempt: int, error: Exception, delay: float) -> None:
            logger.warning(
                "Retrying step",
                node_id=node.id,
                kind=node.kind.value,
                attempt=attempt,
                delay=delay,
                error=describe_error(error),
            )

        try:
            outcome.value = await execute_with_retry(_attempt, strategy, on_retry=_on_retry)
        except ExecutionCancelled:
            raise
        except Exception as e:
            outcome.error = e
        return outcome


# ─── Output shaping shared by action / api / ai ───────────────

def coerce_output(value: Any, output_format: Optional[str]) -> Any:
    """Convert an extracted value to ``json``, ``text``, ``number`` or ``boolean``."""
    if not output_format:
        return value
    fmt = str(output_format).lower()
    if fmt == "json":
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError as e:
                raise StepExecutionError(f"Output is not valid JSON: {e.msg}") from e
        return value
    if fmt == "text":
        if value is None:
            return ""
        if isinstance(value, (dict, list)):
            return json.dumps(value, default=str)
        return str(value)
    if fmt == "number":
        number = to_number(value)
        if number is None:
            raise StepExecutionError(f"Output {value!r} cannot be converted to a number")
        return int(number) if number.is_integer() else number
    if fmt == "boolean":
        return is_truthy(value)
    return value


def shape_output(raw: Any, config: dict, context: ExecutionContext, path_key: str = "outputPath") -> Any:
    """Apply path extraction, format coercion and named-output storage."""
    path = config.get(path_key)
    extracted = get_path(raw, path) if path else raw
    extracted = coerce_output(extracted, config.get("outputFormat"))

    variable = config.get("outputVariable")
    if variable:
        context.set(str(variable), extracted)

    if config.get("storeFullResponse") and path:
        return {"value": extracted, "fullResponse": raw}
    return extracted


def describe_error(error: BaseException) -> str:
    message = getattr(error, "message", None) or str(error)
    return message or type(error).__name__

