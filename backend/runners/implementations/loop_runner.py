"""Loop runner: repeats the sub-graph on the loop node's ``body`` edge.

Config:
    loopType: for_each | count | while | until
    sourceData / sourceVariable: collection for for_each (JSON string accepted)
    itemVariable (default "item"), indexVariable (default "index")
    startValue (0), endValue (exclusive), stepValue (1), iteratorVariable for count
    whileCondition / untilCondition: expression checked before (while) or after (until) each pass
    breakCondition: expression checked after each iteration
    maxIterations (default 100), continueOnError, collectOutputs (default true)
    parallelExecution + batchSize, delayMs, timeout (seconds)
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from core.constants import HANDLE_AFTER
from core.exceptions import ExecutionCancelled, SafetyLimitError, StepExecutionError
from runners.base_runner import BaseRunner, RunnerOutcome, StepEnvironment
from workflow.conditions import to_number
from workflow.context import ExecutionContext
from workflow.graph import Node, NodeKind

logger = structlog.get_logger(__name__)

LOOP_TYPES = ("for_each", "count", "while", "until")


@dataclass
class _IterationResult:
    index: int
    output: Any = None
    error: Optional[dict] = None
    fatal: Optional[str] = None
    fatal_type: Optional[str] = None
    stop: bool = False


@dataclass
class _LoopState:
    results: list = field(default_factory=list)
    errors: list = field(default_factory=list)
    iterations: int = 0


def _int(value: Any, default: int) -> int:
    number = to_number(value)
    return default if number is None else int(number)


def _timed_out(started: float, timeout: Optional[float]) -> bool:
    return bool(timeout) and time.monotonic() - started > timeout


def _timeout_failure(timeout: float) -> tuple[str, str]:
    return f"Loop exceeded its timeout of {timeout:g}s", SafetyLimitError.__name__


class LoopRunner(BaseRunner):
    """Runs the loop body once per item, count step or condition pass."""

    kind = NodeKind.LOOP

    async def execute(self, node: Node, context: ExecutionContext, env: StepEnvironment) -> RunnerOutcome:
        config = node.config
        warnings: list[str] = []

        def resolve(value: Any) -> Any:
            resolution = env.resolver.resolve(value, context)
            warnings.extend(resolution.warnings)
            return resolution.value

        loop_type = str(resolve(config.get("loopType")) or "for_each").lower()
        if loop_type not in LOOP_TYPES:
            raise StepExecutionError(f"Unknown loop type: {config.get('loopType')!r}")

        hard_max = env.settings.LOOP_HARD_MAX_ITERATIONS
        max_iterations = _int(resolve(config.get("maxIterations")), env.settings.LOOP_DEFAULT_MAX_ITERATIONS)
        max_iterations = max(1, min(max_iterations, hard_max))

        items: Optional[list] = None
        if loop_type == "for_each":
            items = self._collection(config, resolve)
        elif loop_type == "count":
            items = self._count_range(config, resolve)

        if items is not None and len(items) > max_iterations:
            raise SafetyLimitError(
                f"Loop would run {len(items)} iterations, exceeding maxIterations={max_iterations}"
            )

        item_var = str(config.get("itemVariable") or "item")
        index_var = str(config.get("indexVariable") or "index")
        iterator_var = config.get("iteratorVariable")

        def bindings(index: int) -> dict[str, Any]:
            item = items[index] if items is not None else index
            scope = {
                item_var: item,
                index_var: index,
                "loop": {"index": index, "item": item, "iteration": index + 1},
            }
            if iterator_var:
                scope[str(iterator_var)] = item
            return scope

        parallel = bool(config.get("parallelExecution")) and items is not None
        state = _LoopState()
        started = time.monotonic()
        timeout = to_number(config.get("timeout"))

        if parallel:
            fatal = await self._run_parallel(
                node, context, env, config, items, bindings, state, warnings, started, timeout,
            )
        else:
            fatal = await self._run_sequential(
                node, context, env, config, loop_type, items, max_iterations,
                bindings, state, warnings, started, timeout,
            )
        if fatal is not None:
            message, error_type = fatal
            return RunnerOutcome.failed(
                message,
                error_type=error_type,
                output=self._output(loop_type, config, state),
                warnings=warnings,
            )

        return RunnerOutcome(
            output=self._output(loop_type, config, state),
            handle=HANDLE_AFTER,
            warnings=warnings,
        )

    # ─── Iteration planning ───────────────────────────────────

    def _collection(self, config: dict, resolve) -> list:
        source = config.get("sourceData")
        if source in (None, ""):
            variable = config.get("sourceVariable")
            if variable and "{{" not in str(variable):
                variable = "{{" + str(variable) + "}}"
            source = variable
        value = resolve(source)
        if isinstance(value, str):
            text = value.strip()
            if text == "":
                return []
            try:
                value = json.loads(text)
            except json.JSONDecodeError as e:
                raise StepExecutionError("Loop source is a string that is not a JSON array") from e
        if value is None:
            return []
        if isinstance(value, dict):
            return [value]
        if not isinstance(value, (list, tuple)):
            raise StepExecutionError(f"Loop source must be an array, got {type(value).__name__}")
        return list(value)

    def _count_range(self, config: dict, resolve) -> list:
        if config.get("endValue") in (None, "") and config.get("count") not in (None, ""):
            return list(range(_int(resolve(config.get("count")), 0)))
        start = _int(resolve(config.get("startValue")), 0)
        end = _int(resolve(config.get("endValue")), 0)
        step = _int(resolve(config.get("stepValue")), 1)
        if step == 0:
            raise StepExecutionError("Loop stepValue must not be zero")
        return list(range(start, end, step))

    # ─── Execution modes ──────────────────────────────────────

    async def _run_sequential(
        self, node, context, env, config, loop_type, items, max_iterations,
        bindings, state, warnings, started, timeout,
    ) -> Optional[tuple[str, str]]:
        delay = max(0.0, (to_number(config.get("delayMs")) or 0) / 1000)
        index = 0
        while True:
            if items is not None and index >= len(items):
                break
            self._interrupt(env, context)
            if _timed_out(started, timeout):
                return _timeout_failure(timeout)

            if loop_type == "while":
                with context.scope(bindings(index)):
                    keep_going = env.evaluator.evaluate_expression(
                        config.get("whileCondition"), context, warnings=warnings
                    )
                if not keep_going:
                    break

            if index >= max_iterations:
                return (
                    f"Loop exceeded maxIterations={max_iterations}",
                    SafetyLimitError.__name__,
                )

            if index > 0 and delay:
                await asyncio.sleep(delay)

            with context.scope(bindings(index), iteration=index):
                result = await self._iterate(node, context, env, config, loop_type, index, items, warnings)

            if result.fatal:
                return result.fatal, result.fatal_type
            self._collect(state, result)
            if result.stop:
                break
            index += 1
        return None

    async def _run_parallel(
        self, node, context, env, config, items, bindings, state, warnings, started, timeout,
    ) -> Optional[tuple[str, str]]:
        batch_size = max(1, _int(config.get("batchSize"), 1))
        delay = max(0.0, (to_number(config.get("delayMs")) or 0) / 1000)

        for batch_start in range(0, len(items), batch_size):
            self._interrupt(env, context)
            if batch_start and delay:
                await asyncio.sleep(delay)
            if _timed_out(started, timeout):
                return _timeout_failure(timeout)

            indexes = range(batch_start, min(batch_start + batch_size, len(items)))
            outcomes = await asyncio.gather(
                *[
                    self._iterate(
                        node,
                        context.fork(bindings(i), iteration=i),
                        env,
                        config,
                        "for_each",
                        i,
                        items,
                        warnings,
                    )
                    for i in indexes
                ],
                return_exceptions=True,
            )

            stop = False
            for outcome in outcomes:
                if isinstance(outcome, ExecutionCancelled):
                    raise outcome
                if isinstance(outcome, BaseException):
                    raise outcome
                if outcome.fatal:
                    return outcome.fatal, outcome.fatal_type
                self._collect(state, outcome)
                if outcome.stop:
                    stop = True
                    break
            if stop:
                break
        return None

    async def _iterate(
        self, node, context, env, config, loop_type, index, items, warnings,
    ) -> _IterationResult:
        body = await env.run_body(node, context)
        result = _IterationResult(index=index)

        if body.failure is not None:
            failure = body.failure
            reason = (
                f"Iteration {index} failed at node '{failure.node_id}' "
                f"({failure.kind}): {failure.error_message}"
            )
            if failure.error_type == SafetyLimitError.__name__ or not config.get("continueOnError"):
                result.fatal = reason
                result.fatal_type = failure.error_type or StepExecutionError.__name__
                return result
            logger.warning("Loop iteration failed, continuing", node_id=node.id, index=index)
            result.error = {
                "index": index,
                "nodeId": failure.node_id,
                "error": failure.error_message,
            }
        elif body.executed:
            result.output = body.last_output
        else:
            result.output = items[index] if items is not None else index

        if loop_type == "until":
            condition = config.get("untilCondition", config.get("whileCondition"))
            if env.evaluator.evaluate_expression(condition, context, warnings=warnings):
                result.stop = True
        if config.get("breakCondition") not in (None, ""):
            if env.evaluator.evaluate_expression(config["breakCondition"], context, warnings=warnings):
                result.stop = True
        return result

    # ─── Helpers ──────────────────────────────────────────────

    @staticmethod
    def _interrupt(env: StepEnvironment, context: ExecutionContext) -> None:
        if env.check_interrupt is not None:
            env.check_interrupt(context)

    @staticmethod
    def _collect(state: _LoopState, result: _IterationResult) -> None:
        state.iterations += 1
        state.results.append(result.output)
        if result.error:
            state.errors.append(result.error)

    @staticmethod
    def _output(loop_type: str, config: dict, state: _LoopState) -> dict:
        output: dict[str, Any] = {
            "loopType": loop_type,
            "iterations": state.iterations,
            "errors": state.errors,
        }
        if config.get("collectOutputs", True) is not False:
            output["results"] = state.results
        return output
