"""Workflow Execution Engine: walks a validated graph from its trigger.

The engine takes a WorkflowGraph (typed nodes plus handle-labelled
edges), validates its structure, then executes it depth-first:

- The trigger runs first and seeds ``trigger`` in the root scope
- Each node's runner reports a status and an optional handle
- Condition and switch nodes follow only the edges for their handle
- Loop nodes run their ``body`` sub-graph per iteration, then ``after``
- Every other node follows all of its outgoing edges (fan-out)
- A node reached by two paths runs once per scope (diamond)

The first unrecovered failure stops the walk and fails the execution.
Cancellation and the global wall-clock cap are checked between nodes and
at every loop iteration boundary.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

import structlog

from app.config import Settings, get_settings
from core.constants import (
    HANDLE_BODY,
    HANDLE_DEFAULT,
    LOOP_EXIT_HANDLES,
    TRIGGER_KEY,
    ExecutionStatus,
    StepStatus,
    TriggerType,
)
from core.exceptions import ExecutionCancelled, SafetyLimitError
from integrations.base import Services
from runners.base_runner import StepEnvironment
from runners.registry import RunnerRegistry, get_runner_registry
from workflow.conditions import ConditionEvaluator
from workflow.context import ExecutionContext
from workflow.graph import Edge, Node, NodeKind, WorkflowGraph
from workflow.recorder import ExecutionRecord, ExecutionRecorder, StepResult
from workflow.resolver import TemplateResolver

logger = structlog.get_logger(__name__)

CANCELLED_FLAG = "cancelled"
DEADLINE_KEY = "deadline"


@dataclass
class BodyRun:
    """What a walk over a loop body produced."""

    executed: int = 0
    last_output: Any = None
    failure: Optional[StepResult] = None


@dataclass
class _Run:
    """Per-execution state shared by the walk and its loop bodies."""

    graph: WorkflowGraph
    recorder: ExecutionRecorder
    env: StepEnvironment = field(init=False)


class WorkflowEngine:
    """Main workflow execution engine.

    Holds no per-run state besides the running-execution index used for
    cancellation, so one instance serves concurrent executions.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        registry: Optional[RunnerRegistry] = None,
    ):
        self._settings = settings or get_settings()
        self._registry = registry or get_runner_registry()
        self._running_executions: dict[str, ExecutionContext] = {}

    async def execute(
        self,
        graph: Union[WorkflowGraph, dict],
        trigger_payload: Any = None,
        services: Optional[Services] = None,
        *,
        workflow_id: Optional[str] = None,
        trigger_type: str = TriggerType.MANUAL.value,
        execution_id: Optional[str] = None,
        on_step: Optional[Callable] = None,
    ) -> ExecutionRecord:
        """Execute a workflow graph to completion.

        Args:
            graph: Graph model or its JSON form
            trigger_payload: Data from whatever started this run
            services: Collaborators available to the runners
            workflow_id: ID of the workflow being executed
            trigger_type: manual, schedule or webhook
            execution_id: Pre-assigned ID (generated when omitted)
            on_step: Sync or async callable receiving each StepResult

        Returns:
            The final ExecutionRecord (completed, failed or cancelled)

        Raises:
            StructuralError: the graph cannot be executed; nothing is recorded
        """
        if not isinstance(graph, WorkflowGraph):
            graph = WorkflowGraph.parse(graph)
        trigger = graph.validate_structure()
        services = services or Services()
        payload = {} if trigger_payload is None else trigger_payload

        record = ExecutionRecord(
            workflow_id=workflow_id,
            trigger_type=str(trigger_type),
            trigger_payload=payload,
        )
        if execution_id:
            record.id = execution_id
        recorder = ExecutionRecorder(record)
        if on_step is not None:
            recorder.add_listener(on_step)
        if services.persistence is not None:
            recorder.add_listener(lambda _step: self._save(services, recorder))

        context = ExecutionContext(
            execution_id=record.id,
            workflow_id=workflow_id,
            trigger_payload=payload,
            trigger_type=str(trigger_type),
        )
        if self._settings.MAX_EXECUTION_SECONDS > 0:
            context.metadata[DEADLINE_KEY] = time.monotonic() + self._settings.MAX_EXECUTION_SECONDS

        run = _Run(graph=graph, recorder=recorder)
        resolver = TemplateResolver(max_depth=self._settings.MAX_RESOLVE_DEPTH)
        run.env = StepEnvironment(
            services=services,
            settings=self._settings,
            graph=graph,
            resolver=resolver,
            evaluator=ConditionEvaluator(resolver),
            run_body=lambda node, ctx: self._run_body(run, node, ctx),
            check_interrupt=self.check_interrupt,
        )

        self._running_executions[record.id] = context
        with structlog.contextvars.bound_contextvars(
            execution_id=record.id, workflow_id=workflow_id
        ):
            logger.info("Execution starting", trigger_type=record.trigger_type, nodes=len(graph.nodes))
            await self._save(services, recorder)
            try:
                failure = await self._walk(run, [trigger.id], context, BodyRun())
                if failure is not None:
                    recorder.fail(
                        f"Node '{failure.node_id}' ({failure.kind}) failed: {failure.error_message}",
                        node_id=failure.node_id,
                    )
                else:
                    recorder.complete()
            except ExecutionCancelled as e:
                if recorder.status == ExecutionStatus.PENDING:
                    recorder.fail(e.message)
                else:
                    recorder.cancel(e.message)
            except SafetyLimitError as e:
                recorder.fail(e.message, node_id=e.node_id)
            except Exception as e:
                logger.exception("Execution crashed")
                recorder.fail(f"Execution failed: {e}")
            finally:
                self._running_executions.pop(record.id, None)

            logger.info(
                "Execution finished",
                status=record.status.value,
                steps=len(record.steps),
                duration_ms=record.duration_ms,
                error=record.error_message,
            )
            await self._save(services, recorder)
        return record

    # ─── Walk ─────────────────────────────────────────────────

    async def _walk(
        self,
        run: _Run,
        start_ids: list[str],
        context: ExecutionContext,
        body: BodyRun,
    ) -> Optional[StepResult]:
        """Depth-first walk from ``start_ids`` in declaration order.

        Uses an explicit stack rather than recursion. Returns the first
        failed StepResult, which stops the walk, or None.
        """
        visited: set[str] = set()
        stack: list[str] = list(reversed(start_ids))

        while stack:
            node_id = stack.pop()
            if node_id in visited:
                continue
            visited.add(node_id)

            self.check_interrupt(context)
            node = run.graph.get_node(node_id)
            result = await self._visit(run, node, context)

            body.executed += 1
            if result.failed:
                body.failure = result
                return result
            if result.status == StepStatus.COMPLETED:
                body.last_output = result.output

            targets = [edge.target_node_id for edge in self._select_edges(run.graph, node, result)]
            stack.extend(reversed(targets))
        return None

    async def _visit(self, run: _Run, node: Node, context: ExecutionContext) -> StepResult:
        runner = self._registry.require(node.kind)
        result = await runner.run(node, context, run.env)
        if not result.failed and node.id != TRIGGER_KEY:
            context.set_output(node.id, result.output)
        # RUNNING begins once the trigger has produced its payload
        if node.kind == NodeKind.TRIGGER and not result.failed:
            if run.recorder.status == ExecutionStatus.PENDING:
                run.recorder.start()
        await run.recorder.append(result)
        return result

    async def _run_body(self, run: _Run, loop_node: Node, context: ExecutionContext) -> BodyRun:
        """Run the sub-graph on ``loop_node``'s body edges in ``context``."""
        body = BodyRun()
        starts = [
            edge.target_node_id
            for edge in run.graph.outgoing(loop_node.id)
            if edge.handle == HANDLE_BODY
        ]
        if starts:
            await self._walk(run, starts, context, body)
        return body

    @staticmethod
    def _select_edges(graph: WorkflowGraph, node: Node, result: StepResult) -> list[Edge]:
        edges = graph.outgoing(node.id)
        if node.kind in (NodeKind.CONDITION, NodeKind.SWITCH):
            if result.status == StepStatus.SKIPPED or result.handle is None:
                return []
            if result.handle == HANDLE_DEFAULT:
                return [e for e in edges if e.handle in (HANDLE_DEFAULT, None)]
            return [e for e in edges if e.handle == result.handle]
        if node.kind == NodeKind.LOOP:
            return [e for e in edges if e.handle in LOOP_EXIT_HANDLES]
        return edges

    # ─── Interrupts ───────────────────────────────────────────

    @staticmethod
    def check_interrupt(context: ExecutionContext) -> None:
        """Raise if the run was cancelled or has exceeded its time cap."""
        if context.metadata.get(CANCELLED_FLAG):
            raise ExecutionCancelled()
        deadline = context.metadata.get(DEADLINE_KEY)
        if deadline is not None and time.monotonic() > deadline:
            raise SafetyLimitError("Execution exceeded the maximum allowed run time")

    def cancel(self, execution_id: str) -> bool:
        """Request cancellation of a running execution.

        Returns:
            True if the execution was running, False otherwise
        """
        context = self._running_executions.get(execution_id)
        if context is None:
            return False
        context.metadata[CANCELLED_FLAG] = True
        logger.info("Execution marked for cancellation", execution_id=execution_id)
        return True

    def is_running(self, execution_id: str) -> bool:
        return execution_id in self._running_executions

    # ─── Persistence ──────────────────────────────────────────

    @staticmethod
    async def _save(services: Services, recorder: ExecutionRecorder) -> None:
        if services.persistence is None:
            return
        try:
            await services.persistence.save_execution(recorder.record)
        except Exception as e:
            logger.warning("Execution save failed", execution_id=recorder.record.id, error=str(e))


# ─── Singleton ─────────────────────────────────────────────────

_engine: Optional[WorkflowEngine] = None


def get_workflow_engine() -> WorkflowEngine:
    """Get or create the singleton WorkflowEngine."""
    global _engine
    if _engine is None:
        _engine = WorkflowEngine()
    return _engine
