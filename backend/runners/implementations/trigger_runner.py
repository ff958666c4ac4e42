"""Trigger runner: entry point of every execution."""

from core.constants import TRIGGER_KEY
from core.exceptions import StepExecutionError
from runners.base_runner import BaseRunner, RunnerOutcome, StepEnvironment
from workflow.context import ExecutionContext
from workflow.graph import Node, NodeKind


class TriggerRunner(BaseRunner):
    """Seeds the trigger payload and reports how the run was started."""

    kind = NodeKind.TRIGGER

    async def execute(self, node: Node, context: ExecutionContext, env: StepEnvironment) -> RunnerOutcome:
        if node.config.get("enabled") is False:
            raise StepExecutionError("Trigger disabled")

        context.set_global(TRIGGER_KEY, context.trigger_payload)
        return RunnerOutcome(
            output={
                "triggerType": context.trigger_type,
                "triggerData": context.trigger_payload,
                "triggeredAt": context.started_at.isoformat(),
            }
        )
