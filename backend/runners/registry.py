"""
Runner Registry: maps every NodeKind to the runner that executes it.
"""

from typing import Dict, Optional, Type

from core.exceptions import StepExecutionError
from runners.base_runner import BaseRunner
from runners.implementations.action_runner import ActionRunner
from runners.implementations.ai_runner import AiRunner
from runners.implementations.api_runner import ApiRunner
from runners.implementations.condition_runner import ConditionRunner
from runners.implementations.loop_runner import LoopRunner
from runners.implementations.switch_runner import SwitchRunner
from runners.implementations.tool_runner import ToolRunner
from runners.implementations.transform_runner import TransformRunner
from runners.implementations.trigger_runner import TriggerRunner
from workflow.graph import NodeKind

BUILTIN_RUNNERS: tuple[Type[BaseRunner], ...] = (
    TriggerRunner,
    ActionRunner,
    ConditionRunner,
    SwitchRunner,
    TransformRunner,
    ApiRunner,
    AiRunner,
    LoopRunner,
    ToolRunner,
)


class RunnerRegistry:
    """Central registry of runner instances keyed by node kind."""

    def __init__(self):
        self._runners: Dict[NodeKind, BaseRunner] = {}
        for runner_class in BUILTIN_RUNNERS:
            self.register(runner_class())

    def register(self, runner: BaseRunner) -> None:
        """Register (or replace) the runner for ``runner.kind``."""
        self._runners[NodeKind(runner.kind)] = runner

    def get(self, kind: NodeKind) -> Optional[BaseRunner]:
        return self._runners.get(NodeKind(kind))

    def require(self, kind: NodeKind) -> BaseRunner:
        runner = self.get(kind)
        if runner is None:
            raise StepExecutionError(f"No runner for node kind: {kind}")
        return runner

    @property
    def available_kinds(self) -> list[NodeKind]:
        return list(self._runners.keys())


# Singleton
_registry: Optional[RunnerRegistry] = None


def get_runner_registry() -> RunnerRegistry:
    """Get or create the singleton runner registry."""
    global _registry
    if _registry is None:
        _registry = RunnerRegistry()
    return _registry
