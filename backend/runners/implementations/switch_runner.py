"""Switch runner: routes to the first case whose value matches the selector."""

from core.constants import HANDLE_DEFAULT
from runners.base_runner import BaseRunner, RunnerOutcome, StepEnvironment
from workflow.context import ExecutionContext
from workflow.graph import Node, NodeKind
from workflow.resolver import stringify


def _case_value(case) -> object:
    if isinstance(case, dict):
        return case.get("value", case.get("label"))
    return case


class SwitchRunner(BaseRunner):
    """
    Config:
        selector: value or template, resolved once
        cases: list of values or {value, label} objects, matched in order
    """

    kind = NodeKind.SWITCH

    async def execute(self, node: Node, context: ExecutionContext, env: StepEnvironment) -> RunnerOutcome:
        warnings: list[str] = []
        resolution = env.resolver.resolve(node.config.get("selector", node.config.get("value")), context)
        warnings.extend(resolution.warnings)
        selector = resolution.value
        selector_text = stringify(selector)

        for index, case in enumerate(node.config.get("cases") or []):
            case_text = stringify(_case_value(case))
            if case_text == selector_text:
                return RunnerOutcome(
                    output={"selector": selector, "matched": case_text, "caseIndex": index},
                    handle=case_text,
                    warnings=warnings,
                )

        output = {"selector": selector, "matched": None, "caseIndex": None}
        if env.graph.has_edge_with_handle(node.id, HANDLE_DEFAULT) or env.graph.has_edge_with_handle(
            node.id, None
        ):
            return RunnerOutcome(output=output, handle=HANDLE_DEFAULT, warnings=warnings)

        return RunnerOutcome.skipped(output=output, warnings=warnings)
