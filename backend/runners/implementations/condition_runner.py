"""Condition runner: evaluates a condition group and picks the true/false branch."""

from core.constants import HANDLE_FALSE, HANDLE_TRUE
from runners.base_runner import BaseRunner, RunnerOutcome, StepEnvironment
from workflow.conditions import Condition
from workflow.context import ExecutionContext
from workflow.graph import Node, NodeKind


class ConditionRunner(BaseRunner):
    """
    Config:
        conditions: [{leftOperand, operator, rightOperand, type}]
        logicOperator: "AND" | "OR" (default AND)
        negateGroup / negate: invert the combined result
        caseSensitive: string comparisons respect case (default true)
        trimWhitespace: trim string operands (default true)
        storeResult + resultVariable: also bind the boolean by name
    """

    kind = NodeKind.CONDITION

    async def execute(self, node: Node, context: ExecutionContext, env: StepEnvironment) -> RunnerOutcome:
        config = node.config
        warnings: list[str] = []

        raw_conditions = config.get("conditions") or []
        if not raw_conditions and config.get("condition"):
            raw_conditions = [config["condition"]] if isinstance(config["condition"], dict) else []
        conditions = [Condition.from_dict(c) for c in raw_conditions if isinstance(c, dict)]

        negate = bool(config.get("negateGroup", config.get("negate", False)))
        expression = config.get("expression")

        if conditions or not expression:
            result = env.evaluator.evaluate(
                conditions,
                config.get("logicOperator", "AND"),
                negate,
                context,
                case_sensitive=config.get("caseSensitive", True) is not False,
                trim_whitespace=config.get("trimWhitespace", True) is not False,
                warnings=warnings,
            )
        else:
            result = env.evaluator.evaluate_expression(expression, context, warnings=warnings)
            if negate:
                result = not result

        if config.get("storeResult") and config.get("resultVariable"):
            context.set(str(config["resultVariable"]), result)

        return RunnerOutcome(
            output={
                "result": result,
                "conditionMet": result,
                "evaluatedConditions": len(conditions),
            },
            handle=HANDLE_TRUE if result else HANDLE_FALSE,
            warnings=warnings,
        )
