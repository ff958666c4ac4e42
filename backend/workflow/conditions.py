"""Condition evaluation for branching, loop control and filters.

A condition compares a resolved left operand with a resolved right operand:

    {"leftOperand": "{{ trigger.age }}", "operator": "greater_than",
     "rightOperand": "18", "type": "number"}

Groups combine conditions left to right with AND/OR and may be negated.
Nothing here evaluates arbitrary code; expressions are parsed into the
same structured comparisons.
"""

import math
import re
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from workflow.resolver import TEMPLATE_PATTERN, TemplateResolver

logger = structlog.get_logger(__name__)


NUMBER_OPERATORS = {
    "equals": lambda a, b: a == b,
    "not_equals": lambda a, b: a != b,
    "greater_than": lambda a, b: a > b,
    "less_than": lambda a, b: a < b,
    "greater_or_equal": lambda a, b: a >= b,
    "less_or_equal": lambda a, b: a <= b,
}

STRING_OPERATORS = {
    "equals": lambda a, b: a == b,
    "not_equals": lambda a, b: a != b,
    "contains": lambda a, b: b in a,
    "not_contains": lambda a, b: b not in a,
    "starts_with": lambda a, b: a.startswith(b),
    "ends_with": lambda a, b: a.endswith(b),
    "is_empty": lambda a, b: a == "",
    "is_not_empty": lambda a, b: a != "",
}

OPERATOR_ALIASES = {
    "==": "equals",
    "=": "equals",
    "eq": "equals",
    "!=": "not_equals",
    "ne": "not_equals",
    ">": "greater_than",
    "gt": "greater_than",
    "<": "less_than",
    "lt": "less_than",
    ">=": "greater_or_equal",
    "gte": "greater_or_equal",
    "<=": "less_or_equal",
    "lte": "less_or_equal",
    "greater_than_or_equal": "greater_or_equal",
    "less_than_or_equal": "less_or_equal",
    "not_empty": "is_not_empty",
    "empty": "is_empty",
}

_ORDERING_OPERATORS = {"greater_than", "less_than", "greater_or_equal", "less_or_equal"}
_BOOLEAN_OPERATORS = {"is_true", "is_false"}
_EXISTENCE_OPERATORS = {"exists", "not_exists"}

TRUTHY_STRINGS = {"true", "1", "yes", "on"}

COMPARISON_PATTERN = re.compile(r"^(.+?)\s*(==|!=|>=|<=|>|<)\s*(.+)$", re.DOTALL)


@dataclass(frozen=True)
class Condition:
    left_operand: Any
    operator: str
    right_operand: Any = None
    type: str = "string"

    @classmethod
    def from_dict(cls, data: dict) -> "Condition":
        """Accept ``{leftOperand, operator, rightOperand, type}`` or ``{field, operator, value}``."""
        left = data.get("leftOperand", data.get("field"))
        right = data.get("rightOperand", data.get("value"))
        operator = normalise_operator(data.get("operator", "equals"))
        cond_type = data.get("type") or infer_type(operator)
        return cls(left_operand=left, operator=operator, right_operand=right, type=cond_type)


def normalise_operator(operator: Any) -> str:
    op = str(operator or "equals").strip()
    return OPERATOR_ALIASES.get(op, OPERATOR_ALIASES.get(op.lower(), op.lower()))


def infer_type(operator: str) -> str:
    """Type implied by an operator when a condition omits one."""
    if operator in _ORDERING_OPERATORS:
        return "number"
    if operator in _BOOLEAN_OPERATORS:
        return "boolean"
    if operator in _EXISTENCE_OPERATORS:
        return "existence"
    return "string"


# ─── Coercion ─────────────────────────────────────────────────

def to_number(value: Any) -> Optional[float]:
    """Coerce to float; None for non-numeric input or NaN."""
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        if value == "":
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    return number


def is_truthy(value: Any) -> bool:
    if value is True:
        return True
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY_STRINGS
    return False


def has_value(value: Any) -> bool:
    if value is None or value == "":
        return False
    if isinstance(value, (list, dict, tuple)) and len(value) == 0:
        return False
    return True


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


# ─── Evaluator ────────────────────────────────────────────────

class ConditionEvaluator:
    """Evaluates structured conditions against an execution context."""

    def __init__(self, resolver: Optional[TemplateResolver] = None):
        self.resolver = resolver or TemplateResolver()

    def evaluate(
        self,
        conditions: Optional[list],
        logic_operator: str = "AND",
        negate: bool = False,
        context=None,
        *,
        case_sensitive: bool = True,
        trim_whitespace: bool = True,
        warnings: Optional[list] = None,
    ) -> bool:
        """Evaluate a condition group.

        An empty group is True whatever the operator or negation.
        """
        if not conditions:
            return True

        use_or = str(logic_operator or "AND").strip().upper() == "OR"
        result: Optional[bool] = None
        for raw in conditions:
            condition = raw if isinstance(raw, Condition) else Condition.from_dict(raw)
            outcome = self.evaluate_one(
                condition,
                context,
                case_sensitive=case_sensitive,
                trim_whitespace=trim_whitespace,
                warnings=warnings,
            )
            if result is None:
                result = outcome
            elif use_or:
                result = result or outcome
            else:
                result = result and outcome

        return (not result) if negate else bool(result)

    def evaluate_one(
        self,
        condition: Condition,
        context,
        *,
        case_sensitive: bool = True,
        trim_whitespace: bool = True,
        warnings: Optional[list] = None,
    ) -> bool:
        left = self._resolve(condition.left_operand, context, warnings)
        right = self._resolve(condition.right_operand, context, warnings)
        operator = condition.operator
        cond_type = (condition.type or "string").lower()

        if cond_type == "number":
            compare = NUMBER_OPERATORS.get(operator)
            a, b = to_number(left), to_number(right)
            if compare is None or a is None or b is None:
                return False
            return compare(a, b)

        if cond_type == "boolean":
            if operator == "is_true":
                return is_truthy(left)
            if operator == "is_false":
                return not is_truthy(left)
            return False

        if cond_type == "existence":
            if operator == "exists":
                return has_value(left)
            if operator == "not_exists":
                return not has_value(left)
            return False

        compare = STRING_OPERATORS.get(operator)
        if compare is None:
            logger.debug("Unknown condition operator", operator=operator, type=cond_type)
            return False
        a, b = _as_text(left), _as_text(right)
        if trim_whitespace:
            a, b = a.strip(), b.strip()
        if not case_sensitive:
            a, b = a.casefold(), b.casefold()
        return compare(a, b)

    def evaluate_expression(self, expression: Any, context, warnings: Optional[list] = None) -> bool:
        """Evaluate a loop/filter expression.

        Accepts a bool, a condition or group dict, a list of conditions,
        a comparison string such as ``{{ item.age }} >= 18``, or a single
        template whose value is truth-tested.
        """
        if expression is None or expression == "":
            return False
        if isinstance(expression, bool):
            return expression
        if isinstance(expression, dict):
            if "conditions" in expression:
                return self.evaluate(
                    expression.get("conditions"),
                    expression.get("logicOperator", "AND"),
                    bool(expression.get("negate", expression.get("negateGroup", False))),
                    context,
                    case_sensitive=expression.get("caseSensitive", True),
                    trim_whitespace=expression.get("trimWhitespace", True),
                    warnings=warnings,
                )
            return self.evaluate_one(Condition.from_dict(expression), context, warnings=warnings)
        if isinstance(expression, list):
            return self.evaluate(expression, "AND", False, context, warnings=warnings)
        if not isinstance(expression, str):
            return _truth(expression)

        text = expression.strip()
        comparison = _split_comparison(text)
        if comparison:
            left, op, right = comparison
            left_value = self._resolve(_unquote(left), context, warnings)
            right_value = self._resolve(_unquote(right), context, warnings)
            operator = OPERATOR_ALIASES[op]
            if to_number(left_value) is not None and to_number(right_value) is not None:
                return self.evaluate_one(
                    Condition(left_value, operator, right_value, "number"), context
                )
            if operator in _ORDERING_OPERATORS:
                return False
            return self.evaluate_one(Condition(left_value, operator, right_value, "string"), context)

        return _truth(self._resolve(text, context, warnings))

    def _resolve(self, operand: Any, context, warnings: Optional[list]) -> Any:
        if context is None:
            return operand
        resolution = self.resolver.resolve(operand, context)
        if warnings is not None:
            warnings.extend(resolution.warnings)
        return resolution.value


def _split_comparison(text: str) -> Optional[tuple[str, str, str]]:
    # Blank out template bodies so operators inside {{ }} are not split on
    masked = TEMPLATE_PATTERN.sub(lambda m: "#" * len(m.group(0)), text)
    match = COMPARISON_PATTERN.match(masked)
    if not match:
        return None
    left_end, right_start = match.end(1), match.start(3)
    return text[:left_end].strip(), match.group(2), text[right_start:].strip()


def _unquote(text: str) -> str:
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return text[1:-1]
    return text


def _truth(value: Any) -> bool:
    if isinstance(value, str):
        normalised = value.strip().lower()
        return normalised not in ("", "false", "0", "no", "off", "null", "none")
    if isinstance(value, (list, dict, tuple)):
        return len(value) > 0
    return bool(value)


_default_evaluator = ConditionEvaluator()


def evaluate(
    conditions: Optional[list],
    logic_operator: str = "AND",
    negate: bool = False,
    context=None,
    *,
    case_sensitive: bool = True,
    trim_whitespace: bool = True,
) -> bool:
    return _default_evaluator.evaluate(
        conditions,
        logic_operator,
        negate,
        context,
        case_sensitive=case_sensitive,
        trim_whitespace=trim_whitespace,
    )


def evaluate_expression(expression: Any, context) -> bool:
    return _default_evaluator.evaluate_expression(expression, context)
