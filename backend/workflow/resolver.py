"""Template resolver for ``{{ ... }}`` references in node config.

Supports:
- Trigger data: {{ trigger.order.id }}
- Prior node output: {{ fetch_user.body.name }}
- Loop bindings: {{ item.email }}, {{ index }}, {{ loop.iteration }}
- List indexing: {{ fetch_user.body.tags.0 }} or {{ fetch_user.body.tags[0] }}
- Legacy prefixes: {{ step.fetch_user.status }}, {{ variables.total }}

Resolution never raises for a missing reference. The reference becomes
an empty string and a warning naming it is returned with the value.
"""

import json
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from core.exceptions import SafetyLimitError

TEMPLATE_PATTERN = re.compile(r"\{\{\s*([^{}]*?)\s*\}\}")
_INDEX_PATTERN = re.compile(r"\[\s*(\d+)\s*\]")

LEGACY_PREFIXES = ("step", "steps", "variables", "vars")

_MISSING = object()


@dataclass(frozen=True)
class Resolution:
    """A resolved value plus any unresolved-reference warnings."""

    value: Any
    warnings: tuple[str, ...] = ()


# ─── Path lookup ──────────────────────────────────────────────

def _split_path(expression: str) -> list[str]:
    expression = _INDEX_PATTERN.sub(r".\1", expression.strip())
    return [part.strip() for part in expression.split(".")]


def _step(current: Any, part: str) -> Any:
    if isinstance(current, dict):
        if part in current:
            return current[part]
        # Editor ids mix step-1 and step_1
        alt = part.replace("_", "-") if "_" in part else part.replace("-", "_")
        return current.get(alt, _MISSING)
    if isinstance(current, (list, tuple)):
        try:
            return current[int(part)]
        except (ValueError, IndexError):
            return _MISSING
    return _MISSING


def _walk(value: Any, parts: list[str]) -> Any:
    current = value
    for part in parts:
        if part == "":
            return _MISSING
        current = _step(current, part)
        if current is _MISSING:
            return _MISSING
    return current


def get_path(obj: Any, path: str, default: Any = None) -> Any:
    """Read a dotted path such as ``data.items.0.name`` from plain data.

    An empty path returns ``obj`` itself.
    """
    if path is None or str(path).strip() == "":
        return obj
    value = _walk(obj, _split_path(str(path)))
    return default if value is _MISSING else value


def lookup_reference(expression: str, context) -> tuple[bool, Any]:
    """Resolve one reference expression against the context scopes."""
    parts = _split_path(expression)
    if not parts or not parts[0]:
        return False, None

    found, root = context.lookup(parts[0])
    if found:
        value = _walk(root, parts[1:])
        if value is not _MISSING:
            return True, value

    if parts[0] in LEGACY_PREFIXES and len(parts) > 1:
        return lookup_reference(".".join(parts[1:]), context)

    return False, None


# ─── Rendering ────────────────────────────────────────────────

def stringify(value: Any) -> str:
    """Render a value for substitution inside a larger string."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def contains_template(value: Any) -> bool:
    return isinstance(value, str) and TEMPLATE_PATTERN.search(value) is not None


class TemplateResolver:
    """Resolves templates in strings and nested config structures."""

    def __init__(self, max_depth: int = 32):
        self.max_depth = max_depth

    def resolve(self, template: Any, context) -> Resolution:
        """Resolve a single value.

        A string that is exactly one ``{{ ref }}`` token resolves to the
        referenced value unconverted. Any other string is rendered with
        every token substituted. Non-strings are returned unchanged.
        """
        if not isinstance(template, str) or "{{" not in template:
            return Resolution(template)

        whole = TEMPLATE_PATTERN.fullmatch(template)
        if whole:
            expression = whole.group(1)
            found, value = lookup_reference(expression, context)
            if found:
                return Resolution(value)
            return Resolution("", (_unresolved(expression),))

        warnings: list[str] = []

        def _substitute(match: re.Match) -> str:
            expression = match.group(1)
            found, value = lookup_reference(expression, context)
            if not found:
                warnings.append(_unresolved(expression))
                return ""
            return stringify(value)

        rendered = TEMPLATE_PATTERN.sub(_substitute, template)
        return Resolution(rendered, tuple(warnings))

    def resolve_value(self, template: Any, context) -> Any:
        return self.resolve(template, context).value

    def resolve_config(self, config: Any, context) -> Resolution:
        """Recursively resolve every string nested in dicts and lists.

        Resolved values are not re-scanned, so a value that itself
        contains ``{{`` is kept verbatim.

        Raises:
            SafetyLimitError: if nesting is deeper than ``max_depth``.
        """
        warnings: list[str] = []
        value = self._resolve_nested(config, context, warnings, 0)
        return Resolution(value, tuple(warnings))

    def _resolve_nested(self, value: Any, context, warnings: list[str], depth: int) -> Any:
        if depth > self.max_depth:
            raise SafetyLimitError(
                f"Config nesting exceeds the maximum depth of {self.max_depth}"
            )
        if isinstance(value, str):
            result = self.resolve(value, context)
            warnings.extend(result.warnings)
            return result.value
        if isinstance(value, dict):
            return {
                key: self._resolve_nested(item, context, warnings, depth + 1)
                for key, item in value.items()
            }
        if isinstance(value, (list, tuple)):
            return [self._resolve_nested(item, context, warnings, depth + 1) for item in value]
        return value


def _unresolved(expression: str) -> str:
    return "Unresolved reference {{" + expression + "}}"


_default_resolver = TemplateResolver()


def resolve(template: Any, context) -> Resolution:
    return _default_resolver.resolve(template, context)


def resolve_value(template: Any, context) -> Any:
    return _default_resolver.resolve_value(template, context)


def resolve_config(config: Any, context) -> Resolution:
    return _default_resolver.resolve_config(config, context)
