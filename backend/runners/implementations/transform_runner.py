"""Transform runner: reshape data between nodes.

Config:
    transformType: map_fields | filter_array | sort_array | aggregate | format | parse
    sourceData: input value or template (JSON strings accepted for arrays)
    fieldMappings: [{sourceField, targetField, transform}] for map_fields
    mapping: {target: template} evaluated per element with ``item`` bound
    filterExpression / condition: per-element predicate for filter_array
    sortField, sortOrder (asc | desc) for sort_array
    aggregateFunction (sum | avg | count | min | max), aggregateField
    formatType (date | number | string | json | csv | uppercase | lowercase), formatPattern
    parseType: json | csv | xml
    templateMode + template: render a template against the context instead
"""

import csv
import io
import json
import re
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from dateutil import parser as date_parser

from core.exceptions import StepExecutionError
from runners.base_runner import BaseRunner, RunnerOutcome, StepEnvironment
from workflow.conditions import to_number
from workflow.context import ExecutionContext
from workflow.graph import Node, NodeKind
from workflow.resolver import get_path

logger = structlog.get_logger(__name__)

ARRAY_TRANSFORMS = ("filter_array", "sort_array", "aggregate")

# Editor date tokens -> strftime, longest first
_DATE_TOKENS = (
    ("YYYY", "%Y"),
    ("YY", "%y"),
    ("MMMM", "%B"),
    ("MMM", "%b"),
    ("MM", "%m"),
    ("DD", "%d"),
    ("HH", "%H"),
    ("hh", "%I"),
    ("mm", "%M"),
    ("ss", "%S"),
    ("A", "%p"),
)


# ─── Value helpers ────────────────────────────────────────────

def _from_epoch(number: float) -> datetime:
    seconds = number / 1000 if number > 1e11 else number
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def parse_date(value: Any) -> datetime:
    """Parse ISO strings, free-form dates or epoch seconds/milliseconds."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _from_epoch(float(value))
    text = str(value).strip()
    if re.fullmatch(r"\d{9,13}", text):
        return _from_epoch(float(text))
    try:
        return date_parser.parse(text)
    except (ValueError, OverflowError) as e:
        raise StepExecutionError(f"Cannot parse date from {value!r}") from e


def to_strftime(pattern: str) -> str:
    if "%" in pattern:
        return pattern
    out = []
    i = 0
    while i < len(pattern):
        for token, directive in _DATE_TOKENS:
            if pattern.startswith(token, i):
                out.append(directive)
                i += len(token)
                break
        else:
            out.append(pattern[i])
            i += 1
    return "".join(out)


def format_number(value: Any, pattern: Optional[str]) -> str:
    number = to_number(value)
    if number is None:
        raise StepExecutionError(f"Cannot format {value!r} as a number")
    if not pattern:
        return str(int(number)) if number.is_integer() else str(number)
    if re.fullmatch(r"[#0,]*(\.[0#]+)?", pattern):
        decimals = len(pattern.split(".", 1)[1]) if "." in pattern else 0
        grouping = "," if "," in pattern else ""
        return format(number, f"{grouping}.{decimals}f")
    try:
        return format(number, pattern)
    except ValueError as e:
        raise StepExecutionError(f"Invalid number format {pattern!r}") from e


def apply_field_transform(value: Any, transform: Optional[str]) -> Any:
    transform = (transform or "none").lower()
    if transform == "none" or value is None:
        return value
    if transform == "uppercase":
        return str(value).upper()
    if transform == "lowercase":
        return str(value).lower()
    if transform == "trim":
        return str(value).strip()
    if transform == "number":
        number = to_number(value)
        if number is None:
            return None
        return int(number) if number.is_integer() else number
    if transform == "date":
        return parse_date(value).isoformat()
    logger.warning("Unsupported field transform, value left unchanged", transform=transform)
    return value


def set_path(target: dict, path: str, value: Any) -> None:
    parts = [p for p in str(path).split(".") if p]
    if not parts:
        return
    current = target
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


def _maybe_json_array(value: Any) -> Any:
    if isinstance(value, str) and value.strip().startswith("["):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


def _xml_to_dict(element: ET.Element) -> Any:
    children = list(element)
    if not children and not element.attrib:
        return (element.text or "").strip()
    result: dict[str, Any] = {f"@{k}": v for k, v in element.attrib.items()}
    for child in children:
        value = _xml_to_dict(child)
        if child.tag in result:
            if not isinstance(result[child.tag], list):
                result[child.tag] = [result[child.tag]]
            result[child.tag].append(value)
        else:
            result[child.tag] = value
    text = (element.text or "").strip()
    if text:
        result["#text"] = text
    return result


# ─── Runner ───────────────────────────────────────────────────

class TransformRunner(BaseRunner):
    """Applies one transform to the resolved source data."""

    kind = NodeKind.TRANSFORM

    async def execute(self, node: Node, context: ExecutionContext, env: StepEnvironment) -> RunnerOutcome:
        config = node.config
        warnings: list[str] = []

        def resolve(value: Any) -> Any:
            resolution = env.resolver.resolve(value, context)
            warnings.extend(resolution.warnings)
            return resolution.value

        if config.get("templateMode") and config.get("template") is not None:
            rendered = env.resolver.resolve_config(config["template"], context)
            warnings.extend(rendered.warnings)
            return RunnerOutcome(output=rendered.value, warnings=warnings)

        transform_type = str(config.get("transformType") or "").lower()
        source = resolve(config.get("sourceData", config.get("input")))
        if transform_type in ARRAY_TRANSFORMS or transform_type == "map_fields":
            source = _maybe_json_array(source)

        if transform_type in ARRAY_TRANSFORMS and not isinstance(source, list):
            raise StepExecutionError(
                f"Transform '{transform_type}' expects an array, got {type(source).__name__}"
            )

        if transform_type == "map_fields":
            result = self._map_fields(source, config, context, env, warnings)
        elif transform_type == "filter_array":
            result = self._filter_array(source, config, context, env, warnings)
        elif transform_type == "sort_array":
            result = self._sort_array(source, resolve(config.get("sortField")), resolve(config.get("sortOrder")))
        elif transform_type == "aggregate":
            result = self._aggregate(
                source, resolve(config.get("aggregateFunction")), resolve(config.get("aggregateField"))
            )
        elif transform_type == "format":
            result = self._format(source, resolve(config.get("formatType")), resolve(config.get("formatPattern")))
        elif transform_type == "parse":
            result = self._parse(source, resolve(config.get("parseType")))
        else:
            raise StepExecutionError(f"Unknown transform type: {config.get('transformType')!r}")

        if config.get("outputVariable"):
            context.set(str(config["outputVariable"]), result)
        return RunnerOutcome(output=result, warnings=warnings)

    def _map_fields(self, source, config, context, env, warnings) -> Any:
        field_mappings = config.get("fieldMappings") or []
        template_mapping = config.get("mapping")

        def map_one(element: Any, index: int) -> Any:
            if template_mapping:
                scoped = context.fork({"item": element, "index": index})
                rendered = env.resolver.resolve_config(template_mapping, scoped)
                warnings.extend(rendered.warnings)
                return rendered.value
            mapped: dict[str, Any] = {}
            for mapping in field_mappings:
                source_field = mapping.get("sourceField")
                target_field = mapping.get("targetField") or source_field
                if not target_field:
                    continue
                value = get_path(element, source_field)
                set_path(mapped, target_field, apply_field_transform(value, mapping.get("transform")))
            return mapped

        if isinstance(source, list):
            return [map_one(element, i) for i, element in enumerate(source)]
        if isinstance(source, dict):
            return map_one(source, 0)
        raise StepExecutionError("Transform 'map_fields' expects an object or an array")

    def _filter_array(self, source: list, config, context, env, warnings) -> list:
        expression = config.get("filterExpression", config.get("condition"))
        if expression in (None, ""):
            return list(source)
        return [
            element
            for i, element in enumerate(source)
            if env.evaluator.evaluate_expression(
                expression, context.restricted({"item": element, "index": i}), warnings=warnings
            )
        ]

    def _sort_array(self, source: list, sort_field: Optional[str], sort_order: Optional[str]) -> list:
        present: list[tuple[Any, Any]] = []
        missing: list[Any] = []
        for element in source:
            key = get_path(element, sort_field) if sort_field else element
            if key is None:
                missing.append(element)
            else:
                present.append((key, element))

        def sort_key(pair):
            number = to_number(pair[0]) if not isinstance(pair[0], str) else None
            if number is not None:
                return (0, number, "")
            return (1, 0.0, str(pair[0]))

        descending = str(sort_order or "asc").lower() == "desc"
        ordered = sorted(present, key=sort_key, reverse=descending)
        return [element for _, element in ordered] + missing

    def _aggregate(self, source: list, function: Optional[str], field: Optional[str]) -> dict:
        function = str(function or "count").lower()
        values = [get_path(element, field) if field else element for element in source]

        if function == "count":
            return {"count": len([v for v in values if v is not None]) if field else len(source)}

        numbers = []
        for value in values:
            if isinstance(value, bool):
                continue
            number = to_number(value)
            if number is not None:
                numbers.append(number)

        if function == "sum":
            result: Optional[float] = sum(numbers)
        elif function == "avg":
            result = sum(numbers) / len(numbers) if numbers else None
        elif function == "min":
            result = min(numbers) if numbers else None
        elif function == "max":
            result = max(numbers) if numbers else None
        else:
            raise StepExecutionError(f"Unknown aggregate function: {function!r}")

        if isinstance(result, float) and result.is_integer():
            result = int(result)
        return {function: result}

    def _format(self, source: Any, format_type: Optional[str], pattern: Optional[str]) -> Any:
        format_type = str(format_type or "string").lower()

        if format_type == "json":
            return json.dumps(source, indent=2, default=str)
        if format_type == "csv":
            rows = source if isinstance(source, list) else [source]
            if not rows or not all(isinstance(row, dict) for row in rows):
                raise StepExecutionError("CSV format expects a list of objects")
            buffer = io.StringIO()
            fieldnames = list(dict.fromkeys(key for row in rows for key in row))
            writer = csv.DictWriter(buffer, fieldnames=fieldnames, lineterminator="\n")
            writer.writeheader()
            writer.writerows(rows)
            return buffer.getvalue()

        def format_one(value: Any) -> Any:
            if format_type == "date":
                return parse_date(value).strftime(to_strftime(pattern or "YYYY-MM-DD"))
            if format_type == "number":
                return format_number(value, pattern)
            if format_type == "uppercase":
                return str(value).upper()
            if format_type == "lowercase":
                return str(value).lower()
            if format_type == "string":
                text = "" if value is None else str(value)
                return pattern.replace("{value}", text) if pattern else text
            raise StepExecutionError(f"Unknown format type: {format_type!r}")

        if isinstance(source, list):
            return [format_one(value) for value in source]
        return format_one(source)

    def _parse(self, source: Any, parse_type: Optional[str]) -> Any:
        parse_type = str(parse_type or "json").lower()
        if parse_type == "json":
            if not isinstance(source, str):
                return source
            try:
                return json.loads(source)
            except json.JSONDecodeError as e:
                raise StepExecutionError(f"Invalid JSON: {e.msg}") from e
        if parse_type == "csv":
            reader = csv.DictReader(io.StringIO(str(source or "")))
            return [dict(row) for row in reader]
        if parse_type == "xml":
            try:
                root = ET.fromstring(str(source or ""))
            except ET.ParseError as e:
                raise StepExecutionError(f"Invalid XML: {e}") from e
            return {root.tag: _xml_to_dict(root)}
        raise StepExecutionError(f"Unknown parse type: {parse_type!r}")
