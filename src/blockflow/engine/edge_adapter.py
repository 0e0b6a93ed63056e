"""
Edge adapters: reshape a source node's output before it reaches the target.

Adapter kinds:
    map       {targetField: sourcePath}; a path is a dotted path into the
              source output, or a ``{{...}}`` template evaluated against it
    template  {targetField: "{{...}}"}; every value is a template
    function  a body in the restricted expression language (expressions.py)
              called with ``(output, context)``

Template rules:
    - exactly one placeholder returns the raw value (lists/dicts preserved);
      a missing value gives ""
    - ``{{now}}`` is the current UTC time in ISO format
    - a leading ``output.`` segment refers to the source output itself
      unless the output has its own ``output`` key
    - mixed templates produce a string, coerced to int/float only when the
      whole string is a plain decimal number (NUMBER_PATTERN)
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, ValidationError

from .expressions import ExpressionError, compile_function
from .interpolation import INTERPOLATION_PATTERN, format_value
from .merge import MISSING, get_path
from .schema import EdgeAdapter

if TYPE_CHECKING:
    from .execution_context import ExecutionContext

# "1,234", "007", " 42", "1 2", "inf" and "0x1f" stay strings
NUMBER_PATTERN = re.compile(r"^-?(0|[1-9][0-9]*)(\.[0-9]+)?([eE][+-]?[0-9]+)?$")

ADAPTER_TYPES = ("map", "template", "function")


class AdapterValidation(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


def coerce_number(text: str) -> int | float | str:
    """Convert ``text`` to int/float when it is a plain decimal number."""
    match = NUMBER_PATTERN.match(text)
    if not match:
        return text
    if match.group(2) is None and match.group(3) is None:
        return int(text)
    return float(text)


def resolve_source_path(data: Any, path: str) -> Any:
    """Resolve ``path`` against a source output. Returns MISSING when absent."""
    path = path.strip()
    if not path:
        return data
    parts = path.split(".")
    if parts[0] == "output" and not (isinstance(data, dict) and "output" in data):
        parts = parts[1:]
        if not parts:
            return data
    return get_path(data, parts, default=MISSING)


def evaluate_template(template: str, data: Any) -> Any:
    """Evaluate an adapter template against ``data`` (the source output)."""
    single = INTERPOLATION_PATTERN.fullmatch(template)
    if single:
        path = single.group(1).strip()
        if path == "now":
            return datetime.now(UTC).isoformat()
        value = resolve_source_path(data, path)
        return "" if value is MISSING else value

    def replace(match: re.Match[str]) -> str:
        path = match.group(1).strip()
        if path == "now":
            return datetime.now(UTC).isoformat()
        value = resolve_source_path(data, path)
        return "" if value is MISSING else format_value(value)

    return coerce_number(INTERPOLATION_PATTERN.sub(replace, template))


def context_view(context: ExecutionContext | None) -> dict[str, Any]:
    """Read-only snapshot of a context handed to function adapters."""
    if context is None:
        return {}
    return {
        "variables": dict(context.variables),
        "mode": context.mode.value,
        "workflowId": context.workflow_id,
        "executionId": context.execution_id,
    }


def apply_edge_adapter(
    source_output: Any,
    adapter: EdgeAdapter | dict[str, Any],
    context: ExecutionContext | None = None,
) -> Any:
    """
    Transform ``source_output`` with ``adapter``.

    Raises:
        ValueError: Unknown adapter type or malformed adapter
        ExpressionError: A function adapter was rejected or failed
    """
    if isinstance(adapter, dict):
        try:
            adapter = EdgeAdapter.model_validate(adapter)
        except ValidationError as e:
            raise ValueError(f"Invalid edge adapter: {e}") from e

    if adapter.type == "map":
        if not adapter.mapping:
            return source_output
        result: dict[str, Any] = {}
        for target_field, source_path in adapter.mapping.items():
            if isinstance(source_path, str) and "{{" in source_path:
                result[target_field] = evaluate_template(source_path, source_output)
            else:
                value = resolve_source_path(source_output, str(source_path))
                result[target_field] = None if value is MISSING else value
        return result

    if adapter.type == "template":
        if not adapter.template:
            return source_output
        return {
            field: evaluate_template(template, source_output) if isinstance(template, str) else template
            for field, template in adapter.template.items()
        }

    if adapter.type == "function":
        if not adapter.function:
            return source_output
        function = compile_function(adapter.function)
        try:
            return function(source_output, context_view(context))
        except ExpressionError as e:
            raise ExpressionError(f"Function adapter failed: {e}") from e

    raise ValueError(f"Unknown adapter type: {adapter.type}")


def validate_adapter(adapter: Any) -> AdapterValidation:
    """Check that an adapter carries the fields its ``type`` requires.

    Function bodies are parsed, so syntax errors and rejected constructs in
    the body's shape are reported here rather than at run time.
    """
    errors: list[str] = []
    if not isinstance(adapter, dict):
        if isinstance(adapter, EdgeAdapter):
            adapter = adapter.model_dump(exclude_none=True)
        else:
            return AdapterValidation(valid=False, errors=["Adapter must be an object"])

    adapter_type = adapter.get("type")
    if not adapter_type:
        errors.append("Adapter must have a type")
    elif adapter_type not in ADAPTER_TYPES:
        errors.append(f"Invalid adapter type: {adapter_type}")

    if adapter_type == "map" and not isinstance(adapter.get("mapping"), dict):
        errors.append("Map adapter must have mapping object")

    if adapter_type == "template" and not isinstance(adapter.get("template"), dict):
        errors.append("Template adapter must have template object")

    if adapter_type == "function":
        body = adapter.get("function")
        if not isinstance(body, str) or not body.strip():
            errors.append("Function adapter must have function string")
        else:
            try:
                compile_function(body)
            except ExpressionError as e:
                errors.append(f"Function adapter is invalid: {e}")

    return AdapterValidation(valid=not errors, errors=errors)


__all__ = [
    "NUMBER_PATTERN",
    "AdapterValidation",
    "apply_edge_adapter",
    "coerce_number",
    "evaluate_template",
    "validate_adapter",
]
