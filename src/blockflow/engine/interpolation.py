"""
Variable interpolation for block configs.

Resolves ``{{namespace.path}}`` expressions against an ExecutionContext and
the current node's input.

Namespaces:
    - {{input.field}}              current node input (also the default for
                                   unknown namespaces: {{field}} == {{input.field}})
    - {{variables.key}}, {{var.key}} context variables
    - {{secrets.KEY}}              context secrets (never written to logs)
    - {{env.NAME}}                 allow-listed environment values only
    - {{nodes.<id>.<path>}}        output of a completed node
    - {{workflow.id}}, {{workflow.executionId}}, {{workflow.mode}},
      {{workflow.startTime}}       read-only run metadata

Formatting rules:
    - A string that is exactly one placeholder returns the raw value
      (dicts, lists and numbers keep their type) through interpolate_object().
    - Inline substitution: None -> "", bool -> "true"/"false",
      dict/list -> JSON, everything else -> str().
    - An unresolvable reference keeps its original ``{{...}}`` token and
      logs a warning, so one bad template cannot corrupt a whole config.
"""

from __future__ import annotations

import json
import logging
import re
from enum import Enum
from typing import TYPE_CHECKING, Any

from .merge import MISSING, get_path

if TYPE_CHECKING:
    from .execution_context import ExecutionContext

logger = logging.getLogger(__name__)

# Pattern to detect {{...}} interpolation
INTERPOLATION_PATTERN = re.compile(r"\{\{([^}]+)\}\}")

# Built-in env allow-list; EngineConfig.env extends it
DEFAULT_ENV_ALLOWLIST = frozenset({"NODE_ENV", "REGION", "ENVIRONMENT"})


class UnresolvedVariableError(LookupError):
    """A ``{{...}}`` expression points at nothing."""

    def __init__(self, expression: str):
        self.expression = expression
        super().__init__(f"Unresolved variable: {expression}")


def has_interpolation(value: Any) -> bool:
    """Check if a value is a string containing ``{{...}}``."""
    return isinstance(value, str) and bool(INTERPOLATION_PATTERN.search(value))


def extract_variables(template: str) -> list[str]:
    """Return the trimmed expressions of a template, left to right.

    Example:
        >>> extract_variables("Hello {{input.name}}, key {{variables.apiKey}}")
        ['input.name', 'variables.apiKey']
    """
    if not isinstance(template, str):
        return []
    return [match.group(1).strip() for match in INTERPOLATION_PATTERN.finditer(template)]


def format_value(value: Any) -> str:
    """Format a resolved value for inline substitution."""
    # bool before int: bool is a subclass of int
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str, ensure_ascii=False)
    return str(value)


class VariableInterpolator:
    """
    Resolves template expressions against one ExecutionContext.

    Example:
        interpolator = VariableInterpolator(context)
        interpolator.interpolate("Hello {{input.user.name}}", {"user": {"name": "John"}})
        # Returns: "Hello John"
    """

    def __init__(self, context: ExecutionContext):
        self.context = context

    def resolve_expression(self, expression: str, input_data: Any = None) -> Any:
        """Resolve one expression (without braces). Missing values return None.

        Never raises: a reference to a node that has not run yet, or a path
        that does not exist, is simply undefined.
        """
        value = self._lookup(expression.strip(), input_data)
        return None if value is MISSING else value

    def interpolate(self, template: str, input_data: Any = None) -> str:
        """Substitute every placeholder in ``template`` and return a string."""
        if not isinstance(template, str):
            return format_value(template)

        def replace(match: re.Match[str]) -> str:
            expression = match.group(1).strip()
            try:
                value = self._lookup(expression, input_data)
                if value is MISSING:
                    raise UnresolvedVariableError(expression)
                return format_value(value)
            except Exception as e:
                # Expression only: the value could be a secret
                logger.warning(f"Failed to interpolate '{{{{{expression}}}}}': {e}")
                return match.group(0)

        return INTERPOLATION_PATTERN.sub(replace, template)

    def interpolate_object(self, value: Any, input_data: Any = None) -> Any:
        """Recursively interpolate strings inside dicts/lists. Other values pass through."""
        if isinstance(value, str):
            return self._interpolate_string(value, input_data)
        if isinstance(value, list):
            return [self.interpolate_object(item, input_data) for item in value]
        if isinstance(value, tuple):
            return tuple(self.interpolate_object(item, input_data) for item in value)
        if isinstance(value, dict):
            return {key: self.interpolate_object(item, input_data) for key, item in value.items()}
        return value

    def _interpolate_string(self, text: str, input_data: Any) -> Any:
        match = INTERPOLATION_PATTERN.fullmatch(text)
        if match:
            expression = match.group(1).strip()
            try:
                value = self._lookup(expression, input_data)
            except Exception as e:
                logger.warning(f"Failed to interpolate '{text}': {e}")
                return text
            if value is MISSING:
                logger.warning(f"Failed to interpolate '{text}': unresolved variable")
                return text
            return value
        return self.interpolate(text, input_data)

    def _lookup(self, expression: str, input_data: Any) -> Any:
        parts = expression.split(".")
        prefix, rest = parts[0], parts[1:]
        context = self.context

        if prefix == "input":
            return _walk(input_data, rest)
        if prefix in ("variables", "var"):
            return _walk(context.variables, rest)
        if prefix == "secrets":
            return _walk(context.secrets, rest)
        if prefix == "env":
            return _walk(context.allowed_env(), rest)
        if prefix == "nodes":
            if not rest:
                return MISSING
            node_id, output_path = rest[0], rest[1:]
            result = context.get_node_result(node_id)
            if result is None:
                return MISSING
            return _walk(result.output, output_path)
        if prefix == "workflow":
            return _walk(context.workflow_metadata(), rest)

        # Unknown namespace: resolve the whole path against the input
        return _walk(input_data, parts)


def _walk(data: Any, path: list[str]) -> Any:
    if not path:
        return data
    return get_path(data, path, default=MISSING)


# ============================================================================
# Functional API
# ============================================================================


def interpolate(template: str, context: ExecutionContext, input_data: Any = None) -> str:
    """Interpolate a template string against ``context`` and ``input_data``."""
    return VariableInterpolator(context).interpolate(template, input_data)


def interpolate_object(value: Any, context: ExecutionContext, input_data: Any = None) -> Any:
    """Recursively interpolate a config value against ``context`` and ``input_data``."""
    return VariableInterpolator(context).interpolate_object(value, input_data)
