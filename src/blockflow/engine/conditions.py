"""
Declarative condition trees used by the branch and filter blocks and by edge
conditions.

A condition is a dict:

    {"field": "score", "operator": "greater_than", "value": 80}
    {"operator": "and", "conditions": [<condition>, ...]}

``field`` is a dotted path into the data (omitted -> the data itself).

Operators:
    exists, not_exists, equals, not_equals, contains, not_contains,
    greater_than, less_than, regex, in, not_in, and, or
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import Any

from .merge import MISSING, get_path

logger = logging.getLogger(__name__)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _strict_equal(left: Any, right: Any) -> bool:
    # True == 1 in Python; a condition on a flag should not match a count
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    return left == right


def _contains(container: Any, value: Any) -> bool:
    if isinstance(container, str):
        return isinstance(value, str) and value in container
    if isinstance(container, list):
        return any(_strict_equal(item, value) for item in container)
    return False


def _regex(field_value: Any, pattern: Any) -> bool:
    if not isinstance(field_value, str) or not isinstance(pattern, str):
        return False
    try:
        return re.search(pattern, field_value) is not None
    except re.error:
        logger.warning(f"Invalid regex pattern in condition: {pattern!r}")
        return False


class ConditionEvaluator:
    """
    Evaluates condition trees against JSON-like data.

    Example:
        evaluator = ConditionEvaluator()
        evaluator.evaluate({"field": "user.age", "operator": "greater_than", "value": 18},
                           {"user": {"age": 30}})
        # Returns: True
    """

    OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
        "exists": lambda field_value, _: field_value is not None,
        "not_exists": lambda field_value, _: field_value is None,
        "equals": _strict_equal,
        "not_equals": lambda field_value, value: not _strict_equal(field_value, value),
        "contains": _contains,
        "not_contains": lambda field_value, value: (
            not _contains(field_value, value)
            if isinstance(field_value, (str, list))
            else True
        ),
        "greater_than": lambda field_value, value: (
            _is_number(field_value) and _is_number(value) and field_value > value
        ),
        "less_than": lambda field_value, value: (
            _is_number(field_value) and _is_number(value) and field_value < value
        ),
        "regex": _regex,
        "in": lambda field_value, value: isinstance(value, list) and _contains(value, field_value),
        "not_in": lambda field_value, value: (
            isinstance(value, list) and not _contains(value, field_value)
        ),
    }

    def evaluate(self, condition: dict[str, Any], data: Any) -> bool:
        """Evaluate one condition (or group) against ``data``."""
        if not isinstance(condition, dict):
            logger.warning(f"Ignoring malformed condition: {condition!r}")
            return False

        operator = condition.get("operator")
        nested = condition.get("conditions")
        if isinstance(nested, list) and nested:
            if operator == "and":
                return all(self.evaluate(child, data) for child in nested)
            if operator == "or":
                return any(self.evaluate(child, data) for child in nested)

        field = condition.get("field")
        field_value = data if not field else get_path(data, str(field), default=MISSING)
        if field_value is MISSING:
            field_value = None

        check = self.OPERATORS.get(operator) if isinstance(operator, str) else None
        if check is None:
            logger.warning(f"Unknown condition operator: {operator}")
            return False
        return check(field_value, condition.get("value"))

    def evaluate_all(self, conditions: list[dict[str, Any]] | None, data: Any) -> bool:
        """AND over a list of conditions. An empty list passes."""
        if not conditions:
            return True
        return all(self.evaluate(condition, data) for condition in conditions)


__all__ = ["ConditionEvaluator"]
