"""Tests for ConditionEvaluator."""

from typing import Any

import pytest

from blockflow.engine.conditions import ConditionEvaluator

DATA = {
    "score": 85,
    "name": "Ada Lovelace",
    "tags": ["math", "poetry"],
    "active": True,
    "count": 1,
    "user": {"email": "ada@example.com"},
    "nothing": None,
}


@pytest.fixture
def evaluator() -> ConditionEvaluator:
    return ConditionEvaluator()


@pytest.mark.parametrize(
    ("condition", "expected"),
    [
        ({"field": "score", "operator": "greater_than", "value": 80}, True),
        ({"field": "score", "operator": "less_than", "value": 80}, False),
        ({"field": "score", "operator": "greater_than", "value": "80"}, False),
        ({"field": "name", "operator": "equals", "value": "Ada Lovelace"}, True),
        ({"field": "name", "operator": "not_equals", "value": "Grace"}, True),
        ({"field": "name", "operator": "contains", "value": "Love"}, True),
        ({"field": "tags", "operator": "contains", "value": "math"}, True),
        ({"field": "tags", "operator": "not_contains", "value": "chess"}, True),
        ({"field": "user.email", "operator": "regex", "value": r"@example\.com$"}, True),
        ({"field": "user.email", "operator": "regex", "value": "("}, False),
        ({"field": "score", "operator": "in", "value": [85, 90]}, True),
        ({"field": "score", "operator": "not_in", "value": [1, 2]}, True),
        ({"field": "user", "operator": "exists"}, True),
        ({"field": "missing.path", "operator": "exists"}, False),
        ({"field": "nothing", "operator": "not_exists"}, True),
        ({"field": "score", "operator": "teleport", "value": 1}, False),
    ],
)
def test_operators(evaluator: ConditionEvaluator, condition: dict[str, Any], expected: bool) -> None:
    """Test each operator against sample data."""
    assert evaluator.evaluate(condition, DATA) is expected


def test_booleans_do_not_equal_numbers(evaluator: ConditionEvaluator) -> None:
    """Test strict equality between flags and counts."""
    assert evaluator.evaluate({"field": "active", "operator": "equals", "value": 1}, DATA) is False
    assert evaluator.evaluate({"field": "count", "operator": "equals", "value": True}, DATA) is False
    assert evaluator.evaluate({"field": "active", "operator": "equals", "value": True}, DATA)


def test_groups(evaluator: ConditionEvaluator) -> None:
    """Test and/or groups, including nesting."""
    high = {"field": "score", "operator": "greater_than", "value": 80}
    grace = {"field": "name", "operator": "equals", "value": "Grace"}

    assert not evaluator.evaluate({"operator": "and", "conditions": [high, grace]}, DATA)
    assert evaluator.evaluate({"operator": "or", "conditions": [high, grace]}, DATA)
    assert evaluator.evaluate(
        {"operator": "and", "conditions": [high, {"operator": "or", "conditions": [grace, high]}]},
        DATA,
    )


def test_missing_field_targets_whole_value(evaluator: ConditionEvaluator) -> None:
    """Test that a condition without a field applies to the data itself."""
    assert evaluator.evaluate({"operator": "greater_than", "value": 3}, 5)


def test_malformed_condition(evaluator: ConditionEvaluator) -> None:
    """Test that non-dict conditions evaluate false."""
    assert evaluator.evaluate("score > 3", DATA) is False  # type: ignore[arg-type]


def test_evaluate_all(evaluator: ConditionEvaluator) -> None:
    """Test AND over a list, with an empty list passing."""
    assert evaluator.evaluate_all([], DATA)
    assert evaluator.evaluate_all(None, DATA)
    assert not evaluator.evaluate_all(
        [
            {"field": "active", "operator": "equals", "value": True},
            {"field": "score", "operator": "less_than", "value": 10},
        ],
        DATA,
    )
