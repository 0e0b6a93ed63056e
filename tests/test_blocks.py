"""Tests for the built-in core and flow blocks, executed directly."""

import logging

import pytest
from pydantic import ValidationError

from blockflow.engine.execution_context import ExecutionContext
from blockflow.engine.executors_core import (
    FieldMappingBlock,
    LoggerOutputBlock,
    PassThroughBlock,
    StaticInputBlock,
)
from blockflow.engine.executors_flow import BranchBlock, FilterBlock, MergeBlock
from blockflow.engine.expressions import ExpressionError

# =============================================================================
# Static input
# =============================================================================


@pytest.mark.asyncio
async def test_static_input_emits_data(test_context: ExecutionContext) -> None:
    """Test that config.data wins over the incoming input."""
    output = await StaticInputBlock().execute({"data": {"a": 1}}, {"ignored": True}, test_context)
    assert output == {"a": 1}


@pytest.mark.asyncio
async def test_static_input_forwards_input(test_context: ExecutionContext) -> None:
    """Test that the run input is forwarded when no data is configured."""
    output = await StaticInputBlock().execute({}, {"message": "hi"}, test_context)
    assert output == {"message": "hi"}


@pytest.mark.asyncio
async def test_static_input_requires_something(test_context: ExecutionContext) -> None:
    """Test the error when there is neither data nor input."""
    with pytest.raises(ValueError, match="requires config.data"):
        await StaticInputBlock().execute({}, None, test_context)


# =============================================================================
# Logger output and pass-through
# =============================================================================


@pytest.mark.asyncio
async def test_logger_output_returns_input(
    test_context: ExecutionContext, caplog: pytest.LogCaptureFixture
) -> None:
    """Test that the logger block passes data through and logs it."""
    with caplog.at_level(logging.INFO):
        output = await LoggerOutputBlock().execute(
            {"format": "json", "prefix": "[Result]"}, {"message": "hi"}, test_context
        )

    assert output == {"message": "hi"}
    assert '[Result] {"message":"hi"}' in test_context.logger.entries[-1]["message"]


@pytest.mark.asyncio
async def test_logger_output_redacts_secrets(test_context: ExecutionContext) -> None:
    """Test that logged payloads never carry secret values."""
    await LoggerOutputBlock().execute({}, {"token": "sk-secret-value"}, test_context)
    assert "sk-secret-value" not in test_context.logger.entries[-1]["message"]


@pytest.mark.asyncio
async def test_logger_output_rejects_unknown_config(test_context: ExecutionContext) -> None:
    """Test config validation through pydantic."""
    with pytest.raises(ValidationError):
        await LoggerOutputBlock().execute({"colour": "red"}, {}, test_context)


@pytest.mark.asyncio
async def test_pass_through(test_context: ExecutionContext) -> None:
    assert await PassThroughBlock().execute({}, [1, 2], test_context) == [1, 2]


# =============================================================================
# Field mapping
# =============================================================================


@pytest.mark.asyncio
async def test_field_mapping_identity(test_context: ExecutionContext) -> None:
    """Test that no operations means no change."""
    data = {"message": "Hello, World!"}
    assert await FieldMappingBlock().execute({"operations": []}, data, test_context) == data


@pytest.mark.asyncio
async def test_field_mapping_map_and_rename(test_context: ExecutionContext) -> None:
    """Test map (new record) followed by rename (fields kept)."""
    config = {
        "operations": [
            {"type": "map", "mapping": {"fullName": "user.name", "city": "user.address.city"}},
            {"type": "rename", "mapping": {"fullName": "name"}},
        ]
    }
    output = await FieldMappingBlock().execute(
        config, {"user": {"name": "Ada"}, "other": 1}, test_context
    )
    assert output == {"name": "Ada", "city": None}


@pytest.mark.asyncio
async def test_field_mapping_shorthand_over_arrays(test_context: ExecutionContext) -> None:
    """Test the mapping shorthand applied item by item."""
    output = await FieldMappingBlock().execute(
        {"mapping": {"id": "uid"}}, [{"uid": 1}, {"uid": 2}], test_context
    )
    assert output == [{"id": 1}, {"id": 2}]


@pytest.mark.asyncio
async def test_field_mapping_calculate(test_context: ExecutionContext) -> None:
    """Test expression and template formulas."""
    config = {
        "operations": [
            {
                "type": "calculate",
                "mapping": {"total": "price * quantity", "label": "{{name}} x{{quantity}}"},
            }
        ]
    }
    output = await FieldMappingBlock().execute(
        config, {"name": "widget", "price": 2.5, "quantity": 4}, test_context
    )
    assert output["total"] == 10.0
    assert output["label"] == "widget x4"


@pytest.mark.asyncio
async def test_field_mapping_calculate_is_sandboxed(test_context: ExecutionContext) -> None:
    """Test that formulas go through the restricted evaluator."""
    config = {"operations": [{"type": "calculate", "mapping": {"x": "__import__('os')"}}]}
    with pytest.raises(ExpressionError):
        await FieldMappingBlock().execute(config, {"a": 1}, test_context)


@pytest.mark.asyncio
async def test_field_mapping_deduplicate(test_context: ExecutionContext) -> None:
    """Test deduplication by key, keeping items without the key."""
    config = {"operations": [{"type": "deduplicate", "key": "email"}]}
    rows = [{"email": "a@x"}, {"email": "b@x"}, {"email": "a@x"}, {"name": "no email"}]
    output = await FieldMappingBlock().execute(config, rows, test_context)
    assert output == [{"email": "a@x"}, {"email": "b@x"}, {"name": "no email"}]


# =============================================================================
# Branch
# =============================================================================


@pytest.mark.asyncio
async def test_branch_tags_route(test_context: ExecutionContext) -> None:
    """Test the branch tag and routed target for both outcomes."""
    config = {
        "condition": {"field": "score", "operator": "greater_than", "value": 50},
        "branches": {"true": "high", "false": "low"},
    }
    block = BranchBlock()

    high = await block.execute(config, {"score": 80}, test_context)
    low = await block.execute(config, {"score": 20}, test_context)

    assert high == {"score": 80, "_branch": "true", "_routedTo": "high"}
    assert low == {"score": 20, "_branch": "false", "_routedTo": "low"}


@pytest.mark.asyncio
async def test_branch_wraps_scalar_input(test_context: ExecutionContext) -> None:
    """Test that non-dict inputs are wrapped under value."""
    config = {"condition": {"operator": "greater_than", "value": 1}}
    output = await BranchBlock().execute(config, 5, test_context)
    assert output == {"value": 5, "_branch": "true", "_routedTo": None}


def test_branch_is_not_cacheable() -> None:
    assert BranchBlock.cacheable is False


# =============================================================================
# Filter
# =============================================================================

ACTIVE = [{"field": "active", "operator": "equals", "value": True}]


@pytest.mark.asyncio
async def test_filter_array(test_context: ExecutionContext) -> None:
    """Test filtering arrays item by item."""
    rows = [{"id": 1, "active": True}, {"id": 2, "active": False}]
    output = await FilterBlock().execute({"conditions": ACTIVE}, rows, test_context)
    assert output == [{"id": 1, "active": True}]


@pytest.mark.asyncio
async def test_filter_single_object(test_context: ExecutionContext) -> None:
    """Test skip and error behaviour for a single failing object."""
    block = FilterBlock()

    assert await block.execute({"conditions": ACTIVE}, {"active": False}, test_context) is None
    assert await block.execute({"conditions": ACTIVE}, {"active": True}, test_context) == {
        "active": True
    }
    with pytest.raises(ValueError, match="failed filter conditions"):
        await block.execute(
            {"conditions": ACTIVE, "onFail": "error"}, {"active": False}, test_context
        )


@pytest.mark.asyncio
async def test_filter_array_error_mode(test_context: ExecutionContext) -> None:
    """Test that onFail: error reports the first failing index."""
    with pytest.raises(ValueError, match="index 1"):
        await FilterBlock().execute(
            {"conditions": ACTIVE, "onFail": "error"},
            [{"active": True}, {"active": False}],
            test_context,
        )


# =============================================================================
# Merge
# =============================================================================


@pytest.mark.asyncio
async def test_merge_forwards_input(test_context: ExecutionContext) -> None:
    data = {"a": 1}
    assert await MergeBlock().execute({}, data, test_context) == data


@pytest.mark.asyncio
async def test_merge_defaults(test_context: ExecutionContext) -> None:
    """Test defaults with deep and shallow strategies."""
    defaults = {"meta": {"source": "default", "v": 1}, "status": "new"}
    data = {"meta": {"source": "crm"}}
    block = MergeBlock()

    deep = await block.execute({"defaults": defaults}, data, test_context)
    shallow = await block.execute({"defaults": defaults, "strategy": "shallow"}, data, test_context)

    assert deep == {"meta": {"source": "crm", "v": 1}, "status": "new"}
    assert shallow == {"meta": {"source": "crm"}, "status": "new"}
    assert await block.execute({"defaults": defaults}, None, test_context) == defaults
