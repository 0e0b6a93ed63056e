"""Flow-control blocks - branch, filter and merge.

These blocks never call out of process, so they all run in demo/test mode.
Routing itself is done by the orchestrator: a branch node tags its output
with ``_branch`` and only edges whose ``sourcePort`` matches the tag are
followed.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, ClassVar, Literal

from pydantic import BaseModel, Field

from .conditions import ConditionEvaluator
from .executor_base import BlockExecutor
from .merge import deep_merge

if TYPE_CHECKING:
    from .execution_context import ExecutionContext

# ============================================================================
# Branch
# ============================================================================


class BranchTargets(BaseModel):
    model_config = {"extra": "forbid", "populate_by_name": True}

    true: str | None = Field(default=None, description="Node taken when the condition holds")
    false: str | None = Field(default=None, description="Node taken otherwise")


class BranchConfig(BaseModel):
    model_config = {"extra": "forbid"}

    condition: dict[str, Any] = Field(description="Condition tree evaluated on the input")
    branches: BranchTargets = Field(default_factory=BranchTargets)


class BranchBlock(BlockExecutor):
    """
    Evaluates a condition and tags the input with the branch taken.

    Output:
        ``{**input, "_branch": "true" | "false", "_routedTo": <node id or None>}``

    Downstream edges with ``sourcePort: "true"`` or ``sourcePort: "false"``
    are followed according to ``_branch``. A non-dict input is wrapped as
    ``{"value": input}`` so the tags have somewhere to live.
    """

    type_name: ClassVar[str] = "branch"
    name: ClassVar[str] = "Branch"
    description: ClassVar[str] = "Route data to one of two branches"
    category: ClassVar[str] = "flow"
    supports_mock: ClassVar[bool] = True
    returns_envelope: ClassVar[bool] = False
    cacheable: ClassVar[bool] = False
    baseline_config: ClassVar[dict[str, Any]] = {
        "condition": {"field": "score", "operator": "greater_than", "value": 50},
        "branches": {"true": "high", "false": "low"},
    }
    baseline_input: ClassVar[Any] = {"score": 80}

    async def execute(self, config: dict[str, Any], input: Any, context: ExecutionContext) -> Any:
        parsed = BranchConfig.model_validate(config)
        taken = ConditionEvaluator().evaluate(parsed.condition, input)
        routed_to = parsed.branches.true if taken else parsed.branches.false

        self.log(
            context,
            "info",
            "Branch condition evaluated",
            result=taken,
            trueBranch=parsed.branches.true,
            falseBranch=parsed.branches.false,
        )

        payload = dict(input) if isinstance(input, dict) else {"value": input}
        return {
            **payload,
            "_branch": "true" if taken else "false",
            "_routedTo": routed_to,
        }


# ============================================================================
# Filter
# ============================================================================


class FilterConfig(BaseModel):
    model_config = {"extra": "forbid", "populate_by_name": True}

    conditions: list[dict[str, Any]] = Field(default_factory=list)
    on_fail: Literal["skip", "error"] = Field(default="skip", alias="onFail")


class FilterBlock(BlockExecutor):
    """
    Keeps data that satisfies every condition.

    Arrays are filtered item by item. A single object that fails becomes
    ``None`` with ``onFail: skip`` and an error with ``onFail: error``.
    """

    type_name: ClassVar[str] = "filter"
    name: ClassVar[str] = "Filter"
    description: ClassVar[str] = "Keep items matching all conditions"
    category: ClassVar[str] = "flow"
    supports_mock: ClassVar[bool] = True
    returns_envelope: ClassVar[bool] = False
    baseline_config: ClassVar[dict[str, Any]] = {
        "conditions": [{"field": "active", "operator": "equals", "value": True}],
    }
    baseline_input: ClassVar[Any] = [{"id": 1, "active": True}, {"id": 2, "active": False}]

    async def execute(self, config: dict[str, Any], input: Any, context: ExecutionContext) -> Any:
        parsed = FilterConfig.model_validate(config)
        evaluator = ConditionEvaluator()

        if isinstance(input, list):
            kept = []
            for index, item in enumerate(input):
                if evaluator.evaluate_all(parsed.conditions, item):
                    kept.append(item)
                elif parsed.on_fail == "error":
                    raise ValueError(f"Item at index {index} failed filter conditions")
            self.log(
                context,
                "info",
                "Filter completed",
                inputCount=len(input),
                outputCount=len(kept),
                filteredOut=len(input) - len(kept),
            )
            return kept

        passes = evaluator.evaluate_all(parsed.conditions, input)
        if not passes and parsed.on_fail == "error":
            raise ValueError("Input failed filter conditions")
        self.log(context, "info", "Filter completed", passes=passes)
        return input if passes else None


# ============================================================================
# Merge
# ============================================================================


class MergeConfig(BaseModel):
    model_config = {"extra": "forbid"}

    strategy: Literal["deepMerge", "shallow"] = "deepMerge"
    # Filled in under the input
    defaults: dict[str, Any] | None = None


class MergeBlock(BlockExecutor):
    """Join point for parallel branches.

    The orchestrator already deep-merges every incoming edge into the input,
    so the block mostly forwards it. ``defaults`` fill in keys the branches
    did not produce.
    """

    type_name: ClassVar[str] = "merge"
    name: ClassVar[str] = "Merge"
    description: ClassVar[str] = "Combine the outputs of several branches"
    category: ClassVar[str] = "flow"
    supports_mock: ClassVar[bool] = True
    returns_envelope: ClassVar[bool] = False

    async def execute(self, config: dict[str, Any], input: Any, context: ExecutionContext) -> Any:
        parsed = MergeConfig.model_validate(config)
        if not parsed.defaults:
            return input
        if not isinstance(input, dict):
            return input if input is not None else dict(parsed.defaults)
        if parsed.strategy == "shallow":
            return {**parsed.defaults, **input}
        return deep_merge(parsed.defaults, input)


FLOW_BLOCKS: tuple[type[BlockExecutor], ...] = (BranchBlock, FilterBlock, MergeBlock)

__all__ = ["FLOW_BLOCKS", "BranchBlock", "FilterBlock", "MergeBlock"]
