"""Core blocks - static input, logger output, pass-through and field mapping.

Every block here is pure data shaping, so all of them support demo/test mode.
Configs are parsed into pydantic models; a malformed config raises
``pydantic.ValidationError``, which the core executor records as a failed
attempt (never retried, the message has no transient markers).
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, ClassVar, Literal

from pydantic import BaseModel, Field

from .edge_adapter import evaluate_template
from .executor_base import BlockExecutor
from .expressions import evaluate
from .merge import MISSING, get_path

if TYPE_CHECKING:
    from .execution_context import ExecutionContext
    from .interpolation import VariableInterpolator

# ============================================================================
# Static Input
# ============================================================================


class StaticInputConfig(BaseModel):
    model_config = {"extra": "allow"}

    data: Any = Field(default=None, description="Value emitted as the node output")


class StaticInputBlock(BlockExecutor):
    """
    Emits ``config.data`` as its output.

    Without ``data`` the node forwards the run's initial input (root nodes
    receive it as their input), so a workflow can start from either a fixed
    payload or the caller's payload.
    """

    type_name: ClassVar[str] = "input.static"
    name: ClassVar[str] = "Static Input"
    description: ClassVar[str] = "Emit fixed data, or the run's initial input"
    category: ClassVar[str] = "input"
    supports_mock: ClassVar[bool] = True
    returns_envelope: ClassVar[bool] = False
    baseline_config: ClassVar[dict[str, Any]] = {"data": {"message": "Hello, World!"}}

    async def execute(self, config: dict[str, Any], input: Any, context: ExecutionContext) -> Any:
        parsed = StaticInputConfig.model_validate(config)
        if parsed.data is not None:
            return parsed.data
        if input is not None:
            return input
        raise ValueError("Static input block requires config.data")


# ============================================================================
# Logger Output
# ============================================================================


class LoggerOutputConfig(BaseModel):
    model_config = {"extra": "forbid"}

    prefix: str = Field(default="[Output]", description="Prepended to the logged line")
    format: Literal["json", "pretty"] = Field(default="pretty", description="json or pretty")
    level: Literal["debug", "info", "warning", "error"] = Field(default="info")


class LoggerOutputBlock(BlockExecutor):
    """Logs its input and returns it unchanged."""

    type_name: ClassVar[str] = "output.logger"
    name: ClassVar[str] = "Logger Output"
    description: ClassVar[str] = "Log the node input and pass it through"
    category: ClassVar[str] = "output"
    supports_mock: ClassVar[bool] = True
    returns_envelope: ClassVar[bool] = False
    baseline_input: ClassVar[Any] = {"message": "Hello, World!"}

    async def execute(self, config: dict[str, Any], input: Any, context: ExecutionContext) -> Any:
        parsed = LoggerOutputConfig.model_validate(config)
        if parsed.format == "json":
            rendered = json.dumps(input, default=str, separators=(",", ":"))
        else:
            rendered = json.dumps(input, default=str, indent=2)
        # The run logger redacts secrets before anything reaches a handler
        self.log(context, parsed.level, f"{parsed.prefix} {rendered}")
        return input


# ============================================================================
# Pass Through
# ============================================================================


class PassThroughBlock(BlockExecutor):
    type_name: ClassVar[str] = "transform.passThrough"
    name: ClassVar[str] = "Pass Through"
    description: ClassVar[str] = "Return the input unchanged"
    category: ClassVar[str] = "transform"
    supports_mock: ClassVar[bool] = True
    returns_envelope: ClassVar[bool] = False

    async def execute(self, config: dict[str, Any], input: Any, context: ExecutionContext) -> Any:
        return input


# ============================================================================
# Field Mapping
# ============================================================================


class MappingOperation(BaseModel):
    """One step of a field mapping pipeline.

    Operations:
        map          {target: sourcePath}; builds a new record
        rename       {oldName: newName}; other fields kept
        calculate    {target: formula}; formula is a ``{{field}}`` template
                     or an expression over the record's fields
        deduplicate  drop array items whose ``key`` value was already seen
    """

    model_config = {"extra": "forbid"}

    type: str = Field(description="map, rename, calculate or deduplicate")
    mapping: dict[str, str] = Field(default_factory=dict)
    key: str = Field(default="id", description="Identity field for deduplicate")


class FieldMappingConfig(BaseModel):
    model_config = {"extra": "forbid"}

    operations: list[MappingOperation] = Field(default_factory=list)
    # Shorthand for a single map operation
    mapping: dict[str, str] | None = None


def _map_record(record: Any, mapping: dict[str, str]) -> dict[str, Any]:
    mapped: dict[str, Any] = {}
    for target, source in mapping.items():
        value = get_path(record, source, default=MISSING)
        mapped[target] = None if value is MISSING else value
    return mapped


def _rename_record(record: Any, mapping: dict[str, str]) -> Any:
    if not isinstance(record, dict):
        return record
    return {mapping.get(key, key): value for key, value in record.items()}


def _calculate(formula: str, record: Any) -> Any:
    if "{{" in formula:
        return evaluate_template(formula, record)
    names = dict(record) if isinstance(record, dict) else {}
    names["item"] = record
    scope = {
        name: value
        for name, value in names.items()
        if name.isidentifier() and not name.startswith("__")
    }
    return evaluate(formula, scope)


def _calculate_record(record: Any, mapping: dict[str, str]) -> Any:
    if not isinstance(record, dict):
        return record
    calculated = dict(record)
    for target, formula in mapping.items():
        calculated[target] = _calculate(formula, record)
    return calculated


def _deduplicate(data: Any, key: str) -> Any:
    if not isinstance(data, list):
        return data
    seen: list[Any] = []
    unique: list[Any] = []
    for item in data:
        identity = get_path(item, key, default=MISSING)
        # Items without the key are never considered duplicates
        if identity is not MISSING:
            if identity in seen:
                continue
            seen.append(identity)
        unique.append(item)
    return unique


class FieldMappingBlock(BlockExecutor):
    """
    Reshapes records with a list of mapping operations.

    Operations run in order. Arrays are processed item by item; deduplicate
    works on the array as a whole. An empty operation list is the identity.
    """

    type_name: ClassVar[str] = "transform.fieldMapping"
    name: ClassVar[str] = "Field Mapping"
    description: ClassVar[str] = "Map, rename, calculate and deduplicate fields"
    category: ClassVar[str] = "transform"
    supports_mock: ClassVar[bool] = True
    returns_envelope: ClassVar[bool] = False
    baseline_config: ClassVar[dict[str, Any]] = {
        "operations": [{"type": "rename", "mapping": {"message": "text"}}]
    }
    baseline_input: ClassVar[Any] = {"message": "Hello, World!"}

    def interpolate_config(
        self, config: dict[str, Any], interpolator: VariableInterpolator, input: Any
    ) -> dict[str, Any]:
        resolved = interpolator.interpolate_object(config, input)
        operations = config.get("operations")
        if not isinstance(operations, list):
            return resolved
        # calculate formulas are evaluated per record in _calculate
        resolved["operations"] = [
            {**done, "mapping": raw["mapping"]}
            if isinstance(raw, dict) and raw.get("type") == "calculate" and "mapping" in raw
            else done
            for raw, done in zip(operations, resolved["operations"], strict=True)
        ]
        return resolved

    async def execute(self, config: dict[str, Any], input: Any, context: ExecutionContext) -> Any:
        parsed = FieldMappingConfig.model_validate(config)
        operations = list(parsed.operations)
        if parsed.mapping:
            operations.insert(0, MappingOperation(type="map", mapping=parsed.mapping))

        data = input
        for operation in operations:
            data = self._apply(operation, data, context)
        return data

    def _apply(self, operation: MappingOperation, data: Any, context: ExecutionContext) -> Any:
        if operation.type == "deduplicate":
            return _deduplicate(data, operation.key)

        record_ops = {
            "map": _map_record,
            "rename": _rename_record,
            "calculate": _calculate_record,
        }
        apply = record_ops.get(operation.type)
        if apply is None:
            self.log(context, "warning", f"Unknown mapping operation: {operation.type}")
            return data
        if isinstance(data, list):
            return [apply(item, operation.mapping) for item in data]
        return apply(data, operation.mapping)


CORE_BLOCKS: tuple[type[BlockExecutor], ...] = (
    StaticInputBlock,
    LoggerOutputBlock,
    PassThroughBlock,
    FieldMappingBlock,
)

__all__ = [
    "CORE_BLOCKS",
    "FieldMappingBlock",
    "LoggerOutputBlock",
    "PassThroughBlock",
    "StaticInputBlock",
]
