"""Workflow engine exceptions.

Exception Hierarchy:
    WorkflowEngineError (base)
    ├── WorkflowValidationError (definition rejected by WorkflowValidator)
    ├── SchemaValidationError (block input/output failed its schema)
    ├── UnknownBlockTypeError (type not in BlockRegistry, never retried)
    ├── BlockTimeoutError (attempt exceeded its time box, retryable)
    ├── BlockExecutionError (block reported status=failed)
    ├── MockModeNotSupportedError (live-only block in a demo/test run)
    └── WorkflowNotFoundError (store lookup miss)

Retry and circuit-breaker errors live in ``retry.py`` next to the
executors that raise them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .schema import ValidationResult


class WorkflowEngineError(Exception):
    """Base exception for all engine errors."""

    pass


class WorkflowValidationError(WorkflowEngineError):
    """
    Workflow definition failed static validation.

    Attributes:
        result: The full ValidationResult (errors and warnings)
    """

    def __init__(self, result: ValidationResult):
        self.result = result
        messages = "; ".join(error.message for error in result.errors) or "unknown error"
        super().__init__(f"Workflow validation failed: {messages}")

    def __repr__(self) -> str:
        return f"WorkflowValidationError(errors={len(self.result.errors)})"


class SchemaValidationError(WorkflowEngineError, ValueError):
    """
    Data did not match a node's inputSchema/outputSchema.

    Attributes:
        direction: "Input" or "Output"
        errors: Structural error strings (path: problem)
    """

    def __init__(self, direction: str, errors: list[str]):
        self.direction = direction
        self.errors = errors
        detail = "; ".join(errors)
        super().__init__(f"{direction} validation failed: {detail}")


class UnknownBlockTypeError(WorkflowEngineError):
    """Block type is not registered. Signals a definition bug, not a runtime fault."""

    def __init__(self, block_type: str, available: list[str] | None = None):
        self.block_type = block_type
        self.available = available or []
        super().__init__(f"Unknown block type: {block_type}")


class BlockTimeoutError(WorkflowEngineError, TimeoutError):
    """A single block attempt exceeded its time box."""

    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(f"Timeout after {timeout_ms}ms")


class BlockExecutionError(WorkflowEngineError):
    """Block returned an explicit failed result instead of raising."""

    pass


class MockModeNotSupportedError(WorkflowEngineError):
    """
    Demo/test run requested for a workflow with live-only blocks.

    Attributes:
        mode: Requested execution mode
        block_types: Block types that cannot run without live calls
    """

    def __init__(self, mode: str, block_types: list[str]):
        self.mode = mode
        self.block_types = block_types
        super().__init__(
            f"Block types without mock support cannot run in {mode} mode: "
            f"{', '.join(block_types)}"
        )


class WorkflowNotFoundError(WorkflowEngineError):
    """Workflow id not present in the store."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")

    def __repr__(self) -> str:
        return f"WorkflowNotFoundError(workflow_id={self.workflow_id!r})"
