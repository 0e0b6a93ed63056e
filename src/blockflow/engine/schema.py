"""
Pydantic models for workflow definitions and execution results.

Definitions use the camelCase wire format of the JSON/YAML documents
(``workflowId``, ``sourcePort``, ``maxParallelNodes``...) through field
aliases; Python code uses the snake_case attribute names. Dump with
``model_dump(by_alias=True)`` to get the wire format back.

Parsing a definition is not validation: WorkflowValidator inspects the raw
document (so it can report every structural problem at once) and the
orchestrator only parses documents that validated.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .block_status import ExecutionStatus, WorkflowStatus
from .load_result import LoadResult

_WIRE = ConfigDict(populate_by_name=True, extra="allow")

# ============================================================================
# Definition models
# ============================================================================


class RetryPolicy(BaseModel):
    """Retry policy for a node (delays are in milliseconds, like the wire format)."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    max_retries: int = Field(default=0, ge=0, alias="maxRetries")
    initial_delay: float = Field(default=1000, ge=0, alias="initialDelay")
    backoff_multiplier: float = Field(default=2.0, ge=1, alias="backoffMultiplier")
    max_delay: float | None = Field(default=None, ge=0, alias="maxDelay")
    retryable_errors: list[str] = Field(default_factory=list, alias="retryableErrors")

    def delay_seconds(self, attempt: int) -> float:
        """Backoff before retry number ``attempt + 1`` (no cap unless max_delay is set)."""
        delay = self.initial_delay * self.backoff_multiplier**attempt
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay / 1000.0


class EdgeAdapter(BaseModel):
    """Transform applied to a source node's output before it reaches the target."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    type: Literal["map", "template", "function"]
    mapping: dict[str, str] | None = None
    template: dict[str, Any] | None = None
    function: str | None = None


class EdgeDefinition(BaseModel):
    """Directed data-flow connection between two nodes."""

    model_config = _WIRE

    id: str | None = None
    source: str
    target: str
    source_port: str | None = Field(default=None, alias="sourcePort")
    target_port: str | None = Field(default=None, alias="targetPort")
    adapter: EdgeAdapter | None = None
    condition: dict[str, Any] | None = None

    @property
    def port(self) -> str:
        return self.source_port or "out"


class NodeDefinition(BaseModel):
    """A block placed in a workflow. Static definition, no runtime state."""

    model_config = _WIRE

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    name: str = ""
    description: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    input_schema: dict[str, Any] | None = Field(default=None, alias="inputSchema")
    output_schema: dict[str, Any] | None = Field(default=None, alias="outputSchema")
    retry_config: RetryPolicy | None = Field(default=None, alias="retryConfig")
    timeout: float | None = Field(default=None, gt=0, description="Per-attempt timeout in ms")

    @field_validator("config", mode="before")
    @classmethod
    def default_config(cls, value: Any) -> Any:
        return {} if value is None else value


class WorkflowGlobals(BaseModel):
    """Run-wide settings. Unknown keys are kept as workflow-scoped flags."""

    model_config = _WIRE

    timeout: float | None = Field(default=None, gt=0, description="Run timeout in ms")
    retry_policy: RetryPolicy | None = Field(default=None, alias="retryPolicy")
    error_handling: Literal["continue", "stop"] = Field(default="continue", alias="errorHandling")
    max_parallel_nodes: int | None = Field(default=None, ge=1, alias="maxParallelNodes")

    @property
    def flags(self) -> dict[str, Any]:
        """Custom keys that are not part of the known settings."""
        return dict(self.model_extra or {})


class WorkflowDefinition(BaseModel):
    """Immutable workflow blueprint: nodes, edges and globals."""

    model_config = _WIRE

    workflow_id: str = Field(min_length=1, alias="workflowId")
    name: str = ""
    version: int | float | str = 1
    description: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    globals: WorkflowGlobals = Field(default_factory=WorkflowGlobals)
    nodes: list[NodeDefinition] = Field(default_factory=list)
    edges: list[EdgeDefinition] = Field(default_factory=list)
    schemas: dict[str, Any] | None = None

    @field_validator("globals", mode="before")
    @classmethod
    def default_globals(cls, value: Any) -> Any:
        return {} if value is None else value

    def get_node(self, node_id: str) -> NodeDefinition | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def to_dict(self) -> dict[str, Any]:
        """Wire-format dict (camelCase keys, unset optionals dropped)."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    @staticmethod
    def from_dict(data: dict[str, Any]) -> LoadResult[WorkflowDefinition]:
        """
        Parse a wire-format dict into a WorkflowDefinition.

        Returns:
            LoadResult.success(WorkflowDefinition) or LoadResult.failure(message)
        """
        try:
            return LoadResult.success(WorkflowDefinition.model_validate(data))
        except ValidationError as e:
            return LoadResult.failure(f"Workflow definition is malformed:\n{e}")


# ============================================================================
# Validation models
# ============================================================================

IssueType = Literal[
    "schema", "duplicate", "connection", "dag", "config", "best_practice", "performance", "cost"
]


class ValidationIssue(BaseModel):
    """One validator finding (error or warning)."""

    model_config = ConfigDict(populate_by_name=True)

    type: IssueType
    message: str
    node_id: str | None = Field(default=None, alias="nodeId")
    path: str | None = None
    suggestion: str | None = None


class ValidationResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)
    # Groups of nodes with no dependency between them, in run order; valid results only
    execution_waves: list[list[str]] = Field(default_factory=list, alias="executionWaves")

    def errors_of_type(self, issue_type: str) -> list[ValidationIssue]:
        return [error for error in self.errors if error.type == issue_type]


# ============================================================================
# Execution result models
# ============================================================================


class ExecutionResult(BaseModel):
    """Per-node outcome, owned by the context that produced it."""

    model_config = ConfigDict(populate_by_name=True)

    node_id: str = Field(alias="nodeId")
    status: ExecutionStatus
    input: Any = None
    output: Any = None
    error: str | None = None
    execution_time: float = Field(default=0.0, alias="executionTime", description="ms")
    retry_count: int = Field(default=0, alias="retryCount")
    start_time: datetime | None = Field(default=None, alias="startTime")
    end_time: datetime | None = Field(default=None, alias="endTime")
    metadata: dict[str, Any] = Field(default_factory=dict)
    logs: list[str] = Field(default_factory=list)

    @property
    def cache_hit(self) -> bool:
        return bool(self.metadata.get("cacheHit", False))


class WorkflowExecutionMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_nodes: int = Field(default=0, alias="totalNodes")
    completed_nodes: int = Field(default=0, alias="completedNodes")
    failed_nodes: int = Field(default=0, alias="failedNodes")
    skipped_nodes: int = Field(default=0, alias="skippedNodes")
    cancelled_nodes: int = Field(default=0, alias="cancelledNodes")
    execution_time: float = Field(default=0.0, alias="executionTime", description="ms")
    warnings: list[str] = Field(default_factory=list)


class WorkflowExecutionResult(BaseModel):
    """Whole-run summary. Assembled once at the end of a run."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    execution_id: str = Field(alias="executionId")
    workflow_id: str = Field(alias="workflowId")
    status: WorkflowStatus
    input: Any = None
    output: Any = None
    node_results: dict[str, ExecutionResult] = Field(default_factory=dict, alias="nodeResults")
    metadata: WorkflowExecutionMetadata = Field(default_factory=WorkflowExecutionMetadata)
    error: str | None = None
    validation: ValidationResult | None = None
    start_time: datetime | None = Field(default=None, alias="startTime")
    end_time: datetime | None = Field(default=None, alias="endTime")
    timeline: list[dict[str, Any]] = Field(default_factory=list)

    def first_error(self) -> str | None:
        """Primary error message: run-level error, else the first failed node's."""
        if self.error:
            return self.error
        for result in self.node_results.values():
            if result.status == ExecutionStatus.FAILED and result.error:
                return f"{result.node_id}: {result.error}"
        return None
