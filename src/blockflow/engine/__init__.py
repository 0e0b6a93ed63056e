"""Workflow engine core components.

Key Components:

- WorkflowOrchestrator: runs a workflow DAG (event-driven, bounded concurrency)
- CoreBlockExecutor: runs one node (cache, schemas, interpolation, timeout, retry)
- BlockExecutor / BlockRegistry: block base class and type registry
- WorkflowValidator: static checks on a definition (structure, DAG, config)
- ExecutionContext / ContextFactory: per-run state, secrets and logging
- ProgressChannel: progress events published by a run
- DAGResolver: Kahn ordering, execution waves and cycle search
- VariableInterpolator: ``{{namespace.path}}`` templates in block configs
- apply_edge_adapter: map/template/function transforms on edges
- ResultCache, RateLimiter, RetryExecutor, CircuitBreaker: resilience helpers
- WorkflowStore / ExecutionRecorder: SQLite persistence of definitions and runs
- LoadResult: error monad for loader operations
"""

from .block_executor import CoreBlockExecutor, ExecuteOptions
from .block_status import ExecutionMode, ExecutionStatus, WorkflowStatus
from .cache import ResultCache, memoize, stable_hash
from .conditions import ConditionEvaluator
from .dag import DAGResolver
from .edge_adapter import apply_edge_adapter, validate_adapter
from .exceptions import (
    BlockExecutionError,
    BlockTimeoutError,
    MockModeNotSupportedError,
    SchemaValidationError,
    UnknownBlockTypeError,
    WorkflowEngineError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from .execution_context import ContextFactory, ExecutionContext, ExecutionLogger
from .executor_base import BlockExecutor, BlockMetadata, BlockRegistry, create_default_registry
from .expressions import ExpressionError, compile_function
from .interpolation import VariableInterpolator, extract_variables, has_interpolation
from .load_result import LoadResult
from .loader import discover_workflows, load_workflow_document, load_workflow_from_file
from .merge import deep_merge
from .orchestrator import WorkflowOrchestrator
from .progress import ProgressChannel, ProgressEvent
from .rate_limiter import RateLimiter
from .retry import CircuitBreaker, CircuitOpenError, RetryConfig, RetryError, RetryExecutor
from .schema import (
    EdgeAdapter,
    EdgeDefinition,
    ExecutionResult,
    NodeDefinition,
    RetryPolicy,
    ValidationIssue,
    ValidationResult,
    WorkflowDefinition,
    WorkflowExecutionResult,
    WorkflowGlobals,
)
from .secrets import EnvVarSecretProvider, InMemorySecretProvider, SecretRedactor
from .state_config import StateConfig
from .tracking import ExecutionRecorder
from .validator import WorkflowValidator, validate_workflow
from .workflow_store import Page, WorkflowStore

__all__ = [
    # Orchestration
    "WorkflowOrchestrator",
    "CoreBlockExecutor",
    "ExecuteOptions",
    # Blocks
    "BlockExecutor",
    "BlockMetadata",
    "BlockRegistry",
    "create_default_registry",
    # Context
    "ContextFactory",
    "ExecutionContext",
    "ExecutionLogger",
    "ExecutionMode",
    "ExecutionStatus",
    "WorkflowStatus",
    "ProgressChannel",
    "ProgressEvent",
    # Definitions
    "EdgeAdapter",
    "EdgeDefinition",
    "NodeDefinition",
    "RetryPolicy",
    "WorkflowDefinition",
    "WorkflowGlobals",
    # Results
    "ExecutionResult",
    "ValidationIssue",
    "ValidationResult",
    "WorkflowExecutionResult",
    # Validation and graph
    "DAGResolver",
    "WorkflowValidator",
    "validate_workflow",
    # Data flow
    "ConditionEvaluator",
    "VariableInterpolator",
    "apply_edge_adapter",
    "compile_function",
    "deep_merge",
    "extract_variables",
    "has_interpolation",
    "validate_adapter",
    # Resilience
    "CircuitBreaker",
    "CircuitOpenError",
    "RateLimiter",
    "ResultCache",
    "RetryConfig",
    "RetryError",
    "RetryExecutor",
    "memoize",
    "stable_hash",
    # Secrets
    "EnvVarSecretProvider",
    "InMemorySecretProvider",
    "SecretRedactor",
    # Persistence
    "ExecutionRecorder",
    "LoadResult",
    "Page",
    "StateConfig",
    "WorkflowStore",
    "discover_workflows",
    "load_workflow_document",
    "load_workflow_from_file",
    # Exceptions
    "BlockExecutionError",
    "BlockTimeoutError",
    "ExpressionError",
    "MockModeNotSupportedError",
    "SchemaValidationError",
    "UnknownBlockTypeError",
    "WorkflowEngineError",
    "WorkflowNotFoundError",
    "WorkflowValidationError",
]
