"""
Core block executor: runs one node's block with caching, schema checks,
interpolation, timeouts and retries.

Pipeline, in order:
    1. cache lookup (cacheable blocks only, unless the context disables it)
    2. input schema check (never retried)
    3. registry lookup (unknown type is fatal, never retried)
    4. config interpolation against the context and the node input (the
       block may keep some keys raw, see BlockExecutor.interpolate_config)
    5. attempts: each one time-boxed; transient failures retried with backoff
    6. output schema check (never retried)
    7. cache store

``execute`` never raises (except for task cancellation): every failure is
captured in the returned ExecutionResult.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ..config import EngineConfig
from .block_status import ExecutionStatus
from .cache import ResultCache, stable_hash
from .exceptions import (
    BlockExecutionError,
    BlockTimeoutError,
    MockModeNotSupportedError,
    SchemaValidationError,
    UnknownBlockTypeError,
)
from .execution_context import ExecutionContext
from .executor_base import BlockExecutor, BlockRegistry
from .expressions import ExpressionError
from .interpolation import VariableInterpolator
from .schema import ExecutionResult, RetryPolicy
from .validation import validate_schema

logger = logging.getLogger(__name__)

# Lowercased substrings that mark an error message as transient
RETRYABLE_PATTERNS = ("timeout", "network", "rate limit", "temporary", "unavailable", "connection")

# Definition bugs: retrying cannot help
NON_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    UnknownBlockTypeError,
    SchemaValidationError,
    MockModeNotSupportedError,
    ExpressionError,
)

_STATUS_VALUES = {status.value for status in ExecutionStatus}
_ENVELOPE_KEYS = frozenset({"status", "output", "error", "metadata"})


class ExecuteOptions(BaseModel):
    """Per-call overrides for CoreBlockExecutor.execute."""

    model_config = ConfigDict(populate_by_name=True)

    timeout: float | None = Field(default=None, gt=0, description="Per-attempt timeout in ms")
    retry_policy: RetryPolicy | None = Field(default=None, alias="retryPolicy")
    input_schema: dict[str, Any] | None = Field(default=None, alias="inputSchema")
    output_schema: dict[str, Any] | None = Field(default=None, alias="outputSchema")
    schemas: dict[str, Any] | None = Field(
        default=None, description="Workflow schemas that $ref in the node schemas points at"
    )
    enable_cache: bool = Field(default=True, alias="enableCache")
    validate_schemas: bool = Field(default=True, alias="validateSchemas")
    cache_ttl: float | None = Field(default=None, ge=0, alias="cacheTtl", description="Seconds")


def is_uncacheable_type(block_type: str) -> bool:
    """Pure input/output blocks are never cached."""
    return block_type in ("input", "output") or block_type.startswith(("input.", "output."))


def is_retryable_error(error: BaseException, policy: RetryPolicy) -> bool:
    """Match the error message against the transient-error heuristic and the policy's list."""
    if isinstance(error, NON_RETRYABLE_ERRORS):
        return False
    message = str(error).lower()
    patterns = (*RETRYABLE_PATTERNS, *(p.lower() for p in policy.retryable_errors if p))
    return any(pattern in message for pattern in patterns)


class _AttemptOutcome:
    def __init__(self, status: ExecutionStatus, output: Any):
        self.status = status
        self.output = output


def _is_envelope(raw: Any) -> bool:
    return (
        isinstance(raw, dict)
        and raw.get("status") in _STATUS_VALUES
        and raw.keys() <= _ENVELOPE_KEYS
    )


def _normalize(raw: Any, envelope: bool = True) -> _AttemptOutcome:
    """Accept ``{status, output, error}`` or a bare value.

    With ``envelope=False`` every result is a bare value, so a record that
    happens to carry a ``status`` field is passed on as data.
    """
    if envelope and _is_envelope(raw):
        status = ExecutionStatus(raw["status"])
        if status == ExecutionStatus.FAILED:
            error = raw.get("error")
            raise BlockExecutionError(str(error) if error else "Block reported failure")
        if status == ExecutionStatus.SKIPPED:
            return _AttemptOutcome(ExecutionStatus.SKIPPED, raw.get("output"))
        return _AttemptOutcome(ExecutionStatus.COMPLETED, raw.get("output"))
    return _AttemptOutcome(ExecutionStatus.COMPLETED, raw)


class CoreBlockExecutor:
    """
    Executes single blocks on behalf of the orchestrator (or the CLI's
    ``blocks test`` command).

    Args:
        registry: Block types available to this executor
        cache: Result cache owned by this executor; a private one is created
            from ``config`` when omitted
        config: Engine configuration (default timeout, cache bounds)
        sleep: Async sleep used between retries (injectable for tests)
    """

    def __init__(
        self,
        registry: BlockRegistry,
        cache: ResultCache | None = None,
        config: EngineConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.registry = registry
        self.config = config or EngineConfig()
        self.cache = cache or ResultCache(
            max_entries=self.config.cache_max_entries, default_ttl=self.config.cache_ttl
        )
        self._sleep = sleep

    def cache_key(
        self, node_id: str, block_type: str, config: dict[str, Any], input: Any,
        context: ExecutionContext,
    ) -> str:
        digest = stable_hash({"type": block_type, "config": config, "input": input})
        return f"{context.workflow_id}:{node_id}:{digest}"

    def _cache_applies(
        self, block_type: str, context: ExecutionContext, options: ExecuteOptions
    ) -> bool:
        if not options.enable_cache or context.disable_cache or is_uncacheable_type(block_type):
            return False
        metadata = self.registry.get_metadata(block_type)
        return metadata is not None and metadata.cacheable

    async def execute(
        self,
        node_id: str,
        block_type: str,
        config: dict[str, Any],
        input: Any,
        context: ExecutionContext,
        options: ExecuteOptions | None = None,
    ) -> ExecutionResult:
        """Run one block and return its result. Never raises."""
        options = options or ExecuteOptions()
        config = config or {}
        started_at = datetime.now(UTC)
        started = time.perf_counter()
        attempts = 0
        metadata: dict[str, Any] = {"blockType": block_type, "cacheHit": False}

        def elapsed_ms() -> float:
            return round((time.perf_counter() - started) * 1000.0, 3)

        context.logger.node(node_id, "Execution started", {"blockType": block_type})

        try:
            use_cache = self._cache_applies(block_type, context, options)
            key = self.cache_key(node_id, block_type, config, input, context) if use_cache else None

            # 1. Cache
            if key is not None and self.cache.has(key):
                output = self.cache.get(key)
                metadata["cacheHit"] = True
                context.logger.node(node_id, "Cache hit")
                return ExecutionResult(
                    node_id=node_id,
                    status=ExecutionStatus.COMPLETED,
                    input=input,
                    output=output,
                    execution_time=elapsed_ms(),
                    start_time=started_at,
                    end_time=datetime.now(UTC),
                    metadata=metadata,
                )

            # 2. Input schema
            input_schema = options.input_schema or config.get("inputSchema")
            if options.validate_schemas and isinstance(input_schema, dict):
                problems = validate_schema(input, input_schema, options.schemas)
                if problems:
                    raise SchemaValidationError("Input", problems)

            # 3. Registry
            executor = self.registry.create(block_type)
            if executor is None:
                raise UnknownBlockTypeError(block_type, self.registry.list())

            # 4. Interpolation
            resolved_config = executor.interpolate_config(
                config, VariableInterpolator(context), input
            )

            # 5. Attempts
            policy = options.retry_policy or RetryPolicy()
            timeout_ms = options.timeout or self.config.default_timeout * 1000.0
            outcome: _AttemptOutcome | None = None
            while outcome is None:
                attempts += 1
                try:
                    outcome = await self._attempt(executor, resolved_config, input, context, timeout_ms)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    retry_index = attempts - 1
                    if retry_index >= policy.max_retries or not is_retryable_error(e, policy):
                        raise
                    delay = policy.delay_seconds(retry_index)
                    context.logger.debug(
                        f"Retry attempt {attempts}/{policy.max_retries}",
                        {"nodeId": node_id, "error": str(e), "delay": delay},
                    )
                    await self._sleep(delay)

            # 6. Output schema
            output_schema = options.output_schema or config.get("outputSchema")
            if (
                options.validate_schemas
                and outcome.status == ExecutionStatus.COMPLETED
                and isinstance(output_schema, dict)
            ):
                problems = validate_schema(outcome.output, output_schema, options.schemas)
                if problems:
                    raise SchemaValidationError("Output", problems)

            # 7. Cache store
            if key is not None and outcome.status == ExecutionStatus.COMPLETED:
                self.cache.set(key, outcome.output, options.cache_ttl)

            metadata["attempts"] = attempts
            result = ExecutionResult(
                node_id=node_id,
                status=outcome.status,
                input=input,
                output=outcome.output,
                execution_time=elapsed_ms(),
                retry_count=max(0, attempts - 1),
                start_time=started_at,
                end_time=datetime.now(UTC),
                metadata=metadata,
            )
            context.logger.node(
                node_id,
                "Execution completed",
                {
                    "status": result.status.value,
                    "executionTime": result.execution_time,
                    "retryCount": result.retry_count,
                },
            )
            return result

        except asyncio.CancelledError:
            raise
        except Exception as e:
            metadata["attempts"] = attempts
            metadata["errorType"] = type(e).__name__
            message = str(e) or type(e).__name__
            context.logger.node(
                node_id,
                "Execution failed",
                {"error": message, "errorType": type(e).__name__, "retryCount": max(0, attempts - 1)},
            )
            logger.debug(f"Node '{node_id}' ({block_type}) failed", exc_info=True)
            return ExecutionResult(
                node_id=node_id,
                status=ExecutionStatus.FAILED,
                input=input,
                output=None,
                error=context.logger.redactor.redact(message),
                execution_time=elapsed_ms(),
                retry_count=max(0, attempts - 1),
                start_time=started_at,
                end_time=datetime.now(UTC),
                metadata=metadata,
            )

    async def _attempt(
        self,
        executor: BlockExecutor,
        config: dict[str, Any],
        input: Any,
        context: ExecutionContext,
        timeout_ms: float,
    ) -> _AttemptOutcome:
        try:
            raw = await asyncio.wait_for(executor.execute(config, input, context), timeout_ms / 1000.0)
        except TimeoutError as e:
            raise BlockTimeoutError(round(timeout_ms)) from e
        return _normalize(raw, executor.returns_envelope)


__all__ = [
    "RETRYABLE_PATTERNS",
    "CoreBlockExecutor",
    "ExecuteOptions",
    "is_retryable_error",
    "is_uncacheable_type",
]
