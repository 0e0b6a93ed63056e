"""
Per-run execution context, its logger, and the factory that creates both.

ExecutionContext holds the mutable state of one workflow run:
    - variables (workflow lifetime, mutable)
    - secrets (readable by templates and blocks, never logged)
    - node_results (written once per node by the orchestrator, read-only to blocks)
    - logger (ExecutionLogger, redacts secrets)
    - progress (ProgressChannel reference, may be None)
    - disable_cache flag and execution mode

Child contexts (sub-workflows) copy variables and secrets but get their own
result map.
"""

from __future__ import annotations

import logging
import secrets as secrets_module
import string
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from ..config import EngineConfig
from .block_status import ExecutionMode, ExecutionStatus
from .interpolation import DEFAULT_ENV_ALLOWLIST
from .progress import ProgressChannel
from .redaction import SecretRedactor
from .schema import ExecutionResult

if TYPE_CHECKING:
    from .executor_base import BlockRegistry

_BASE36 = string.digits + string.ascii_lowercase


def generate_execution_id() -> str:
    """``exec_<epoch ms>_<9 random base36 chars>``."""
    suffix = "".join(secrets_module.choice(_BASE36) for _ in range(9))
    return f"exec_{int(time.time() * 1000)}_{suffix}"


class ExecutionLogger:
    """
    Run-scoped logger.

    Forwards to the module logger and keeps the run's log entries and
    timeline events in memory. Every message and detail dict passes through
    the SecretRedactor first.
    """

    def __init__(self, execution_id: str, redactor: SecretRedactor | None = None):
        self.execution_id = execution_id
        self.redactor = redactor or SecretRedactor()
        self.entries: list[dict[str, Any]] = []
        self.timeline_events: list[dict[str, Any]] = []
        self._logger = logging.getLogger(__name__)

    def _record(
        self, level: int, message: str, details: dict[str, Any] | None, node_id: str | None
    ) -> None:
        safe_message = self.redactor.redact(message)
        safe_details = self.redactor.redact(details or {})
        self.entries.append(
            {
                "timestamp": datetime.now(UTC).isoformat(),
                "level": logging.getLevelName(level).lower(),
                "message": safe_message,
                "details": safe_details,
                "nodeId": node_id,
            }
        )
        prefix = f"[{self.execution_id}]" + (f"[{node_id}]" if node_id else "")
        suffix = f" {safe_details}" if safe_details else ""
        self._logger.log(level, f"{prefix} {safe_message}{suffix}")

    def debug(self, message: str, details: dict[str, Any] | None = None) -> None:
        self._record(logging.DEBUG, message, details, None)

    def info(self, message: str, details: dict[str, Any] | None = None) -> None:
        self._record(logging.INFO, message, details, None)

    def warning(self, message: str, details: dict[str, Any] | None = None) -> None:
        self._record(logging.WARNING, message, details, None)

    warn = warning

    def error(self, message: str, details: dict[str, Any] | None = None) -> None:
        self._record(logging.ERROR, message, details, None)

    def node(self, node_id: str, message: str, details: dict[str, Any] | None = None) -> None:
        """Info-level entry attributed to one node."""
        self._record(logging.INFO, message, details, node_id)

    def timeline(
        self, event: str, details: dict[str, Any] | None = None, percentage: float | None = None
    ) -> dict[str, Any]:
        entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "event": event,
            "details": self.redactor.redact(details or {}),
        }
        if percentage is not None:
            entry["percentage"] = percentage
        self.timeline_events.append(entry)
        return entry


class ExecutionContext:
    """
    Mutable state of one workflow run.

    Create through ContextFactory rather than directly.
    """

    def __init__(
        self,
        workflow_id: str,
        execution_id: str | None = None,
        mode: ExecutionMode | str = ExecutionMode.PRODUCTION,
        variables: dict[str, Any] | None = None,
        secrets: dict[str, str] | None = None,
        config: EngineConfig | None = None,
        progress: ProgressChannel | None = None,
        disable_cache: bool = False,
        parent_execution_id: str | None = None,
    ):
        self.workflow_id = workflow_id
        self.execution_id = execution_id or generate_execution_id()
        self.mode = ExecutionMode(mode)
        self.variables: dict[str, Any] = dict(variables or {})
        self.secrets: dict[str, str] = dict(secrets or {})
        self.config = config or EngineConfig()
        self.progress = progress
        self.disable_cache = disable_cache
        self.parent_execution_id = parent_execution_id
        self.start_time = datetime.now(UTC)
        self.node_results: dict[str, ExecutionResult] = {}
        self.logger = ExecutionLogger(
            self.execution_id, SecretRedactor(self.secrets, self.config.redact_min_length)
        )
        self._cancel_requested = False

    # ------------------------------------------------------------------
    # Variables and secrets
    # ------------------------------------------------------------------

    def set_variable(self, key: str, value: Any) -> None:
        self.variables[key] = value

    def get_variable(self, key: str, default: Any = None) -> Any:
        return self.variables.get(key, default)

    def get_secret(self, key: str) -> str:
        """Get a secret value.

        Raises:
            SecretNotFoundError: If the key is not set on this context
        """
        from .secrets import SecretNotFoundError

        if key not in self.secrets:
            raise SecretNotFoundError(key)
        return self.secrets[key]

    def allowed_env(self) -> dict[str, str]:
        """Values visible to {{env.*}}: the built-in allow-list plus injected keys.

        Values come only from the injected EngineConfig, never os.environ.
        """
        allowed = DEFAULT_ENV_ALLOWLIST | set(self.config.env)
        return {key: value for key, value in self.config.env.items() if key in allowed}

    def workflow_metadata(self) -> dict[str, Any]:
        return {
            "id": self.workflow_id,
            "executionId": self.execution_id,
            "mode": self.mode.value,
            "startTime": self.start_time.isoformat(),
        }

    # ------------------------------------------------------------------
    # Node results
    # ------------------------------------------------------------------

    def set_node_result(self, node_id: str, result: ExecutionResult) -> None:
        """Record a node's terminal result. Each node is written exactly once."""
        if node_id in self.node_results:
            raise ValueError(f"Result already recorded for node: {node_id}")
        self.node_results[node_id] = result

    def get_node_result(self, node_id: str) -> ExecutionResult | None:
        return self.node_results.get(node_id)

    def get_node_output(self, node_id: str) -> Any:
        """Output of a node, or None if it has not produced a result yet."""
        result = self.node_results.get(node_id)
        return result.output if result is not None else None

    # ------------------------------------------------------------------
    # Progress and lifecycle
    # ------------------------------------------------------------------

    def update_progress(
        self,
        percentage: float,
        event: str,
        details: dict[str, Any] | None = None,
        node_id: str | None = None,
    ) -> None:
        """Record a timeline event and publish it on the progress channel, if any."""
        safe_details = self.logger.redactor.redact(details or {})
        if self.progress is not None and not self.progress.closed:
            published = self.progress.publish(
                percentage,
                event,
                safe_details,
                node_id=node_id,
                execution_id=self.execution_id,
            )
            percentage = published.percentage
        self.logger.timeline(event, safe_details, percentage)

    def request_cancel(self) -> None:
        """Ask the orchestrator to stop scheduling nodes and cancel running ones."""
        self._cancel_requested = True

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def is_mock_mode(self) -> bool:
        return self.mode.is_mock()

    def validate_mock_capability(
        self, block_types: list[str], registry: BlockRegistry
    ) -> list[str]:
        """Return the block types that cannot run in this context's mock mode.

        Always empty in production mode. Unknown types are reported too.
        """
        if not self.is_mock_mode():
            return []
        unsupported: list[str] = []
        for block_type in dict.fromkeys(block_types):
            metadata = registry.get_metadata(block_type)
            if metadata is None or not metadata.supports_mock:
                unsupported.append(block_type)
        return unsupported

    def create_child_context(self, workflow_id: str) -> ExecutionContext:
        """Context for a sub-workflow: copied variables/secrets, independent results."""
        return ExecutionContext(
            workflow_id=workflow_id,
            mode=self.mode,
            variables=dict(self.variables),
            secrets=dict(self.secrets),
            config=self.config,
            progress=None,
            disable_cache=self.disable_cache,
            parent_execution_id=self.execution_id,
        )

    def get_summary(self) -> dict[str, Any]:
        counts = {status.value: 0 for status in ExecutionStatus}
        for result in self.node_results.values():
            counts[result.status.value] += 1
        duration_ms = (datetime.now(UTC) - self.start_time).total_seconds() * 1000.0
        return {
            "workflowId": self.workflow_id,
            "executionId": self.execution_id,
            "mode": self.mode.value,
            "parentExecutionId": self.parent_execution_id,
            "durationMs": round(duration_ms, 3),
            "nodes": counts,
            "variables": sorted(self.variables),
            "logEntries": len(self.logger.entries),
        }

    def cleanup(self) -> None:
        """Drop run state (results, variables, secrets). The context is unusable afterwards."""
        self.node_results.clear()
        self.variables.clear()
        self.secrets.clear()


class ContextFactory:
    """Creates ExecutionContexts for the three execution modes."""

    def __init__(self, config: EngineConfig | None = None):
        self.config = config or EngineConfig()

    def create(
        self,
        workflow_id: str,
        mode: ExecutionMode | str = ExecutionMode.PRODUCTION,
        variables: dict[str, Any] | None = None,
        secrets: dict[str, str] | None = None,
        progress: ProgressChannel | None = None,
        disable_cache: bool = False,
    ) -> ExecutionContext:
        context = ExecutionContext(
            workflow_id=workflow_id,
            mode=mode,
            variables=variables,
            secrets=secrets,
            config=self.config,
            progress=progress,
            disable_cache=disable_cache,
        )
        context.logger.info(
            "Execution context created",
            {"workflowId": workflow_id, "mode": context.mode.value},
        )
        return context

    def create_demo_context(
        self,
        workflow_id: str,
        variables: dict[str, Any] | None = None,
        progress: ProgressChannel | None = None,
    ) -> ExecutionContext:
        return self.create(workflow_id, ExecutionMode.DEMO, variables=variables, progress=progress)

    def create_test_context(
        self,
        workflow_id: str,
        variables: dict[str, Any] | None = None,
        secrets: dict[str, str] | None = None,
        progress: ProgressChannel | None = None,
    ) -> ExecutionContext:
        """Test contexts never read or populate the result cache."""
        return self.create(
            workflow_id,
            ExecutionMode.TEST,
            variables=variables,
            secrets=secrets,
            progress=progress,
            disable_cache=True,
        )


__all__ = ["ContextFactory", "ExecutionContext", "ExecutionLogger", "generate_execution_id"]
