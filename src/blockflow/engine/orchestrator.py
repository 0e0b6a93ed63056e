"""
Workflow orchestrator: runs a validated workflow DAG to completion.

Scheduling is event driven. Every node waits until all of its upstream nodes
have settled (completed, failed or skipped); ready nodes run concurrently as
asyncio tasks, bounded by ``globals.maxParallelNodes``.

Data flow:
    - root nodes receive the run's initial input
    - other nodes receive the deep merge of every *active* incoming edge's
      (adapted) source output, in edge definition order
    - an edge is active when its source completed, its ``sourcePort`` matches
      the source output's ``_branch``/``_port`` tag (no port or ``"out"``
      always matches) and its ``condition``, if any, holds
    - a node with no active incoming edge is skipped

Failure handling (``globals.errorHandling``):
    - continue: the failed node's dependents are skipped unless another
      upstream path still feeds them; independent branches keep running
    - stop: running nodes are cancelled, unfinished nodes marked cancelled,
      and the run fails
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from datetime import UTC, datetime
from typing import Any

from ..config import EngineConfig
from .block_executor import CoreBlockExecutor, ExecuteOptions
from .block_status import ExecutionStatus, WorkflowStatus
from .conditions import ConditionEvaluator
from .dag import DAGResolver
from .edge_adapter import apply_edge_adapter
from .exceptions import MockModeNotSupportedError, WorkflowValidationError
from .execution_context import ExecutionContext
from .executor_base import BlockRegistry
from .merge import merge_all
from .schema import (
    EdgeDefinition,
    ExecutionResult,
    NodeDefinition,
    ValidationResult,
    WorkflowDefinition,
    WorkflowExecutionMetadata,
    WorkflowExecutionResult,
)
from .validator import WorkflowValidator, is_output_type

logger = logging.getLogger(__name__)

# Node progress is scaled to this; 100 is reserved for the final assembly
NODE_PROGRESS_CEILING = 99.0


class _RunState:
    """Bookkeeping for one ``execute`` call."""

    def __init__(self, workflow: WorkflowDefinition):
        self.workflow = workflow
        self.nodes: dict[str, NodeDefinition] = {node.id: node for node in workflow.nodes}
        self.incoming: dict[str, list[EdgeDefinition]] = {node_id: [] for node_id in self.nodes}
        for edge in workflow.edges:
            self.incoming[edge.target].append(edge)

        dag = DAGResolver(list(self.nodes), [(edge.source, edge.target) for edge in workflow.edges])
        self.successors = dag.successors()
        self.remaining = dag.in_degree()
        self.roots = dag.roots()
        self.sinks = dag.sinks()
        self.settled = 0
        self.warnings: list[str] = []

    @property
    def total(self) -> int:
        return len(self.nodes)

    def progress(self) -> float:
        if not self.total:
            return NODE_PROGRESS_CEILING
        return round(self.settled / self.total * NODE_PROGRESS_CEILING, 2)


class WorkflowOrchestrator:
    """
    Executes workflow definitions.

    Args:
        registry: Block types available to the run
        executor: Core block executor; one is created from ``registry`` and
            ``config`` when omitted (and owns its own result cache)
        config: Engine configuration (default parallelism, timeouts)
        strict_mock: In demo/test mode, fail the run up front when a block
            type cannot run without live calls (default: warn and continue)

    Example:
        registry = create_default_registry()
        orchestrator = WorkflowOrchestrator(registry)
        context = ContextFactory().create_test_context(workflow.workflow_id)
        result = await orchestrator.execute(workflow, context, {"message": "hi"})
    """

    def __init__(
        self,
        registry: BlockRegistry,
        executor: CoreBlockExecutor | None = None,
        config: EngineConfig | None = None,
        strict_mock: bool = False,
    ):
        self.registry = registry
        self.config = config or EngineConfig()
        self.executor = executor or CoreBlockExecutor(registry, config=self.config)
        self.strict_mock = strict_mock
        self.validator = WorkflowValidator(registry)
        self.conditions = ConditionEvaluator()

    async def execute(
        self,
        workflow: WorkflowDefinition | dict[str, Any],
        context: ExecutionContext,
        initial_input: Any = None,
    ) -> WorkflowExecutionResult:
        """Run ``workflow`` and return its result. Never raises for node failures.

        Validation problems, malformed definitions and strict mock-mode
        violations produce a ``failed`` result before any node runs.
        """
        started_at = datetime.now(UTC)
        started = time.perf_counter()
        try:
            return await self._execute(workflow, context, initial_input, started_at, started)
        finally:
            if context.progress is not None:
                context.progress.close()

    async def _execute(
        self,
        workflow: WorkflowDefinition | dict[str, Any],
        context: ExecutionContext,
        initial_input: Any,
        started_at: datetime,
        started: float,
    ) -> WorkflowExecutionResult:
        raw_id = (
            workflow.workflow_id
            if isinstance(workflow, WorkflowDefinition)
            else str(workflow.get("workflowId", "")) if isinstance(workflow, dict) else ""
        )

        # 1. Validate
        validation = self.validator.validate(workflow)
        if not validation.valid:
            error = str(WorkflowValidationError(validation))
            context.logger.error(error)
            return self._early_failure(
                context, raw_id, initial_input, error, started_at, started, validation
            )

        if isinstance(workflow, WorkflowDefinition):
            definition = workflow
        else:
            parsed = WorkflowDefinition.from_dict(workflow)
            if not parsed.is_success:
                context.logger.error(parsed.error or "Workflow definition is malformed")
                return self._early_failure(
                    context, raw_id, initial_input, parsed.error, started_at, started, validation
                )
            definition = parsed.unwrap()

        state = _RunState(definition)
        state.warnings.extend(warning.message for warning in validation.warnings)

        # 2. Mock capability
        unsupported = context.validate_mock_capability(
            [node.type for node in definition.nodes], self.registry
        )
        if unsupported:
            mock_error = MockModeNotSupportedError(context.mode.value, unsupported)
            if self.strict_mock:
                context.logger.error(str(mock_error))
                return self._early_failure(
                    context,
                    definition.workflow_id,
                    initial_input,
                    str(mock_error),
                    started_at,
                    started,
                    validation,
                )
            state.warnings.append(str(mock_error))
            context.logger.warning(str(mock_error))

        # 3. Run
        context.set_variable("_input", initial_input)
        context.update_progress(
            0,
            "workflow_started",
            {
                "workflowId": definition.workflow_id,
                "version": definition.version,
                "nodeCount": state.total,
            },
        )
        context.logger.info(
            f"Starting workflow execution: {definition.workflow_id}",
            {"nodeCount": state.total, "mode": context.mode.value},
        )

        run_error: str | None = None
        cancelled = False
        timeout_ms = definition.globals.timeout
        try:
            async with asyncio.timeout(timeout_ms / 1000.0 if timeout_ms else None):
                run_error, cancelled = await self._schedule(state, context, initial_input)
        except TimeoutError:
            run_error = f"Workflow timeout after {round(timeout_ms or 0)}ms"
            context.logger.error(run_error)

        if run_error is not None or cancelled:
            reason = run_error or "Workflow execution cancelled"
            self._mark_unfinished(state, context, reason)

        return self._assemble(
            state, context, initial_input, started_at, started, run_error, cancelled, validation
        )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def _schedule(
        self, state: _RunState, context: ExecutionContext, initial_input: Any
    ) -> tuple[str | None, bool]:
        """Run nodes until everything settles.

        Returns:
            (run error or None, whether the caller cancelled the run)
        """
        globals_ = state.workflow.globals
        semaphore = asyncio.Semaphore(globals_.max_parallel_nodes or self.config.max_parallel_nodes)
        ready: deque[str] = deque(state.roots)
        running: dict[asyncio.Task[ExecutionResult], str] = {}

        try:
            while ready or running:
                if context.cancel_requested:
                    context.logger.warning("Cancellation requested; stopping workflow")
                    return None, True

                while ready:
                    node_id = ready.popleft()
                    node = state.nodes[node_id]
                    try:
                        node_input, active = self._gather_input(node, state, context, initial_input)
                    except Exception as e:
                        failed = self._settled_result(
                            node, ExecutionStatus.FAILED, None, f"Edge adapter failed: {e}"
                        )
                        failed.metadata["errorType"] = type(e).__name__
                        self._settle(state, context, failed, ready)
                        if globals_.error_handling == "stop":
                            return f"Node '{node_id}' failed: {failed.error}", False
                        continue

                    if not active:
                        skipped = self._settled_result(
                            node, ExecutionStatus.SKIPPED, None, None,
                            reason="No active upstream input",
                        )
                        self._settle(state, context, skipped, ready)
                        continue

                    task = asyncio.create_task(
                        self._run_node(node, node_input, state, context, semaphore),
                        name=f"node:{node_id}",
                    )
                    running[task] = node_id

                if not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    node_id = running.pop(task)
                    result = self._task_result(task, state.nodes[node_id])
                    self._settle(state, context, result, ready)
                    if result.status == ExecutionStatus.FAILED and globals_.error_handling == "stop":
                        return f"Node '{node_id}' failed: {result.error}", False
            return None, False
        finally:
            if running:
                for task in running:
                    task.cancel()
                await asyncio.gather(*running, return_exceptions=True)

    async def _run_node(
        self,
        node: NodeDefinition,
        node_input: Any,
        state: _RunState,
        context: ExecutionContext,
        semaphore: asyncio.Semaphore,
    ) -> ExecutionResult:
        async with semaphore:
            context.update_progress(
                state.progress(),
                "node_started",
                {"nodeId": node.id, "blockType": node.type},
                node_id=node.id,
            )
            return await self.executor.execute(
                node.id,
                node.type,
                node.config,
                node_input,
                context,
                self._options_for(node, state.workflow),
            )

    def _task_result(
        self, task: asyncio.Task[ExecutionResult], node: NodeDefinition
    ) -> ExecutionResult:
        error = task.exception()
        if error is None:
            return task.result()
        # CoreBlockExecutor captures block failures; this is an engine bug
        logger.error(f"Node task '{node.id}' crashed", exc_info=error)
        result = self._settled_result(node, ExecutionStatus.FAILED, None, str(error))
        result.metadata["errorType"] = type(error).__name__
        return result

    def _settle(
        self,
        state: _RunState,
        context: ExecutionContext,
        result: ExecutionResult,
        ready: deque[str],
    ) -> None:
        """Record a terminal result, report it and release the node's dependents."""
        context.set_node_result(result.node_id, result)
        state.settled += 1

        event = {
            ExecutionStatus.COMPLETED: "node_completed",
            ExecutionStatus.FAILED: "node_failed",
            ExecutionStatus.SKIPPED: "node_skipped",
        }.get(result.status, "node_cancelled")
        details: dict[str, Any] = {
            "nodeId": result.node_id,
            "status": result.status.value,
            "executionTime": result.execution_time,
        }
        if result.error:
            details["error"] = result.error
        if result.metadata.get("reason"):
            details["reason"] = result.metadata["reason"]
        context.update_progress(state.progress(), event, details, node_id=result.node_id)

        for successor in state.successors.get(result.node_id, []):
            state.remaining[successor] -= 1
            if state.remaining[successor] == 0:
                ready.append(successor)

    # ------------------------------------------------------------------
    # Node input
    # ------------------------------------------------------------------

    def _edge_active(self, edge: EdgeDefinition, output: Any) -> bool:
        if edge.port != "out":
            if not isinstance(output, dict):
                return False
            if edge.port not in (output.get("_branch"), output.get("_port")):
                return False
        if edge.condition and not self.conditions.evaluate(edge.condition, output):
            return False
        return True

    def _gather_input(
        self,
        node: NodeDefinition,
        state: _RunState,
        context: ExecutionContext,
        initial_input: Any,
    ) -> tuple[Any, bool]:
        """Merge the outputs arriving on active edges.

        Returns:
            (merged input, whether any edge was active)

        Raises:
            ValueError / ExpressionError: An edge adapter failed
        """
        edges = state.incoming[node.id]
        if not edges:
            return initial_input, True

        contributions: list[Any] = []
        for edge in edges:
            source = context.get_node_result(edge.source)
            if source is None or source.status != ExecutionStatus.COMPLETED:
                continue
            output = source.output
            if not self._edge_active(edge, output):
                continue
            if edge.adapter is not None:
                output = apply_edge_adapter(output, edge.adapter, context)
            contributions.append(output)

        if not contributions:
            return None, False
        return merge_all(contributions), True

    def _options_for(self, node: NodeDefinition, workflow: WorkflowDefinition) -> ExecuteOptions:
        return ExecuteOptions(
            timeout=node.timeout,
            retry_policy=node.retry_config or workflow.globals.retry_policy,
            input_schema=node.input_schema,
            output_schema=node.output_schema,
            schemas=workflow.schemas,
        )

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    @staticmethod
    def _settled_result(
        node: NodeDefinition,
        status: ExecutionStatus,
        input: Any,
        error: str | None,
        reason: str | None = None,
    ) -> ExecutionResult:
        now = datetime.now(UTC)
        metadata: dict[str, Any] = {"blockType": node.type}
        if reason:
            metadata["reason"] = reason
        return ExecutionResult(
            node_id=node.id,
            status=status,
            input=input,
            error=error,
            start_time=now,
            end_time=now,
            metadata=metadata,
        )

    def _mark_unfinished(self, state: _RunState, context: ExecutionContext, reason: str) -> None:
        for node in state.workflow.nodes:
            if context.get_node_result(node.id) is None:
                cancelled = self._settled_result(
                    node, ExecutionStatus.CANCELLED, None, reason, reason=reason
                )
                context.set_node_result(node.id, cancelled)

    def _collect_output(self, state: _RunState, context: ExecutionContext) -> dict[str, Any]:
        output_nodes = [node.id for node in state.workflow.nodes if is_output_type(node.type)]
        candidates = output_nodes or state.sinks
        outputs: dict[str, Any] = {}
        for node_id in candidates:
            result = context.get_node_result(node_id)
            if result is not None and result.status == ExecutionStatus.COMPLETED:
                outputs[node_id] = result.output
        return outputs

    def _assemble(
        self,
        state: _RunState,
        context: ExecutionContext,
        initial_input: Any,
        started_at: datetime,
        started: float,
        run_error: str | None,
        cancelled: bool,
        validation: ValidationResult,
    ) -> WorkflowExecutionResult:
        counts = dict.fromkeys(ExecutionStatus, 0)
        for node in state.workflow.nodes:
            result = context.get_node_result(node.id)
            if result is not None:
                counts[result.status] += 1
        completed = counts[ExecutionStatus.COMPLETED]

        if cancelled:
            status = WorkflowStatus.CANCELLED
        elif run_error is not None:
            status = WorkflowStatus.FAILED
        elif completed == state.total:
            status = WorkflowStatus.COMPLETED
        elif completed > 0:
            status = WorkflowStatus.PARTIAL
        else:
            status = WorkflowStatus.FAILED

        execution_time = round((time.perf_counter() - started) * 1000.0, 3)
        metadata = WorkflowExecutionMetadata(
            total_nodes=state.total,
            completed_nodes=completed,
            failed_nodes=counts[ExecutionStatus.FAILED],
            skipped_nodes=counts[ExecutionStatus.SKIPPED],
            cancelled_nodes=counts[ExecutionStatus.CANCELLED],
            execution_time=execution_time,
            warnings=state.warnings,
        )

        summary = metadata.model_dump(by_alias=True, exclude={"warnings"})
        context.update_progress(100, "workflow_completed", {"status": status.value, **summary})
        log = context.logger.info if status == WorkflowStatus.COMPLETED else context.logger.warning
        log(
            "Workflow execution finished",
            {"status": status.value, "executionTime": execution_time},
        )

        result = WorkflowExecutionResult(
            execution_id=context.execution_id,
            workflow_id=state.workflow.workflow_id,
            status=status,
            input=initial_input,
            output=self._collect_output(state, context),
            node_results=dict(context.node_results),
            metadata=metadata,
            error=run_error,
            validation=validation,
            start_time=started_at,
            end_time=datetime.now(UTC),
            timeline=list(context.logger.timeline_events),
        )
        if status == WorkflowStatus.FAILED and result.error is None:
            return result.model_copy(update={"error": result.first_error()})
        return result

    def _early_failure(
        self,
        context: ExecutionContext,
        workflow_id: str,
        initial_input: Any,
        error: str | None,
        started_at: datetime,
        started: float,
        validation: ValidationResult,
    ) -> WorkflowExecutionResult:
        """Failed result for a run that never started a node."""
        execution_time = round((time.perf_counter() - started) * 1000.0, 3)
        context.update_progress(
            100, "workflow_completed", {"status": WorkflowStatus.FAILED.value, "error": error}
        )
        return WorkflowExecutionResult(
            execution_id=context.execution_id,
            workflow_id=workflow_id or context.workflow_id,
            status=WorkflowStatus.FAILED,
            input=initial_input,
            output=None,
            metadata=WorkflowExecutionMetadata(execution_time=execution_time),
            error=error,
            validation=validation,
            start_time=started_at,
            end_time=datetime.now(UTC),
            timeline=list(context.logger.timeline_events),
        )


__all__ = ["NODE_PROGRESS_CEILING", "WorkflowOrchestrator"]
