"""
Execution tracking: persists a run's progress events and results.

ExecutionRecorder subscribes to the run's ProgressChannel, writes timeline
events and block-execution rows as they happen, and stores the terminal
status, output and counters in ``finish``. Every payload passes through the
run's SecretRedactor before it reaches the store.

Example:
    recorder = ExecutionRecorder(store)
    await recorder.start(context, workflow, initial_input)
    result = await orchestrator.execute(workflow, context, initial_input)
    await recorder.finish(result)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .execution_context import ExecutionContext
from .progress import ProgressChannel, ProgressEvent
from .redaction import SecretRedactor
from .schema import WorkflowDefinition, WorkflowExecutionResult
from .workflow_store import WorkflowStore

logger = logging.getLogger(__name__)


class ExecutionRecorder:
    """Writes one workflow run to a WorkflowStore."""

    def __init__(self, store: WorkflowStore):
        self.store = store
        self.execution_id: str | None = None
        self._redactor = SecretRedactor()
        self._consumer: asyncio.Task[None] | None = None

    async def start(
        self,
        context: ExecutionContext,
        workflow: WorkflowDefinition | dict[str, Any],
        initial_input: Any = None,
    ) -> str:
        """Create the execution row and start following the run's progress.

        A ProgressChannel is attached to the context when it has none.

        Returns:
            The execution id
        """
        if isinstance(workflow, WorkflowDefinition):
            workflow_id = workflow.workflow_id
            total_nodes = len(workflow.nodes)
        else:
            workflow_id = str(workflow.get("workflowId") or context.workflow_id)
            nodes = workflow.get("nodes")
            total_nodes = len(nodes) if isinstance(nodes, list) else 0

        self._redactor = context.logger.redactor
        self.execution_id = context.execution_id
        await self.store.create_execution(
            execution_id=context.execution_id,
            workflow_id=workflow_id,
            mode=context.mode.value,
            input=self._redactor.redact(initial_input),
            variables=self._redactor.redact(context.variables),
            total_nodes=total_nodes,
        )

        if context.progress is None:
            context.progress = ProgressChannel()
        events = context.progress.subscribe(replay=True)
        self._consumer = asyncio.create_task(self._consume(events))
        # Let the subscriber attach before the orchestrator publishes
        await asyncio.sleep(0)
        return context.execution_id

    async def _consume(self, events: Any) -> None:
        async for event in events:
            try:
                await self._record_event(event)
            except Exception:
                # Tracking must not break the run it observes
                logger.exception(f"Failed to record progress event '{event.event}'")

    async def _record_event(self, event: ProgressEvent) -> None:
        execution_id = self.execution_id
        if execution_id is None:
            return
        details = self._redactor.redact(event.details)
        await self.store.add_timeline_event(
            execution_id,
            event.event,
            details=details,
            percentage=event.percentage,
            node_id=event.node_id,
            timestamp=event.timestamp,
        )
        await self.store.update_progress(execution_id, event.percentage)
        if event.event == "node_started" and event.node_id:
            await self.store.create_block_execution(
                execution_id,
                event.node_id,
                str(details.get("blockType", "")),
                status="running",
                started_at=event.timestamp,
            )

    async def finish(self, result: WorkflowExecutionResult) -> None:
        """Store the terminal status, output, per-node results and counters."""
        if self.execution_id is None:
            raise RuntimeError("ExecutionRecorder.finish() called before start()")

        if self._consumer is not None:
            await self._consumer
            self._consumer = None

        redact = self._redactor.redact
        for node_id, node_result in result.node_results.items():
            await self.store.create_block_execution(
                self.execution_id,
                node_id,
                str(node_result.metadata.get("blockType", "")),
                status=node_result.status.value,
                started_at=node_result.start_time,
            )
            await self.store.update_block_execution(
                self.execution_id,
                node_id,
                status=node_result.status.value,
                input=redact(node_result.input),
                output=redact(node_result.output),
                error=redact(node_result.error),
                execution_time=node_result.execution_time,
                retry_count=node_result.retry_count,
                completed_at=node_result.end_time,
                metadata=redact(node_result.metadata),
            )

        metadata = result.metadata
        await self.store.update_execution(
            self.execution_id,
            status=result.status.value,
            output=redact(result.output),
            error=redact(result.error),
            execution_time=metadata.execution_time,
            total_nodes=metadata.total_nodes,
            completed_nodes=metadata.completed_nodes,
            failed_nodes=metadata.failed_nodes,
            skipped_nodes=metadata.skipped_nodes,
            metadata=redact(metadata.model_dump(by_alias=True)),
        )
        logger.debug(f"Execution {self.execution_id} recorded as {result.status.value}")


__all__ = ["ExecutionRecorder"]
