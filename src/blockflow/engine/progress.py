"""
Progress channel: the sink a workflow run publishes progress events to.

The orchestrator publishes; callers subscribe. Nothing callable lives on the
ExecutionContext itself, only a reference to the channel.

Guarantees:
    - percentage is clamped to [0, 100] and never decreases across a run
    - events are delivered to every subscriber in publish order
    - subscribers attached late still see events published after they attach;
      ``history`` keeps everything

Example:
    channel = ProgressChannel()

    async def watch() -> None:
        async for event in channel.subscribe():
            print(f"{event.percentage:5.1f}% {event.event}")

    watcher = asyncio.create_task(watch())
    result = await orchestrator.execute(workflow, context, initial_input)
    await watcher  # channel is closed by the orchestrator at the end of the run
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

ProgressListener = Callable[["ProgressEvent"], None]


class ProgressEvent(BaseModel):
    """One timeline entry: ``(percentage, {timestamp, event, details})``."""

    model_config = ConfigDict(populate_by_name=True)

    percentage: float
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    event: str
    details: dict[str, Any] = Field(default_factory=dict)
    node_id: str | None = Field(default=None, alias="nodeId")
    execution_id: str | None = Field(default=None, alias="executionId")


class ProgressChannel:
    """In-process event channel with async subscribers and sync listeners."""

    def __init__(self) -> None:
        self._percentage = 0.0
        self._subscribers: list[asyncio.Queue[ProgressEvent | None]] = []
        self._listeners: list[ProgressListener] = []
        self._closed = False
        self.history: list[ProgressEvent] = []

    @property
    def percentage(self) -> float:
        return self._percentage

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(
        self,
        percentage: float,
        event: str,
        details: dict[str, Any] | None = None,
        *,
        node_id: str | None = None,
        execution_id: str | None = None,
    ) -> ProgressEvent:
        """Publish an event. A lower percentage than the last one is raised to it."""
        if self._closed:
            raise RuntimeError("Cannot publish on a closed progress channel")

        clamped = min(100.0, max(0.0, float(percentage)))
        self._percentage = max(self._percentage, clamped)

        progress_event = ProgressEvent(
            percentage=self._percentage,
            event=event,
            details=details or {},
            node_id=node_id,
            execution_id=execution_id,
        )
        self.history.append(progress_event)

        for queue in self._subscribers:
            queue.put_nowait(progress_event)
        for listener in list(self._listeners):
            try:
                listener(progress_event)
            except Exception:
                # A broken UI/log listener must not stop the run
                logger.exception(f"Progress listener failed on event '{event}'")

        return progress_event

    def add_listener(self, listener: ProgressListener) -> None:
        """Register a synchronous callback invoked on every publish."""
        self._listeners.append(listener)

    def remove_listener(self, listener: ProgressListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def subscribe(self, replay: bool = False) -> AsyncIterator[ProgressEvent]:
        """Yield events until the channel is closed.

        Args:
            replay: First yield every event already in ``history``
        """
        queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()
        if replay:
            for past_event in self.history:
                queue.put_nowait(past_event)
        if self._closed:
            queue.put_nowait(None)
        else:
            self._subscribers.append(queue)
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield item
        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    def close(self) -> None:
        """End every subscription. Idempotent."""
        if self._closed:
            return
        self._closed = True
        for queue in self._subscribers:
            queue.put_nowait(None)
