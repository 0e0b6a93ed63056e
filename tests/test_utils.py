"""Shared test utilities for the blockflow test suite.

Provides:
- Test block types (failing, flaky, config echo, live-only)
- Workflow definition builders
- A fake clock and recording sleep for retry/rate-limit tests
"""

from typing import Any, ClassVar

from blockflow.engine.execution_context import ExecutionContext
from blockflow.engine.executor_base import BlockExecutor

# =============================================================================
# Test blocks
# =============================================================================


class FailingBlock(BlockExecutor):
    """Always raises a non-retryable error."""

    type_name: ClassVar[str] = "test.fail"
    name: ClassVar[str] = "Always Fails"
    category: ClassVar[str] = "test"
    supports_mock: ClassVar[bool] = True

    async def execute(self, config: dict[str, Any], input: Any, context: ExecutionContext) -> Any:
        raise ValueError(config.get("message", "boom"))


class FlakyBlock(BlockExecutor):
    """Fails with a transient error until ``config.failures`` calls have been made.

    Call counts are kept per ``config.key`` on the class, since the registry
    creates a fresh instance for every attempt.
    """

    type_name: ClassVar[str] = "test.flaky"
    name: ClassVar[str] = "Flaky"
    category: ClassVar[str] = "test"
    supports_mock: ClassVar[bool] = True
    calls: ClassVar[dict[str, int]] = {}

    async def execute(self, config: dict[str, Any], input: Any, context: ExecutionContext) -> Any:
        key = config.get("key", "default")
        FlakyBlock.calls[key] = FlakyBlock.calls.get(key, 0) + 1
        if FlakyBlock.calls[key] <= config.get("failures", 0):
            raise ConnectionError("network connection reset")
        return {"attempt": FlakyBlock.calls[key]}


class EchoConfigBlock(BlockExecutor):
    """Returns its (already interpolated) config."""

    type_name: ClassVar[str] = "test.echoConfig"
    name: ClassVar[str] = "Echo Config"
    category: ClassVar[str] = "test"
    supports_mock: ClassVar[bool] = True

    async def execute(self, config: dict[str, Any], input: Any, context: ExecutionContext) -> Any:
        return config


class LiveOnlyBlock(BlockExecutor):
    """A block without mock support."""

    type_name: ClassVar[str] = "test.liveOnly"
    name: ClassVar[str] = "Live Only"
    category: ClassVar[str] = "test"

    async def execute(self, config: dict[str, Any], input: Any, context: ExecutionContext) -> Any:
        return {"live": True}


TEST_BLOCKS = (FailingBlock, FlakyBlock, EchoConfigBlock, LiveOnlyBlock)


# =============================================================================
# Workflow builders
# =============================================================================


def make_node(node_id: str, block_type: str, **extra: Any) -> dict[str, Any]:
    node: dict[str, Any] = {"id": node_id, "type": block_type, "name": node_id, "config": {}}
    node.update(extra)
    return node


def make_edge(source: str, target: str, **extra: Any) -> dict[str, Any]:
    edge: dict[str, Any] = {"id": f"{source}->{target}", "source": source, "target": target}
    edge.update(extra)
    return edge


def make_workflow(
    nodes: list[dict[str, Any]],
    edges: list[dict[str, Any]],
    workflow_id: str = "wf-test",
    **globals_: Any,
) -> dict[str, Any]:
    return {
        "workflowId": workflow_id,
        "name": "Test workflow",
        "version": 1,
        "nodes": nodes,
        "edges": edges,
        "globals": {"timeout": 10000, "retryPolicy": {"maxRetries": 0}, **globals_},
    }


# =============================================================================
# Time
# =============================================================================


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep that returns immediately and remembers every delay.

    Optionally advances a FakeClock by the requested delay.
    """

    def __init__(self, clock: FakeClock | None = None):
        self.delays: list[float] = []
        self.clock = clock

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)

    @property
    def total(self) -> float:
        return sum(self.delays)
