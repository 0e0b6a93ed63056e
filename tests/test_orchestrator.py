"""End-to-end tests for WorkflowOrchestrator.

Workflows are built from the built-in blocks plus the test blocks in
test_utils; nothing here calls out to the network.
"""

import asyncio
from typing import Any, ClassVar

import pytest
from pydantic import ValidationError
from test_utils import RecordingSleep, make_edge, make_node, make_workflow

from blockflow.config import EngineConfig
from blockflow.engine.block_executor import CoreBlockExecutor
from blockflow.engine.block_status import ExecutionStatus, WorkflowStatus
from blockflow.engine.execution_context import ContextFactory, ExecutionContext
from blockflow.engine.executor_base import BlockExecutor, BlockRegistry
from blockflow.engine.orchestrator import WorkflowOrchestrator
from blockflow.engine.progress import ProgressChannel
from blockflow.engine.schema import WorkflowExecutionResult


class SlowBlock(BlockExecutor):
    type_name: ClassVar[str] = "test.slow"
    supports_mock: ClassVar[bool] = True

    async def execute(self, config: dict[str, Any], input: Any, context: ExecutionContext) -> Any:
        await asyncio.sleep(config.get("seconds", 5))
        return {"slept": True}


class CancellingBlock(BlockExecutor):
    """Asks the run to stop, then completes normally."""

    type_name: ClassVar[str] = "test.cancel"
    supports_mock: ClassVar[bool] = True

    async def execute(self, config: dict[str, Any], input: Any, context: ExecutionContext) -> Any:
        context.request_cancel()
        return input


class ConcurrencyBlock(BlockExecutor):
    """Records how many instances run at the same time."""

    type_name: ClassVar[str] = "test.concurrency"
    supports_mock: ClassVar[bool] = True
    active: ClassVar[int] = 0
    peak: ClassVar[int] = 0

    async def execute(self, config: dict[str, Any], input: Any, context: ExecutionContext) -> Any:
        ConcurrencyBlock.active += 1
        ConcurrencyBlock.peak = max(ConcurrencyBlock.peak, ConcurrencyBlock.active)
        await asyncio.sleep(0.01)
        ConcurrencyBlock.active -= 1
        return config


class CountingBlock(BlockExecutor):
    type_name: ClassVar[str] = "test.counting"
    supports_mock: ClassVar[bool] = True
    calls: ClassVar[int] = 0

    async def execute(self, config: dict[str, Any], input: Any, context: ExecutionContext) -> Any:
        CountingBlock.calls += 1
        return {"seen": input}


@pytest.fixture
def orchestrator(registry: BlockRegistry, engine_config: EngineConfig) -> WorkflowOrchestrator:
    for block_class in (SlowBlock, CancellingBlock, ConcurrencyBlock, CountingBlock):
        registry.register_block(block_class)
    ConcurrencyBlock.active = 0
    ConcurrencyBlock.peak = 0
    CountingBlock.calls = 0
    return WorkflowOrchestrator(registry, config=engine_config)


# =============================================================================
# Happy path
# =============================================================================


@pytest.mark.asyncio
async def test_linear_workflow_in_test_mode(
    orchestrator: WorkflowOrchestrator,
    linear_workflow: dict[str, Any],
    test_context: ExecutionContext,
) -> None:
    """Test static input -> field mapping -> logger with the run input."""
    data = {"message": "Hello, World!"}
    result = await orchestrator.execute(linear_workflow, test_context, data)

    assert result.status == WorkflowStatus.COMPLETED
    assert result.output == {"log": data}
    assert result.workflow_id == "linear"
    assert result.execution_id == test_context.execution_id
    assert result.metadata.total_nodes == 3
    assert result.metadata.completed_nodes == 3
    assert result.metadata.failed_nodes == 0
    assert result.error is None
    assert result.validation is not None and result.validation.valid
    assert all(
        node.status == ExecutionStatus.COMPLETED for node in result.node_results.values()
    )


@pytest.mark.asyncio
async def test_run_input_is_available_as_variable(
    orchestrator: WorkflowOrchestrator, test_context: ExecutionContext
) -> None:
    """Test that interpolation can read the initial input."""
    workflow = make_workflow(
        [make_node("echo", "test.echoConfig", config={"greeting": "Hi {{variables._input.name}}"})],
        [],
    )
    result = await orchestrator.execute(workflow, test_context, {"name": "Ada"})

    assert result.output == {"echo": {"greeting": "Hi Ada"}}


@pytest.mark.asyncio
async def test_diamond_merges_both_branches(
    orchestrator: WorkflowOrchestrator, test_context: ExecutionContext
) -> None:
    """Test that a join node sees the deep merge of its upstream outputs."""
    workflow = make_workflow(
        [
            make_node("in", "input.static", config={"data": {"id": 7}}),
            make_node("left", "test.echoConfig", config={"meta": {"left": 1}}),
            make_node("right", "test.echoConfig", config={"meta": {"right": 2}}),
            make_node("join", "transform.passThrough"),
        ],
        [
            make_edge("in", "left"),
            make_edge("in", "right"),
            make_edge("left", "join"),
            make_edge("right", "join"),
        ],
    )
    result = await orchestrator.execute(workflow, test_context)

    assert result.status == WorkflowStatus.COMPLETED
    assert result.output == {"join": {"meta": {"left": 1, "right": 2}}}


@pytest.mark.asyncio
async def test_sinks_are_output_without_output_blocks(
    orchestrator: WorkflowOrchestrator, test_context: ExecutionContext
) -> None:
    workflow = make_workflow(
        [
            make_node("a", "test.echoConfig", config={"a": 1}),
            make_node("b", "test.echoConfig", config={"b": 2}),
        ],
        [],
    )
    result = await orchestrator.execute(workflow, test_context)

    assert result.output == {"a": {"a": 1}, "b": {"b": 2}}


@pytest.mark.asyncio
async def test_edge_adapter_reshapes_data(
    orchestrator: WorkflowOrchestrator, test_context: ExecutionContext
) -> None:
    workflow = make_workflow(
        [
            make_node("src", "test.echoConfig", config={"user": {"name": "Ada"}}),
            make_node("dst", "transform.passThrough"),
        ],
        [make_edge("src", "dst", adapter={"type": "map", "mapping": {"who": "user.name"}})],
    )
    result = await orchestrator.execute(workflow, test_context)

    assert result.output == {"dst": {"who": "Ada"}}


@pytest.mark.asyncio
async def test_calculate_formulas_see_each_record(
    orchestrator: WorkflowOrchestrator, test_context: ExecutionContext
) -> None:
    """Test that calculate templates are resolved against the record, not the node input."""
    calculate = {
        "type": "calculate",
        "mapping": {"label": "{{name}} x{{quantity}}", "unit": "{{price}}", "total": "price * quantity"},
    }
    workflow = make_workflow(
        [
            make_node("in", "input.static"),
            make_node("calc", "transform.fieldMapping", config={"operations": [calculate]}),
        ],
        [make_edge("in", "calc")],
    )
    result = await orchestrator.execute(
        workflow, test_context, [{"name": "widget", "quantity": 4, "price": 10}]
    )

    assert result.status == WorkflowStatus.COMPLETED
    assert result.output == {
        "calc": [
            {
                "name": "widget",
                "quantity": 4,
                "price": 10,
                "label": "widget x4",
                "unit": 10,
                "total": 40,
            }
        ]
    }


# =============================================================================
# Routing
# =============================================================================


def _branch_workflow() -> dict[str, Any]:
    return make_workflow(
        [
            make_node("in", "input.static"),
            make_node(
                "check",
                "branch",
                config={
                    "condition": {"field": "score", "operator": "greater_than", "value": 50},
                    "branches": {"true": "high", "false": "low"},
                },
            ),
            make_node("high", "test.echoConfig", config={"tier": "high"}),
            make_node("low", "test.echoConfig", config={"tier": "low"}),
        ],
        [
            make_edge("in", "check"),
            make_edge("check", "high", sourcePort="true"),
            make_edge("check", "low", sourcePort="false"),
        ],
    )


@pytest.mark.asyncio
@pytest.mark.parametrize(("score", "taken", "skipped"), [(80, "high", "low"), (20, "low", "high")])
async def test_branch_routes_by_source_port(
    orchestrator: WorkflowOrchestrator,
    test_context: ExecutionContext,
    score: int,
    taken: str,
    skipped: str,
) -> None:
    """Test that only the edge matching the branch outcome is followed."""
    result = await orchestrator.execute(_branch_workflow(), test_context, {"score": score})

    assert result.node_results[taken].status == ExecutionStatus.COMPLETED
    assert result.node_results[skipped].status == ExecutionStatus.SKIPPED
    assert result.node_results[skipped].metadata["reason"] == "No active upstream input"
    assert result.status == WorkflowStatus.PARTIAL
    assert result.metadata.skipped_nodes == 1


@pytest.mark.asyncio
async def test_edge_condition_gates_target(
    orchestrator: WorkflowOrchestrator,
    test_context: ExecutionContext,
    context_factory: ContextFactory,
) -> None:
    workflow = make_workflow(
        [
            make_node("in", "input.static"),
            make_node("vip", "transform.passThrough"),
        ],
        [make_edge("in", "vip", condition={"field": "tier", "operator": "equals", "value": "gold"})],
    )

    gold = await orchestrator.execute(workflow, test_context, {"tier": "gold"})
    silver = await orchestrator.execute(
        workflow, context_factory.create_test_context("wf-test"), {"tier": "silver"}
    )

    assert gold.node_results["vip"].status == ExecutionStatus.COMPLETED
    assert silver.node_results["vip"].status == ExecutionStatus.SKIPPED


# =============================================================================
# Failures
# =============================================================================


@pytest.mark.asyncio
async def test_failure_is_isolated_to_its_branch(
    orchestrator: WorkflowOrchestrator, test_context: ExecutionContext
) -> None:
    """Test continue mode: failed node, skipped dependent, completed sibling."""
    workflow = make_workflow(
        [
            make_node("in", "input.static", config={"data": {"x": 1}}),
            make_node("bad", "test.fail", config={"message": "enrichment source down"}),
            make_node("after_bad", "transform.passThrough"),
            make_node("good", "transform.passThrough"),
        ],
        [
            make_edge("in", "bad"),
            make_edge("bad", "after_bad"),
            make_edge("in", "good"),
        ],
    )
    result = await orchestrator.execute(workflow, test_context)

    assert result.status == WorkflowStatus.PARTIAL
    assert result.metadata.failed_nodes == 1
    assert result.metadata.skipped_nodes == 1
    assert result.node_results["bad"].error == "enrichment source down"
    assert result.node_results["after_bad"].status == ExecutionStatus.SKIPPED
    assert result.node_results["good"].status == ExecutionStatus.COMPLETED
    assert result.output == {"good": {"x": 1}}


@pytest.mark.asyncio
async def test_join_with_one_failed_upstream_gets_healthy_data(
    orchestrator: WorkflowOrchestrator, test_context: ExecutionContext
) -> None:
    """Test that a join runs with only the successful branch's output."""
    workflow = make_workflow(
        [
            make_node("ok", "test.echoConfig", config={"ok": True}),
            make_node("bad", "test.fail"),
            make_node("join", "transform.passThrough"),
        ],
        [make_edge("ok", "join"), make_edge("bad", "join")],
    )
    result = await orchestrator.execute(workflow, test_context)

    assert result.node_results["join"].status == ExecutionStatus.COMPLETED
    assert result.node_results["join"].output == {"ok": True}
    assert result.status == WorkflowStatus.PARTIAL


@pytest.mark.asyncio
async def test_all_nodes_failing_fails_the_run(
    orchestrator: WorkflowOrchestrator, test_context: ExecutionContext
) -> None:
    workflow = make_workflow([make_node("bad", "test.fail")], [])
    result = await orchestrator.execute(workflow, test_context)

    assert result.status == WorkflowStatus.FAILED
    assert result.error == "bad: boom"


@pytest.mark.asyncio
async def test_stop_mode_aborts_remaining_nodes(
    orchestrator: WorkflowOrchestrator, test_context: ExecutionContext
) -> None:
    """Test errorHandling: stop."""
    workflow = make_workflow(
        [
            make_node("in", "input.static", config={"data": {}}),
            make_node("bad", "test.fail"),
            make_node("after", "transform.passThrough"),
        ],
        [make_edge("in", "bad"), make_edge("bad", "after")],
        errorHandling="stop",
    )
    result = await orchestrator.execute(workflow, test_context)

    assert result.status == WorkflowStatus.FAILED
    assert result.error == "Node 'bad' failed: boom"
    assert result.node_results["after"].status == ExecutionStatus.CANCELLED
    assert result.metadata.cancelled_nodes == 1


@pytest.mark.asyncio
async def test_edge_adapter_failure_fails_target(
    orchestrator: WorkflowOrchestrator, test_context: ExecutionContext
) -> None:
    workflow = make_workflow(
        [
            make_node("src", "test.echoConfig", config={"items": [1]}),
            make_node("dst", "transform.passThrough"),
        ],
        [make_edge("src", "dst", adapter={"type": "function", "function": "output.items[3]"})],
    )
    result = await orchestrator.execute(workflow, test_context)

    dst = result.node_results["dst"]
    assert dst.status == ExecutionStatus.FAILED
    assert dst.error is not None and dst.error.startswith("Edge adapter failed:")
    assert result.status == WorkflowStatus.PARTIAL


@pytest.mark.asyncio
async def test_retries_with_injected_sleep(
    registry: BlockRegistry, engine_config: EngineConfig, test_context: ExecutionContext
) -> None:
    """Test node retryConfig overriding the global policy."""
    sleep = RecordingSleep()
    orchestrator = WorkflowOrchestrator(
        registry,
        executor=CoreBlockExecutor(registry, config=engine_config, sleep=sleep),
        config=engine_config,
    )
    workflow = make_workflow(
        [
            make_node(
                "flaky",
                "test.flaky",
                config={"key": "orchestrated", "failures": 2},
                retryConfig={"maxRetries": 3, "initialDelay": 100, "backoffMultiplier": 2},
            )
        ],
        [],
    )
    result = await orchestrator.execute(workflow, test_context)

    assert result.status == WorkflowStatus.COMPLETED
    assert result.node_results["flaky"].retry_count == 2
    assert result.output == {"flaky": {"attempt": 3}}
    assert sleep.delays == pytest.approx([0.1, 0.2])


# =============================================================================
# Early failures
# =============================================================================


@pytest.mark.asyncio
async def test_invalid_workflow_fails_before_running(
    orchestrator: WorkflowOrchestrator, test_context: ExecutionContext
) -> None:
    """Test that a cycle is reported as a validation failure."""
    workflow = make_workflow(
        [make_node("a", "test.echoConfig"), make_node("b", "test.echoConfig")],
        [make_edge("a", "b"), make_edge("b", "a")],
    )
    result = await orchestrator.execute(workflow, test_context)

    assert result.status == WorkflowStatus.FAILED
    assert result.error is not None
    assert result.error.startswith("Workflow validation failed")
    assert result.validation is not None and not result.validation.valid
    assert result.node_results == {}


@pytest.mark.asyncio
async def test_live_only_block_warns_in_test_mode(
    orchestrator: WorkflowOrchestrator, test_context: ExecutionContext
) -> None:
    workflow = make_workflow([make_node("live", "test.liveOnly")], [])
    result = await orchestrator.execute(workflow, test_context)

    assert result.status == WorkflowStatus.COMPLETED
    assert any("test.liveOnly" in warning for warning in result.metadata.warnings)


@pytest.mark.asyncio
async def test_strict_mock_rejects_live_only_block(
    registry: BlockRegistry, engine_config: EngineConfig, test_context: ExecutionContext
) -> None:
    """Test that strict mock mode fails the run before any node runs."""
    orchestrator = WorkflowOrchestrator(registry, config=engine_config, strict_mock=True)
    workflow = make_workflow([make_node("live", "test.liveOnly")], [])
    result = await orchestrator.execute(workflow, test_context)

    assert result.status == WorkflowStatus.FAILED
    assert result.error is not None and "test.liveOnly" in result.error
    assert result.node_results == {}


@pytest.mark.asyncio
async def test_live_only_block_runs_in_production(
    orchestrator: WorkflowOrchestrator, production_context: ExecutionContext
) -> None:
    workflow = make_workflow([make_node("live", "test.liveOnly")], [])
    result = await orchestrator.execute(workflow, production_context)

    assert not any("test.liveOnly" in warning for warning in result.metadata.warnings)
    assert result.output == {"live": {"live": True}}


# =============================================================================
# Time limits and cancellation
# =============================================================================


@pytest.mark.asyncio
async def test_workflow_timeout_cancels_running_nodes(
    orchestrator: WorkflowOrchestrator, test_context: ExecutionContext
) -> None:
    workflow = make_workflow(
        [make_node("slow", "test.slow", config={"seconds": 5})],
        [],
        timeout=50,
    )
    result = await orchestrator.execute(workflow, test_context)

    assert result.status == WorkflowStatus.FAILED
    assert result.error == "Workflow timeout after 50ms"
    assert result.node_results["slow"].status == ExecutionStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancellation_between_nodes(
    orchestrator: WorkflowOrchestrator, test_context: ExecutionContext
) -> None:
    """Test that a cancel request stops scheduling further nodes."""
    workflow = make_workflow(
        [
            make_node("in", "input.static", config={"data": {}}),
            make_node("stop", "test.cancel"),
            make_node("never", "transform.passThrough"),
        ],
        [make_edge("in", "stop"), make_edge("stop", "never")],
    )
    result = await orchestrator.execute(workflow, test_context)

    assert result.status == WorkflowStatus.CANCELLED
    assert result.node_results["stop"].status == ExecutionStatus.COMPLETED
    assert result.node_results["never"].status == ExecutionStatus.CANCELLED


@pytest.mark.asyncio
async def test_max_parallel_nodes(
    orchestrator: WorkflowOrchestrator,
    test_context: ExecutionContext,
    context_factory: ContextFactory,
) -> None:
    """Test that globals.maxParallelNodes bounds concurrency."""
    nodes = [make_node(f"n{i}", "test.concurrency", config={"i": i}) for i in range(4)]

    serial = await orchestrator.execute(make_workflow(nodes, [], maxParallelNodes=1), test_context)
    assert serial.status == WorkflowStatus.COMPLETED
    assert ConcurrencyBlock.peak == 1

    ConcurrencyBlock.peak = 0
    await orchestrator.execute(
        make_workflow(nodes, [], maxParallelNodes=4), context_factory.create_test_context("wf")
    )
    assert ConcurrencyBlock.peak > 1


# =============================================================================
# Progress and caching
# =============================================================================


@pytest.mark.asyncio
async def test_progress_is_monotonic_and_complete(
    orchestrator: WorkflowOrchestrator,
    linear_workflow: dict[str, Any],
    context_factory: ContextFactory,
) -> None:
    channel = ProgressChannel()
    context = context_factory.create_test_context("linear", progress=channel)

    watched: list[str] = []

    async def watch() -> None:
        async for event in channel.subscribe():
            watched.append(event.event)

    watcher = asyncio.create_task(watch())
    await asyncio.sleep(0)
    await orchestrator.execute(linear_workflow, context, {"message": "hi"})
    await asyncio.wait_for(watcher, 1)

    percentages = [event.percentage for event in channel.history]
    assert percentages == sorted(percentages)
    assert percentages[0] == 0
    assert percentages[-1] == 100
    assert channel.history[0].event == "workflow_started"
    assert channel.history[-1].event == "workflow_completed"
    assert watched.count("node_completed") == 3
    assert channel.closed


@pytest.mark.asyncio
async def test_skip_is_reported_on_progress(
    orchestrator: WorkflowOrchestrator, context_factory: ContextFactory
) -> None:
    channel = ProgressChannel()
    context = context_factory.create_test_context("wf-test", progress=channel)
    await orchestrator.execute(_branch_workflow(), context, {"score": 80})

    skipped = [event for event in channel.history if event.event == "node_skipped"]
    assert len(skipped) == 1
    assert skipped[0].node_id == "low"
    assert skipped[0].details["reason"] == "No active upstream input"


@pytest.mark.asyncio
async def test_production_runs_reuse_cached_results(
    orchestrator: WorkflowOrchestrator, context_factory: ContextFactory
) -> None:
    """Test that identical node executions hit the executor's cache."""
    workflow = make_workflow([make_node("count", "test.counting")], [])

    first = await orchestrator.execute(workflow, context_factory.create("wf-test"), {"q": 1})
    second = await orchestrator.execute(workflow, context_factory.create("wf-test"), {"q": 1})
    third = await orchestrator.execute(workflow, context_factory.create("wf-test"), {"q": 2})

    assert CountingBlock.calls == 2
    assert not first.node_results["count"].cache_hit
    assert second.node_results["count"].cache_hit
    assert second.output == first.output
    assert not third.node_results["count"].cache_hit


@pytest.mark.asyncio
async def test_test_mode_never_caches(
    orchestrator: WorkflowOrchestrator, context_factory: ContextFactory
) -> None:
    workflow = make_workflow([make_node("count", "test.counting")], [])

    for _ in range(2):
        await orchestrator.execute(workflow, context_factory.create_test_context("wf-test"), {})

    assert CountingBlock.calls == 2


def test_result_is_immutable() -> None:
    """Test that the run summary cannot be modified after assembly."""
    result = WorkflowExecutionResult(
        execution_id="exec-1", workflow_id="wf", status=WorkflowStatus.COMPLETED
    )
    with pytest.raises(ValidationError):
        result.status = WorkflowStatus.FAILED  # type: ignore[misc]
