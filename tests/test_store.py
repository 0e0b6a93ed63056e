"""Tests for WorkflowStore (SQLite metadata + JSON definition files)."""

from pathlib import Path
from typing import Any

import pytest
from test_utils import make_node, make_workflow

from blockflow.config import EngineConfig
from blockflow.engine.exceptions import WorkflowNotFoundError
from blockflow.engine.workflow_store import MAX_PAGE_SIZE, WorkflowStore


def _definition(workflow_id: str, name: str = "Enrich leads") -> dict[str, Any]:
    workflow = make_workflow([make_node("in", "input.static")], [], workflow_id=workflow_id)
    workflow["name"] = name
    return workflow


# =============================================================================
# Workflows
# =============================================================================


@pytest.mark.asyncio
async def test_create_and_get_workflow(store: WorkflowStore, tmp_path: Path) -> None:
    """Test that metadata goes to SQLite and the definition to a JSON file."""
    record = await store.create_workflow(
        _definition("enrich"), category="enrichment", tags=["leads", "crm"]
    )

    assert record["id"] == "enrich"
    assert record["name"] == "Enrich leads"
    assert record["tags"] == ["leads", "crm"]
    assert record["is_active"] is True
    assert record["total_executions"] == 0
    assert (tmp_path / "workflows" / "enrich.json").exists()

    fetched = await store.get_workflow("enrich")
    assert fetched is not None
    assert fetched["definition"]["workflowId"] == "enrich"
    assert fetched["definition"]["nodes"][0]["type"] == "input.static"


@pytest.mark.asyncio
async def test_get_unknown_workflow(store: WorkflowStore) -> None:
    assert await store.get_workflow("nope") is None


@pytest.mark.asyncio
async def test_create_rejects_duplicates_and_unsafe_ids(store: WorkflowStore) -> None:
    await store.create_workflow(_definition("enrich"))

    with pytest.raises(ValueError, match="already exists"):
        await store.create_workflow(_definition("enrich"))
    with pytest.raises(ValueError, match="Invalid workflowId"):
        await store.create_workflow(_definition("../escape"))


@pytest.mark.asyncio
async def test_update_workflow(store: WorkflowStore) -> None:
    """Test replacing the definition and updating metadata fields."""
    await store.create_workflow(_definition("enrich"))

    updated = await store.update_workflow(
        "enrich", _definition("enrich", name="Enrich v2"), tags=["v2"], is_active=False
    )

    assert updated["name"] == "Enrich v2"
    assert updated["tags"] == ["v2"]
    assert updated["is_active"] is False
    assert updated["definition"]["name"] == "Enrich v2"


@pytest.mark.asyncio
async def test_update_workflow_errors(store: WorkflowStore) -> None:
    await store.create_workflow(_definition("enrich"))

    with pytest.raises(WorkflowNotFoundError):
        await store.update_workflow("missing", name="x")
    with pytest.raises(ValueError, match="Cannot update workflow fields"):
        await store.update_workflow("enrich", owner="me")
    with pytest.raises(ValueError, match="does not match"):
        await store.update_workflow("enrich", _definition("other"))


@pytest.mark.asyncio
async def test_delete_workflow(store: WorkflowStore, tmp_path: Path) -> None:
    await store.create_workflow(_definition("enrich"))

    assert await store.delete_workflow("enrich")
    assert not await store.delete_workflow("enrich")
    assert not (tmp_path / "workflows" / "enrich.json").exists()


@pytest.mark.asyncio
async def test_list_workflows_filters_and_pages(store: WorkflowStore) -> None:
    """Test filtering by category, tags and active flag, plus paging."""
    await store.create_workflow(_definition("a"), category="enrichment", tags=["leads", "crm"])
    await store.create_workflow(_definition("b"), category="enrichment", tags=["leads"])
    await store.create_workflow(_definition("c"), category="reporting", is_active=False)

    assert (await store.list_workflows()).count == 3
    assert [w["id"] for w in (await store.list_workflows(tags=["leads", "crm"])).data] == ["a"]
    assert (await store.list_workflows(category="enrichment")).count == 2
    assert (await store.list_workflows(is_active=False)).data[0]["id"] == "c"

    page = await store.list_workflows(limit=2, order_by="name", order_direction="asc")
    assert len(page.data) == 2
    assert page.has_more
    assert "definition" not in page.data[0]


@pytest.mark.asyncio
async def test_list_workflows_limits(store: WorkflowStore) -> None:
    page = await store.list_workflows(limit=10_000)
    assert page.limit == MAX_PAGE_SIZE

    with pytest.raises(ValueError, match="Cannot order workflows by"):
        await store.list_workflows(order_by="id; DROP TABLE workflows")


# =============================================================================
# Executions
# =============================================================================


@pytest.mark.asyncio
async def test_execution_lifecycle_updates_counters(store: WorkflowStore) -> None:
    """Test that reaching a terminal status stamps completion and counts once."""
    await store.create_workflow(_definition("enrich"))
    execution = await store.create_execution("exec-1", "enrich", "production", input={"q": 1})

    assert execution["status"] == "running"
    assert execution["input"] == {"q": 1}
    assert execution["completed_at"] is None

    await store.update_progress("exec-1", 50)
    await store.update_execution("exec-1", status="completed", output={"ok": True})
    await store.update_execution("exec-1", status="completed")

    stored = await store.get_execution("exec-1")
    assert stored is not None
    assert stored["progress"] == 50
    assert stored["output"] == {"ok": True}
    assert stored["completed_at"] is not None

    workflow = await store.get_workflow("enrich")
    assert workflow is not None
    assert workflow["total_executions"] == 1
    assert workflow["successful_executions"] == 1
    assert workflow["last_executed_at"] == stored["completed_at"]


@pytest.mark.asyncio
async def test_update_execution_errors(store: WorkflowStore) -> None:
    await store.create_execution("exec-1", "wf", "test")

    with pytest.raises(ValueError, match="Cannot update execution fields"):
        await store.update_execution("exec-1", workflow_id="other")
    with pytest.raises(KeyError):
        await store.update_execution("missing", status="failed")


@pytest.mark.asyncio
async def test_set_execution_status_with_error(store: WorkflowStore) -> None:
    await store.create_workflow(_definition("wf"))
    await store.create_execution("exec-1", "wf", "production")
    await store.set_execution_status("exec-1", "failed", error="boom")

    stored = await store.get_execution("exec-1")
    assert stored is not None
    assert stored["status"] == "failed"
    assert stored["error"] == "boom"
    workflow = await store.get_workflow("wf")
    assert workflow is not None
    assert workflow["failed_executions"] == 1


@pytest.mark.asyncio
async def test_list_executions_and_stats(store: WorkflowStore) -> None:
    await store.create_execution("e1", "wf", "production")
    await store.create_execution("e2", "wf", "test")
    await store.create_execution("e3", "other", "production")
    await store.update_execution("e1", status="completed", execution_time=10.0)
    await store.update_execution("e2", status="failed", execution_time=30.0)

    assert (await store.list_executions(workflow_id="wf")).count == 2
    assert [e["id"] for e in (await store.list_executions(mode="test")).data] == ["e2"]
    assert (await store.list_executions(status="running")).data[0]["id"] == "e3"

    stats = await store.get_execution_stats("wf")
    assert stats["total"] == 2
    assert stats["by_status"] == {"completed": 1, "failed": 1}
    assert stats["average_execution_time"] == 20.0
    assert stats["success_rate"] == 50.0


@pytest.mark.asyncio
async def test_delete_old_executions_keeps_recent(store: WorkflowStore) -> None:
    await store.create_execution("e1", "wf", "production")

    assert await store.delete_old_executions(30) == 0
    assert await store.get_execution("e1") is not None


# =============================================================================
# Block executions and timeline
# =============================================================================


@pytest.mark.asyncio
async def test_block_executions_upsert(store: WorkflowStore) -> None:
    """Test that a second create for the same node updates the row."""
    await store.create_execution("exec-1", "wf", "production")
    await store.create_block_execution("exec-1", "fetch", "api.http", input={"url": "x"})
    await store.create_block_execution("exec-1", "fetch", "api.http", status="completed")
    await store.update_block_execution("exec-1", "fetch", output={"ok": True}, retry_count=2)

    rows = await store.get_block_executions("exec-1")
    assert len(rows) == 1
    assert rows[0]["status"] == "completed"
    assert rows[0]["input"] == {"url": "x"}
    assert rows[0]["output"] == {"ok": True}
    assert rows[0]["retry_count"] == 2

    with pytest.raises(ValueError, match="Cannot update block execution fields"):
        await store.update_block_execution("exec-1", "fetch", node_id="other")


@pytest.mark.asyncio
async def test_timeline_events_in_order(store: WorkflowStore) -> None:
    await store.create_execution("exec-1", "wf", "production")
    await store.add_timeline_event("exec-1", "workflow_started", percentage=0)
    await store.add_timeline_events(
        "exec-1",
        [
            {"event": "node_started", "node_id": "a", "percentage": 0},
            {"event": "node_completed", "node_id": "a", "percentage": 99, "details": {"x": 1}},
        ],
    )

    events = await store.get_timeline_events("exec-1")
    assert [e["event"] for e in events] == ["workflow_started", "node_started", "node_completed"]
    assert events[0]["details"] == {}
    node_events = await store.get_timeline_events("exec-1", node_id="a")
    assert node_events[-1]["details"] == {"x": 1}


@pytest.mark.asyncio
async def test_from_config_uses_state_directory(tmp_path: Path) -> None:
    store = WorkflowStore.from_config(EngineConfig(state_dir=tmp_path / "state"))
    await store.init()

    assert store.db_path == tmp_path / "state" / "state.db"
    assert store.db_path.exists()
