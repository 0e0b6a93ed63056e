"""Shared test configuration for blockflow tests.

Provides:
- An EngineConfig whose state directory lives under tmp_path
- A block registry with the built-in blocks plus the test blocks
- Execution contexts for test and production mode
- A WorkflowStore on a temporary SQLite database
- A local echo HTTP server (pytest-httpserver)
"""

import json
from collections.abc import AsyncIterator, Iterator
from pathlib import Path
from typing import Any

import pytest
from pytest_httpserver import HTTPServer
from test_utils import TEST_BLOCKS, FlakyBlock, make_edge, make_node, make_workflow
from werkzeug.wrappers import Request, Response

from blockflow.config import EngineConfig
from blockflow.engine.execution_context import ContextFactory, ExecutionContext
from blockflow.engine.executor_base import BlockRegistry, create_default_registry
from blockflow.engine.executors_http import HttpRequestBlock
from blockflow.engine.workflow_store import WorkflowStore


@pytest.fixture(autouse=True)
def reset_shared_state() -> Iterator[None]:
    """Forget flaky-block counters and shared HTTP guards between tests."""
    FlakyBlock.calls.clear()
    HttpRequestBlock.reset_guards()
    yield
    FlakyBlock.calls.clear()
    HttpRequestBlock.reset_guards()


@pytest.fixture
def engine_config(tmp_path: Path) -> EngineConfig:
    """Engine config isolated from the real environment and home directory."""
    return EngineConfig(state_dir=tmp_path / "state", env={"REGION": "eu-west-1"})


@pytest.fixture
def registry() -> BlockRegistry:
    """Built-in blocks plus the test blocks."""
    block_registry = create_default_registry()
    for block_class in TEST_BLOCKS:
        block_registry.register_block(block_class)
    return block_registry


@pytest.fixture
def context_factory(engine_config: EngineConfig) -> ContextFactory:
    return ContextFactory(engine_config)


@pytest.fixture
def test_context(context_factory: ContextFactory) -> ExecutionContext:
    """Context in test mode (cache disabled) with one secret."""
    return context_factory.create_test_context("wf-test", secrets={"API_KEY": "sk-secret-value"})


@pytest.fixture
def production_context(context_factory: ContextFactory) -> ExecutionContext:
    return context_factory.create("wf-test", variables={"region": "eu"})


@pytest.fixture
async def store(tmp_path: Path) -> AsyncIterator[WorkflowStore]:
    """Initialized store on a temporary database."""
    workflow_store = WorkflowStore(tmp_path / "state.db", tmp_path / "workflows")
    await workflow_store.init()
    yield workflow_store


@pytest.fixture
def linear_workflow() -> dict[str, Any]:
    """static input -> identity field mapping -> logger output."""
    return make_workflow(
        [
            make_node("input", "input.static"),
            make_node("transform", "transform.fieldMapping", config={"operations": []}),
            make_node("log", "output.logger", config={"format": "json"}),
        ],
        [make_edge("input", "transform"), make_edge("transform", "log")],
        workflow_id="linear",
    )


@pytest.fixture
def echo_server(httpserver: HTTPServer) -> HTTPServer:
    """
    Local HTTP server that echoes requests back, for the api.http block.

    Endpoints:
    - GET /get: echoes query args and headers
    - POST /post: echoes the JSON body and headers
    - GET /status/<code>: responds with that status code
    """

    def get_handler(request: Request) -> Response:
        data = {"args": dict(request.args), "headers": dict(request.headers)}
        return Response(json.dumps(data), content_type="application/json")

    def post_handler(request: Request) -> Response:
        data = {
            "json": request.get_json(silent=True),
            "headers": dict(request.headers),
        }
        return Response(json.dumps(data), content_type="application/json")

    httpserver.expect_request("/get").respond_with_handler(get_handler)
    httpserver.expect_request("/post", method="POST").respond_with_handler(post_handler)
    for code in (404, 429, 503):
        httpserver.expect_request(f"/status/{code}").respond_with_data(
            f"status {code}", status=code
        )
    httpserver.expect_request("/text").respond_with_data("plain body", content_type="text/plain")

    return httpserver
