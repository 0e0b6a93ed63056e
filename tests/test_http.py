"""Tests for the api.http block against a local pytest-httpserver instance."""

import pytest
from pytest_httpserver import HTTPServer

from blockflow.engine.block_executor import CoreBlockExecutor, ExecuteOptions
from blockflow.engine.block_status import ExecutionStatus
from blockflow.engine.execution_context import ContextFactory, ExecutionContext
from blockflow.engine.executor_base import BlockRegistry
from blockflow.engine.executors_http import HttpRequestBlock, HttpStatusError
from blockflow.engine.retry import CircuitOpenError, RetryConditions
from blockflow.engine.schema import RetryPolicy

# =============================================================================
# Live requests
# =============================================================================


@pytest.mark.asyncio
async def test_get_with_params(echo_server: HTTPServer, production_context: ExecutionContext) -> None:
    """Test a GET request with query params and a parsed JSON body."""
    output = await HttpRequestBlock().execute(
        {"url": echo_server.url_for("/get"), "params": {"q": "ada"}},
        None,
        production_context,
    )

    assert output["statusCode"] == 200
    assert output["ok"] is True
    assert output["body"]["args"] == {"q": "ada"}
    assert output["headers"]["content-type"].startswith("application/json")


@pytest.mark.asyncio
async def test_post_json(echo_server: HTTPServer, production_context: ExecutionContext) -> None:
    """Test a JSON POST body with the content type set automatically."""
    output = await HttpRequestBlock().execute(
        {"url": echo_server.url_for("/post"), "method": "post", "json": {"name": "Ada"}},
        None,
        production_context,
    )

    assert output["body"]["json"] == {"name": "Ada"}
    assert output["body"]["headers"]["Content-Type"] == "application/json"


@pytest.mark.asyncio
async def test_text_body(echo_server: HTTPServer, production_context: ExecutionContext) -> None:
    """Test that non-JSON responses are returned as text."""
    output = await HttpRequestBlock().execute(
        {"url": echo_server.url_for("/text")}, None, production_context
    )
    assert output["body"] == "plain body"


@pytest.mark.asyncio
async def test_secret_header_through_core_executor(
    echo_server: HTTPServer, registry: BlockRegistry, context_factory: ContextFactory
) -> None:
    """Test that secrets are interpolated into headers but not into the logs."""
    context = context_factory.create("wf-http", secrets={"API_KEY": "sk-live-123"})
    executor = CoreBlockExecutor(registry)

    result = await executor.execute(
        "call",
        "api.http",
        {"url": echo_server.url_for("/get"), "headers": {"Authorization": "Bearer {{secrets.API_KEY}}"}},
        None,
        context,
    )

    assert result.status == ExecutionStatus.COMPLETED
    assert result.output["body"]["headers"]["Authorization"] == "Bearer sk-live-123"
    assert all("sk-live-123" not in str(entry) for entry in context.logger.entries)


# =============================================================================
# Error mapping
# =============================================================================


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("code", "message"),
    [
        (404, "HTTP 404: Not Found"),
        (429, "HTTP 429: rate limit exceeded"),
        (503, "HTTP 503: service temporarily unavailable"),
    ],
)
async def test_status_errors(
    echo_server: HTTPServer, production_context: ExecutionContext, code: int, message: str
) -> None:
    """Test that error statuses raise with retry-friendly messages."""
    with pytest.raises(HttpStatusError) as exc_info:
        await HttpRequestBlock().execute(
            {"url": echo_server.url_for(f"/status/{code}")}, None, production_context
        )

    assert str(exc_info.value) == message
    assert exc_info.value.status_code == code


def test_status_errors_feed_retry_conditions() -> None:
    """Test that status codes are visible to retry predicates."""
    assert RetryConditions.is_rate_limit_error(HttpStatusError(429, "HTTP 429"))
    assert RetryConditions.is_server_error(HttpStatusError(502, "HTTP 502"))


@pytest.mark.asyncio
async def test_server_errors_are_retried(
    echo_server: HTTPServer, registry: BlockRegistry, production_context: ExecutionContext
) -> None:
    """Test that the core executor retries 5xx responses."""
    delays: list[float] = []

    async def no_sleep(seconds: float) -> None:
        delays.append(seconds)

    executor = CoreBlockExecutor(registry, sleep=no_sleep)
    result = await executor.execute(
        "call",
        "api.http",
        {"url": echo_server.url_for("/status/503")},
        None,
        production_context,
        ExecuteOptions(retry_policy=RetryPolicy(maxRetries=2, initialDelay=1)),
    )

    assert result.status == ExecutionStatus.FAILED
    assert result.retry_count == 2
    assert len(delays) == 2


@pytest.mark.asyncio
async def test_network_error(production_context: ExecutionContext) -> None:
    """Test that connection failures become ConnectionError."""
    with pytest.raises(ConnectionError, match="Network error"):
        await HttpRequestBlock().execute(
            {"url": "http://127.0.0.1:9/unreachable", "timeout": 2}, None, production_context
        )


@pytest.mark.asyncio
async def test_body_options_are_exclusive(production_context: ExecutionContext) -> None:
    with pytest.raises(ValueError, match="both 'json' and 'content'"):
        await HttpRequestBlock().execute(
            {"url": "http://localhost/x", "json": {}, "content": "x"}, None, production_context
        )


# =============================================================================
# Guards
# =============================================================================


@pytest.mark.asyncio
async def test_circuit_breaker_shared_per_host(
    echo_server: HTTPServer, production_context: ExecutionContext
) -> None:
    """Test that repeated failures open a breaker shared by later calls."""
    config = {
        "url": echo_server.url_for("/status/503"),
        "circuitBreaker": {"failureThreshold": 2, "resetTimeout": 60000},
    }
    for _ in range(2):
        with pytest.raises(HttpStatusError):
            await HttpRequestBlock().execute(config, None, production_context)

    with pytest.raises(CircuitOpenError):
        await HttpRequestBlock().execute(config, None, production_context)


@pytest.mark.asyncio
async def test_rate_limiter_is_shared(
    echo_server: HTTPServer, production_context: ExecutionContext
) -> None:
    """Test that nodes calling the same host share one limiter."""
    config = {"url": echo_server.url_for("/get"), "rateLimit": {"maxRequests": 5, "perSeconds": 60}}
    await HttpRequestBlock().execute(config, None, production_context)
    await HttpRequestBlock().execute(config, None, production_context)

    limiters = list(HttpRequestBlock._rate_limiters.values())
    assert len(limiters) == 1
    assert limiters[0].stats().successful_requests == 2


# =============================================================================
# Mock mode
# =============================================================================


@pytest.mark.asyncio
async def test_mock_response_in_test_mode(test_context: ExecutionContext) -> None:
    """Test that demo/test runs return the configured mock without calling out."""
    mock = {"statusCode": 200, "ok": True, "headers": {}, "body": {"id": 1}}
    output = await HttpRequestBlock().execute(
        {"url": "http://never.invalid/", "mockResponse": mock}, None, test_context
    )
    assert output == mock


@pytest.mark.asyncio
async def test_no_mock_response_in_test_mode(test_context: ExecutionContext) -> None:
    """Test that a live call is refused in test mode."""
    with pytest.raises(ValueError, match="cannot call out in test mode"):
        await HttpRequestBlock().execute({"url": "http://never.invalid/"}, None, test_context)


def test_http_block_is_live_only() -> None:
    assert HttpRequestBlock.supports_mock is False
