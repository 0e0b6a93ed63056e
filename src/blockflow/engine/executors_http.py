"""HTTP/REST API call block.

Features:
- Any HTTP method, JSON or text bodies, query params and headers
- Templates in url/headers/body are resolved by the core executor before the
  block runs (``{{secrets.API_KEY}}`` in a header never reaches the logs)
- Optional per-host token-bucket rate limiting and circuit breaking, shared
  by every node that targets the same host with the same settings
- Demo/test runs return ``mockResponse`` instead of calling out

Error mapping (messages chosen so the core executor's retry heuristic applies):
- 429                -> "rate limit" (retryable)
- 5xx                -> "temporarily unavailable" (retryable)
- other 4xx          -> plain HTTP error (not retried)
- timeouts           -> TimeoutError "Request timeout ..." (retryable)
- transport failures -> ConnectionError "Network error ..." (retryable)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, ClassVar

import httpx
from pydantic import BaseModel, Field, model_validator

from .executor_base import BlockExecutor
from .rate_limiter import RateLimiter
from .retry import CircuitBreaker

if TYPE_CHECKING:
    from typing import Self

    from .execution_context import ExecutionContext


class HttpStatusError(Exception):
    """Non-2xx response. ``status_code`` is read by RetryConditions."""

    def __init__(self, status_code: int, message: str, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


# ============================================================================
# Config models
# ============================================================================


class RateLimitConfig(BaseModel):
    model_config = {"extra": "forbid", "populate_by_name": True}

    max_requests: int = Field(ge=1, alias="maxRequests")
    per_seconds: float = Field(default=60.0, gt=0, alias="perSeconds")


class CircuitBreakerConfig(BaseModel):
    model_config = {"extra": "forbid", "populate_by_name": True}

    failure_threshold: int = Field(default=5, ge=1, alias="failureThreshold")
    reset_timeout: float = Field(default=60000, gt=0, alias="resetTimeout", description="ms")


class HttpRequestConfig(BaseModel):
    """Config for the ``api.http`` block.

    ``json`` and ``content`` match the httpx request parameters and are
    mutually exclusive.
    """

    model_config = {"extra": "forbid", "populate_by_name": True}

    url: str = Field(default="", description="Request URL")
    method: str = Field(default="GET", description="HTTP method")
    headers: dict[str, str] = Field(default_factory=dict)
    params: dict[str, Any] = Field(default_factory=dict, description="Query parameters")
    json: Any = Field(default=None, description="JSON request body")  # type: ignore[assignment]
    content: str | None = Field(default=None, description="Text request body")
    timeout: float = Field(default=30.0, gt=0, description="Request timeout in seconds")
    follow_redirects: bool = Field(default=True, alias="followRedirects")
    mock_response: Any = Field(default=None, alias="mockResponse")
    rate_limit: RateLimitConfig | None = Field(default=None, alias="rateLimit")
    circuit_breaker: CircuitBreakerConfig | None = Field(default=None, alias="circuitBreaker")

    @model_validator(mode="after")
    def validate_body_exclusive(self) -> Self:
        if self.json is not None and self.content is not None:
            raise ValueError("Cannot specify both 'json' and 'content'")
        return self


# ============================================================================
# HttpRequest block
# ============================================================================


class HttpRequestBlock(BlockExecutor):
    """
    Calls an HTTP endpoint and returns the response.

    Output:
        {"statusCode": int, "ok": bool, "headers": {...}, "body": <parsed JSON or text>}

    The block is live-only (``supports_mock = False``); in demo/test mode it
    returns ``config.mockResponse`` when one is configured and refuses to
    call out otherwise.
    """

    type_name: ClassVar[str] = "api.http"
    name: ClassVar[str] = "HTTP Request"
    description: ClassVar[str] = "Call an HTTP/REST endpoint"
    category: ClassVar[str] = "api"
    supports_mock: ClassVar[bool] = False
    returns_envelope: ClassVar[bool] = False
    baseline_config: ClassVar[dict[str, Any]] = {
        "url": "https://example.com/api",
        "method": "GET",
        "mockResponse": {"statusCode": 200, "ok": True, "headers": {}, "body": {}},
    }

    # Guards shared across instances; blocks themselves are created per call
    _rate_limiters: ClassVar[dict[tuple[str, int, float], RateLimiter]] = {}
    _breakers: ClassVar[dict[tuple[str, int, float], CircuitBreaker]] = {}

    # Injectable for tests (pytest-httpserver works with the default)
    transport: ClassVar[httpx.AsyncBaseTransport | None] = None

    @classmethod
    def reset_guards(cls) -> None:
        """Forget every shared rate limiter and circuit breaker."""
        cls._rate_limiters.clear()
        cls._breakers.clear()

    async def execute(self, config: dict[str, Any], input: Any, context: ExecutionContext) -> Any:
        parsed = HttpRequestConfig.model_validate(config)

        if context.is_mock_mode():
            if parsed.mock_response is None:
                raise ValueError(
                    f"api.http has no mockResponse and cannot call out in {context.mode.value} mode"
                )
            self.log(context, "info", "Returning mock response", method=parsed.method)
            return parsed.mock_response

        if not parsed.url:
            raise ValueError("api.http requires config.url")

        host = httpx.URL(parsed.url).host
        limiter = self._limiter_for(host, parsed.rate_limit)
        breaker = self._breaker_for(host, parsed.circuit_breaker)

        if limiter is not None:
            await limiter.acquire()

        self.log(context, "info", "Sending request", method=parsed.method.upper(), host=host)
        if breaker is not None:
            return await breaker.execute(lambda: self._send(parsed))
        return await self._send(parsed)

    def _limiter_for(self, host: str, settings: RateLimitConfig | None) -> RateLimiter | None:
        if settings is None:
            return None
        key = (host, settings.max_requests, settings.per_seconds)
        limiter = self._rate_limiters.get(key)
        if limiter is None:
            limiter = RateLimiter(settings.max_requests, settings.per_seconds)
            self._rate_limiters[key] = limiter
        return limiter

    def _breaker_for(
        self, host: str, settings: CircuitBreakerConfig | None
    ) -> CircuitBreaker | None:
        if settings is None:
            return None
        key = (host, settings.failure_threshold, settings.reset_timeout)
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(
                failure_threshold=settings.failure_threshold,
                reset_timeout=settings.reset_timeout / 1000.0,
            )
            self._breakers[key] = breaker
        return breaker

    async def _send(self, parsed: HttpRequestConfig) -> dict[str, Any]:
        headers = dict(parsed.headers)
        if parsed.json is not None and not any(k.lower() == "content-type" for k in headers):
            headers["Content-Type"] = "application/json"

        try:
            async with httpx.AsyncClient(
                timeout=parsed.timeout,
                follow_redirects=parsed.follow_redirects,
                transport=self.transport,
            ) as client:
                response = await client.request(
                    method=parsed.method.upper(),
                    url=parsed.url,
                    headers=headers,
                    params=parsed.params or None,
                    json=parsed.json,
                    content=parsed.content,
                )
        except httpx.TimeoutException as e:
            raise TimeoutError(f"Request timeout after {parsed.timeout}s") from e
        except httpx.TransportError as e:
            raise ConnectionError(f"Network error: {e}") from e

        status = response.status_code
        if status == 429:
            raise HttpStatusError(status, "HTTP 429: rate limit exceeded", response.text)
        if status >= 500:
            raise HttpStatusError(
                status, f"HTTP {status}: service temporarily unavailable", response.text
            )
        if status >= 400:
            raise HttpStatusError(
                status, f"HTTP {status}: {response.reason_phrase}", response.text
            )

        try:
            body: Any = response.json()
        except ValueError:
            body = response.text

        return {
            "statusCode": status,
            "ok": response.is_success,
            "headers": dict(response.headers),
            "body": body,
        }


__all__ = ["HttpRequestBlock", "HttpRequestConfig", "HttpStatusError"]
