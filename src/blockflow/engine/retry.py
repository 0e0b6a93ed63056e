"""Retry with exponential backoff, and a circuit breaker.

Both wrap an async callable and are independent of blocks; blocks that make
direct external calls compose them (retry outside, breaker inside, or the
other way round). The breaker never retries on its own.

Delays are in seconds. Sleep, clock and randomness are injectable so tests
never wait for real.

Example:
    retrier = RetryExecutor.standard()
    breaker = CircuitBreaker(failure_threshold=5, reset_timeout=60)

    result = await retrier.execute(lambda: breaker.execute(fetch_profile))
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

RetryCondition = Callable[[BaseException], bool]
OnRetry = Callable[[int, BaseException], None]


# ============================================================================
# Retry conditions
# ============================================================================


def _status_of(error: BaseException) -> int | None:
    for attr in ("status", "status_code", "statusCode"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


class RetryConditions:
    """Common predicates for ``RetryConfig.retry_condition``."""

    @staticmethod
    def is_network_error(error: BaseException) -> bool:
        if isinstance(error, (ConnectionError, TimeoutError)):
            return True
        message = str(error).lower()
        return "network" in message or "connection" in message or "fetch" in message

    @staticmethod
    def is_server_error(error: BaseException) -> bool:
        status = _status_of(error)
        return status is not None and 500 <= status < 600

    @staticmethod
    def is_rate_limit_error(error: BaseException) -> bool:
        return _status_of(error) == 429

    @staticmethod
    def always(error: BaseException) -> bool:
        return True


# ============================================================================
# Retry executor
# ============================================================================


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float | None = 30.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    jitter_amount: float = 0.1
    retry_condition: RetryCondition = RetryConditions.always
    on_retry: OnRetry | None = None


@dataclass
class AttemptRecord:
    attempt: int
    error: str
    delay: float = 0.0


@dataclass
class RetryStats:
    attempts: int = 0
    successful: bool = False
    total_delay: float = 0.0
    errors: list[AttemptRecord] = field(default_factory=list)


class RetryError(Exception):
    """Every permitted attempt failed (or the condition refused a retry).

    Attributes:
        stats: Per-attempt history
        original_error: The last exception raised by the wrapped callable
    """

    def __init__(self, message: str, stats: RetryStats, original_error: BaseException):
        super().__init__(message)
        self.stats = stats
        self.original_error = original_error


class RetryExecutor:
    """Runs an async callable until it succeeds or its retries run out."""

    def __init__(
        self,
        config: RetryConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        self.config = config or RetryConfig()
        self._sleep = sleep
        self._rand = rand
        self.last_stats: RetryStats | None = None

    @classmethod
    def standard(cls, **kwargs: Any) -> RetryExecutor:
        """3 retries, 1s initial delay, x2, capped at 30s."""
        return cls(RetryConfig(max_retries=3, initial_delay=1.0, max_delay=30.0), **kwargs)

    @classmethod
    def aggressive(cls, **kwargs: Any) -> RetryExecutor:
        """5 retries, 0.5s initial delay, x1.5, capped at 60s."""
        return cls(
            RetryConfig(max_retries=5, initial_delay=0.5, max_delay=60.0, backoff_multiplier=1.5),
            **kwargs,
        )

    @classmethod
    def conservative(cls, **kwargs: Any) -> RetryExecutor:
        """2 retries, 2s initial delay, x3, capped at 10s."""
        return cls(
            RetryConfig(max_retries=2, initial_delay=2.0, max_delay=10.0, backoff_multiplier=3.0),
            **kwargs,
        )

    def calculate_delay(self, attempt: int, config: RetryConfig | None = None) -> float:
        """Delay after failed attempt number ``attempt`` (0-based)."""
        config = config or self.config
        delay = config.initial_delay * config.backoff_multiplier**attempt
        if config.max_delay is not None:
            delay = min(delay, config.max_delay)
        if config.jitter:
            spread = delay * config.jitter_amount
            delay += (self._rand() - 0.5) * 2 * spread
        return max(0.0, delay)

    async def execute[T](self, fn: Callable[[], Awaitable[T]], **overrides: Any) -> T:
        """Call ``fn`` with retries.

        Args:
            fn: Zero-argument async callable
            **overrides: RetryConfig fields for this call only

        Raises:
            RetryError: When the callable keeps failing
        """
        config = replace(self.config, **overrides) if overrides else self.config
        stats = RetryStats()
        self.last_stats = stats

        attempt = 0
        while True:
            stats.attempts = attempt + 1
            try:
                result = await fn()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                record = AttemptRecord(attempt=attempt + 1, error=str(e) or type(e).__name__)
                stats.errors.append(record)

                if attempt >= config.max_retries or not config.retry_condition(e):
                    raise RetryError(
                        f"Operation failed after {attempt + 1} attempts", stats, e
                    ) from e

                delay = self.calculate_delay(attempt, config)
                record.delay = delay
                stats.total_delay += delay
                logger.debug(
                    f"Attempt {attempt + 1} failed ({record.error}); retrying in {delay:.3f}s"
                )
                if config.on_retry is not None:
                    config.on_retry(attempt + 1, e)
                await self._sleep(delay)
                attempt += 1
                continue

            stats.successful = True
            return result


async def retry[T](fn: Callable[[], Awaitable[T]], **config: Any) -> T:
    """Run ``fn`` with a one-off RetryExecutor built from ``config`` fields."""
    return await RetryExecutor(RetryConfig(**config)).execute(fn)


# ============================================================================
# Circuit breaker
# ============================================================================


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """The breaker rejected the call without attempting it."""

    def __init__(self, retry_after: float, next_attempt_time: float | None = None):
        self.retry_after = retry_after
        self.next_attempt_time = next_attempt_time
        super().__init__(
            f"Circuit breaker is OPEN. Failing fast. Next attempt in {retry_after:.1f}s"
        )


class CircuitBreaker:
    """Fail-fast guard for one external dependency.

    CLOSED: calls pass; ``failure_threshold`` consecutive failures open it.
    OPEN: calls are rejected until ``reset_timeout`` seconds have passed.
    HALF_OPEN: up to ``half_open_attempts`` trial calls are let through;
    that many successes close the breaker, any failure reopens it.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        half_open_attempts: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1 or half_open_attempts < 1:
            raise ValueError("failure_threshold and half_open_attempts must be >= 1")
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_attempts = half_open_attempts
        self._clock = clock
        self.reset()

    @property
    def state(self) -> CircuitState:
        return self._state

    def _before_call(self) -> None:
        now = self._clock()
        if self._state == CircuitState.OPEN:
            if now < self._next_attempt_time:
                raise CircuitOpenError(self._next_attempt_time - now, self._next_attempt_time)
            self._state = CircuitState.HALF_OPEN
            self._success_count = 0
            self._trials_in_flight = 0
            logger.info("Circuit breaker half-open, allowing trial call")

        if self._state == CircuitState.HALF_OPEN:
            if self._success_count + self._trials_in_flight >= self.half_open_attempts:
                raise CircuitOpenError(0.0, now)
            self._trials_in_flight += 1

    def _on_success(self, trial: bool) -> None:
        self._failure_count = 0
        if trial:
            self._trials_in_flight -= 1
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.half_open_attempts:
                self._state = CircuitState.CLOSED
                logger.info("Circuit breaker closed")

    def _on_failure(self, trial: bool) -> None:
        self._failure_count += 1
        if trial:
            self._trials_in_flight -= 1
        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            self._next_attempt_time = self._clock() + self.reset_timeout
            logger.warning(
                f"Circuit breaker opened after {self._failure_count} failure(s); "
                f"retry in {self.reset_timeout}s"
            )

    async def execute[T](self, fn: Callable[[], Awaitable[T]]) -> T:
        """Call ``fn`` unless the breaker is open.

        Raises:
            CircuitOpenError: The call was rejected without being attempted
            Exception: Whatever ``fn`` raised
        """
        self._before_call()
        trial = self._state == CircuitState.HALF_OPEN
        try:
            result = await fn()
        except asyncio.CancelledError:
            if trial:
                self._trials_in_flight -= 1
            raise
        except Exception:
            self._on_failure(trial)
            raise
        self._on_success(trial)
        return result

    def get_state(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "failureCount": self._failure_count,
            "successCount": self._success_count,
            "nextAttemptTime": (
                self._next_attempt_time if self._state == CircuitState.OPEN else None
            ),
        }

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._trials_in_flight = 0
        self._next_attempt_time = 0.0


__all__ = [
    "AttemptRecord",
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "RetryConditions",
    "RetryConfig",
    "RetryError",
    "RetryExecutor",
    "RetryStats",
    "retry",
]
