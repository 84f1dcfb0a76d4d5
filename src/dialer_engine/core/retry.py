"""Retry utilities with exponential backoff.

Provides resilient execution patterns for transient failures:
- Exponential backoff with jitter for retryable store conflicts
- Circuit breaker guarding the ground-truth replica

Usage:
    from dialer_engine.core.retry import retry_async, RetryConfig, CircuitBreaker

    await retry_async(service.record_outcome_score, ..., config=WRITE_CONFLICT_RETRY_CONFIG)

    breaker = CircuitBreaker("ground_truth_replica", failure_threshold=5)
    async with breaker:
        await read_replica(...)
"""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from dialer_engine.core.exceptions import ValidationError, WriteConflict
from dialer_engine.core.log import get_logger

log = get_logger(__name__)

T = TypeVar("T")


class RetryExhausted(Exception):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_error: Exception | None = None, attempts: int = 0):
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts


class CircuitOpen(Exception):
    """Raised when circuit breaker is open."""

    def __init__(self, name: str, reset_at: datetime):
        super().__init__(f"Circuit breaker '{name}' is open, resets at {reset_at.isoformat()}")
        self.name = name
        self.reset_at = reset_at


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay: float = 0.2  # seconds
    max_delay: float = 2.0  # seconds
    exponential_base: float = 2.0
    jitter: float = 0.1  # 10% jitter
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,)
    non_retryable_exceptions: tuple[type[Exception], ...] = ()

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for given attempt with exponential backoff and jitter.

        Args:
            attempt: Current attempt number (1-based)

        Returns:
            Delay in seconds
        """
        delay = min(
            self.base_delay * (self.exponential_base ** (attempt - 1)),
            self.max_delay,
        )

        jitter_range = delay * self.jitter
        delay += random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """Check if exception should trigger retry.

        Args:
            exception: The exception that occurred
            attempt: Current attempt number

        Returns:
            True if should retry
        """
        if attempt >= self.max_attempts:
            return False

        if isinstance(exception, self.non_retryable_exceptions):
            return False

        return isinstance(exception, self.retryable_exceptions)


# Concurrent score-row mutations; validation failures are never retried
WRITE_CONFLICT_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=0.05,
    max_delay=1.0,
    retryable_exceptions=(WriteConflict,),
    non_retryable_exceptions=(ValidationError,),
)


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: RetryConfig | None = None,
    on_retry: Callable[[Exception, int, float], None] | None = None,
    **kwargs: Any,
) -> T:
    """Execute async function with retry.

    Args:
        func: Async function to execute
        *args: Positional arguments for func
        config: Retry configuration
        on_retry: Optional callback on each retry
        **kwargs: Keyword arguments for func

    Returns:
        Result of func

    Raises:
        RetryExhausted: If all attempts fail with retryable errors
    """
    config = config or RetryConfig()
    last_exception: Exception | None = None

    for attempt in range(1, config.max_attempts + 1):
        try:
            return await func(*args, **kwargs)

        except Exception as e:
            last_exception = e

            if not config.should_retry(e, attempt):
                if attempt >= config.max_attempts and isinstance(e, config.retryable_exceptions):
                    break
                raise

            delay = config.calculate_delay(attempt)

            log.warning(
                "Retrying after failure",
                func=getattr(func, "__name__", repr(func)),
                attempt=attempt,
                max_attempts=config.max_attempts,
                error_type=type(e).__name__,
                error=str(e),
                delay=round(delay, 3),
            )

            if on_retry:
                on_retry(e, attempt, delay)

            await asyncio.sleep(delay)

    raise RetryExhausted(
        f"All {config.max_attempts} attempts exhausted for {getattr(func, '__name__', func)}",
        last_error=last_exception,
        attempts=config.max_attempts,
    )


@dataclass
class CircuitBreaker:
    """Circuit breaker for protecting against cascading failures.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Service failing, requests rejected immediately
    - HALF_OPEN: Testing recovery, limited requests allowed
    """

    name: str
    failure_threshold: int = 5  # Failures before opening
    success_threshold: int = 2  # Successes in half-open before closing
    reset_timeout: float = 60.0  # Seconds before half-open
    half_open_max_calls: int = 3  # Max calls in half-open state

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _success_count: int = field(default=0, init=False)
    _last_failure_time: datetime | None = field(default=None, init=False)
    _half_open_calls: int = field(default=0, init=False)

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        self._check_state_transition()
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _check_state_transition(self) -> None:
        if self._state == CircuitState.OPEN and self._last_failure_time:
            elapsed = (datetime.now() - self._last_failure_time).total_seconds()
            if elapsed >= self.reset_timeout:
                self._transition_to_half_open()

    def _transition_to_open(self) -> None:
        log.warning("Circuit breaker open", breaker=self.name, failures=self._failure_count)
        self._state = CircuitState.OPEN
        self._last_failure_time = datetime.now()

    def _transition_to_half_open(self) -> None:
        log.info("Circuit breaker half-open", breaker=self.name)
        self._state = CircuitState.HALF_OPEN
        self._half_open_calls = 0
        self._success_count = 0

    def _transition_to_closed(self) -> None:
        log.info("Circuit breaker closed", breaker=self.name)
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._half_open_calls = 0
        self._last_failure_time = None

    def allow_request(self) -> bool:
        """Check if a request should be allowed."""
        self._check_state_transition()

        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            return False

        if self._half_open_calls < self.half_open_max_calls:
            self._half_open_calls += 1
            return True

        return False

    def record_success(self) -> None:
        """Record a successful request."""
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.success_threshold:
                self._transition_to_closed()
        elif self._state == CircuitState.CLOSED:
            self._failure_count = max(0, self._failure_count - 1)

    def record_failure(self) -> None:
        """Record a failed request."""
        self._failure_count += 1
        self._last_failure_time = datetime.now()

        if self._state == CircuitState.HALF_OPEN:
            self._transition_to_open()
        elif self._state == CircuitState.CLOSED:
            if self._failure_count >= self.failure_threshold:
                self._transition_to_open()

    def reset(self) -> None:
        """Manually close the circuit."""
        self._transition_to_closed()

    @property
    def reset_at(self) -> datetime | None:
        """Get time when circuit will transition to half-open."""
        if self._state == CircuitState.OPEN and self._last_failure_time:
            return self._last_failure_time + timedelta(seconds=self.reset_timeout)
        return None

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self._failure_count,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
        }

    async def __aenter__(self) -> "CircuitBreaker":
        """Async context manager entry."""
        if not self.allow_request():
            raise CircuitOpen(self.name, self.reset_at or datetime.now())
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> bool:
        """Async context manager exit."""
        if exc_val is None:
            self.record_success()
        else:
            self.record_failure()
        return False
