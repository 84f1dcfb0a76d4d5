"""Tests for retry and circuit breaker utilities."""

from __future__ import annotations

import pytest

from dialer_engine.core.exceptions import FatalStoreError, ValidationError, WriteConflict
from dialer_engine.core.retry import (
    WRITE_CONFLICT_RETRY_CONFIG,
    CircuitBreaker,
    CircuitOpen,
    CircuitState,
    RetryConfig,
    RetryExhausted,
    retry_async,
)

FAST = RetryConfig(
    max_attempts=3,
    base_delay=0.0,
    jitter=0.0,
    retryable_exceptions=(WriteConflict,),
    non_retryable_exceptions=(ValidationError,),
)


class Flaky:
    """Async callable failing with the given errors before succeeding."""

    def __init__(self, *errors: Exception):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self, value: int) -> int:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return value * 2


# ============================================================================
# Retry
# ============================================================================


class TestRetryConfig:
    def test_backoff_is_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=3.0, jitter=0.0)

        assert config.calculate_delay(1) == 1.0
        assert config.calculate_delay(2) == 2.0
        assert config.calculate_delay(5) == 3.0

    def test_write_conflicts_only(self):
        config = WRITE_CONFLICT_RETRY_CONFIG

        assert config.should_retry(WriteConflict("locked"), 1)
        assert not config.should_retry(FatalStoreError("disk full"), 1)
        assert not config.should_retry(ValidationError("bad"), 1)
        assert not config.should_retry(WriteConflict("locked"), config.max_attempts)


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_succeeds_after_conflicts(self):
        func = Flaky(WriteConflict("locked"), WriteConflict("locked"))
        retries = []

        result = await retry_async(func, 21, config=FAST, on_retry=lambda e, n, d: retries.append(n))

        assert result == 42
        assert func.calls == 3
        assert retries == [1, 2]

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        func = Flaky(ValidationError("bad input"))

        with pytest.raises(ValidationError):
            await retry_async(func, 1, config=FAST)
        assert func.calls == 1

    @pytest.mark.asyncio
    async def test_exhausted(self):
        func = Flaky(*(WriteConflict("locked") for _ in range(5)))

        with pytest.raises(RetryExhausted) as exc_info:
            await retry_async(func, 1, config=FAST)

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, WriteConflict)
        assert func.calls == 3


# ============================================================================
# Circuit Breaker
# ============================================================================


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        breaker = CircuitBreaker("test", failure_threshold=2, reset_timeout=60.0)

        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN
        assert not breaker.allow_request()
        assert breaker.status()["reset_at"] is not None

    def test_half_open_recovery(self):
        breaker = CircuitBreaker("test", failure_threshold=1, success_threshold=2, reset_timeout=0.0)
        breaker.record_failure()

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request()
        breaker.record_success()
        breaker.record_success()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    def test_half_open_failure_reopens(self):
        breaker = CircuitBreaker("test", failure_threshold=1, reset_timeout=0.0)
        breaker.record_failure()
        assert breaker.allow_request()

        breaker.reset_timeout = 60.0
        breaker.record_failure()

        assert breaker.state == CircuitState.OPEN

    def test_half_open_call_limit(self):
        breaker = CircuitBreaker("test", failure_threshold=1, reset_timeout=0.0, half_open_max_calls=1)
        breaker.record_failure()

        assert breaker.allow_request()
        assert not breaker.allow_request()

    @pytest.mark.asyncio
    async def test_context_manager(self):
        breaker = CircuitBreaker("test", failure_threshold=1, reset_timeout=60.0)

        with pytest.raises(RuntimeError):
            async with breaker:
                raise RuntimeError("replica down")

        with pytest.raises(CircuitOpen):
            async with breaker:
                pass

        breaker.reset()
        async with breaker:
            pass
        assert breaker.state == CircuitState.CLOSED
