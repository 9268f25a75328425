"""Unit tests for retry utilities."""

from unittest.mock import AsyncMock, call

import pytest

from migrator.exceptions import DatabaseError, MappingError
from utils.retry import BackoffSchedule, RetryConfig, calculate_backoff_delay, retry_async


def test_retry_config_defaults() -> None:
    """Test retry configuration defaults."""
    config = RetryConfig()
    assert config.max_attempts == 3
    assert config.initial_delay == 1.0
    assert config.max_delay == 60.0
    assert config.exponential_base == 2.0
    assert config.jitter is False
    assert config.retryable_exceptions == (Exception,)


def test_retry_config_validation() -> None:
    """Test invalid retry configuration."""
    with pytest.raises(ValueError, match="max_attempts"):
        RetryConfig(max_attempts=0)
    with pytest.raises(ValueError, match="initial_delay"):
        RetryConfig(initial_delay=-1)


def test_calculate_backoff_delay() -> None:
    """Test exponential backoff delays."""
    assert calculate_backoff_delay(1) == 1.0
    assert calculate_backoff_delay(2) == 2.0
    assert calculate_backoff_delay(3) == 4.0
    assert calculate_backoff_delay(4, initial_delay=0.5) == 4.0
    assert calculate_backoff_delay(10, max_delay=30.0) == 30.0


def test_calculate_backoff_delay_jitter() -> None:
    """Test that jitter adds at most ten percent."""
    for _ in range(50):
        delay = calculate_backoff_delay(2, jitter=True)
        assert 2.0 <= delay <= 2.2


def test_backoff_schedule_never_decreases() -> None:
    """Test that a capped, jittered schedule is non-decreasing."""
    schedule = BackoffSchedule(RetryConfig(initial_delay=1.0, max_delay=4.0, jitter=True))

    delays = [schedule.next_delay(attempt) for attempt in range(1, 8)]

    assert delays == sorted(delays)
    assert schedule.delays == delays
    assert delays[-1] <= 4.4


@pytest.mark.asyncio
async def test_retry_async_success_after_failures() -> None:
    """Test that a function is retried until it succeeds."""
    func = AsyncMock(side_effect=[DatabaseError("reset"), DatabaseError("reset"), "ok"])
    sleep = AsyncMock()

    result = await retry_async(
        func, "a", config=RetryConfig(initial_delay=0.5), sleep=sleep, key="value"
    )

    assert result == "ok"
    assert func.await_args_list == [call("a", key="value")] * 3
    assert sleep.await_args_list == [call(0.5), call(1.0)]


@pytest.mark.asyncio
async def test_retry_async_exhausted() -> None:
    """Test that the last error propagates once attempts are exhausted."""
    func = AsyncMock(side_effect=DatabaseError("still down"))
    sleep = AsyncMock()

    with pytest.raises(DatabaseError, match="still down"):
        await retry_async(func, config=RetryConfig(max_attempts=2), sleep=sleep)

    assert func.await_count == 2
    assert sleep.await_count == 1


@pytest.mark.asyncio
async def test_retry_async_non_retryable() -> None:
    """Test that non-retryable errors propagate immediately."""
    func = AsyncMock(side_effect=MappingError("bad mapping"))
    sleep = AsyncMock()

    with pytest.raises(MappingError):
        await retry_async(
            func,
            config=RetryConfig(retryable_exceptions=(DatabaseError,)),
            sleep=sleep,
        )

    assert func.await_count == 1
    sleep.assert_not_awaited()
