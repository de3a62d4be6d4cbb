"""
Tests for the retry policy.

Covers attempt bounds, backoff growth, jitter range, error classification
and deadline handling. Sleeping is injected so no test waits in real time.
"""

import asyncio
import time
from unittest.mock import AsyncMock, patch

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from credit_ledger.exceptions import (
    DeadlineExceededError,
    InsufficientCreditsError,
    RetryableError,
    StoreConflictError,
    StoreTransientError,
)
from credit_ledger.services.retry import RetryPolicy, retry_with_backoff


class RecordingSleep:
    """Sleep stand-in that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class TestRetryPolicy:
    """Tests for RetryPolicy configuration and delays."""

    def test_defaults(self):
        """Defaults are 3 retries, 1s base, 5s cap, 10% jitter."""
        policy = RetryPolicy()
        assert policy.max_retries == 3
        assert policy.base_delay == 1.0
        assert policy.max_delay == 5.0
        assert policy.jitter_ratio == 0.1
        assert policy.max_attempts == 4

    def test_backoff_doubles_until_capped(self):
        """Backoff doubles per attempt and is clamped to max_delay."""
        policy = RetryPolicy(max_retries=5, base_delay=1.0, max_delay=5.0)
        assert [policy.backoff_for_attempt(k) for k in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_backoff_rejects_attempt_zero(self):
        """Attempt numbering for delays starts at 1."""
        with pytest.raises(ValueError):
            RetryPolicy().backoff_for_attempt(0)

    def test_huge_attempt_numbers_do_not_overflow(self):
        """Exponent is capped so very late attempts still return max_delay."""
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0)
        assert policy.backoff_for_attempt(10_000) == 5.0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_retries": -1},
            {"base_delay": -0.5},
            {"max_delay": -1.0},
            {"jitter_ratio": 1.5},
        ],
    )
    def test_invalid_policies_rejected(self, kwargs):
        """Negative bounds and out-of-range jitter are rejected."""
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    @given(st.integers(min_value=1, max_value=50))
    @settings(max_examples=100)
    def test_jitter_stays_within_ten_percent(self, attempt):
        """Jittered delay lies in [backoff, 1.1 * backoff]."""
        policy = RetryPolicy(max_retries=50)
        backoff = policy.backoff_for_attempt(attempt)
        delay = policy.delay_for_attempt(attempt)
        assert backoff <= delay <= backoff * 1.1

    def test_from_settings(self):
        """Policy is built from application settings."""
        from credit_ledger.config import settings as app_settings

        policy = RetryPolicy.from_settings()
        assert policy.max_retries == app_settings.retry_max_retries
        assert policy.base_delay == app_settings.retry_base_delay_seconds
        assert policy.max_delay == app_settings.retry_max_delay_seconds


class TestRetryWithBackoff:
    """Tests for retry_with_backoff."""

    async def test_success_first_try_does_not_sleep(self):
        """A successful operation runs once without sleeping."""
        operation = AsyncMock(return_value=6)
        sleep = RecordingSleep()

        result = await retry_with_backoff(operation, RetryPolicy(), sleep=sleep)

        assert result == 6
        assert operation.await_count == 1
        assert sleep.delays == []

    async def test_recovers_after_transient_failures(self):
        """Transient failures are retried until the operation succeeds."""
        operation = AsyncMock(
            side_effect=[StoreTransientError("reset"), StoreConflictError("credit_accounts"), 6]
        )
        sleep = RecordingSleep()

        result = await retry_with_backoff(operation, RetryPolicy(), sleep=sleep)

        assert result == 6
        assert operation.await_count == 3
        assert len(sleep.delays) == 2

    async def test_always_failing_operation_attempted_exactly_four_times(self):
        """max_retries=3 means exactly 4 attempts before the last error surfaces."""
        operation = AsyncMock(side_effect=StoreTransientError("connection refused"))
        sleep = RecordingSleep()

        with pytest.raises(StoreTransientError) as exc_info:
            await retry_with_backoff(operation, RetryPolicy(max_retries=3), sleep=sleep)

        assert operation.await_count == 4
        assert exc_info.value.attempts == 4
        assert len(sleep.delays) == 3

    async def test_cumulative_delay_bounded(self):
        """Total sleep never exceeds (max_retries + 1) * max_delay."""
        policy = RetryPolicy(max_retries=3, base_delay=1.0, max_delay=5.0)
        operation = AsyncMock(side_effect=StoreTransientError("timeout"))
        sleep = RecordingSleep()

        with pytest.raises(StoreTransientError):
            await retry_with_backoff(operation, policy, sleep=sleep)

        assert sum(sleep.delays) <= 4 * policy.max_delay
        assert 1.0 <= sleep.delays[0] <= 1.1
        assert 2.0 <= sleep.delays[1] <= 2.2
        assert 4.0 <= sleep.delays[2] <= 4.4

    async def test_terminal_error_attempted_once(self):
        """Terminal errors are never retried."""
        operation = AsyncMock(side_effect=InsufficientCreditsError("user-123", 6, 10))
        sleep = RecordingSleep()

        with pytest.raises(InsufficientCreditsError):
            await retry_with_backoff(operation, RetryPolicy(), sleep=sleep)

        assert operation.await_count == 1
        assert sleep.delays == []

    async def test_unclassified_error_attempted_once(self):
        """Exceptions outside the ledger hierarchy propagate without retry."""
        operation = AsyncMock(side_effect=KeyError("boom"))
        sleep = RecordingSleep()

        with pytest.raises(KeyError):
            await retry_with_backoff(operation, RetryPolicy(), sleep=sleep)

        assert operation.await_count == 1

    async def test_zero_retries_means_single_attempt(self):
        """max_retries=0 disables retrying."""
        operation = AsyncMock(side_effect=StoreTransientError("down"))

        with pytest.raises(StoreTransientError) as exc_info:
            await retry_with_backoff(operation, RetryPolicy(max_retries=0), sleep=RecordingSleep())

        assert operation.await_count == 1
        assert exc_info.value.attempts == 1

    async def test_deadline_stops_before_sleeping_past_it(self):
        """No sleep is started that would end after the deadline."""
        operation = AsyncMock(side_effect=StoreTransientError("down"))
        sleep = RecordingSleep()
        deadline = time.monotonic() + 0.5

        with pytest.raises(StoreTransientError):
            await retry_with_backoff(
                operation, RetryPolicy(base_delay=1.0), deadline=deadline, sleep=sleep
            )

        assert operation.await_count == 1
        assert sleep.delays == []

    async def test_generous_deadline_allows_all_attempts(self):
        """A far deadline does not cut retries short."""
        operation = AsyncMock(side_effect=StoreTransientError("down"))
        deadline = time.monotonic() + 3600

        with pytest.raises(StoreTransientError):
            await retry_with_backoff(
                operation, RetryPolicy(), deadline=deadline, sleep=RecordingSleep()
            )

        assert operation.await_count == 4

    async def test_cancellation_interrupts_pending_sleep(self):
        """Cancelling the caller cancels the backoff sleep."""
        operation = AsyncMock(side_effect=StoreTransientError("down"))
        policy = RetryPolicy(max_retries=3, base_delay=60.0, max_delay=60.0)

        task = asyncio.create_task(retry_with_backoff(operation, policy))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert operation.await_count == 1

    @given(
        st.integers(min_value=0, max_value=6),
        st.floats(min_value=0.0, max_value=2.0),
        st.floats(min_value=0.0, max_value=10.0),
    )
    @settings(max_examples=50)
    async def test_attempts_and_delays_bounded_for_any_policy(
        self, max_retries, base_delay, max_delay
    ):
        """Any policy makes max_retries + 1 attempts and sleeps at most 1.1 * max_delay each."""
        policy = RetryPolicy(max_retries=max_retries, base_delay=base_delay, max_delay=max_delay)
        operation = AsyncMock(side_effect=StoreTransientError("down"))
        sleep = RecordingSleep()

        with pytest.raises(StoreTransientError):
            await retry_with_backoff(operation, policy, sleep=sleep)

        assert operation.await_count == max_retries + 1
        assert len(sleep.delays) == max_retries
        assert all(delay <= max_delay * 1.1 + 1e-9 for delay in sleep.delays)


class TestDeadlineBeforeAttempt:
    """An expired deadline stops attempts, not only sleeps."""

    async def test_expired_deadline_makes_no_attempt(self):
        """A deadline already in the past never reaches the store."""
        operation = AsyncMock(side_effect=StoreTransientError("down"))

        with pytest.raises(DeadlineExceededError) as exc_info:
            await retry_with_backoff(
                operation, RetryPolicy(), deadline=time.monotonic() - 10, sleep=RecordingSleep()
            )

        assert operation.await_count == 0
        assert exc_info.value.attempts == 0

    async def test_deadline_passing_during_sleep_stops_next_attempt(self):
        """A deadline that passes while backing off blocks the next attempt."""
        operation = AsyncMock(side_effect=StoreTransientError("down"))

        with patch("credit_ledger.services.retry.time") as clock:
            # before attempt 1, sleep check, before attempt 2
            clock.monotonic.side_effect = [0.0, 0.0, 200.0]
            with pytest.raises(DeadlineExceededError) as exc_info:
                await retry_with_backoff(
                    operation,
                    RetryPolicy(base_delay=1.0),
                    deadline=100.0,
                    sleep=RecordingSleep(),
                )

        assert operation.await_count == 1
        assert exc_info.value.attempts == 1

    async def test_deadline_error_is_retryable(self):
        """Deadline expiry is classified with the transient failures."""
        assert issubclass(DeadlineExceededError, RetryableError)
