"""
Retry Policy - bounded retry with exponential backoff and jitter.

Only RetryableError is retried. Terminal errors and unclassified
exceptions surface after the first attempt.
"""

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from structlog import get_logger

from credit_ledger.exceptions import DeadlineExceededError, RetryableError
from credit_ledger.observability.metrics import metrics

logger = get_logger(__name__)

T = TypeVar("T")

# Cap on the backoff exponent; the delay is clamped to max_delay long before this
_MAX_EXPONENT = 32


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry configuration.

    Delay before attempt k (k >= 1, attempt 0 is the first try):
        min(base_delay * 2**(k-1), max_delay) + uniform(0, jitter_ratio * that)
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 5.0
    jitter_ratio: float = 0.1

    def __post_init__(self) -> None:
        """Validate policy bounds."""
        if self.max_retries < 0:
            raise ValueError(f"max_retries cannot be negative: {self.max_retries}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Retry delays cannot be negative")
        if not 0 <= self.jitter_ratio <= 1:
            raise ValueError(f"jitter_ratio must be within [0, 1]: {self.jitter_ratio}")

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        """Build the policy from application settings."""
        from credit_ledger.config import settings

        return cls(
            max_retries=settings.retry_max_retries,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )

    @property
    def max_attempts(self) -> int:
        """Total attempts including the first one."""
        return self.max_retries + 1

    def backoff_for_attempt(self, attempt: int) -> float:
        """Un-jittered delay before the given retry attempt."""
        if attempt < 1:
            raise ValueError(f"Retry attempts start at 1, got {attempt}")
        exponent = min(attempt - 1, _MAX_EXPONENT)
        return min(self.base_delay * 2**exponent, self.max_delay)

    def delay_for_attempt(self, attempt: int) -> float:
        """Delay before the given retry attempt, jitter included."""
        backoff = self.backoff_for_attempt(attempt)
        return backoff + random.uniform(0, self.jitter_ratio * backoff)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    *,
    operation_name: str = "operation",
    deadline: float | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run an async operation, retrying transient failures.

    Args:
        operation: Zero-argument coroutine factory, invoked once per attempt
        policy: Retry bounds (defaults to RetryPolicy())
        operation_name: Name used in logs and metrics
        deadline: Absolute time.monotonic() deadline; no attempt starts and no
            sleep runs past it
        sleep: Awaitable sleep, injectable for tests

    Returns:
        The operation's result

    Raises:
        The last RetryableError once attempts run out or the next sleep would
        pass the deadline, DeadlineExceededError when the deadline has already
        passed before an attempt, or any other exception immediately.
    """
    policy = policy or RetryPolicy()
    attempt = 0

    while True:
        if deadline is not None and time.monotonic() >= deadline:
            logger.warning(
                "operation_deadline_exceeded",
                operation=operation_name,
                attempts=attempt,
            )
            timeout = DeadlineExceededError(operation_name)
            timeout.attempts = attempt
            raise timeout

        try:
            return await operation()
        except RetryableError as exc:
            attempt += 1
            exc.attempts = attempt

            if attempt > policy.max_retries:
                logger.error(
                    "operation_retries_exhausted",
                    operation=operation_name,
                    attempts=attempt,
                    error=str(exc),
                )
                raise

            delay = policy.delay_for_attempt(attempt)

            if deadline is not None and time.monotonic() + delay >= deadline:
                logger.warning(
                    "operation_retry_deadline_exceeded",
                    operation=operation_name,
                    attempts=attempt,
                    delay_seconds=round(delay, 3),
                    error=str(exc),
                )
                raise

            logger.warning(
                "operation_retrying",
                operation=operation_name,
                attempt=attempt,
                max_retries=policy.max_retries,
                delay_seconds=round(delay, 3),
                error=str(exc),
            )
            metrics.record_retry(operation_name)
            await sleep(delay)
