"""
Exponential backoff with jitter for outbound calls and reconciliation.

One policy type and one retry loop are shared by the payment gateway client
and the reconciliation retrier. Each attempt waits
``min(base * 2**attempt + jitter, cap)`` seconds before the next one.
"""

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from schoolphotos.core.config import Settings
from schoolphotos.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Bounded exponential backoff.

    Attributes:
        max_retries: Retries after the first attempt
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay, in seconds
        jitter: Maximum random seconds added to each delay
    """

    max_retries: int
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 1.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay(self, attempt: int) -> float:
        """
        Calculate the delay before retrying after a failed attempt.

        Args:
            attempt: Failed attempt number (0-indexed)

        Returns:
            Backoff delay in seconds
        """
        jitter = random.uniform(0, self.jitter) if self.jitter > 0 else 0.0
        return min(self.base_delay * (2**attempt) + jitter, self.max_delay)

    @classmethod
    def for_preference_creation(cls, settings: Settings) -> "BackoffPolicy":
        return cls(
            max_retries=settings.preference_max_retries,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.preference_max_delay_seconds,
            jitter=settings.retry_jitter_seconds,
        )

    @classmethod
    def for_payment_lookup(cls, settings: Settings) -> "BackoffPolicy":
        return cls(
            max_retries=settings.payment_lookup_max_retries,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.payment_lookup_max_delay_seconds,
            jitter=settings.retry_jitter_seconds,
        )

    @classmethod
    def for_reconciliation(cls, settings: Settings) -> "BackoffPolicy":
        return cls(
            max_retries=settings.reconciliation_max_retries,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.reconciliation_max_delay_seconds,
            jitter=settings.retry_jitter_seconds,
        )


async def retry_async(
    operation: str,
    func: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    is_retryable: Callable[[Exception], bool],
    deadline: Optional[float] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Execute an async callable with exponential backoff retry logic.

    Args:
        operation: Operation name for logging
        func: Zero-argument coroutine function to execute
        policy: Backoff policy to apply
        is_retryable: Predicate deciding whether an error is transient
        deadline: Optional ``time.monotonic()`` value after which no further
            retry is scheduled
        sleep: Awaitable sleep function

    Returns:
        Result of the first successful attempt

    Raises:
        Exception: The last error, when it is terminal, when retries are
            exhausted, or when the next delay would pass the deadline
    """
    attempt = 0
    while True:
        try:
            result = await func()
        except Exception as e:
            if not is_retryable(e):
                raise

            if attempt >= policy.max_retries:
                logger.error(
                    "Retries exhausted",
                    operation=operation,
                    attempts=attempt + 1,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            backoff = policy.delay(attempt)
            if deadline is not None and time.monotonic() + backoff > deadline:
                logger.warning(
                    "Retry deadline reached",
                    operation=operation,
                    attempts=attempt + 1,
                    error_type=type(e).__name__,
                )
                raise

            logger.warning(
                "Transient failure, retrying",
                operation=operation,
                attempt=attempt,
                backoff_seconds=round(backoff, 3),
                error=str(e),
                error_type=type(e).__name__,
            )
            await sleep(backoff)
            attempt += 1
            continue

        if attempt > 0:
            logger.info(
                "Operation succeeded after retry",
                operation=operation,
                attempt=attempt,
            )
        return result
