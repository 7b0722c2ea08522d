"""
Retry Policy: Exponential Backoff with Jitter

Wraps blob store calls that fail with a retryable error code:
- Exponential backoff: base × 2^n, capped at max_delay_ms
- Full jitter: random(0, backoff) to spread concurrent retries
- Only STORAGE_IO is retried; every other error returns immediately
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from vecgraph.core.config import StoreConfig
from vecgraph.core.errors import Result, VecGraphError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retry configuration."""

    max_retries: int = 3
    base_delay_ms: int = 10
    max_delay_ms: int = 1000
    exponential_base: float = 2.0
    jitter: bool = True  # Full jitter

    @classmethod
    def default(cls) -> RetryPolicy:
        return cls()

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        return cls(max_retries=0)

    @classmethod
    def from_store_config(cls, config: StoreConfig) -> RetryPolicy:
        return cls(
            max_retries=config.retry_max_attempts,
            base_delay_ms=config.retry_base_delay_ms,
            max_delay_ms=config.retry_max_delay_ms,
        )


@dataclass
class RetryStats:
    """Retry attempt statistics."""
    total_attempts: int = 0
    failed_attempts: int = 0
    total_delay_ms: float = 0.0
    last_error: Optional[str] = None


def calculate_backoff(
    attempt: int,
    base_delay_ms: int,
    max_delay_ms: int,
    exponential_base: float,
    jitter: bool,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Backoff delay in milliseconds.

    Full jitter: random(0, min(cap, base * 2^attempt))
    """
    delay = min(max_delay_ms, base_delay_ms * (exponential_base ** attempt))
    if jitter:
        delay = (rng or random).uniform(0, delay)
    return delay


def retry_result(
    func: Callable[[], Result[T, VecGraphError]],
    policy: Optional[RetryPolicy] = None,
    operation: str = "operation",
    stats: Optional[RetryStats] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Result[T, VecGraphError]:
    """
    Call func until it succeeds, fails non-retryably, or retries run out.

    Args:
        func: Zero-argument callable returning a Result
        policy: Retry configuration (default if None)
        operation: Label for log lines
        stats: Optional accumulator for attempt counts
        sleep: Delay function taking seconds

    Returns:
        The first Ok, the first non-retryable Err, or the last Err
    """
    if policy is None:
        policy = RetryPolicy.default()
    if stats is None:
        stats = RetryStats()

    attempt = 0
    while True:
        stats.total_attempts += 1
        result = func()
        if result.is_ok():
            return result

        error = result.error
        stats.failed_attempts += 1
        stats.last_error = str(error)
        if not error.code.retryable:
            return result
        if attempt >= policy.max_retries:
            break

        delay = calculate_backoff(
            attempt=attempt,
            base_delay_ms=policy.base_delay_ms,
            max_delay_ms=policy.max_delay_ms,
            exponential_base=policy.exponential_base,
            jitter=policy.jitter,
        )
        stats.total_delay_ms += delay
        logger.debug(
            "%s failed (%s), retrying in %.1fms (attempt %d)",
            operation, error, delay, attempt + 2,
        )
        sleep(delay / 1000)
        attempt += 1

    logger.warning("%s failed after %d attempts: %s", operation, attempt + 1, error)
    return result
