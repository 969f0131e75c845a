"""Exponential backoff with jitter for provider calls.

Delay before the retry that follows attempt ``n`` (1-based)::

    delay = base_delay * multiplier ** (n - 1)
    delay += delay * jitter * random()        # 0 <= random() < 1
    delay = min(delay, max_delay)

A provider's ``retry_after`` hint replaces the computed delay (still capped
at ``max_delay``).  Errors flagged ``retryable=False`` stop the loop at once;
any exception that is not a :class:`ProviderError` is treated as a retryable
unknown failure.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from .errors import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.1

    @classmethod
    def from_config(cls, config) -> RetryPolicy:
        return cls(
            max_attempts=config.dispatch_max_attempts,
            base_delay=config.dispatch_base_delay_seconds,
            max_delay=config.dispatch_max_delay_seconds,
            multiplier=config.dispatch_backoff_multiplier,
            jitter=config.dispatch_jitter,
        )

    def compute_delay(
        self,
        attempt: int,
        retry_after: float | None = None,
        rand: Callable[[], float] = random.random,
    ) -> float:
        """Seconds to wait after failed attempt number *attempt*."""
        if retry_after is not None and retry_after > 0:
            return min(retry_after, self.max_delay)
        delay = self.base_delay * self.multiplier ** (attempt - 1)
        delay += delay * self.jitter * rand()
        return min(delay, self.max_delay)


@dataclass
class AttemptRecord:
    attempt: int
    error: str | None = None
    delay: float = 0.0


@dataclass
class RetryOutcome(Generic[T]):
    """Result of :func:`execute_with_retry`."""

    success: bool
    result: T | None = None
    error: ProviderError | None = None
    attempts: list[AttemptRecord] = field(default_factory=list)
    elapsed: float = 0.0


def normalize_error(exc: BaseException) -> ProviderError:
    """Wrap arbitrary exceptions as retryable :class:`ProviderError`."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, TimeoutError):
        return ProviderError(f"provider timed out: {exc}" if str(exc) else "provider timed out")
    return ProviderError(f"{type(exc).__name__}: {exc}")


def execute_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    *,
    operation_name: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
    rand: Callable[[], float] = random.random,
) -> RetryOutcome[T]:
    """Call *operation* until it succeeds, a non-retryable error occurs, or
    ``policy.max_attempts`` is exhausted.

    Exceptions raised by *operation* never escape; they are captured in the
    returned :class:`RetryOutcome`.
    """
    started = time.monotonic()
    records: list[AttemptRecord] = []
    last_error: ProviderError | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            result = operation()
        except Exception as exc:
            last_error = normalize_error(exc)
            record = AttemptRecord(attempt=attempt, error=str(last_error))
            records.append(record)
            logger.warning(
                "%s: attempt %d/%d failed: %s",
                operation_name,
                attempt,
                policy.max_attempts,
                last_error,
            )
            if attempt >= policy.max_attempts or not last_error.retryable:
                break
            record.delay = policy.compute_delay(attempt, last_error.retry_after, rand)
            if record.delay > 0:
                sleep(record.delay)
            continue

        records.append(AttemptRecord(attempt=attempt))
        return RetryOutcome(
            success=True,
            result=result,
            attempts=records,
            elapsed=time.monotonic() - started,
        )

    return RetryOutcome(
        success=False,
        error=last_error,
        attempts=records,
        elapsed=time.monotonic() - started,
    )
