"""Per-provider circuit breaker and health statistics.

Every configured provider gets one :class:`ProviderHealth`, which counts
calls and latency and owns a :class:`CircuitBreaker`.  The orchestrator asks
the breaker before each provider call and skips the provider while its
circuit is OPEN, so a dead provider costs the failover path one check
instead of a full retry cycle.

Breaker states
--------------
::

    CLOSED ──(failure_threshold failures within monitoring_window)──> OPEN
    OPEN ──(recovery_timeout since the last failure)──> HALF_OPEN
    HALF_OPEN ──(success_threshold successes)──> CLOSED
    HALF_OPEN ──(any failure)──> OPEN

``reset()`` forces CLOSED.  Time is read from an injectable monotonic clock.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class CircuitPolicy:
    """Thresholds shared by every provider's breaker."""

    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    success_threshold: int = 2
    monitoring_window: float = 60.0

    @classmethod
    def from_config(cls, config) -> CircuitPolicy:
        return cls(
            failure_threshold=config.circuit_failure_threshold,
            recovery_timeout=config.circuit_recovery_seconds,
            success_threshold=config.circuit_success_threshold,
            monitoring_window=config.circuit_window_seconds,
        )


class CircuitBreaker:
    """Three-state breaker for one provider.  Thread-safe."""

    def __init__(
        self,
        name: str,
        policy: CircuitPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.policy = policy or CircuitPolicy()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._successes = 0
        self._last_failure: float | None = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def allow_request(self) -> bool:
        """Whether a call may go through now.

        An OPEN breaker whose recovery timeout has elapsed moves to HALF_OPEN
        and lets the call through as a trial.
        """
        with self._lock:
            if self._state is not CircuitState.OPEN:
                return True
            if self._remaining_locked() > 0:
                return False
            self._state = CircuitState.HALF_OPEN
            self._successes = 0
            logger.info("Circuit for %s is HALF_OPEN", self.name)
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.policy.success_threshold:
                    self._state = CircuitState.CLOSED
                    self._failures.clear()
                    self._successes = 0
                    logger.info("Circuit for %s is CLOSED", self.name)
            else:
                self._prune_locked()

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            self._failures.append(now)
            self._last_failure = now

            if self._state is CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._successes = 0
                logger.warning("Circuit for %s is OPEN again after a failed trial call", self.name)
            elif self._state is CircuitState.CLOSED:
                self._prune_locked()
                if len(self._failures) >= self.policy.failure_threshold:
                    self._state = CircuitState.OPEN
                    logger.warning(
                        "Circuit for %s is OPEN (%d failures in %gs)",
                        self.name,
                        len(self._failures),
                        self.policy.monitoring_window,
                    )

    def remaining_recovery(self) -> float:
        """Seconds until an OPEN breaker allows a trial call (0 otherwise)."""
        with self._lock:
            if self._state is not CircuitState.OPEN:
                return 0.0
            return self._remaining_locked()

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures.clear()
            self._successes = 0
            self._last_failure = None
        logger.info("Circuit for %s manually reset to CLOSED", self.name)

    def status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "state": self._state.value,
                "failures": len(self._failures),
                "successes": self._successes,
                "retry_in_seconds": (
                    round(self._remaining_locked(), 3) if self._state is CircuitState.OPEN else 0.0
                ),
            }

    def _remaining_locked(self) -> float:
        if self._last_failure is None:
            return 0.0
        return max(0.0, self.policy.recovery_timeout - (self._clock() - self._last_failure))

    def _prune_locked(self) -> None:
        cutoff = self._clock() - self.policy.monitoring_window
        while self._failures and self._failures[0] <= cutoff:
            self._failures.popleft()


class ProviderHealth:
    """Call statistics and the circuit breaker for one provider.

    Args:
        name: Provider name.
        policy: Breaker thresholds.
        clock: Monotonic time source for the breaker.
    """

    def __init__(
        self,
        name: str,
        policy: CircuitPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.breaker = CircuitBreaker(name, policy, clock)
        self.enabled = True
        self._lock = threading.Lock()
        self.total_calls = 0
        self.successful_calls = 0
        self.failed_calls = 0
        self.consecutive_failures = 0
        self._total_latency_ms = 0.0
        self.last_error: str | None = None
        self.last_success_at: datetime | None = None
        self.last_failure_at: datetime | None = None

    def record_success(self, latency_ms: float) -> None:
        with self._lock:
            self.total_calls += 1
            self.successful_calls += 1
            self.consecutive_failures = 0
            self._total_latency_ms += latency_ms
            self.last_success_at = datetime.now(timezone.utc)
        self.breaker.record_success()

    def record_failure(self, error: str) -> None:
        with self._lock:
            self.total_calls += 1
            self.failed_calls += 1
            self.consecutive_failures += 1
            self.last_error = error
            self.last_failure_at = datetime.now(timezone.utc)
        self.breaker.record_failure()

    @property
    def average_latency_ms(self) -> float | None:
        with self._lock:
            if not self.successful_calls:
                return None
            return self._total_latency_ms / self.successful_calls

    def snapshot(self) -> dict[str, Any]:
        average = self.average_latency_ms
        with self._lock:
            return {
                "name": self.name,
                "enabled": self.enabled,
                "circuit": self.breaker.status(),
                "total_calls": self.total_calls,
                "successful_calls": self.successful_calls,
                "failed_calls": self.failed_calls,
                "consecutive_failures": self.consecutive_failures,
                "average_latency_ms": round(average, 1) if average is not None else None,
                "last_error": self.last_error,
                "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
                "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            }
