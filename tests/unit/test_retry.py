"""Tests for caverna.core.retry - backoff arithmetic and the retry loop."""

from __future__ import annotations

import pytest

from caverna.core.config import CavernaConfig
from caverna.core.errors import ProviderError
from caverna.core.retry import RetryPolicy, execute_with_retry, normalize_error


class Flaky:
    """Fails with the queued exceptions, then returns ``"done"``."""

    def __init__(self, *errors: Exception) -> None:
        self.errors = list(errors)
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "done"


class TestComputeDelay:
    """Test delay arithmetic."""

    def test_exponential_growth(self):
        policy = RetryPolicy(base_delay=1.0, multiplier=2.0, max_delay=100.0, jitter=0.0)
        assert [policy.compute_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self):
        policy = RetryPolicy(base_delay=1.0, multiplier=10.0, max_delay=5.0, jitter=0.0)
        assert policy.compute_delay(3) == 5.0

    def test_jitter_adds_fraction(self):
        policy = RetryPolicy(base_delay=2.0, multiplier=2.0, max_delay=100.0, jitter=0.5)
        assert policy.compute_delay(1, rand=lambda: 0.5) == pytest.approx(2.5)
        assert policy.compute_delay(1, rand=lambda: 0.0) == 2.0

    def test_retry_after_overrides(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0, jitter=0.0)
        assert policy.compute_delay(1, retry_after=7.0) == 7.0

    def test_retry_after_is_capped(self):
        policy = RetryPolicy(max_delay=3.0)
        assert policy.compute_delay(1, retry_after=60.0) == 3.0

    def test_from_config(self, test_config: CavernaConfig):
        policy = RetryPolicy.from_config(test_config)
        assert policy.max_attempts == test_config.dispatch_max_attempts
        assert policy.jitter == test_config.dispatch_jitter


class TestNormalizeError:
    def test_provider_error_passes_through(self):
        error = ProviderError("quota", retryable=False)
        assert normalize_error(error) is error

    def test_timeout(self):
        assert str(normalize_error(TimeoutError())) == "provider timed out"

    def test_unknown_is_retryable(self):
        error = normalize_error(ValueError("bad"))
        assert error.retryable is True
        assert str(error) == "ValueError: bad"


class TestExecuteWithRetry:
    """Test the retry loop."""

    def test_first_attempt_succeeds(self):
        operation = Flaky()
        outcome = execute_with_retry(operation, RetryPolicy(), sleep=lambda _s: None)
        assert outcome.success is True
        assert outcome.result == "done"
        assert len(outcome.attempts) == 1

    def test_succeeds_after_failures(self):
        slept: list[float] = []
        operation = Flaky(ProviderError("busy"), RuntimeError("glitch"))
        policy = RetryPolicy(max_attempts=3, base_delay=1.0, multiplier=2.0, jitter=0.0)

        outcome = execute_with_retry(operation, policy, sleep=slept.append)

        assert outcome.success is True
        assert operation.calls == 3
        assert slept == [1.0, 2.0]
        assert [record.error for record in outcome.attempts] == [
            "busy",
            "RuntimeError: glitch",
            None,
        ]

    def test_exhausts_attempts(self):
        operation = Flaky(*[ProviderError("down") for _ in range(5)])
        outcome = execute_with_retry(operation, RetryPolicy(max_attempts=3), sleep=lambda _s: None)
        assert outcome.success is False
        assert operation.calls == 3
        assert str(outcome.error) == "down"

    def test_no_sleep_after_final_attempt(self):
        slept: list[float] = []
        operation = Flaky(ProviderError("a"), ProviderError("b"))
        policy = RetryPolicy(max_attempts=2, base_delay=1.0, jitter=0.0)
        execute_with_retry(operation, policy, sleep=slept.append)
        assert slept == [1.0]

    def test_non_retryable_stops(self):
        operation = Flaky(ProviderError("content policy", retryable=False))
        outcome = execute_with_retry(operation, RetryPolicy(max_attempts=5), sleep=lambda _s: None)
        assert outcome.success is False
        assert operation.calls == 1

    def test_retry_after_hint_used(self):
        slept: list[float] = []
        operation = Flaky(ProviderError("rate limited", retry_after=4.0))
        policy = RetryPolicy(max_attempts=2, base_delay=1.0, max_delay=10.0, jitter=0.0)
        execute_with_retry(operation, policy, sleep=slept.append)
        assert slept == [4.0]
