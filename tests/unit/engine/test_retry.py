# tests/unit/engine/test_retry.py
"""Tests for RetryManager classified backoff."""

import pytest

from lexiforge.contracts import (
    EmptyOrMalformedResponseError,
    PermanentTransformError,
    RateLimitedError,
    StructuralValidationError,
    TransportError,
)
from lexiforge.core.config import DelaySettings
from lexiforge.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager


def _manager(max_attempts: int, sleeps: list[float]) -> RetryManager:
    return RetryManager(RetryConfig(max_attempts=max_attempts, delays=DelaySettings()), sleep=sleeps.append)


def test_success_first_attempt_does_not_sleep() -> None:
    sleeps: list[float] = []
    assert _manager(3, sleeps).execute_with_retry(lambda attempt: attempt) == 1
    assert sleeps == []


def test_max_attempts_is_total_calls() -> None:
    sleeps: list[float] = []
    calls: list[int] = []

    def always_fails(attempt: int) -> None:
        calls.append(attempt)
        raise TransportError("connection reset")

    with pytest.raises(MaxRetriesExceeded) as exc_info:
        _manager(3, sleeps).execute_with_retry(always_fails)

    assert calls == [1, 2, 3]
    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value.last_error, TransportError)
    assert sleeps == [45.0, 45.0]


@pytest.mark.parametrize(
    ("error", "delay"),
    [
        (RateLimitedError("429"), 120.0),
        (TransportError("reset"), 45.0),
        (StructuralValidationError("missing"), 45.0),
        (EmptyOrMalformedResponseError("empty"), 30.0),
    ],
)
def test_backoff_depends_on_error_kind(error: Exception, delay: float) -> None:
    sleeps: list[float] = []
    outcomes: list[Exception | str] = [error, "ok"]

    def operation(attempt: int) -> str:
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    assert _manager(3, sleeps).execute_with_retry(operation) == "ok"
    assert sleeps == [delay]


def test_non_retryable_error_propagates_immediately() -> None:
    sleeps: list[float] = []
    calls: list[int] = []

    def operation(attempt: int) -> None:
        calls.append(attempt)
        raise PermanentTransformError("invalid api key")

    with pytest.raises(PermanentTransformError):
        _manager(5, sleeps).execute_with_retry(operation)
    assert calls == [1]
    assert sleeps == []


def test_unclassified_error_is_not_retried() -> None:
    def operation(attempt: int) -> None:
        raise KeyError("bug")

    with pytest.raises(KeyError):
        _manager(5, []).execute_with_retry(operation)


def test_on_retry_called_only_before_a_real_retry() -> None:
    seen: list[tuple[int, float]] = []

    def operation(attempt: int) -> None:
        raise RateLimitedError("quota")

    with pytest.raises(MaxRetriesExceeded):
        _manager(2, []).execute_with_retry(operation, on_retry=lambda attempt, error, delay: seen.append((attempt, delay)))
    assert seen == [(1, 120.0)]


def test_sleep_may_abort_the_loop() -> None:
    class Stop(Exception):
        pass

    def sleep(seconds: float) -> None:
        raise Stop

    manager = RetryManager(RetryConfig(max_attempts=5, delays=DelaySettings()), sleep=sleep)

    def operation(attempt: int) -> None:
        raise TransportError("reset")

    with pytest.raises(Stop):
        manager.execute_with_retry(operation)


def test_max_attempts_must_be_positive() -> None:
    with pytest.raises(ValueError):
        RetryConfig(max_attempts=0, delays=DelaySettings())
