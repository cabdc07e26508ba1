# src/lexiforge/engine/retry.py
"""RetryManager: classified backoff with tenacity.

A failed transformer call is retried after a fixed delay chosen by the
error's classification (see DelaySettings.backoff_for). max_attempts is the
TOTAL number of calls for one batch, not the number of retries.

Only ClassifiedError instances with retryable=True are retried. Anything
else propagates from execute_with_retry unchanged after the first attempt.
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
)

from lexiforge.contracts import ClassifiedError, ErrorKind
from lexiforge.core.config import BatchSettings, DelaySettings

T = TypeVar("T")


class MaxRetriesExceeded(Exception):
    """Raised when max retry attempts are exceeded."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Max retries ({attempts}) exceeded: {last_error}")


def is_retryable(error: BaseException) -> bool:
    return isinstance(error, ClassifiedError) and error.retryable


def error_kind(error: BaseException) -> ErrorKind:
    """Classification used for backoff; unclassified errors count as transport."""
    if isinstance(error, ClassifiedError):
        return error.kind
    return ErrorKind.TRANSPORT


@dataclass(frozen=True)
class RetryConfig:
    """Retry bounds and the classified backoff table."""

    max_attempts: int
    delays: DelaySettings

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def from_settings(cls, batch: BatchSettings, delays: DelaySettings) -> "RetryConfig":
        return cls(max_attempts=batch.max_retries, delays=delays)

    def delay_for(self, error: BaseException) -> float:
        return self.delays.backoff_for(error_kind(error))


class RetryManager:
    """Runs one batch's transformer call under the classified backoff policy.

    Example:
        manager = RetryManager(config, sleep=clock_sleep)

        records = manager.execute_with_retry(
            lambda attempt: transformer.transform(words, session=session),
            on_retry=lambda attempt, error, delay: log(attempt, error, delay),
        )
    """

    def __init__(self, config: RetryConfig, *, sleep: Callable[[float], None]) -> None:
        """Initialize with config.

        Args:
            config: Retry configuration
            sleep: Called with the backoff delay between attempts. It may raise
                to abandon the loop (e.g. on cancellation).
        """
        self._config = config
        self._sleep = sleep

    def _wait(self, retry_state: RetryCallState) -> float:
        # wait is only consulted after a failed attempt
        assert retry_state.outcome is not None
        error = retry_state.outcome.exception()
        assert error is not None
        return self._config.delay_for(error)

    def execute_with_retry(
        self,
        operation: Callable[[int], T],
        *,
        on_retry: Callable[[int, BaseException, float], None] | None = None,
    ) -> T:
        """Execute operation with retry logic.

        Args:
            operation: Called with the 1-based attempt number
            on_retry: Optional callback before each backoff (attempt, error, delay)

        Returns:
            Result of operation

        Raises:
            MaxRetriesExceeded: If max attempts exceeded
            Exception: If a non-retryable error occurs, or sleep raises
        """
        attempt = 0
        last_error: BaseException | None = None

        try:
            for attempt_state in Retrying(
                stop=stop_after_attempt(self._config.max_attempts),
                wait=self._wait,
                retry=retry_if_exception(is_retryable),
                sleep=self._sleep,
                reraise=False,
            ):
                with attempt_state:
                    attempt = attempt_state.retry_state.attempt_number
                    try:
                        return operation(attempt)
                    except Exception as e:
                        last_error = e
                        # Only announce errors that will actually be retried
                        if on_retry and is_retryable(e) and attempt < self._config.max_attempts:
                            on_retry(attempt, e, self._config.delay_for(e))
                        raise

        except RetryError as e:
            final_error = last_error or e.last_attempt.exception()
            assert final_error is not None, "RetryError without exception is impossible"
            raise MaxRetriesExceeded(attempt, final_error) from e

        raise RuntimeError("Unexpected state in retry loop")  # pragma: no cover
