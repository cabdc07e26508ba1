# src/lexiforge/engine/clock.py
"""Clock abstraction for testable delays.

The batch executor spends most of its wall time waiting: the inter-batch
throttle and the error-specific backoff. Routing both through a Clock lets
tests assert the exact delays requested without waiting for them.

Production code uses SystemClock (the default).
Tests inject MockClock to record sleeps and control time advancement.
"""

from __future__ import annotations

import time
from typing import Protocol

from lexiforge.engine.shutdown import CancellationToken


class Clock(Protocol):
    """Abstract clock for throttling and backoff.

    Implementations:
    - SystemClock: Uses time.monotonic() and real waits (production)
    - MockClock: Records sleeps and advances instantly (testing)
    """

    def monotonic(self) -> float:
        """Return monotonic time in seconds."""
        ...

    def sleep(self, seconds: float, cancel: CancellationToken | None = None) -> bool:
        """Wait for the given number of seconds.

        Args:
            seconds: Delay to wait
            cancel: Token whose setting ends the wait early

        Returns:
            True if the wait was cut short by cancellation, False otherwise.
        """
        ...


class SystemClock:
    """Production clock using time.monotonic().

    Waits with a cancellation token use the token's own wait(), so a
    shutdown request wakes a sleeping worker immediately.
    """

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float, cancel: CancellationToken | None = None) -> bool:
        if cancel is None:
            if seconds > 0:
                time.sleep(seconds)
            return False
        if cancel.is_set():
            return True
        return bool(cancel.wait(seconds))


class MockClock:
    """Controllable clock for deterministic testing.

    Example:
        clock = MockClock()
        executor = BatchExecutor(..., clock=clock)
        executor.execute(chunk)
        assert clock.sleeps == [45.0, 45.0]
    """

    def __init__(self, start: float = 0.0) -> None:
        self._current = start
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self._current

    def advance(self, seconds: float) -> None:
        """Advance mock time by specified seconds.

        Raises:
            ValueError: If seconds is negative.
        """
        if seconds < 0:
            raise ValueError(f"Cannot advance time by negative amount: {seconds}")
        self._current += seconds

    def sleep(self, seconds: float, cancel: CancellationToken | None = None) -> bool:
        self.sleeps.append(seconds)
        if cancel is not None and cancel.is_set():
            return True
        self.advance(seconds)
        return False


# Default clock for production use
DEFAULT_CLOCK: Clock = SystemClock()
