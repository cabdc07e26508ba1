# src/lexiforge/engine/shutdown.py
"""Cancellation tokens and signal wiring.

Shutdown is propagated as an explicit token rather than through signal
handlers in every process: the supervisor owns SIGINT/SIGTERM and sets a
token that worker tasks poll between batches and wait on while sleeping.
"""

from __future__ import annotations

import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Protocol


class CancellationToken(Protocol):
    """Subset of threading.Event / multiprocessing.Event used for cancellation."""

    def is_set(self) -> bool: ...

    def set(self) -> None: ...

    def wait(self, timeout: float | None = None) -> bool: ...


@contextmanager
def shutdown_signal_context(token: CancellationToken) -> Iterator[CancellationToken]:
    """Install SIGINT/SIGTERM handlers that set the token.

    On first signal: sets the token and restores the default SIGINT handler,
    so a second Ctrl-C force-kills via KeyboardInterrupt.

    When called from a non-main thread, signal registration is skipped
    (signal.signal() raises ValueError there). The token still works; it just
    won't be set by OS signals.

    Restores the original handlers on exit (main thread only).
    """
    if threading.current_thread() is not threading.main_thread():
        yield token
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, frame: Any) -> None:
        token.set()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
    try:
        yield token
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


def ignore_interrupts() -> None:
    """Make the calling worker process ignore SIGINT.

    Ctrl-C is delivered to the whole process group; workers leave shutdown to
    the supervisor, which cancels them through the token.
    """
    signal.signal(signal.SIGINT, signal.SIG_IGN)
