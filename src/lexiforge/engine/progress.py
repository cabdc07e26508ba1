# src/lexiforge/engine/progress.py
"""Throughput and ETA reporting for a running chunk."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

# Speed is averaged over this many most recent batches
_SPEED_WINDOW = 10


def format_duration(seconds: float) -> str:
    """Format seconds as '1h 2m 3s'."""
    seconds = max(0.0, seconds)
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)
    return f"{hours}h {minutes}m {secs}s"


@dataclass(frozen=True)
class ProgressSnapshot:
    """Point-in-time progress report."""

    total_words: int
    processed_words: int
    elapsed_seconds: float
    eta_seconds: float
    percent: float
    words_per_second: float

    def to_log_fields(self) -> dict[str, Any]:
        return {
            "processed": self.processed_words,
            "total": self.total_words,
            "percent": round(self.percent, 2),
            "elapsed": format_duration(self.elapsed_seconds),
            "eta": format_duration(self.eta_seconds),
            "words_per_second": round(self.words_per_second, 2),
        }


@dataclass(frozen=True)
class ProgressTracker:
    """Immutable progress tracker.

    Configuration (total_words, started_at) is fixed at construction.
    update() returns a new tracker; the old one is unchanged.

    Example:
        tracker = ProgressTracker(total_words=100, started_at=clock.monotonic())
        tracker = tracker.update(28, now=clock.monotonic())
        logger.info("progress", **tracker.snapshot(now).to_log_fields())
    """

    total_words: int
    started_at: float
    processed_words: int = 0
    last_update_at: float | None = None
    recent_speeds: tuple[float, ...] = field(default_factory=tuple)

    def update(self, batch_words: int, *, now: float) -> ProgressTracker:
        """Record a committed batch of batch_words words at time now."""
        since = now - (self.last_update_at if self.last_update_at is not None else self.started_at)
        speeds = self.recent_speeds
        if since > 0:
            speeds = (*speeds, batch_words / since)[-_SPEED_WINDOW:]
        return replace(
            self,
            processed_words=self.processed_words + batch_words,
            last_update_at=now,
            recent_speeds=speeds,
        )

    def snapshot(self, now: float) -> ProgressSnapshot:
        elapsed = max(0.0, now - self.started_at)
        if self.recent_speeds:
            speed = sum(self.recent_speeds) / len(self.recent_speeds)
        elif elapsed > 0:
            speed = self.processed_words / elapsed
        else:
            speed = 0.0
        remaining = max(0, self.total_words - self.processed_words)
        eta = remaining / speed if speed > 0 else 0.0
        percent = (self.processed_words / self.total_words * 100.0) if self.total_words else 100.0
        return ProgressSnapshot(
            total_words=self.total_words,
            processed_words=self.processed_words,
            elapsed_seconds=elapsed,
            eta_seconds=eta,
            percent=percent,
            words_per_second=speed,
        )
