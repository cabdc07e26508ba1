# src/lexiforge/testing/__init__.py
"""Test infrastructure for lexiforge pipelines.

Factories for constructing production types with test-friendly defaults
(zero delays, tiny batches, thread isolation). When a settings model or
contract constructor changes, update the factory here.

Usage:
    from lexiforge.testing import make_settings, ScriptedTransformer
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from lexiforge.contracts import Chunk, Isolation, ProgressDescriptor
from lexiforge.core.config import (
    BatchSettings,
    DelaySettings,
    DirectorySettings,
    LexiforgeSettings,
    LLMSettings,
    WorkerSettings,
)
from lexiforge.testing.scripted import ScriptedTransformer, SharedTransformerFactory, StallingTransformer

__all__ = [
    "ScriptedTransformer",
    "SharedTransformerFactory",
    "StallingTransformer",
    "make_descriptor",
    "make_settings",
]

FIXED_TIME = datetime(2024, 1, 1, tzinfo=UTC)


def make_settings(
    root: Path,
    *,
    batch_size: int = 2,
    max_retries: int = 3,
    coalesce_every: int = 0,
    num_workers: int = 2,
    isolation: Isolation = Isolation.THREAD,
    delays: dict[str, float] | None = None,
    **overrides: Any,
) -> LexiforgeSettings:
    """Settings rooted at a temporary directory with no waiting."""
    delay_values = {"inter_batch_seconds": 0.0, "retry_seconds": 0.0, "rate_limit_seconds": 0.0, "empty_result_seconds": 0.0}
    delay_values.update(delays or {})
    return LexiforgeSettings(
        directories=DirectorySettings(
            output_root=root / "output",
            word_list=root / "words.txt",
            config_dir=root / "config",
            test_results_dir=root / "output" / "test",
        ),
        batch=BatchSettings(batch_size=batch_size, max_retries=max_retries, coalesce_every=coalesce_every),
        delays=DelaySettings(**delay_values),
        workers=WorkerSettings(
            num_workers=num_workers,
            isolation=isolation,
            termination_grace_seconds=overrides.pop("termination_grace_seconds", 5.0),
            poll_interval_seconds=overrides.pop("poll_interval_seconds", 0.05),
        ),
        llm=overrides.pop("llm", LLMSettings(provider="echo")),
        **overrides,
    )


def make_descriptor(
    chunk: Chunk,
    *,
    last_committed_index: int = 0,
    total_processed_count: int | None = None,
) -> ProgressDescriptor:
    """Descriptor for chunk with a fixed timestamp."""
    return ProgressDescriptor(
        chunk_id=chunk.chunk_id,
        last_committed_index=last_committed_index,
        total_processed_count=last_committed_index if total_processed_count is None else total_processed_count,
        total_words_in_scope=len(chunk),
        timestamp=FIXED_TIME,
        start_index=chunk.start,
        end_index=chunk.end,
    )
