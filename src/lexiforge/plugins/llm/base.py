# src/lexiforge/plugins/llm/base.py
"""Transformer interface consumed by the batch executor.

A transformer turns a batch of words into a {word: record} map or raises a
ClassifiedError. It must be safely retryable: calling it again with the same
words must not corrupt anything.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from lexiforge.contracts import ErrorKind


@dataclass
class TransformSession:
    """Per-executor call history handed to the transformer.

    One session belongs to one BatchExecutor and is reset at each batch
    boundary. Transformers read it to shape requests (for example, switching
    to the retry prompt) instead of keeping call history in module state.

    Attributes:
        chunk_id: Chunk being processed
        batch_index: Chunk-relative start index of the current batch
        attempt: 1-based attempt number for the current batch
        last_error_kind: Classification of the previous failed attempt
        total_calls: Transformer calls made by this executor so far
        total_failures: Failed calls made by this executor so far
    """

    chunk_id: int
    batch_index: int = 0
    attempt: int = 1
    last_error_kind: ErrorKind | None = None
    total_calls: int = 0
    total_failures: int = 0

    @property
    def is_retry(self) -> bool:
        return self.attempt > 1

    def begin_batch(self, batch_index: int) -> None:
        self.batch_index = batch_index
        self.attempt = 1
        self.last_error_kind = None

    def begin_attempt(self, attempt: int) -> None:
        self.attempt = attempt
        self.total_calls += 1

    def record_failure(self, kind: ErrorKind) -> None:
        self.last_error_kind = kind
        self.total_failures += 1


@runtime_checkable
class Transformer(Protocol):
    """External transformation service."""

    def transform(self, words: Sequence[str], *, session: TransformSession | None = None) -> dict[str, Any]:
        """Transform a batch of words.

        Args:
            words: Non-empty batch of words
            session: Call history of the calling executor

        Returns:
            Map from each requested word to its record

        Raises:
            ClassifiedError: On any failure the executor should classify
        """
        ...

    def close(self) -> None:
        """Release network resources."""
        ...


# Called once inside each worker task. Must be picklable for process isolation.
TransformerFactory = Callable[[], Transformer]
