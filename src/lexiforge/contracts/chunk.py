"""Chunk assignment and worker outcome contracts."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from lexiforge.contracts.enums import ChunkStatus


@dataclass(frozen=True)
class Chunk:
    """A disjoint contiguous range [start, end) of the word list.

    Exactly one worker task owns a chunk. Indices are global word list
    indices; batch indices used inside the chunk are relative to start.
    """

    chunk_id: int
    start: int
    end: int

    def __post_init__(self) -> None:
        if self.chunk_id < 0:
            raise ValueError(f"chunk_id must be >= 0, got {self.chunk_id}")
        if self.start < 0 or self.end < self.start:
            raise ValueError(f"Invalid chunk range [{self.start}, {self.end})")

    def __len__(self) -> int:
        return self.end - self.start

    def words(self, word_list: Sequence[str]) -> list[str]:
        """Slice this chunk's words out of the full word list."""
        return list(word_list[self.start : self.end])


@dataclass(frozen=True)
class RunPlan:
    """Partitioning parameters persisted so a later run maps chunk ids identically."""

    start_index: int
    num_workers: int
    word_count: int


@dataclass(frozen=True)
class ChunkOutcome:
    """Terminal message a worker task sends to the supervisor.

    Attributes:
        chunk_id: Chunk the message refers to
        status: Terminal status
        last_processed_index: Chunk-relative resume point (None on success)
        error: Error description for failed chunks
        words_processed: Number of records in the chunk's result
    """

    chunk_id: int
    status: ChunkStatus
    last_processed_index: int | None = None
    error: str | None = None
    words_processed: int = 0

    @classmethod
    def success(cls, chunk_id: int, words_processed: int) -> ChunkOutcome:
        return cls(chunk_id=chunk_id, status=ChunkStatus.SUCCEEDED, words_processed=words_processed)

    @classmethod
    def failure(cls, chunk_id: int, last_processed_index: int, error: str, words_processed: int = 0) -> ChunkOutcome:
        return cls(
            chunk_id=chunk_id,
            status=ChunkStatus.FAILED,
            last_processed_index=last_processed_index,
            error=error,
            words_processed=words_processed,
        )

    @classmethod
    def cancelled(cls, chunk_id: int, last_processed_index: int, words_processed: int = 0) -> ChunkOutcome:
        return cls(
            chunk_id=chunk_id,
            status=ChunkStatus.CANCELLED,
            last_processed_index=last_processed_index,
            words_processed=words_processed,
        )
