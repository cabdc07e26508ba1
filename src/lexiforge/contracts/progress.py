"""Per-chunk checkpoint descriptor.

A ProgressDescriptor is the persisted resume point of one chunk. It is a
value type: transitions return a new descriptor and never mutate the old one,
so a descriptor read from disk can be compared with the one about to be
written.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

from lexiforge.contracts.chunk import Chunk


@dataclass(frozen=True)
class ProgressDescriptor:
    """Persisted resume point of one chunk.

    Attributes:
        chunk_id: Chunk this descriptor belongs to
        last_committed_index: Chunk-relative index of the first batch not yet
            committed. Every batch below it has a durable fragment.
        total_processed_count: Words processed for this chunk so far
        total_words_in_scope: Number of words in the chunk
        timestamp: When the descriptor was produced (UTC)
        start_index: Global start of the chunk range
        end_index: Global end (exclusive) of the chunk range
    """

    chunk_id: int
    last_committed_index: int
    total_processed_count: int
    total_words_in_scope: int
    timestamp: datetime
    start_index: int
    end_index: int

    def __post_init__(self) -> None:
        if self.last_committed_index < 0:
            raise ValueError(f"last_committed_index must be >= 0, got {self.last_committed_index}")
        if self.total_processed_count < 0:
            raise ValueError(f"total_processed_count must be >= 0, got {self.total_processed_count}")

    @classmethod
    def initial(cls, chunk: Chunk, *, now: datetime | None = None) -> ProgressDescriptor:
        """Descriptor for a chunk that has not committed anything yet."""
        return cls(
            chunk_id=chunk.chunk_id,
            last_committed_index=0,
            total_processed_count=0,
            total_words_in_scope=len(chunk),
            timestamp=now or datetime.now(UTC),
            start_index=chunk.start,
            end_index=chunk.end,
        )

    @property
    def is_complete(self) -> bool:
        """Whether every batch of the chunk has been committed."""
        return self.last_committed_index >= self.total_words_in_scope

    def matches(self, chunk: Chunk) -> bool:
        """Whether this descriptor was recorded for exactly this chunk range."""
        return self.chunk_id == chunk.chunk_id and self.start_index == chunk.start and self.end_index == chunk.end

    def advance(self, committed_index: int, processed: int, *, now: datetime | None = None) -> ProgressDescriptor:
        """Return the descriptor after committing a batch.

        Args:
            committed_index: New chunk-relative resume point
            processed: Number of words processed by the committed batch

        Raises:
            ValueError: If committed_index would move the resume point backwards
        """
        if committed_index < self.last_committed_index:
            raise ValueError(
                f"Chunk {self.chunk_id}: last_committed_index cannot move backwards ({self.last_committed_index} -> {committed_index})"
            )
        return replace(
            self,
            last_committed_index=committed_index,
            total_processed_count=self.total_processed_count + processed,
            timestamp=now or datetime.now(UTC),
        )

    def with_processed_count(self, count: int, *, now: datetime | None = None) -> ProgressDescriptor:
        """Return the descriptor with its processed count replaced (after reconciliation)."""
        return replace(self, total_processed_count=count, timestamp=now or datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "last_committed_index": self.last_committed_index,
            "total_processed_count": self.total_processed_count,
            "total_words_in_scope": self.total_words_in_scope,
            "timestamp": self.timestamp.isoformat(),
            "start_index": self.start_index,
            "end_index": self.end_index,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProgressDescriptor:
        """Rebuild a descriptor from its persisted form.

        Raises:
            KeyError: If a required field is missing
            ValueError: If a field has an invalid value
        """
        timestamp = datetime.fromisoformat(data["timestamp"])
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)
        return cls(
            chunk_id=int(data["chunk_id"]),
            last_committed_index=int(data["last_committed_index"]),
            total_processed_count=int(data["total_processed_count"]),
            total_words_in_scope=int(data["total_words_in_scope"]),
            timestamp=timestamp,
            start_index=int(data["start_index"]),
            end_index=int(data["end_index"]),
        )
