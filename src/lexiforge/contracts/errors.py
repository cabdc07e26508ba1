"""Exception taxonomy for the batch pipeline.

Three tiers, handled at different levels:

- Retriable-batch errors (ClassifiedError subclasses with retryable=True)
  are absorbed by the batch executor's backoff loop.
- Fatal-chunk errors (ChunkFailedError) end one worker task and are
  reported upward with the index to resume from.
- Fatal-run errors (RunAbortedError) stop the supervisor before any
  worker task starts.
"""

from __future__ import annotations

from typing import Any

from lexiforge.contracts.enums import ErrorKind


class ClassifiedError(Exception):
    """Base exception for transformer failures the executor can classify.

    Attributes:
        kind: Backoff classification for this failure
        retryable: Whether repeating the same call might succeed
    """

    kind: ErrorKind = ErrorKind.TRANSPORT

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class RateLimitedError(ClassifiedError):
    """Provider-side throttling (HTTP 429, quota exhausted)."""

    kind = ErrorKind.RATE_LIMITED


class EmptyOrMalformedResponseError(ClassifiedError):
    """Response was empty or did not contain a key/value object."""

    kind = ErrorKind.EMPTY_OR_MALFORMED


class StructuralValidationError(ClassifiedError):
    """Response parsed, but requested words are missing or incomplete.

    Attributes:
        invalid_words: Words that were absent or lacked required fields
    """

    kind = ErrorKind.STRUCTURAL_VALIDATION

    def __init__(self, message: str, *, invalid_words: list[str] | None = None) -> None:
        super().__init__(message)
        self.invalid_words = invalid_words or []


class TransportError(ClassifiedError):
    """Network failure, server error or undecodable HTTP body."""

    kind = ErrorKind.TRANSPORT


class PermanentTransformError(ClassifiedError):
    """Failure that will not go away on retry (bad credentials, policy refusal)."""

    kind = ErrorKind.TRANSPORT

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=False)


class ChunkFailedError(Exception):
    """Raised when a batch exhausts its retries and the chunk must stop.

    Attributes:
        chunk_id: Chunk whose batch failed
        failing_index: Chunk-relative start index of the failed batch,
            which is also the resume point for a later run
        attempts: Number of transformer calls made for the batch
        last_error: The final error observed
        accumulated: Records committed for the chunk before the failure
    """

    def __init__(
        self,
        chunk_id: int,
        failing_index: int,
        attempts: int,
        last_error: BaseException,
        accumulated: dict[str, Any],
    ) -> None:
        self.chunk_id = chunk_id
        self.failing_index = failing_index
        self.attempts = attempts
        self.last_error = last_error
        self.accumulated = accumulated
        super().__init__(f"Chunk {chunk_id} failed at index {failing_index} after {attempts} attempt(s): {last_error}")


class ChunkCancelledError(Exception):
    """Raised when cancellation is observed between batches.

    Attributes:
        chunk_id: Chunk that stopped
        resume_index: Chunk-relative index of the first uncommitted batch
    """

    def __init__(self, chunk_id: int, resume_index: int) -> None:
        self.chunk_id = chunk_id
        self.resume_index = resume_index
        super().__init__(f"Chunk {chunk_id} cancelled before index {resume_index}")


class PartitionMismatchError(Exception):
    """Persisted progress was recorded for a different chunk range."""


class RunAbortedError(Exception):
    """Environment-level failure that prevents any worker task from starting."""


class CheckpointCorruptionError(Exception):
    """A checkpoint file exists but cannot be parsed."""


class MergeLockedError(Exception):
    """The output tree is locked by another live process."""
