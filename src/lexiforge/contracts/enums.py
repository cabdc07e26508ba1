"""Status codes and kinds shared across subsystem boundaries."""

from enum import StrEnum


class ErrorKind(StrEnum):
    """Classification of a failed transformer call.

    Drives the backoff delay chosen by the batch executor. Rate limiting
    gets the longest cool-down, transport/parse failures the standard
    retry delay and empty results the shortest.
    """

    RATE_LIMITED = "rate_limited"
    EMPTY_OR_MALFORMED = "empty_or_malformed"
    STRUCTURAL_VALIDATION = "structural_validation"
    TRANSPORT = "transport"


class ChunkStatus(StrEnum):
    """Terminal status reported by a worker task for its chunk."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Isolation(StrEnum):
    """Unit of concurrency used for worker tasks."""

    PROCESS = "process"
    THREAD = "thread"
