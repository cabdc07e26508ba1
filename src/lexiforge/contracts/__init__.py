"""Shared contracts for cross-boundary data types.

This package is a LEAF MODULE with no outbound dependencies to core/engine.
Settings classes are NOT re-exported here - import them from
lexiforge.core.config.
"""

from lexiforge.contracts.chunk import Chunk, ChunkOutcome, RunPlan
from lexiforge.contracts.enums import ChunkStatus, ErrorKind, Isolation
from lexiforge.contracts.errors import (
    CheckpointCorruptionError,
    ChunkCancelledError,
    ChunkFailedError,
    ClassifiedError,
    EmptyOrMalformedResponseError,
    MergeLockedError,
    PartitionMismatchError,
    PermanentTransformError,
    RateLimitedError,
    RunAbortedError,
    StructuralValidationError,
    TransportError,
)
from lexiforge.contracts.progress import ProgressDescriptor

__all__ = [
    "CheckpointCorruptionError",
    "Chunk",
    "ChunkCancelledError",
    "ChunkFailedError",
    "ChunkOutcome",
    "ChunkStatus",
    "ClassifiedError",
    "EmptyOrMalformedResponseError",
    "ErrorKind",
    "Isolation",
    "MergeLockedError",
    "PartitionMismatchError",
    "PermanentTransformError",
    "ProgressDescriptor",
    "RateLimitedError",
    "RunAbortedError",
    "RunPlan",
    "StructuralValidationError",
    "TransportError",
]
