"""File-backed checkpoint persistence for chunk progress and partial results."""

from lexiforge.core.checkpoint.serialization import atomic_write, dumps_checkpoint, loads_checkpoint
from lexiforge.core.checkpoint.store import CheckpointStore

__all__ = [
    "CheckpointStore",
    "atomic_write",
    "dumps_checkpoint",
    "loads_checkpoint",
]
