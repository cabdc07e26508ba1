"""Pipeline engine: batch execution, worker tasks, supervision and merging."""

from lexiforge.engine.batch_executor import BatchExecutor, ChunkExecution, validate_batch_result
from lexiforge.engine.clock import DEFAULT_CLOCK, Clock, MockClock, SystemClock
from lexiforge.engine.merge import MergeEngine, merge_fragments
from lexiforge.engine.progress import ProgressTracker
from lexiforge.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager
from lexiforge.engine.supervisor import RunSummary, Supervisor, partition_chunks
from lexiforge.engine.worker import WorkerTask

__all__ = [
    "DEFAULT_CLOCK",
    "BatchExecutor",
    "ChunkExecution",
    "Clock",
    "MaxRetriesExceeded",
    "MergeEngine",
    "MockClock",
    "ProgressTracker",
    "RetryConfig",
    "RetryManager",
    "RunSummary",
    "Supervisor",
    "SystemClock",
    "WorkerTask",
    "merge_fragments",
    "partition_chunks",
]
