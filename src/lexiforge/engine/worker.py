# src/lexiforge/engine/worker.py
"""WorkerTask: owns exactly one chunk from resume point to terminal status.

A task never raises to its caller. Every way it can end (finished, a batch
out of attempts, cancelled, an unexpected bug) becomes a ChunkOutcome, so
one chunk's failure cannot stop its siblings.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol

import structlog

from lexiforge.contracts import (
    CheckpointCorruptionError,
    Chunk,
    ChunkCancelledError,
    ChunkFailedError,
    ChunkOutcome,
    PartitionMismatchError,
    ProgressDescriptor,
)
from lexiforge.core.checkpoint import CheckpointStore
from lexiforge.core.config import LexiforgeSettings
from lexiforge.core.logging import configure_logging
from lexiforge.engine.batch_executor import BatchExecutor
from lexiforge.engine.clock import DEFAULT_CLOCK, Clock
from lexiforge.engine.merge import MergeEngine
from lexiforge.engine.shutdown import CancellationToken, ignore_interrupts
from lexiforge.plugins.llm.base import TransformerFactory

logger = structlog.get_logger(__name__)


class OutcomeSink(Protocol):
    """Where terminal messages go (queue.Queue or multiprocessing.Queue)."""

    def put(self, item: Any) -> None: ...


class WorkerTask:
    """Runs one chunk through the batch executor.

    Args:
        chunk: Chunk owned by this task
        words: The chunk's words
        settings: Run settings
        transformer_factory: Builds the transformer inside the task
        cancel: Cancellation token shared with the supervisor
        clock: Time source for delays
    """

    def __init__(
        self,
        chunk: Chunk,
        words: Sequence[str],
        settings: LexiforgeSettings,
        transformer_factory: TransformerFactory,
        *,
        cancel: CancellationToken | None = None,
        clock: Clock = DEFAULT_CLOCK,
    ) -> None:
        self._chunk = chunk
        self._words = words
        self._settings = settings
        self._transformer_factory = transformer_factory
        self._cancel = cancel
        self._clock = clock
        self._store = CheckpointStore(settings.directories.output_root)
        self._merge_engine = MergeEngine(self._store)

    def _load_descriptor(self) -> ProgressDescriptor:
        descriptor = self._store.read_progress(self._chunk.chunk_id)
        if descriptor is None:
            descriptor = ProgressDescriptor.initial(self._chunk)
            self._store.write_progress(descriptor)
            return descriptor
        if not descriptor.matches(self._chunk):
            raise PartitionMismatchError(
                f"Chunk {self._chunk.chunk_id} progress was recorded for range "
                f"[{descriptor.start_index}, {descriptor.end_index}) but this run assigns "
                f"[{self._chunk.start}, {self._chunk.end}); resume with the original start index"
            )
        return descriptor

    def _resume_index(self) -> int:
        try:
            descriptor = self._store.read_progress(self._chunk.chunk_id)
        except CheckpointCorruptionError:
            return 0
        return descriptor.last_committed_index if descriptor is not None else 0

    def run(self) -> ChunkOutcome:
        chunk_id = self._chunk.chunk_id
        log = logger.bind(chunk_id=chunk_id, start=self._chunk.start, end=self._chunk.end)

        final = self._store.read_final_artifact(chunk_id)
        if final is not None:
            log.info("chunk_already_final", words=len(final))
            return ChunkOutcome.success(chunk_id, len(final))

        accumulated: dict[str, Any] = {}
        transformer = None
        try:
            descriptor = self._load_descriptor()
            accumulated.update(self._merge_engine.reconcile_chunk(chunk_id) or {})
            log.info(
                "chunk_started",
                resume_index=descriptor.last_committed_index,
                words_in_scope=descriptor.total_words_in_scope,
                records_restored=len(accumulated),
            )
            transformer = self._transformer_factory()
            executor = BatchExecutor(
                self._chunk,
                self._words,
                transformer,
                self._store,
                self._merge_engine,
                self._settings.batch,
                self._settings.delays,
                clock=self._clock,
                cancel=self._cancel,
            )
            execution = executor.execute(descriptor, accumulated)
            records = self._merge_engine.seal_chunk(chunk_id)
            log.info("chunk_completed", words=len(records), batches=execution.batches_executed)
            return ChunkOutcome.success(chunk_id, len(records))

        except ChunkFailedError as e:
            path = self._store.write_partial_artifact(chunk_id, e.failing_index, accumulated)
            log.error(
                "chunk_failed",
                failing_index=e.failing_index,
                attempts=e.attempts,
                error=str(e.last_error),
                partial_artifact=str(path),
                words=len(accumulated),
            )
            return ChunkOutcome.failure(chunk_id, e.failing_index, str(e.last_error), len(accumulated))

        except ChunkCancelledError as e:
            log.warning("chunk_cancelled", resume_index=e.resume_index, words=len(accumulated))
            return ChunkOutcome.cancelled(chunk_id, e.resume_index, len(accumulated))

        except Exception as e:
            # Errors never cross chunk boundaries: report, keep the committed work
            resume_index = self._resume_index()
            try:
                self._store.write_partial_artifact(chunk_id, resume_index, accumulated)
            except OSError as write_error:
                log.error("partial_artifact_write_failed", error=str(write_error))
            log.error("chunk_crashed", resume_index=resume_index, error=str(e), exc_info=True)
            return ChunkOutcome.failure(chunk_id, resume_index, f"{type(e).__name__}: {e}", len(accumulated))

        finally:
            if transformer is not None:
                transformer.close()


def run_worker(
    chunk: Chunk,
    words: Sequence[str],
    settings: LexiforgeSettings,
    transformer_factory: TransformerFactory,
    cancel: CancellationToken,
    outcomes: OutcomeSink,
) -> None:
    """Thread entry point: run the task and post its terminal message."""
    outcome = WorkerTask(chunk, words, settings, transformer_factory, cancel=cancel).run()
    outcomes.put(outcome)


def run_worker_process(
    chunk: Chunk,
    words: Sequence[str],
    settings: LexiforgeSettings,
    transformer_factory: TransformerFactory,
    cancel: CancellationToken,
    outcomes: OutcomeSink,
) -> None:
    """Process entry point.

    The child ignores SIGINT (the supervisor cancels it through the token)
    and configures logging itself, since spawned children start unconfigured.
    """
    ignore_interrupts()
    configure_logging(
        json_output=settings.logging.json_output,
        level=settings.logging.level,
        worker_chunk=chunk.chunk_id,
    )
    run_worker(chunk, words, settings, transformer_factory, cancel, outcomes)
