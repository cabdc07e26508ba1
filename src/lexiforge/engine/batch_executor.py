# src/lexiforge/engine/batch_executor.py
"""BatchExecutor: drives one chunk through the transformer, batch by batch.

For each batch boundary from the resume point to the end of the chunk:

1. Call the transformer, classifying any failure by its type or message
   and retrying it with the matching backoff.
2. Validate the result covers every requested word.
3. Persist the batch as a fragment, THEN advance and persist the
   ProgressDescriptor. A crash between the two leaves an extra fragment
   that reconciliation absorbs; it never leaves an advanced index without
   its fragment.
4. Throttle before the next batch.

Batches inside a chunk are strictly sequential. Cancellation is observed
only between batches and during waits, never while a batch is committing.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from lexiforge.contracts import (
    Chunk,
    ChunkCancelledError,
    ChunkFailedError,
    ClassifiedError,
    EmptyOrMalformedResponseError,
    ProgressDescriptor,
    StructuralValidationError,
)
from lexiforge.core.checkpoint import CheckpointStore
from lexiforge.core.config import BatchSettings, DelaySettings
from lexiforge.engine.clock import DEFAULT_CLOCK, Clock
from lexiforge.engine.progress import ProgressTracker
from lexiforge.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager, error_kind
from lexiforge.engine.shutdown import CancellationToken
from lexiforge.plugins.llm.base import TransformSession, Transformer
from lexiforge.plugins.llm.errors import to_classified

if TYPE_CHECKING:
    from lexiforge.engine.merge import MergeEngine

logger = structlog.get_logger(__name__)


def validate_batch_result(words: Sequence[str], result: Any) -> dict[str, Any]:
    """Check a transformer result covers the batch and return only the requested words.

    Raises:
        EmptyOrMalformedResponseError: If result is not a non-empty map
        StructuralValidationError: If any requested word is missing or empty
    """
    if not isinstance(result, dict) or not result:
        raise EmptyOrMalformedResponseError(f"Transformer returned an empty or non-map result ({type(result).__name__})")
    missing = [word for word in words if not result.get(word)]
    if missing:
        raise StructuralValidationError(
            f"Invalid or missing data for words: {', '.join(missing)}",
            invalid_words=missing,
        )
    return {word: result[word] for word in words}


@dataclass(frozen=True)
class ChunkExecution:
    """Result of running a chunk to its end.

    Attributes:
        records: Accumulated records for the whole chunk
        descriptor: Descriptor after the last committed batch
        batches_executed: Batches committed by this execution
    """

    records: dict[str, Any]
    descriptor: ProgressDescriptor
    batches_executed: int


class BatchExecutor:
    """Runs the batch/retry state machine for one chunk.

    Args:
        chunk: Chunk to process
        words: The chunk's words (chunk-relative indices)
        transformer: External transformation service
        store: Checkpoint store for fragments and descriptors
        merge_engine: Used to coalesce fragments periodically
        batch_settings: Batch size, attempt bound and coalesce interval
        delays: Throttle and backoff delays
        clock: Time source for delays
        cancel: Token that stops the executor between batches
    """

    def __init__(
        self,
        chunk: Chunk,
        words: Sequence[str],
        transformer: Transformer,
        store: CheckpointStore,
        merge_engine: MergeEngine,
        batch_settings: BatchSettings,
        delays: DelaySettings,
        *,
        clock: Clock = DEFAULT_CLOCK,
        cancel: CancellationToken | None = None,
    ) -> None:
        if len(words) != len(chunk):
            raise ValueError(f"Chunk {chunk.chunk_id} spans {len(chunk)} words but {len(words)} were given")
        self._chunk = chunk
        self._words = words
        self._transformer = transformer
        self._store = store
        self._merge_engine = merge_engine
        self._batch_settings = batch_settings
        self._delays = delays
        self._clock = clock
        self._cancel = cancel
        self._session = TransformSession(chunk_id=chunk.chunk_id)
        self._current_index = 0
        self._retry = RetryManager(
            RetryConfig.from_settings(batch_settings, delays),
            sleep=self._backoff_sleep,
        )

    @property
    def session(self) -> TransformSession:
        return self._session

    def _cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.is_set()

    def _backoff_sleep(self, seconds: float) -> None:
        if self._clock.sleep(seconds, self._cancel):
            raise ChunkCancelledError(self._chunk.chunk_id, self._current_index)

    def execute(self, descriptor: ProgressDescriptor, accumulated: dict[str, Any]) -> ChunkExecution:
        """Process every batch from descriptor.last_committed_index to the chunk end.

        accumulated is updated in place as batches commit, so a caller that
        catches a failure still holds everything committed so far.

        Raises:
            ChunkFailedError: A batch exhausted its attempts or failed permanently
            ChunkCancelledError: Cancellation was observed between batches
        """
        chunk_id = self._chunk.chunk_id
        batch_size = self._batch_settings.batch_size
        coalesce_every = self._batch_settings.coalesce_every
        total = len(self._words)
        index = descriptor.last_committed_index
        since_coalesce = 0
        batches = 0
        tracker = ProgressTracker(total_words=max(0, total - index), started_at=self._clock.monotonic())

        while index < total:
            if self._cancelled():
                raise ChunkCancelledError(chunk_id, index)

            self._current_index = index
            batch = list(self._words[index : index + batch_size])
            records = self._run_batch(index, batch, accumulated)

            accumulated.update(records)
            self._store.write_fragment(chunk_id, index, records)
            next_index = index + len(batch)
            descriptor = descriptor.advance(next_index, len(records))
            self._store.write_progress(descriptor)
            batches += 1

            since_coalesce += 1
            if coalesce_every and since_coalesce >= coalesce_every:
                self._merge_engine.coalesce_chunk(chunk_id)
                since_coalesce = 0

            tracker = tracker.update(len(batch), now=self._clock.monotonic())
            logger.info(
                "batch_committed",
                chunk_id=chunk_id,
                batch_index=index,
                next_index=next_index,
                **tracker.snapshot(self._clock.monotonic()).to_log_fields(),
            )

            index = next_index
            if index < total and self._clock.sleep(self._delays.inter_batch_seconds, self._cancel):
                raise ChunkCancelledError(chunk_id, index)

        return ChunkExecution(records=accumulated, descriptor=descriptor, batches_executed=batches)

    def _run_batch(self, index: int, batch: list[str], accumulated: dict[str, Any]) -> dict[str, Any]:
        chunk_id = self._chunk.chunk_id
        self._session.begin_batch(index)

        def attempt_call(attempt: int) -> dict[str, Any]:
            self._session.begin_attempt(attempt)
            try:
                result = self._transformer.transform(batch, session=self._session)
                records = validate_batch_result(batch, result)
            except Exception as e:
                # Provider SDK errors are classified from their message text
                error = to_classified(e)
                self._session.record_failure(error.kind)
                if error is e:
                    raise
                raise error from e
            return records

        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            logger.warning(
                "batch_attempt_failed",
                chunk_id=chunk_id,
                batch_index=index,
                attempt=attempt,
                max_attempts=self._batch_settings.max_retries,
                error_kind=str(error_kind(error)),
                error=str(error),
                delay_seconds=delay,
            )

        try:
            return self._retry.execute_with_retry(attempt_call, on_retry=on_retry)
        except MaxRetriesExceeded as e:
            logger.error(
                "batch_retries_exhausted",
                chunk_id=chunk_id,
                batch_index=index,
                attempts=e.attempts,
                error=str(e.last_error),
            )
            raise ChunkFailedError(chunk_id, index, e.attempts, e.last_error, dict(accumulated)) from e
        except ClassifiedError as e:
            logger.error(
                "batch_failed_permanently",
                chunk_id=chunk_id,
                batch_index=index,
                attempt=self._session.attempt,
                error=str(e),
            )
            raise ChunkFailedError(chunk_id, index, self._session.attempt, e, dict(accumulated)) from e
