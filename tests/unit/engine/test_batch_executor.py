# tests/unit/engine/test_batch_executor.py
"""Tests for the per-chunk batch/retry state machine."""

import threading
from pathlib import Path
from typing import Any

import pytest

from lexiforge.contracts import (
    Chunk,
    ChunkCancelledError,
    ChunkFailedError,
    EmptyOrMalformedResponseError,
    ErrorKind,
    PermanentTransformError,
    ProgressDescriptor,
    RateLimitedError,
    StructuralValidationError,
    TransportError,
)
from lexiforge.core.checkpoint import CheckpointStore
from lexiforge.core.config import DelaySettings
from lexiforge.engine.batch_executor import BatchExecutor, validate_batch_result
from lexiforge.engine.clock import MockClock
from lexiforge.engine.merge import MergeEngine
from lexiforge.plugins.llm.echo import placeholder_record
from lexiforge.testing import ScriptedTransformer, make_descriptor, make_settings

PRODUCTION_DELAYS = DelaySettings().model_dump()


def _executor(
    tmp_path: Path,
    words: list[str],
    transformer: ScriptedTransformer,
    clock: MockClock,
    *,
    cancel: threading.Event | None = None,
    **settings_kwargs: Any,
) -> tuple[BatchExecutor, Chunk, CheckpointStore]:
    settings_kwargs.setdefault("delays", PRODUCTION_DELAYS)
    settings = make_settings(tmp_path, **settings_kwargs)
    store = CheckpointStore(settings.directories.output_root)
    chunk = Chunk(chunk_id=0, start=0, end=len(words))
    executor = BatchExecutor(
        chunk,
        words,
        transformer,
        store,
        MergeEngine(store),
        settings.batch,
        settings.delays,
        clock=clock,
        cancel=cancel,
    )
    return executor, chunk, store


class TestRetries:
    def test_rate_limited_twice_then_success(self, tmp_path: Path, clock: MockClock) -> None:
        """One batch, three attempts allowed: two rate limits then success is three calls."""
        transformer = ScriptedTransformer([RateLimitedError("429"), RateLimitedError("429")])
        executor, chunk, store = _executor(tmp_path, ["a", "b"], transformer, clock, max_retries=3)

        execution = executor.execute(ProgressDescriptor.initial(chunk), {})

        assert len(transformer.calls) == 3
        assert set(execution.records) == {"a", "b"}
        assert clock.sleeps == [120.0, 120.0]
        assert execution.descriptor.last_committed_index == 2

    def test_exhausted_retries_fail_the_chunk_at_batch_index(self, tmp_path: Path, clock: MockClock) -> None:
        transformer = ScriptedTransformer([TransportError("reset")] * 3)
        executor, chunk, store = _executor(tmp_path, ["a", "b"], transformer, clock, max_retries=3)

        with pytest.raises(ChunkFailedError) as exc_info:
            executor.execute(ProgressDescriptor.initial(chunk), {})

        assert exc_info.value.failing_index == 0
        assert exc_info.value.attempts == 3
        assert len(transformer.calls) == 3
        assert clock.sleeps == [45.0, 45.0]
        assert store.list_fragments(0) == []

    def test_empty_result_uses_shortest_backoff(self, tmp_path: Path, clock: MockClock) -> None:
        transformer = ScriptedTransformer([{}])
        executor, chunk, _ = _executor(tmp_path, ["a"], transformer, clock)
        executor.execute(ProgressDescriptor.initial(chunk), {})
        assert clock.sleeps == [30.0]

    def test_missing_word_is_retried_with_retry_flag(self, tmp_path: Path, clock: MockClock) -> None:
        transformer = ScriptedTransformer([{"a": placeholder_record("a")}])
        executor, chunk, _ = _executor(tmp_path, ["a", "b"], transformer, clock)

        executor.execute(ProgressDescriptor.initial(chunk), {})

        assert transformer.retry_flags == [False, True]
        assert clock.sleeps == [45.0]

    def test_permanent_error_fails_without_retry(self, tmp_path: Path, clock: MockClock) -> None:
        transformer = ScriptedTransformer([PermanentTransformError("invalid api key")])
        executor, chunk, _ = _executor(tmp_path, ["a"], transformer, clock, max_retries=5)

        with pytest.raises(ChunkFailedError) as exc_info:
            executor.execute(ProgressDescriptor.initial(chunk), {})

        assert exc_info.value.attempts == 1
        assert len(transformer.calls) == 1

    def test_unclassified_quota_message_backs_off_as_rate_limit(self, tmp_path: Path, clock: MockClock) -> None:
        transformer = ScriptedTransformer([RuntimeError("429 Resource has been exhausted (e.g. check quota)")])
        executor, chunk, _ = _executor(tmp_path, ["a", "b"], transformer, clock, max_retries=3)

        execution = executor.execute(ProgressDescriptor.initial(chunk), {})

        assert len(transformer.calls) == 2
        assert set(execution.records) == {"a", "b"}
        assert clock.sleeps == [120.0]
        assert executor.session.last_error_kind == ErrorKind.RATE_LIMITED
        assert executor.session.total_failures == 1

    def test_unclassified_connection_error_is_retried_as_transport(self, tmp_path: Path, clock: MockClock) -> None:
        transformer = ScriptedTransformer([ConnectionResetError("peer closed"), ConnectionResetError("peer closed")])
        executor, chunk, _ = _executor(tmp_path, ["a"], transformer, clock, max_retries=3)

        executor.execute(ProgressDescriptor.initial(chunk), {})

        assert len(transformer.calls) == 3
        assert transformer.retry_flags == [False, True, True]
        assert clock.sleeps == [45.0, 45.0]

    def test_unclassified_error_exhausts_attempts(self, tmp_path: Path, clock: MockClock) -> None:
        transformer = ScriptedTransformer(fail_words={"a": KeyError("choices")})
        executor, chunk, _ = _executor(tmp_path, ["a"], transformer, clock, max_retries=3)

        with pytest.raises(ChunkFailedError) as exc_info:
            executor.execute(ProgressDescriptor.initial(chunk), {})

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, TransportError)
        assert isinstance(exc_info.value.last_error.__cause__, KeyError)

    def test_unclassified_auth_message_is_permanent(self, tmp_path: Path, clock: MockClock) -> None:
        transformer = ScriptedTransformer([RuntimeError("Invalid API key provided")])
        executor, chunk, _ = _executor(tmp_path, ["a"], transformer, clock, max_retries=5)

        with pytest.raises(ChunkFailedError) as exc_info:
            executor.execute(ProgressDescriptor.initial(chunk), {})

        assert len(transformer.calls) == 1
        assert isinstance(exc_info.value.last_error, PermanentTransformError)

    def test_session_is_reset_per_batch(self, tmp_path: Path, clock: MockClock) -> None:
        transformer = ScriptedTransformer([TransportError("reset")])
        executor, chunk, _ = _executor(tmp_path, ["a", "b", "c"], transformer, clock)

        executor.execute(ProgressDescriptor.initial(chunk), {})

        assert transformer.retry_flags == [False, True, False]
        assert executor.session.total_calls == 3
        assert executor.session.total_failures == 1
        assert executor.session.batch_index == 2


class TestCheckpointing:
    def test_each_batch_commits_fragment_then_progress(self, tmp_path: Path, clock: MockClock) -> None:
        transformer = ScriptedTransformer()
        executor, chunk, store = _executor(tmp_path, ["a", "b", "c", "d", "e"], transformer, clock)

        execution = executor.execute(ProgressDescriptor.initial(chunk), {})

        assert [index for index, _ in store.list_fragments(0)] == [0, 2, 4]
        assert store.read_fragment(store.list_fragments(0)[1][1]) == {"c": placeholder_record("c"), "d": placeholder_record("d")}
        descriptor = store.read_progress(0)
        assert descriptor is not None
        assert descriptor.last_committed_index == 5
        assert descriptor.total_processed_count == 5
        assert execution.batches_executed == 3

    def test_inter_batch_delay_skipped_after_last_batch(self, tmp_path: Path, clock: MockClock) -> None:
        executor, chunk, _ = _executor(tmp_path, ["a", "b", "c", "d", "e"], ScriptedTransformer(), clock)
        executor.execute(ProgressDescriptor.initial(chunk), {})
        assert clock.sleeps == [15.0, 15.0]

    def test_resume_never_reinvokes_committed_batches(self, tmp_path: Path, clock: MockClock) -> None:
        transformer = ScriptedTransformer()
        executor, chunk, _ = _executor(tmp_path, ["a", "b", "c", "d", "e"], transformer, clock)

        executor.execute(make_descriptor(chunk, last_committed_index=2), {"a": 1, "b": 2})

        assert transformer.calls == [["c", "d"], ["e"]]

    def test_failure_keeps_earlier_commits(self, tmp_path: Path, clock: MockClock) -> None:
        transformer = ScriptedTransformer(fail_words={"c": TransportError("reset")})
        executor, chunk, store = _executor(tmp_path, ["a", "b", "c", "d"], transformer, clock)
        accumulated: dict[str, Any] = {}

        with pytest.raises(ChunkFailedError) as exc_info:
            executor.execute(ProgressDescriptor.initial(chunk), accumulated)

        assert exc_info.value.failing_index == 2
        assert set(exc_info.value.accumulated) == {"a", "b"}
        assert set(accumulated) == {"a", "b"}
        descriptor = store.read_progress(0)
        assert descriptor is not None
        assert descriptor.last_committed_index == 2

    def test_complete_descriptor_runs_nothing(self, tmp_path: Path, clock: MockClock) -> None:
        transformer = ScriptedTransformer()
        executor, chunk, _ = _executor(tmp_path, ["a", "b"], transformer, clock)
        execution = executor.execute(make_descriptor(chunk, last_committed_index=2), {})
        assert transformer.calls == []
        assert execution.batches_executed == 0

    def test_periodic_coalescing(self, tmp_path: Path, clock: MockClock) -> None:
        words = ["a", "b", "c", "d", "e"]
        executor, chunk, store = _executor(tmp_path, words, ScriptedTransformer(), clock, batch_size=1, coalesce_every=2)

        executor.execute(ProgressDescriptor.initial(chunk), {})

        assert [index for index, _ in store.list_fragments(0)] == [3, 4]
        assert set(MergeEngine(store).reconcile_chunk(0) or {}) == set(words)

    def test_words_must_match_chunk(self, tmp_path: Path, clock: MockClock) -> None:
        settings = make_settings(tmp_path)
        store = CheckpointStore(settings.directories.output_root)
        with pytest.raises(ValueError, match="spans 3 words"):
            BatchExecutor(
                Chunk(chunk_id=0, start=0, end=3),
                ["a"],
                ScriptedTransformer(),
                store,
                MergeEngine(store),
                settings.batch,
                settings.delays,
                clock=clock,
            )


class TestCancellation:
    def test_stops_after_current_batch_commits(self, tmp_path: Path, clock: MockClock) -> None:
        token = threading.Event()
        transformer = ScriptedTransformer(on_call=lambda batch: token.set())
        executor, chunk, store = _executor(tmp_path, ["a", "b", "c", "d"], transformer, clock, cancel=token)

        with pytest.raises(ChunkCancelledError) as exc_info:
            executor.execute(ProgressDescriptor.initial(chunk), {})

        assert exc_info.value.resume_index == 2
        assert len(transformer.calls) == 1
        assert [index for index, _ in store.list_fragments(0)] == [0]
        descriptor = store.read_progress(0)
        assert descriptor is not None
        assert descriptor.last_committed_index == 2

    def test_cancel_during_backoff(self, tmp_path: Path, clock: MockClock) -> None:
        token = threading.Event()
        transformer = ScriptedTransformer([TransportError("reset")], on_call=lambda batch: token.set())
        executor, chunk, store = _executor(tmp_path, ["a", "b"], transformer, clock, cancel=token)

        with pytest.raises(ChunkCancelledError) as exc_info:
            executor.execute(ProgressDescriptor.initial(chunk), {})

        assert exc_info.value.resume_index == 0
        assert store.list_fragments(0) == []

    def test_already_cancelled_runs_nothing(self, tmp_path: Path, clock: MockClock) -> None:
        token = threading.Event()
        token.set()
        transformer = ScriptedTransformer()
        executor, chunk, _ = _executor(tmp_path, ["a"], transformer, clock, cancel=token)
        with pytest.raises(ChunkCancelledError):
            executor.execute(ProgressDescriptor.initial(chunk), {})
        assert transformer.calls == []


class TestValidateBatchResult:
    def test_keeps_only_requested_words(self) -> None:
        assert validate_batch_result(["a"], {"a": {"x": 1}, "zzz": {"x": 2}}) == {"a": {"x": 1}}

    @pytest.mark.parametrize("result", [None, [], {}, "text"])
    def test_empty_or_non_map(self, result: Any) -> None:
        with pytest.raises(EmptyOrMalformedResponseError):
            validate_batch_result(["a"], result)

    def test_missing_or_empty_record(self) -> None:
        with pytest.raises(StructuralValidationError) as exc_info:
            validate_batch_result(["a", "b", "c"], {"a": {"x": 1}, "b": {}})
        assert exc_info.value.invalid_words == ["b", "c"]
