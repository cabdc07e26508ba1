# src/lexiforge/engine/supervisor.py
"""Supervisor: partitions the word list, runs one worker task per chunk, finalizes once.

Each chunk runs in its own process (default) or thread. The supervisor
waits for one terminal message per task on a queue; a task that dies
without reporting gets a synthesized failure built from its persisted
progress. When every task has reported, the merge engine's finalize path
runs exactly once.

Shutdown: SIGINT/SIGTERM set the cancellation token. Tasks stop after
their current batch commits. Processes still running after the grace
period are terminated; threads are joined, since they cannot be killed.
Only once no task can write any more does the merge engine's recovery
path consolidate whatever was committed, and finalization cover the
chunks that did finish.
"""

from __future__ import annotations

import math
import multiprocessing
import queue
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from functools import partial
from typing import Any

import structlog
from filelock import Timeout

from lexiforge.contracts import (
    CheckpointCorruptionError,
    Chunk,
    ChunkOutcome,
    ChunkStatus,
    Isolation,
    RunAbortedError,
    RunPlan,
)
from lexiforge.core.checkpoint import CheckpointStore
from lexiforge.core.config import LexiforgeSettings
from lexiforge.core.logging import worker_name
from lexiforge.core.wordlist import load_word_list
from lexiforge.engine.merge import MergeEngine
from lexiforge.engine.shutdown import CancellationToken, shutdown_signal_context
from lexiforge.engine.worker import run_worker, run_worker_process
from lexiforge.plugins.llm.base import TransformerFactory
from lexiforge.plugins.llm.factory import build_transformer
from lexiforge.plugins.llm.prompts import ensure_prompt_config

logger = structlog.get_logger(__name__)


def partition_chunks(word_count: int, start_index: int, num_workers: int) -> list[Chunk]:
    """Split [start_index, word_count) into at most num_workers contiguous chunks.

    Chunks are sized ceil(remaining / num_workers). Chunk ids are the
    worker slot numbers; slots whose computed start lies at or beyond the
    end of the list get no chunk.

    Raises:
        ValueError: If start_index is negative or num_workers < 1
    """
    if start_index < 0:
        raise ValueError(f"start_index must be >= 0, got {start_index}")
    if num_workers < 1:
        raise ValueError(f"num_workers must be >= 1, got {num_workers}")
    remaining = word_count - start_index
    if remaining <= 0:
        return []
    size = math.ceil(remaining / num_workers)
    chunks = []
    for slot in range(num_workers):
        start = start_index + slot * size
        if start >= word_count:
            continue
        chunks.append(Chunk(chunk_id=slot, start=start, end=min(start + size, word_count)))
    return chunks


@dataclass(frozen=True)
class RunSummary:
    """What a supervisor run did.

    Attributes:
        plan: Partitioning used
        outcomes: One terminal outcome per chunk, ordered by chunk id
        finalized: Whether a global result was written
        cancelled: Whether the run was stopped by cancellation
    """

    plan: RunPlan
    outcomes: tuple[ChunkOutcome, ...]
    finalized: bool
    cancelled: bool
    recovered: dict[int, int] = field(default_factory=dict)

    @property
    def failed(self) -> tuple[ChunkOutcome, ...]:
        return tuple(o for o in self.outcomes if o.status != ChunkStatus.SUCCEEDED)

    @property
    def succeeded(self) -> tuple[ChunkOutcome, ...]:
        return tuple(o for o in self.outcomes if o.status == ChunkStatus.SUCCEEDED)

    @property
    def ok(self) -> bool:
        return not self.cancelled and not self.failed


class Supervisor:
    """Runs the whole pipeline over one output tree.

    Args:
        settings: Run settings
        transformer_factory: Builds a transformer inside each task. Defaults
            to the configured LLM provider with the persisted prompt config.
            Must be picklable when isolation is "process".
        word_list: Preloaded word list (defaults to loading the configured file)
        install_signal_handlers: Route SIGINT/SIGTERM to cancel()
    """

    def __init__(
        self,
        settings: LexiforgeSettings,
        transformer_factory: TransformerFactory | None = None,
        *,
        word_list: Sequence[str] | None = None,
        install_signal_handlers: bool = True,
    ) -> None:
        self._settings = settings
        self._transformer_factory = transformer_factory
        self._word_list = word_list
        self._install_signal_handlers = install_signal_handlers
        self._store = CheckpointStore(settings.directories.output_root)
        self._merge_engine = MergeEngine(self._store)
        self._mp_context = multiprocessing.get_context()
        self._token: CancellationToken
        if settings.workers.isolation == Isolation.PROCESS:
            self._token = self._mp_context.Event()
        else:
            self._token = threading.Event()
        self._finalize_lock = threading.Lock()
        self._finalized: bool | None = None

    @property
    def store(self) -> CheckpointStore:
        return self._store

    def cancel(self) -> None:
        """Request cooperative shutdown of all running tasks."""
        self._token.set()

    # -- preparation --------------------------------------------------------

    def _load_words(self) -> Sequence[str]:
        if self._word_list is not None:
            return self._word_list
        path = self._settings.directories.word_list
        try:
            return load_word_list(path, comment_marker=self._settings.directories.comment_marker)
        except (OSError, UnicodeDecodeError) as e:
            raise RunAbortedError(f"Cannot read word list {path}: {e}") from e

    def resolve_plan(self, start_index: int | None, word_count: int) -> RunPlan:
        """Partitioning for this run.

        Without an explicit start index the persisted plan is reused, so
        chunk ids map to the ranges their checkpoints were recorded for.
        """
        try:
            stored = self._store.read_run_plan()
        except CheckpointCorruptionError as e:
            logger.warning("run_plan_unreadable", error=str(e))
            stored = None
        if start_index is None and stored is not None:
            if stored.word_count != word_count:
                logger.warning("word_list_changed", planned=stored.word_count, actual=word_count)
            return RunPlan(start_index=stored.start_index, num_workers=stored.num_workers, word_count=word_count)
        plan = RunPlan(
            start_index=start_index or 0,
            num_workers=self._settings.workers.num_workers,
            word_count=word_count,
        )
        if stored is not None and (stored.start_index, stored.num_workers) != (plan.start_index, plan.num_workers):
            logger.warning(
                "run_plan_changed",
                previous_start=stored.start_index,
                previous_workers=stored.num_workers,
                start=plan.start_index,
                workers=plan.num_workers,
            )
        return plan

    # -- run ----------------------------------------------------------------

    def run(
        self,
        start_index: int | None = None,
        *,
        reset_existing_config: bool = False,
        preserve_progress: bool = False,
    ) -> RunSummary:
        """Process the word list from start_index and finalize.

        Args:
            start_index: Global index to start from (None reuses the persisted plan)
            reset_existing_config: Replace the persisted prompt config with the default
            preserve_progress: Keep the progress directory after finalization

        Raises:
            RunAbortedError: If the word list or the output tree is unusable,
                or another run holds the output tree
        """
        words = self._load_words()
        try:
            self._store.ensure_layout()
            prompt_config = ensure_prompt_config(self._settings.directories.config_dir, reset=reset_existing_config)
        except OSError as e:
            raise RunAbortedError(f"Cannot prepare output directories: {e}") from e

        factory = self._transformer_factory or partial(build_transformer, self._settings.llm, prompt_config)
        plan = self.resolve_plan(start_index, len(words))
        chunks = partition_chunks(plan.word_count, plan.start_index, plan.num_workers)

        lock = self._store.lock()
        try:
            lock.acquire(timeout=0)
        except Timeout as e:
            raise RunAbortedError(f"Output tree {self._store.root} is in use by another run") from e
        try:
            self._store.write_run_plan(plan)
            logger.info(
                "run_started",
                words=len(words),
                start_index=plan.start_index,
                chunks=len(chunks),
                isolation=str(self._settings.workers.isolation),
            )
            if self._install_signal_handlers:
                with shutdown_signal_context(self._token):
                    outcomes = self._dispatch(chunks, words, factory)
            else:
                outcomes = self._dispatch(chunks, words, factory)

            cancelled = self._token.is_set()
            recovered: dict[int, int] = {}
            if cancelled:
                logger.warning("run_cancelled", chunks_reported=len(outcomes))
                recovered = self._merge_engine.recover()
            finalized = self.finalize_once(preserve_progress=preserve_progress)
        finally:
            lock.release()

        summary = RunSummary(
            plan=plan,
            outcomes=tuple(sorted(outcomes.values(), key=lambda o: o.chunk_id)),
            finalized=finalized,
            cancelled=cancelled,
            recovered=recovered,
        )
        for outcome in summary.failed:
            logger.error(
                "chunk_not_completed",
                chunk_id=outcome.chunk_id,
                status=str(outcome.status),
                resume_index=outcome.last_processed_index,
                error=outcome.error,
            )
        logger.info(
            "run_finished",
            succeeded=len(summary.succeeded),
            failed=len(summary.failed),
            finalized=finalized,
            cancelled=cancelled,
        )
        return summary

    def finalize_once(self, *, preserve_progress: bool = False) -> bool:
        """Run the finalize path; later calls return the first call's result."""
        with self._finalize_lock:
            if self._finalized is None:
                self._finalized = self._merge_engine.finalize_all(preserve_progress=preserve_progress)
            return self._finalized

    # -- dispatch -----------------------------------------------------------

    def _start(self, chunk: Chunk, words: Sequence[str], factory: TransformerFactory, outcomes: Any) -> Any:
        args = (chunk, list(chunk.words(words)), self._settings, factory, self._token, outcomes)
        handle: Any
        if self._settings.workers.isolation == Isolation.PROCESS:
            handle = self._mp_context.Process(target=run_worker_process, args=args, name=worker_name(chunk.chunk_id))
        else:
            handle = threading.Thread(target=run_worker, args=args, name=worker_name(chunk.chunk_id), daemon=True)
        handle.start()
        return handle

    def _resume_index(self, chunk_id: int) -> int:
        try:
            descriptor = self._store.read_progress(chunk_id)
        except CheckpointCorruptionError:
            return 0
        return descriptor.last_committed_index if descriptor is not None else 0

    def _dispatch(self, chunks: list[Chunk], words: Sequence[str], factory: TransformerFactory) -> dict[int, ChunkOutcome]:
        """Start one task per chunk and collect one outcome per task."""
        if not chunks:
            return {}
        is_process = self._settings.workers.isolation == Isolation.PROCESS
        messages: Any = self._mp_context.Queue() if is_process else queue.Queue()
        poll = self._settings.workers.poll_interval_seconds
        grace = self._settings.workers.termination_grace_seconds

        pending: dict[int, Any] = {}
        for chunk in chunks:
            pending[chunk.chunk_id] = self._start(chunk, words, factory, messages)
            logger.debug("chunk_dispatched", chunk_id=chunk.chunk_id, start=chunk.start, end=chunk.end)

        outcomes: dict[int, ChunkOutcome] = {}
        seen_dead: set[int] = set()
        deadline: float | None = None

        while pending:
            try:
                outcome: ChunkOutcome = messages.get(timeout=poll)
            except queue.Empty:
                pass
            else:
                handle = pending.pop(outcome.chunk_id, None)
                if handle is not None:
                    handle.join(timeout=poll)
                    outcomes[outcome.chunk_id] = outcome
                    logger.info(
                        "chunk_reported",
                        chunk_id=outcome.chunk_id,
                        status=str(outcome.status),
                        words=outcome.words_processed,
                        remaining=len(pending),
                    )
                continue

            # A task that exited without a message crashed hard; allow one
            # poll interval for its message to arrive before giving up on it.
            for chunk_id, handle in list(pending.items()):
                if handle.is_alive():
                    continue
                if chunk_id not in seen_dead:
                    seen_dead.add(chunk_id)
                    continue
                pending.pop(chunk_id)
                exitcode = getattr(handle, "exitcode", None)
                outcomes[chunk_id] = ChunkOutcome.failure(
                    chunk_id, self._resume_index(chunk_id), f"worker exited without reporting (exit code {exitcode})"
                )
                logger.error("chunk_worker_died", chunk_id=chunk_id, exitcode=exitcode)

            if self._token.is_set():
                if deadline is None:
                    deadline = time.monotonic() + grace
                    logger.warning("cancellation_requested", pending=sorted(pending), grace_seconds=grace)
                elif time.monotonic() >= deadline:
                    self._force_stop(pending, outcomes, messages, is_process)
                    break

        return outcomes

    def _force_stop(
        self, pending: dict[int, Any], outcomes: dict[int, ChunkOutcome], messages: Any, is_process: bool
    ) -> None:
        """Stop tasks still running after the grace period.

        Processes are terminated. Threads cannot be killed, so they are
        joined: each one stops at its next cancellation check, after its
        in-flight transformer call returns. Recovery must not start while a
        task can still write to its chunk directory.
        """
        for chunk_id, handle in pending.items():
            if is_process:
                handle.terminate()
                handle.join(timeout=5)
            else:
                logger.warning("chunk_thread_still_running", chunk_id=chunk_id)
                handle.join()
            logger.warning("chunk_force_stopped", chunk_id=chunk_id)

        if not is_process:
            # Joined threads may have reported on the way out
            for outcome in _drain(messages):
                if outcome.chunk_id in pending:
                    outcomes[outcome.chunk_id] = outcome

        for chunk_id in pending:
            if chunk_id not in outcomes:
                outcomes[chunk_id] = ChunkOutcome.cancelled(chunk_id, self._resume_index(chunk_id))
        pending.clear()


def _drain(messages: queue.Queue[ChunkOutcome]) -> list[ChunkOutcome]:
    drained = []
    while True:
        try:
            drained.append(messages.get_nowait())
        except queue.Empty:
            return drained
