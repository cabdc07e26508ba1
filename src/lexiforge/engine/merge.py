# src/lexiforge/engine/merge.py
"""MergeEngine: rebuilds chunk results from checkpoints and produces the global result.

Reconciliation rule: a chunk's final artifact, when present, is authoritative
and returned verbatim. Otherwise the chunk's fragments are applied in
ascending batch-index order, later fragments overwriting earlier ones on key
collision. Applying the same fragment set again yields the same map, so
every operation here is safe to repeat after a crash.

Standalone tools (complete_chunk, complete_all, finalize_all, recover) take
the output-tree lock without waiting; a live run holding it makes them fail
with MergeLockedError instead of racing its workers. The supervisor holds the
same lock for its whole run, and acquisition is reentrant for the holder.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from typing import Any

import structlog
from filelock import Timeout

from lexiforge.contracts import CheckpointCorruptionError, MergeLockedError
from lexiforge.core.checkpoint import CheckpointStore

logger = structlog.get_logger(__name__)


def merge_fragments(fragments: Iterable[Mapping[str, Any]]) -> dict[str, Any]:
    """Apply fragments in the given order; later values win on key collision."""
    merged: dict[str, Any] = {}
    for fragment in fragments:
        merged.update(fragment)
    return merged


class MergeEngine:
    """Reconciliation, finalization and recovery over a checkpoint store."""

    def __init__(self, store: CheckpointStore) -> None:
        self._store = store

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        lock = self._store.lock()
        try:
            lock.acquire(timeout=0)
        except Timeout as e:
            raise MergeLockedError(
                f"Output tree {self._store.root} is locked by a running pipeline; wait for it to finish"
            ) from e
        try:
            yield
        finally:
            lock.release()

    # -- read-only ----------------------------------------------------------

    def _read_fragments(self, chunk_id: int) -> list[tuple[int, dict[str, Any]]]:
        fragments = []
        for index, path in self._store.list_fragments(chunk_id):
            try:
                fragments.append((index, self._store.read_fragment(path)))
            except CheckpointCorruptionError as e:
                # The descriptor never advanced past a fragment that failed to
                # write, so the batch is re-run on resume.
                logger.warning("fragment_unreadable", chunk_id=chunk_id, path=str(path), error=str(e))
        return fragments

    def reconcile_chunk(self, chunk_id: int) -> dict[str, Any] | None:
        """Consolidated result of one chunk, or None if it has nothing yet.

        Never modifies the store.
        """
        final = self._store.read_final_artifact(chunk_id)
        if final is not None:
            return final
        fragments = self._read_fragments(chunk_id)
        if not fragments:
            return None
        return merge_fragments(records for _, records in fragments)

    # -- chunk-owned (called by the worker task that owns the chunk) --------

    def coalesce_chunk(self, chunk_id: int) -> dict[str, Any] | None:
        """Collapse a chunk's fragments into one, kept under the highest batch index.

        The merged fragment is written before the others are deleted, so a
        crash at any point leaves a fragment set that reconciles to the same
        map. No-op for chunks with a final artifact.
        """
        if self._store.has_final_artifact(chunk_id):
            return None
        fragments = self._read_fragments(chunk_id)
        if not fragments:
            return None
        merged = merge_fragments(records for _, records in fragments)
        if len(fragments) == 1 and len(self._store.list_fragments(chunk_id)) == 1:
            return merged
        highest = fragments[-1][0]
        self._store.write_fragment(chunk_id, highest, merged)
        deleted = self._store.delete_fragments(chunk_id, keep_index=highest)
        logger.debug("chunk_coalesced", chunk_id=chunk_id, fragments_removed=deleted, words=len(merged))
        return merged

    def seal_chunk(self, chunk_id: int) -> dict[str, Any]:
        """Write a chunk's final artifact from its fragments and delete the fragments.

        Returns the existing final artifact unchanged if one is present.
        """
        existing = self._store.read_final_artifact(chunk_id)
        if existing is not None:
            return existing
        merged = self.reconcile_chunk(chunk_id) or {}
        self._store.write_final_artifact(chunk_id, merged)
        self._store.delete_fragments(chunk_id)
        descriptor = self._store.read_progress(chunk_id)
        if descriptor is not None and descriptor.total_processed_count != len(merged):
            self._store.write_progress(descriptor.with_processed_count(len(merged)))
        logger.info("chunk_sealed", chunk_id=chunk_id, words=len(merged))
        return merged

    # -- standalone tools ---------------------------------------------------

    def complete_chunk(self, chunk_id: int, *, allow_incomplete: bool = False) -> dict[str, Any] | None:
        """Write a chunk's final artifact from its fragments.

        Args:
            chunk_id: Chunk to complete
            allow_incomplete: Seal the chunk even if its descriptor shows
                uncommitted batches. A sealed chunk is never processed again.

        Returns:
            The chunk's final records, or None if the chunk has no data

        Raises:
            ValueError: If the chunk is incomplete and allow_incomplete is False
            MergeLockedError: If a running pipeline holds the output tree
        """
        with self._exclusive():
            if self._store.has_final_artifact(chunk_id):
                return self._store.read_final_artifact(chunk_id)
            descriptor = self._store.read_progress(chunk_id)
            if not allow_incomplete and (descriptor is None or not descriptor.is_complete):
                committed = descriptor.last_committed_index if descriptor else 0
                in_scope = descriptor.total_words_in_scope if descriptor else "unknown"
                raise ValueError(
                    f"Chunk {chunk_id} is incomplete ({committed}/{in_scope} words committed); "
                    "resume the run or force completion"
                )
            if self.reconcile_chunk(chunk_id) is None:
                logger.warning("chunk_has_no_data", chunk_id=chunk_id)
                return None
            return self.seal_chunk(chunk_id)

    def complete_all(self, *, allow_incomplete: bool = False) -> dict[int, int]:
        """Complete every chunk whose work is finished (or every chunk, if allowed).

        Returns:
            Map of chunk id to record count for chunks that now have a final artifact
        """
        completed: dict[int, int] = {}
        with self._exclusive():
            for chunk_id in self._store.list_chunk_ids():
                try:
                    records = self.complete_chunk(chunk_id, allow_incomplete=allow_incomplete)
                except ValueError as e:
                    logger.info("chunk_skipped", chunk_id=chunk_id, reason=str(e))
                    continue
                if records is not None:
                    completed[chunk_id] = len(records)
        return completed

    def finalize_all(self, *, preserve_progress: bool = False, include_incomplete: bool = False) -> bool:
        """Union every chunk's result into the global result and clean up.

        Chunks with a final artifact are merged and their directories removed.
        Chunks without one are merged from fragments only if include_incomplete
        is set, and keep their directory and descriptor either way. The global
        progress directory is removed only when no incomplete chunk remains
        and preserve_progress is False.

        The new chunk results are unioned onto any existing global result.

        Returns:
            False if there were no chunk directories or no words to merge
            (nothing is written in that case), True otherwise

        Raises:
            MergeLockedError: If a running pipeline holds the output tree
        """
        with self._exclusive():
            chunk_ids = self._store.list_chunk_ids()
            if not chunk_ids:
                logger.warning("finalize_no_chunks", root=str(self._store.root))
                return False

            result: dict[str, Any] = {}
            owner: dict[str, int] = {}
            finished: list[int] = []
            incomplete: list[int] = []
            for chunk_id in chunk_ids:
                if self._store.has_final_artifact(chunk_id):
                    records = self._store.read_final_artifact(chunk_id)
                    finished.append(chunk_id)
                else:
                    incomplete.append(chunk_id)
                    if not include_incomplete:
                        logger.warning("chunk_not_finalized", chunk_id=chunk_id)
                        continue
                    records = self.reconcile_chunk(chunk_id)
                if not records:
                    continue
                for word, record in records.items():
                    if word in owner:
                        # Chunk ranges are disjoint, so this is a partitioning bug
                        logger.error(
                            "cross_chunk_key_collision",
                            word=word,
                            first_chunk=owner[word],
                            second_chunk=chunk_id,
                        )
                        continue
                    owner[word] = chunk_id
                    result[word] = record

            if not result:
                logger.warning("finalize_no_words", chunks=len(chunk_ids))
                return False

            existing = self._store.read_global_result() or {}
            combined = {**existing, **result}
            path = self._store.write_global_result(combined)
            logger.info(
                "global_result_written",
                path=str(path),
                words=len(combined),
                new_words=len(result),
                chunks_merged=len(finished),
                chunks_incomplete=len(incomplete),
            )

            for chunk_id in finished:
                self._store.delete_chunk(chunk_id)
            if incomplete:
                logger.warning("progress_preserved_for_incomplete_chunks", chunks=incomplete)
            elif not preserve_progress:
                self._store.delete_progress_dir()
            return True

    def cleanup(self, chunk_id: int | None = None) -> int:
        """Delete fragments and descriptors of one chunk, or of every chunk.

        Final and partial artifacts are kept.

        Returns:
            Number of files deleted
        """
        with self._exclusive():
            if chunk_id is not None:
                chunk_ids = [chunk_id]
            else:
                known = {d.chunk_id for d in self._store.list_progress()}
                chunk_ids = sorted(known.union(self._store.list_chunk_ids()))
            deleted = 0
            for cid in chunk_ids:
                deleted += self._store.delete_fragments(cid)
                if self._store.delete_progress(cid):
                    deleted += 1
        logger.info("checkpoints_cleaned", chunks=chunk_ids, files=deleted)
        return deleted

    def recover(self) -> dict[int, int]:
        """Consolidate committed work of every unfinished chunk.

        Coalesces each unfinished chunk's fragments and refreshes its
        descriptor's processed count. Never writes a final artifact, so
        recovered chunks resume on the next run.

        Returns:
            Map of chunk id to recovered record count
        """
        recovered: dict[int, int] = {}
        with self._exclusive():
            for chunk_id in self._store.list_chunk_ids():
                if self._store.has_final_artifact(chunk_id):
                    continue
                merged = self.coalesce_chunk(chunk_id)
                if merged is None:
                    continue
                recovered[chunk_id] = len(merged)
                descriptor = self._store.read_progress(chunk_id)
                if descriptor is not None and descriptor.total_processed_count != len(merged):
                    self._store.write_progress(descriptor.with_processed_count(len(merged)))
        if recovered:
            logger.info("recovery_complete", chunks=recovered)
        return recovered
