# src/lexiforge/core/checkpoint/store.py
"""Filesystem checkpoint store.

Layout under the output root:

    chunks/chunk_<id>/progress_<index>.json       fragment (flat word -> record map)
    chunks/chunk_<id>/final.json                  final artifact for the chunk
    chunks/chunk_<id>/final_partial_<index>.json  dump written on fatal chunk failure
    progress/chunk_<id>_progress.json             ProgressDescriptor
    progress/run_plan.json                        partitioning of the current run
    merged/result_final.json                      global result

Fragment and partial indices are chunk-relative batch start indices.

The store is pure key/value: it never decides what a fragment means. Every
write replaces a whole file (see serialization.atomic_write) and every read
treats a missing directory as "never started" rather than an error.
"""

from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import Any

import structlog
from filelock import FileLock

from lexiforge.contracts import CheckpointCorruptionError, ProgressDescriptor, RunPlan
from lexiforge.core.checkpoint.serialization import read_json, write_json

logger = structlog.get_logger(__name__)

_CHUNK_DIR_PATTERN = re.compile(r"^chunk_(\d+)$")
_FRAGMENT_PATTERN = re.compile(r"^progress_(\d+)\.json$")
_PARTIAL_PATTERN = re.compile(r"^final_partial_(\d+)\.json$")

FINAL_ARTIFACT_NAME = "final.json"
GLOBAL_RESULT_NAME = "result_final.json"
RUN_PLAN_NAME = "run_plan.json"
LOCK_FILE_NAME = "lexiforge.lock"


def _as_record_map(data: Any, path: Path) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise CheckpointCorruptionError(f"Expected a JSON object in {path}, got {type(data).__name__}")
    return data


class CheckpointStore:
    """Chunk-scoped and global checkpoint files under one output root.

    Args:
        root: Output root directory. Nothing is created until a write
            happens or ensure_layout() is called.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self._lock: FileLock | None = None

    # -- layout -------------------------------------------------------------

    @property
    def chunks_dir(self) -> Path:
        return self.root / "chunks"

    @property
    def progress_dir(self) -> Path:
        return self.root / "progress"

    @property
    def merged_dir(self) -> Path:
        return self.root / "merged"

    @property
    def global_result_path(self) -> Path:
        return self.merged_dir / GLOBAL_RESULT_NAME

    def chunk_dir(self, chunk_id: int) -> Path:
        if chunk_id < 0:
            raise ValueError(f"chunk_id must be >= 0, got {chunk_id}")
        return self.chunks_dir / f"chunk_{chunk_id}"

    def _progress_path(self, chunk_id: int) -> Path:
        return self.progress_dir / f"chunk_{chunk_id}_progress.json"

    def _final_path(self, chunk_id: int) -> Path:
        return self.chunk_dir(chunk_id) / FINAL_ARTIFACT_NAME

    def ensure_layout(self) -> None:
        """Create the chunk, progress and merged directories.

        Raises:
            OSError: If a directory cannot be created
        """
        for directory in (self.chunks_dir, self.progress_dir, self.merged_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def lock(self) -> FileLock:
        """Lock guarding the whole output tree against concurrent writers.

        The same FileLock instance is returned on every call, so nested
        acquisition from the holding process is reentrant.
        """
        if self._lock is None:
            self.root.mkdir(parents=True, exist_ok=True)
            self._lock = FileLock(self.root / LOCK_FILE_NAME)
        return self._lock

    # -- progress descriptors -----------------------------------------------

    def read_progress(self, chunk_id: int) -> ProgressDescriptor | None:
        """Read a chunk's descriptor, or None if the chunk never started.

        Raises:
            CheckpointCorruptionError: If the descriptor exists but is unreadable
        """
        path = self._progress_path(chunk_id)
        if not path.exists():
            return None
        data = read_json(path)
        try:
            return ProgressDescriptor.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise CheckpointCorruptionError(f"Invalid progress descriptor {path}: {e}") from e

    def write_progress(self, descriptor: ProgressDescriptor) -> None:
        write_json(self._progress_path(descriptor.chunk_id), descriptor.to_dict())

    def delete_progress(self, chunk_id: int) -> bool:
        """Delete a chunk's descriptor.

        Returns:
            True if a descriptor was deleted, False if none existed
        """
        path = self._progress_path(chunk_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def list_progress(self) -> list[ProgressDescriptor]:
        """All readable descriptors, ordered by chunk id.

        Unreadable descriptors are logged and skipped.
        """
        if not self.progress_dir.is_dir():
            return []
        descriptors = []
        for path in sorted(self.progress_dir.glob("chunk_*_progress.json")):
            try:
                descriptors.append(ProgressDescriptor.from_dict(read_json(path)))
            except (CheckpointCorruptionError, KeyError, TypeError, ValueError) as e:
                logger.warning("progress_descriptor_unreadable", path=str(path), error=str(e))
        return sorted(descriptors, key=lambda d: d.chunk_id)

    def delete_progress_dir(self) -> None:
        shutil.rmtree(self.progress_dir, ignore_errors=True)

    # -- run plan -----------------------------------------------------------

    def read_run_plan(self) -> RunPlan | None:
        path = self.progress_dir / RUN_PLAN_NAME
        if not path.exists():
            return None
        data = read_json(path)
        try:
            return RunPlan(
                start_index=int(data["start_index"]),
                num_workers=int(data["num_workers"]),
                word_count=int(data["word_count"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CheckpointCorruptionError(f"Invalid run plan {path}: {e}") from e

    def write_run_plan(self, plan: RunPlan) -> None:
        write_json(
            self.progress_dir / RUN_PLAN_NAME,
            {"start_index": plan.start_index, "num_workers": plan.num_workers, "word_count": plan.word_count},
        )

    # -- fragments ----------------------------------------------------------

    def list_fragments(self, chunk_id: int) -> list[tuple[int, Path]]:
        """Fragments of a chunk as (batch index, path), ascending by index."""
        directory = self.chunk_dir(chunk_id)
        if not directory.is_dir():
            return []
        fragments = []
        for path in directory.iterdir():
            match = _FRAGMENT_PATTERN.match(path.name)
            if match:
                fragments.append((int(match.group(1)), path))
        fragments.sort(key=lambda item: item[0])
        return fragments

    def read_fragment(self, path: Path) -> dict[str, Any]:
        """Read one fragment map.

        Raises:
            CheckpointCorruptionError: If the file is not a JSON object
        """
        return _as_record_map(read_json(path), path)

    def write_fragment(self, chunk_id: int, batch_index: int, records: dict[str, Any]) -> Path:
        if batch_index < 0:
            raise ValueError(f"batch_index must be >= 0, got {batch_index}")
        path = self.chunk_dir(chunk_id) / f"progress_{batch_index}.json"
        write_json(path, records)
        return path

    def delete_fragments(self, chunk_id: int, *, keep_index: int | None = None) -> int:
        """Delete a chunk's fragments, optionally keeping the one at keep_index.

        Returns:
            Number of fragments deleted
        """
        deleted = 0
        for index, path in self.list_fragments(chunk_id):
            if index == keep_index:
                continue
            path.unlink(missing_ok=True)
            deleted += 1
        return deleted

    # -- final and partial artifacts ----------------------------------------

    def has_final_artifact(self, chunk_id: int) -> bool:
        return self._final_path(chunk_id).is_file()

    def read_final_artifact(self, chunk_id: int) -> dict[str, Any] | None:
        path = self._final_path(chunk_id)
        if not path.is_file():
            return None
        return _as_record_map(read_json(path), path)

    def write_final_artifact(self, chunk_id: int, records: dict[str, Any]) -> Path:
        path = self._final_path(chunk_id)
        write_json(path, records)
        return path

    def write_partial_artifact(self, chunk_id: int, index: int, records: dict[str, Any]) -> Path:
        """Dump a failed chunk's accumulated records.

        The name never collides with final.json, so a partial dump is never
        mistaken for a complete chunk.
        """
        path = self.chunk_dir(chunk_id) / f"final_partial_{index}.json"
        write_json(path, records)
        return path

    def list_partial_artifacts(self, chunk_id: int) -> list[tuple[int, Path]]:
        directory = self.chunk_dir(chunk_id)
        if not directory.is_dir():
            return []
        partials = []
        for path in directory.iterdir():
            match = _PARTIAL_PATTERN.match(path.name)
            if match:
                partials.append((int(match.group(1)), path))
        partials.sort(key=lambda item: item[0])
        return partials

    # -- chunk directories --------------------------------------------------

    def list_chunk_ids(self) -> list[int]:
        """Ids of every chunk directory present, ascending."""
        if not self.chunks_dir.is_dir():
            return []
        ids = []
        for path in self.chunks_dir.iterdir():
            match = _CHUNK_DIR_PATTERN.match(path.name)
            if match and path.is_dir():
                ids.append(int(match.group(1)))
        return sorted(ids)

    def delete_chunk(self, chunk_id: int) -> None:
        shutil.rmtree(self.chunk_dir(chunk_id), ignore_errors=True)

    def clear_run_state(self) -> None:
        """Delete every chunk directory and descriptor. The global result is kept."""
        shutil.rmtree(self.chunks_dir, ignore_errors=True)
        self.delete_progress_dir()

    # -- global result ------------------------------------------------------

    def read_global_result(self) -> dict[str, Any] | None:
        path = self.global_result_path
        if not path.is_file():
            return None
        return _as_record_map(read_json(path), path)

    def write_global_result(self, records: dict[str, Any]) -> Path:
        write_json(self.global_result_path, records)
        return self.global_result_path
