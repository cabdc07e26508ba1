# src/lexiforge/core/checkpoint/serialization.py
"""JSON encoding and atomic file replacement for checkpoint files.

Every checkpoint write is a whole-file replacement: content goes to a
temporary sibling, is fsynced, then renamed over the destination. Readers
therefore see either the previous complete file or the new complete file,
never an interleaved or truncated one.

NaN and Infinity are rejected on both sides. A fragment that contains them
could not be read back by strict JSON parsers and would break the merged
result for every downstream consumer.
"""

from __future__ import annotations

import json
import os
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TextIO

from lexiforge.contracts import CheckpointCorruptionError


@contextmanager
def atomic_write(path: Path) -> Iterator[TextIO]:
    """Write to a temporary file and atomically replace the destination."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp.{uuid.uuid4().hex}")
    try:
        with tmp.open("w", encoding="utf-8") as handle:
            yield handle
            handle.flush()
            os.fsync(handle.fileno())
        tmp.replace(path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def dumps_checkpoint(data: Any) -> str:
    """Serialize checkpoint data to JSON.

    Raises:
        ValueError: If data contains NaN or Infinity
        TypeError: If data contains non-JSON types
    """
    return json.dumps(data, ensure_ascii=False, indent=2, allow_nan=False)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Non-finite number {name} in checkpoint data")


def loads_checkpoint(text: str, *, source: Path | None = None) -> Any:
    """Parse checkpoint JSON.

    Raises:
        CheckpointCorruptionError: If the text is not valid JSON or contains
            NaN/Infinity
    """
    try:
        return json.loads(text, parse_constant=_reject_constant)
    except ValueError as e:
        # JSONDecodeError is a ValueError subclass
        where = f" in {source}" if source is not None else ""
        raise CheckpointCorruptionError(f"Unreadable checkpoint{where}: {e}") from e


def write_json(path: Path, data: Any) -> None:
    """Atomically replace path with the JSON encoding of data."""
    # Encode before opening the temp file so an encoding error leaves nothing behind
    text = dumps_checkpoint(data)
    with atomic_write(path) as handle:
        handle.write(text)


def read_json(path: Path) -> Any:
    """Read a JSON checkpoint file.

    Raises:
        FileNotFoundError: If path does not exist
        CheckpointCorruptionError: If the content cannot be parsed
    """
    return loads_checkpoint(path.read_text(encoding="utf-8"), source=path)
