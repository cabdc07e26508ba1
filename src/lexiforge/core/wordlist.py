"""Word list loading.

The word list is the source of truth for indices: chunk ranges and batch
indices all refer to positions in the list returned here, so the same file
must always load to the same sequence.
"""

from __future__ import annotations

from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)


def parse_word_list(text: str, *, comment_marker: str = "#") -> tuple[str, ...]:
    """Parse word list text into an ordered, duplicate-free tuple.

    Blank lines and lines starting with comment_marker are dropped.
    Surrounding whitespace is stripped. Exact duplicates keep their first
    position so every word maps to exactly one index.
    """
    seen: set[str] = set()
    words: list[str] = []
    duplicates = 0
    for line in text.splitlines():
        word = line.strip()
        if not word or word.startswith(comment_marker):
            continue
        if word in seen:
            duplicates += 1
            continue
        seen.add(word)
        words.append(word)
    if duplicates:
        logger.warning("word_list_duplicates_dropped", duplicates=duplicates)
    return tuple(words)


def load_word_list(path: Path, *, comment_marker: str = "#") -> tuple[str, ...]:
    """Load the word list from disk.

    Raises:
        FileNotFoundError: If the file does not exist
        UnicodeDecodeError: If the file is not UTF-8
    """
    words = parse_word_list(path.read_text(encoding="utf-8"), comment_marker=comment_marker)
    logger.info("word_list_loaded", path=str(path), words=len(words))
    return words
