# src/lexiforge/plugins/llm/echo.py
"""Offline transformer producing placeholder records.

Used for dry runs of the pipeline (provider: echo) and as the building block
of the scripted test transformer.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from lexiforge.plugins.llm.base import TransformSession


def placeholder_record(word: str) -> dict[str, Any]:
    """A structurally complete record for word."""
    return {
        "word": word,
        "meanings": [
            {
                "speech_part": "unknown",
                "defs": [{"tran": "", "examples": [f"**{word}**"], "synonyms": [], "antonyms": []}],
            }
        ],
        "phonetics": [{"type": "us", "ipa": ""}],
    }


class EchoTransformer:
    """Returns a placeholder record for every requested word."""

    def transform(self, words: Sequence[str], *, session: TransformSession | None = None) -> dict[str, Any]:
        return {word: placeholder_record(word) for word in words}

    def close(self) -> None:
        pass
