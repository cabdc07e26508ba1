# src/lexiforge/plugins/llm/response.py
"""Parsing and shaping of model text into dictionary records."""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from typing import Any

from lexiforge.contracts import EmptyOrMalformedResponseError, StructuralValidationError

# Outermost {...} span; models often wrap JSON in prose or code fences
_JSON_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")


def extract_json_object(text: str | None) -> dict[str, Any]:
    """Extract and parse the outermost JSON object in model output.

    Raises:
        EmptyOrMalformedResponseError: If the text is empty, has no object,
            does not parse, or parses to an empty object
    """
    if not text or not text.strip():
        raise EmptyOrMalformedResponseError("Empty text in API response")
    match = _JSON_OBJECT_PATTERN.search(text)
    if match is None:
        raise EmptyOrMalformedResponseError("No valid JSON object found in response")
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise EmptyOrMalformedResponseError(f"Malformed JSON in response: {e}") from e
    if not isinstance(parsed, dict):
        raise EmptyOrMalformedResponseError(f"Expected a JSON object, got {type(parsed).__name__}")
    if not parsed:
        raise EmptyOrMalformedResponseError("Empty result object after parsing")
    return parsed


def strip_phonetic_fields(record: Any, fields: Sequence[str]) -> Any:
    """Return record with the given keys removed from each phonetics entry."""
    if not fields or not isinstance(record, dict):
        return record
    phonetics = record.get("phonetics")
    if isinstance(phonetics, list):
        phonetics = [
            {k: v for k, v in entry.items() if k not in fields} if isinstance(entry, dict) else entry
            for entry in phonetics
        ]
    elif isinstance(phonetics, dict):
        phonetics = {k: v for k, v in phonetics.items() if k not in fields}
    else:
        return record
    return {**record, "phonetics": phonetics}


def shape_records(
    parsed: dict[str, Any],
    words: Sequence[str],
    *,
    required_fields: Sequence[str],
    stripped_fields: Sequence[str] = (),
) -> dict[str, Any]:
    """Validate parsed output against the batch and keep only requested words.

    Raises:
        StructuralValidationError: If a requested word is missing or lacks a
            required field
    """
    invalid = []
    for word in words:
        record = parsed.get(word)
        if not isinstance(record, dict) or any(not record.get(name) for name in required_fields):
            invalid.append(word)
    if invalid:
        raise StructuralValidationError(
            f"Invalid or missing data for words: {', '.join(invalid)}",
            invalid_words=invalid,
        )
    return {word: strip_phonetic_fields(parsed[word], stripped_fields) for word in words}
