# tests/unit/contracts/test_errors.py
"""Tests for the exception taxonomy."""

from lexiforge.contracts import (
    ChunkFailedError,
    EmptyOrMalformedResponseError,
    ErrorKind,
    PermanentTransformError,
    RateLimitedError,
    StructuralValidationError,
    TransportError,
)


def test_error_kinds() -> None:
    assert RateLimitedError("x").kind == ErrorKind.RATE_LIMITED
    assert EmptyOrMalformedResponseError("x").kind == ErrorKind.EMPTY_OR_MALFORMED
    assert StructuralValidationError("x").kind == ErrorKind.STRUCTURAL_VALIDATION
    assert TransportError("x").kind == ErrorKind.TRANSPORT


def test_classified_errors_are_retryable_by_default() -> None:
    assert RateLimitedError("x").retryable
    assert not PermanentTransformError("bad key").retryable


def test_structural_validation_lists_invalid_words() -> None:
    error = StructuralValidationError("missing", invalid_words=["a", "b"])
    assert error.invalid_words == ["a", "b"]
    assert StructuralValidationError("missing").invalid_words == []


def test_chunk_failed_error_message() -> None:
    error = ChunkFailedError(3, 56, 7, TransportError("reset"), {"a": {}})
    assert error.failing_index == 56
    assert "Chunk 3 failed at index 56 after 7 attempt(s)" in str(error)
