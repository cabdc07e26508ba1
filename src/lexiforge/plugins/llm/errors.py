# src/lexiforge/plugins/llm/errors.py
"""Classification of provider failures by their message text.

Provider SDKs and gateways report throttling in many shapes (HTTP 429,
"quota exceeded", "resource exhausted", ...). classify_error maps any
exception onto an ErrorKind so the batch executor can pick a backoff.
"""

from __future__ import annotations

import re

from lexiforge.contracts import (
    ClassifiedError,
    EmptyOrMalformedResponseError,
    ErrorKind,
    PermanentTransformError,
    RateLimitedError,
    TransportError,
)

_RATE_LIMIT_PATTERNS = (
    re.compile(r"\b429\b"),
    re.compile(r"\brate[\s_-]*limit(?:ed|ing|s)?\b"),
    re.compile(r"\btoo many requests\b"),
    re.compile(r"\bquota\b"),
    re.compile(r"\bresource[\s_-]*exhausted\b"),
    re.compile(r"\bthrottl(?:e|ed|ing)\b"),
)
_EMPTY_PATTERNS = (
    "empty result",
    "empty response",
    "empty text",
    "no valid json",
)
_PERMANENT_PATTERNS = (
    "invalid api key",
    "api key not valid",
    "unauthorized",
    "permission denied",
    "content_policy_violation",
    "content policy",
    "context_length_exceeded",
    "maximum context",
)


def classify_error(error: BaseException) -> ErrorKind:
    """Map an exception onto a backoff classification.

    ClassifiedError instances keep their own kind. Anything else is
    classified from its message; unknown failures count as transport.
    """
    if isinstance(error, ClassifiedError):
        return error.kind
    text = str(error).lower()
    if any(pattern.search(text) for pattern in _RATE_LIMIT_PATTERNS):
        return ErrorKind.RATE_LIMITED
    if any(pattern in text for pattern in _EMPTY_PATTERNS):
        return ErrorKind.EMPTY_OR_MALFORMED
    return ErrorKind.TRANSPORT


def is_permanent(error: BaseException) -> bool:
    text = str(error).lower()
    return any(pattern in text for pattern in _PERMANENT_PATTERNS)


def to_classified(error: BaseException) -> ClassifiedError:
    """Wrap an arbitrary provider exception in the matching ClassifiedError."""
    if isinstance(error, ClassifiedError):
        return error
    message = f"{type(error).__name__}: {error}"
    if is_permanent(error):
        return PermanentTransformError(message)
    kind = classify_error(error)
    if kind == ErrorKind.RATE_LIMITED:
        return RateLimitedError(message)
    if kind == ErrorKind.EMPTY_OR_MALFORMED:
        return EmptyOrMalformedResponseError(message)
    return TransportError(message)
