# src/lexiforge/testing/scripted.py
"""Scripted transformer for deterministic pipeline tests."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from typing import Any

from lexiforge.plugins.llm.base import TransformSession
from lexiforge.plugins.llm.echo import placeholder_record

# One script step: raise the exception, return the map, or None for placeholder records
ScriptStep = BaseException | dict[str, Any] | None


class ScriptedTransformer:
    """Transformer whose responses are scripted call by call.

    Steps are consumed in call order. Once the script is exhausted every
    call returns placeholder records for the requested words.

    Example:
        transformer = ScriptedTransformer([RateLimitedError("429"), RateLimitedError("429")])
        ...
        assert len(transformer.calls) == 3

    Args:
        script: Steps consumed one per call
        fail_words: Words whose presence in a batch always raises the given error
        on_call: Hook invoked with the batch before the step is applied
    """

    def __init__(
        self,
        script: Sequence[ScriptStep] = (),
        *,
        fail_words: dict[str, BaseException] | None = None,
        on_call: Callable[[list[str]], None] | None = None,
    ) -> None:
        self._script = list(script)
        self._fail_words = fail_words or {}
        self._on_call = on_call
        self._lock = threading.Lock()
        self.calls: list[list[str]] = []
        self.retry_flags: list[bool] = []
        self.closed = False

    def transform(self, words: Sequence[str], *, session: TransformSession | None = None) -> dict[str, Any]:
        batch = list(words)
        with self._lock:
            self.calls.append(batch)
            self.retry_flags.append(session is not None and session.is_retry)
            step = self._script.pop(0) if self._script else None
        if self._on_call is not None:
            self._on_call(batch)
        for word in batch:
            if word in self._fail_words:
                raise self._fail_words[word]
        if isinstance(step, BaseException):
            raise step
        if step is not None:
            return step
        return {word: placeholder_record(word) for word in batch}

    def close(self) -> None:
        self.closed = True

    @property
    def called_words(self) -> list[str]:
        return [word for batch in self.calls for word in batch]


class SharedTransformerFactory:
    """Factory returning the same transformer to every task (thread isolation only)."""

    def __init__(self, transformer: Any) -> None:
        self.transformer = transformer

    def __call__(self) -> Any:
        return self.transformer


class StallingTransformer:
    """Transformer whose every call blocks for a fixed time before answering.

    Picklable, so functools.partial(StallingTransformer, seconds) works as a
    transformer factory under process isolation. Used to keep a task inside
    a call past the cancellation grace period.
    """

    def __init__(self, delay_seconds: float) -> None:
        self.delay_seconds = delay_seconds

    def transform(self, words: Sequence[str], *, session: TransformSession | None = None) -> dict[str, Any]:
        time.sleep(self.delay_seconds)
        return {word: placeholder_record(word) for word in words}

    def close(self) -> None:
        pass
