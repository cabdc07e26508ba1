# src/lexiforge/plugins/llm/openai_compatible.py
"""Dictionary transformer over an OpenAI-compatible chat completions API.

Works with any provider exposing POST {base_url}/chat/completions, including
Gemini's OpenAI-compatible endpoint, DeepSeek and OpenRouter.

HTTP failures map onto the executor's classification:
- 429 -> RateLimitedError
- 5xx and network errors -> TransportError
- other 4xx -> PermanentTransformError
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import httpx
import structlog

from lexiforge.contracts import (
    EmptyOrMalformedResponseError,
    PermanentTransformError,
    RateLimitedError,
    TransportError,
)
from lexiforge.core.config import LLMSettings
from lexiforge.plugins.llm.base import TransformSession
from lexiforge.plugins.llm.prompts import PromptConfig, PromptRenderer, TemplateError
from lexiforge.plugins.llm.response import extract_json_object, shape_records

logger = structlog.get_logger(__name__)


class OpenAICompatibleTransformer:
    """Generates dictionary records for a batch of words with one chat completion.

    Args:
        settings: Endpoint, model and sampling settings
        prompt_config: Prompt templates and record shape
        client: Preconfigured httpx client (tests pass one with a MockTransport)
    """

    def __init__(
        self,
        settings: LLMSettings,
        prompt_config: PromptConfig,
        *,
        client: httpx.Client | None = None,
    ) -> None:
        self._settings = settings
        self._prompt_config = prompt_config
        self._renderer = PromptRenderer(prompt_config)
        headers = {"Content-Type": "application/json"}
        if settings.api_key:
            headers["Authorization"] = f"Bearer {settings.api_key}"
        self._client = client or httpx.Client(
            base_url=settings.base_url.rstrip("/"),
            headers=headers,
            timeout=settings.timeout_seconds,
        )

    def _request_body(self, prompt: str) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self._settings.model,
            "messages": [
                {"role": "system", "content": self._settings.system_prompt},
                {"role": "user", "content": prompt},
            ],
            "temperature": self._settings.temperature,
            "response_format": {"type": "json_object"},
        }
        if self._settings.max_tokens is not None:
            body["max_tokens"] = self._settings.max_tokens
        return body

    def _complete(self, prompt: str) -> str:
        try:
            response = self._client.post("/chat/completions", json=self._request_body(prompt))
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            if status_code == 429:
                raise RateLimitedError(f"Rate limited: {e}") from e
            if status_code >= 500:
                raise TransportError(f"Server error ({status_code}): {e}") from e
            raise PermanentTransformError(f"API call failed ({status_code}): {e.response.text[:500]}") from e
        except httpx.RequestError as e:
            raise TransportError(f"Network error: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise TransportError(f"Response body is not JSON: {e}") from e
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise EmptyOrMalformedResponseError(f"Empty response from API: {e}") from e
        if not isinstance(content, str) or not content:
            raise EmptyOrMalformedResponseError("Empty response from API")
        return content

    def transform(self, words: Sequence[str], *, session: TransformSession | None = None) -> dict[str, Any]:
        retry = session is not None and session.is_retry
        try:
            prompt = self._renderer.render(words, retry=retry)
        except TemplateError as e:
            raise PermanentTransformError(f"Prompt rendering failed: {e}") from e

        text = self._complete(prompt)
        logger.debug(
            "llm_response_received",
            model=self._settings.model,
            words=len(words),
            retry=retry,
            chars=len(text),
        )
        parsed = extract_json_object(text)
        return shape_records(
            parsed,
            words,
            required_fields=self._prompt_config.required_fields,
            stripped_fields=self._prompt_config.stripped_phonetic_fields,
        )

    def close(self) -> None:
        self._client.close()
