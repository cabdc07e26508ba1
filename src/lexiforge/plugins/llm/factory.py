# src/lexiforge/plugins/llm/factory.py
"""Transformer construction from settings.

Worker tasks receive functools.partial(build_transformer, llm, prompt_config)
and call it inside the task, so the HTTP client is created in the process
that uses it.
"""

from __future__ import annotations

from lexiforge.core.config import LLMSettings
from lexiforge.plugins.llm.base import Transformer
from lexiforge.plugins.llm.echo import EchoTransformer
from lexiforge.plugins.llm.openai_compatible import OpenAICompatibleTransformer
from lexiforge.plugins.llm.prompts import PromptConfig


def build_transformer(settings: LLMSettings, prompt_config: PromptConfig) -> Transformer:
    """Build the transformer for the configured provider.

    Raises:
        ValueError: If the provider needs an API key and none is configured
    """
    if settings.provider == "echo":
        return EchoTransformer()
    if not settings.api_key:
        raise ValueError("llm.api_key is required for the openai_compatible provider (set LEXIFORGE_LLM__API_KEY)")
    return OpenAICompatibleTransformer(settings, prompt_config)
