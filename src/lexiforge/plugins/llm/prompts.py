# src/lexiforge/plugins/llm/prompts.py
"""Prompt configuration and rendering.

The prompt configuration is persisted to <config_dir>/prompt_config.json so
that a resumed run keeps generating records with the same prompt as the
batches already on disk. Templates are Jinja2 strings rendered in a sandbox
with `words` (list of str) in scope.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from pathlib import Path

import structlog
from jinja2 import StrictUndefined, TemplateSyntaxError, UndefinedError
from jinja2.exceptions import SecurityError
from jinja2.sandbox import SandboxedEnvironment
from pydantic import BaseModel, Field, ValidationError

from lexiforge.core.checkpoint.serialization import write_json

logger = structlog.get_logger(__name__)

PROMPT_CONFIG_FILE = "prompt_config.json"

DEFAULT_PROMPT_TEMPLATE = """\
Create a comprehensive dictionary in JSON format, detailing the words provided. \
For each word, include its full part of speech (e.g., adjective, verb, noun, word form), \
IPA pronunciation (both US and UK), and a set of meanings. Each meaning should have a \
Vietnamese translation and example sentences. The JSON structure should adhere to the following schema:
interface Meaning {
    speech_part: string;
    defs: {
        tran: string;
        examples: string[]; // More than two examples
        synonyms: string[];
        antonyms: string[]
    }[];
}

interface Word {
    [key: string]: {
        word: string;
        meanings: Meaning[];
        phonetics: {
            type: string;
            ipa: string;
        }[];
    };
}

Note: If you cannot find any antonyms or synonyms, leave the array empty. In each example \
sentence, use the word in context (definition and speech part), and highlight the word as \
**word** so it renders in markdown. Ex: **go** is a noun.

IMPORTANT: Please ensure your response is a complete, valid JSON object. Do not truncate \
the response. The response should start with { and end with }. Include all words in the list \
with their complete data.

The words to be defined are: {{ words | join(", ") }}."""

DEFAULT_RETRY_PROMPT_TEMPLATE = """\
The previous response was incomplete. Please provide a complete JSON response for the \
following words. Make sure to:
1. Start with { and end with }
2. Include all words in the list
3. Provide complete data for each word
4. Do not truncate the response

The words to be defined are: {{ words | join(", ") }}."""


class TemplateError(Exception):
    """Error in template rendering (including sandbox violations)."""


class PromptConfig(BaseModel):
    """Prompt and response-shape settings for the dictionary transformer."""

    model_config = {"frozen": True}

    task: str = "dictionary_generation"
    version: str = "1.0"
    prompt_template: str = DEFAULT_PROMPT_TEMPLATE
    retry_prompt_template: str = DEFAULT_RETRY_PROMPT_TEMPLATE
    required_fields: tuple[str, ...] = Field(default=("meanings", "phonetics"))
    stripped_phonetic_fields: tuple[str, ...] = Field(default=("audio",))


class PromptRenderer:
    """Renders the normal and retry prompts for a batch."""

    def __init__(self, config: PromptConfig) -> None:
        self._env = SandboxedEnvironment(undefined=StrictUndefined, autoescape=False)
        try:
            self._template = self._env.from_string(config.prompt_template)
            self._retry_template = self._env.from_string(config.retry_prompt_template)
        except TemplateSyntaxError as e:
            raise TemplateError(f"Invalid template syntax: {e}") from e

    def render(self, words: Sequence[str], *, retry: bool = False) -> str:
        """Render the prompt for a batch.

        Raises:
            TemplateError: If rendering fails
        """
        valid = [w for w in words if w.strip()]
        if not valid:
            raise TemplateError("No non-empty words to render a prompt for")
        template = self._retry_template if retry else self._template
        try:
            return template.render(words=valid)
        except UndefinedError as e:
            raise TemplateError(f"Undefined variable: {e}") from e
        except SecurityError as e:
            raise TemplateError(f"Sandbox violation: {e}") from e


def load_prompt_config(config_dir: Path) -> PromptConfig | None:
    """Read the persisted prompt config, or None if absent or invalid."""
    path = config_dir / PROMPT_CONFIG_FILE
    if not path.exists():
        return None
    try:
        return PromptConfig.model_validate_json(path.read_text(encoding="utf-8"))
    except ValidationError as e:
        logger.warning("prompt_config_invalid", path=str(path), error=str(e))
        return None


def save_prompt_config(config_dir: Path, config: PromptConfig) -> Path:
    path = config_dir / PROMPT_CONFIG_FILE
    write_json(path, json.loads(config.model_dump_json()))
    return path


def ensure_prompt_config(config_dir: Path, *, reset: bool = False) -> PromptConfig:
    """Prompt config for a run, persisted to config_dir.

    With reset, the built-in default replaces whatever is on disk. Otherwise
    the persisted config is used, falling back to the default when absent
    or invalid.
    """
    config = None if reset else load_prompt_config(config_dir)
    if config is None:
        config = PromptConfig()
        logger.info("prompt_config_default", reset=reset)
    save_prompt_config(config_dir, config)
    return config
