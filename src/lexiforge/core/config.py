# src/lexiforge/core/config.py
"""
Configuration schema and loading for lexiforge runs.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.
"""

import os
import re
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from lexiforge.contracts import ErrorKind, Isolation


class DirectorySettings(BaseModel):
    """On-disk layout of inputs and the checkpoint tree.

    Example YAML:
        directories:
          output_root: ./output
          word_list: ./data/words_list_full.txt
    """

    model_config = {"frozen": True}

    output_root: Path = Field(default=Path("output"), description="Root of chunks/, progress/ and merged/")
    word_list: Path = Field(default=Path("data/words_list_full.txt"), description="Word list file, one word per line")
    config_dir: Path = Field(default=Path("config"), description="Directory holding the persisted prompt config")
    test_results_dir: Path = Field(default=Path("output/test"), description="Where test-batch results are saved")
    comment_marker: str = Field(default="#", min_length=1, description="Lines starting with this are ignored")


class BatchSettings(BaseModel):
    """Batch slicing and retry bounds."""

    model_config = {"frozen": True}

    batch_size: int = Field(default=28, gt=0, description="Maximum words per transformer call")
    max_retries: int = Field(default=7, gt=0, description="Total transformer attempts per batch before the chunk fails")
    coalesce_every: int = Field(
        default=5,
        ge=0,
        description="Coalesce a chunk's fragments after this many committed batches (0 disables)",
    )


class DelaySettings(BaseModel):
    """Fixed delays between transformer calls (seconds).

    inter_batch_seconds is throttling between successful batches. The other
    three are the backoff applied after a failed attempt, selected by the
    error classification.
    """

    model_config = {"frozen": True}

    inter_batch_seconds: float = Field(default=15.0, ge=0)
    retry_seconds: float = Field(default=45.0, ge=0, description="Transport, parse and validation failures")
    rate_limit_seconds: float = Field(default=120.0, ge=0)
    empty_result_seconds: float = Field(default=30.0, ge=0)

    @model_validator(mode="after")
    def validate_backoff_ordering(self) -> "DelaySettings":
        """Rate limiting must cool down at least as long as other failures."""
        if not self.rate_limit_seconds >= self.retry_seconds >= self.empty_result_seconds:
            raise ValueError(
                "backoff delays must satisfy rate_limit_seconds >= retry_seconds >= empty_result_seconds "
                f"(got {self.rate_limit_seconds}, {self.retry_seconds}, {self.empty_result_seconds})"
            )
        return self

    def backoff_for(self, kind: ErrorKind) -> float:
        """Backoff delay for a classified failure."""
        if kind == ErrorKind.RATE_LIMITED:
            return self.rate_limit_seconds
        if kind == ErrorKind.EMPTY_OR_MALFORMED:
            return self.empty_result_seconds
        return self.retry_seconds


class WorkerSettings(BaseModel):
    """Worker pool configuration."""

    model_config = {"frozen": True}

    num_workers: int = Field(
        default_factory=lambda: os.cpu_count() or 1,
        gt=0,
        description="Number of chunks (one worker task per chunk)",
    )
    isolation: Isolation = Field(default=Isolation.PROCESS, description="process or thread")
    termination_grace_seconds: float = Field(
        default=30.0,
        ge=0,
        description="How long cancelled tasks may take to commit their current batch",
    )
    poll_interval_seconds: float = Field(default=0.5, gt=0, description="Supervisor polling interval")


class LLMSettings(BaseModel):
    """External transformer configuration.

    Example YAML:
        llm:
          provider: openai_compatible
          base_url: https://api.deepseek.com
          model: deepseek-chat
          api_key: "${DEEPSEEK_API_KEY}"
    """

    model_config = {"frozen": True}

    provider: Literal["openai_compatible", "echo"] = "openai_compatible"
    base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta/openai",
        description="OpenAI-compatible API base URL",
    )
    model: str = Field(default="gemini-2.0-flash", description="Model identifier")
    api_key: str | None = Field(default=None, description="API key (use ${VAR} expansion)")
    timeout_seconds: float = Field(default=120.0, gt=0)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)
    system_prompt: str = Field(
        default=(
            "You are an English teacher preparing materials for IELTS students. "
            "Create comprehensive dictionary entries in JSON format."
        ),
    )

    @model_validator(mode="after")
    def validate_api_key(self) -> "LLMSettings":
        if self.provider == "openai_compatible" and self.api_key is not None and self.api_key.startswith("${"):
            raise ValueError(f"llm.api_key references an unset environment variable: {self.api_key}")
        return self


class LoggingSettings(BaseModel):
    """Log output configuration."""

    model_config = {"frozen": True}

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_output: bool = False


class LexiforgeSettings(BaseModel):
    """Top-level configuration.

    All settings are validated and frozen after construction.
    """

    model_config = {"frozen": True}

    directories: DirectorySettings = Field(default_factory=DirectorySettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)
    delays: DelaySettings = Field(default_factory=DelaySettings)
    workers: WorkerSettings = Field(default_factory=WorkerSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# Regex pattern for ${VAR} or ${VAR:-default} syntax
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values.

    Unset variables without a default are left as-is so validation can
    report them.
    """

    def replacer(match: re.Match[str]) -> str:
        env_value = os.environ.get(match.group(1))
        if env_value is not None:
            return env_value
        if match.group(2) is not None:
            return match.group(2)
        return match.group(0)

    def _expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return _ENV_VAR_PATTERN.sub(replacer, value)
        if isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [_expand_value(item) for item in value]
        return value

    return {k: _expand_value(v) for k, v in config.items()}


def _lower_keys(value: Any) -> Any:
    """Dynaconf upper-cases keys coming from the environment; settings are lower-case."""
    if isinstance(value, dict):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    return value


def load_settings(config_path: Path | None = None) -> LexiforgeSettings:
    """Load settings from YAML file with environment variable overrides.

    Precedence:
    1. Environment variables (LEXIFORGE_*) - highest priority
    2. Config file (YAML)
    3. Defaults from the Pydantic schema - lowest priority

    Environment variable format: LEXIFORGE_BATCH__BATCH_SIZE for nested keys.

    Args:
        config_path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated LexiforgeSettings instance

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If an explicit config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if config_path is not None and not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="LEXIFORGE",
        settings_files=[str(config_path)] if config_path is not None else [],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k: v for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}
    raw_config = _lower_keys(raw_config)
    raw_config = _expand_env_vars(raw_config)

    return LexiforgeSettings(**raw_config)


def redacted_config(settings: LexiforgeSettings) -> dict[str, Any]:
    """Settings as a JSON-safe dict with the API key masked, for logging."""
    config_dict = settings.model_dump(mode="json")
    if config_dict["llm"]["api_key"]:
        config_dict["llm"]["api_key"] = "***"
    return config_dict
