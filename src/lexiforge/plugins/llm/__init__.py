"""LLM transformer plugins.

Exports:
- Transformer, TransformSession, TransformerFactory: executor-facing interface
- build_transformer: provider selection from LLMSettings
- PromptConfig, ensure_prompt_config: persisted prompt configuration
- classify_error: message-based error classification
"""

from lexiforge.plugins.llm.base import TransformerFactory, Transformer, TransformSession
from lexiforge.plugins.llm.echo import EchoTransformer, placeholder_record
from lexiforge.plugins.llm.errors import classify_error, to_classified
from lexiforge.plugins.llm.factory import build_transformer
from lexiforge.plugins.llm.openai_compatible import OpenAICompatibleTransformer
from lexiforge.plugins.llm.prompts import PromptConfig, PromptRenderer, ensure_prompt_config

__all__ = [
    "EchoTransformer",
    "OpenAICompatibleTransformer",
    "PromptConfig",
    "PromptRenderer",
    "TransformSession",
    "Transformer",
    "TransformerFactory",
    "build_transformer",
    "classify_error",
    "ensure_prompt_config",
    "placeholder_record",
    "to_classified",
]
