"""Core infrastructure: configuration, logging, word list loading and checkpoint storage."""

from lexiforge.core.checkpoint import CheckpointStore
from lexiforge.core.config import LexiforgeSettings, load_settings
from lexiforge.core.logging import configure_logging, get_logger
from lexiforge.core.wordlist import load_word_list, parse_word_list

__all__ = [
    "CheckpointStore",
    "LexiforgeSettings",
    "configure_logging",
    "get_logger",
    "load_settings",
    "load_word_list",
    "parse_word_list",
]
