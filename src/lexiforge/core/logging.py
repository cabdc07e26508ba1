# src/lexiforge/core/logging.py
"""Structured logging configuration for lexiforge.

Configures BOTH structlog and stdlib logging to emit consistent output
(JSON or console). ProcessorFormatter routes stdlib log records through
structlog's processor chain, so modules using logging.getLogger(__name__)
produce the same output format as modules using structlog.get_logger().

Worker processes call configure_logging() again on entry with the
supervisor's LoggingSettings and their chunk id; output from all chunks
shares one format. Every event emitted from a chunk worker, process or
thread, carries a "worker" field naming it.
"""

import logging
import multiprocessing
import sys
import threading
from typing import Any

import structlog
from structlog.stdlib import ProcessorFormatter

# Chunk processes and chunk threads are named WORKER_NAME_PREFIX + chunk id
WORKER_NAME_PREFIX = "lexiforge-chunk-"

# Third-party loggers that emit connection-level noise at DEBUG.
_NOISY_LOGGERS: tuple[str, ...] = (
    "httpx",
    "httpcore",
    "filelock",
    "urllib3",
)


def worker_name(chunk_id: int) -> str:
    return f"{WORKER_NAME_PREFIX}{chunk_id}"


def _add_worker_name(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Tag events emitted inside a chunk worker with the worker's name.

    Supervisor events carry no worker field.
    """
    for name in (multiprocessing.current_process().name, threading.current_thread().name):
        if name.startswith(WORKER_NAME_PREFIX):
            event_dict.setdefault("worker", name)
            break
    return event_dict


def _remove_internal_fields(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Remove internal structlog fields from output.

    ProcessorFormatter always adds _record and _from_structlog when processing
    log records. These are bookkeeping and should not appear in output.
    """
    del event_dict["_record"]
    del event_dict["_from_structlog"]
    return event_dict


def configure_logging(
    *,
    json_output: bool = False,
    level: str = "INFO",
    worker_chunk: int | None = None,
) -> None:
    """Configure structlog and stdlib logging.

    Args:
        json_output: If True, output JSON. If False, human-readable.
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        worker_chunk: Chunk id of the worker process being configured. Bound
            into the context so every event from the process carries it.
    """
    log_level = getattr(logging, level.upper())

    if worker_chunk is not None:
        structlog.contextvars.bind_contextvars(worker_chunk=worker_chunk)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        _add_worker_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
        final_processors: list[Any] = [
            _remove_internal_fields,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        final_processors = [
            _remove_internal_fields,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ]

    structlog.configure(
        processors=[*shared_processors, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Caching disabled so tests can reconfigure
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        ProcessorFormatter(
            processors=final_processors,
            foreign_pre_chain=shared_processors,
        )
    )

    root = logging.getLogger()
    root.handlers = []
    root.addHandler(handler)
    root.setLevel(log_level)

    # Never make noisy loggers less restrictive than the root level
    noisy_level = max(log_level, logging.WARNING)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(noisy_level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a bound logger for a module.

    Args:
        name: Logger name (typically __name__).

    Returns:
        Bound structlog logger.
    """
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger
