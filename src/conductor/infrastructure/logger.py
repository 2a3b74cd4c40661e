"""Structured logging for Conductor.

Events are rendered for humans on stderr and, when a log directory is
configured, as JSON lines in ``conductor.log``. Every CLI command calls
``setup_logging`` again, so handlers installed by a previous call are
replaced rather than stacked.
"""

import logging
import sys
from pathlib import Path
from typing import Any, cast

import structlog

LOG_FILE_NAME = "conductor.log"

# Marker attribute on handlers owned by setup_logging
_HANDLER_TAG = "_conductor_handler"

# Vendor SDK loggers that are chatty at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "anthropic")

_SHARED_PROCESSORS: list[Any] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
]


def _resolve_level(log_level: str) -> int:
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")
    return level


def _formatter(renderer: Any) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_SHARED_PROCESSORS,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )


def _install(handler: logging.Handler, level: int, renderer: Any) -> logging.Handler:
    setattr(handler, _HANDLER_TAG, True)
    handler.setLevel(level)
    handler.setFormatter(_formatter(renderer))
    logging.root.addHandler(handler)
    return handler


def setup_logging(log_level: str = "INFO", log_dir: Path | None = None) -> None:
    """Configure structlog on top of the stdlib root logger.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_dir: Directory for the JSON log file (console only when None)

    Raises:
        ValueError: If ``log_level`` is not a logging level name
    """
    level = _resolve_level(log_level)

    for handler in list(logging.root.handlers):
        if getattr(handler, _HANDLER_TAG, False):
            logging.root.removeHandler(handler)
            handler.close()

    logging.root.setLevel(level)
    # stdout stays free for CLI table output
    _install(logging.StreamHandler(sys.stderr), level, structlog.dev.ConsoleRenderer(colors=True))

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        _install(
            logging.FileHandler(log_dir / LOG_FILE_NAME),
            level,
            structlog.processors.JSONRenderer(),
        )

    vendor_level = level if level <= logging.DEBUG else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(vendor_level)

    structlog.configure(
        processors=[*_SHARED_PROCESSORS, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Structured logger for a module (pass ``__name__``)."""
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))
