"""Logging setup for the coldvault commands.

Each command configures logging once at startup. Module loggers come from
``get_logger`` and live under the ``coldvault`` logger, and every event they
emit carries the command name through structlog context variables.
"""

import logging
import sys
from typing import Any, Optional

import structlog

LOGGER_NAME = "coldvault"

# Wire-level chatter from the storage SDK and the PostgreSQL driver
NOISY_LIBRARIES = ("boto3", "botocore", "urllib3", "s3transfer", "asyncpg")

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def resolve_level(log_level: str) -> int:
    """Map a CLI level name to a stdlib level."""
    try:
        return LOG_LEVELS[log_level.upper()]
    except KeyError:
        raise ValueError(
            f"Unknown log level {log_level!r}; expected one of {', '.join(LOG_LEVELS)}"
        ) from None


def _renderer(log_format: str) -> Any:
    if log_format == "json":
        return structlog.processors.JSONRenderer(sort_keys=True)
    if log_format == "console":
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    raise ValueError(f"Unknown log format {log_format!r}; expected 'json' or 'console'")


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    command: Optional[str] = None,
) -> structlog.BoundLogger:
    """Configure logging for one ``archive`` or ``lifecycle`` invocation.

    Args:
        log_level: DEBUG, INFO, WARN, ERROR or CRITICAL
        log_format: 'json' for log shipping, 'console' for terminals
        command: Command name bound to every event as ``component``

    Returns:
        The ``coldvault`` root logger
    """
    level = resolve_level(log_level)
    renderer = _renderer(log_format)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger(LOGGER_NAME).setLevel(level)
    for name in NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # CliRunner invokes several commands in one process
    structlog.contextvars.clear_contextvars()
    if command:
        structlog.contextvars.bind_contextvars(component=command)

    return structlog.get_logger(LOGGER_NAME)


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """Get a module logger, e.g. ``get_logger("object_store")`` -> ``coldvault.object_store``."""
    if name:
        return structlog.get_logger(f"{LOGGER_NAME}.{name}")
    return structlog.get_logger(LOGGER_NAME)
