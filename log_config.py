import logging
import os
import sys

import structlog


def setup_logging(log_level: str = None, enable_json: bool = False) -> None:
    """
    Setup structured logging for the CLI and worker processes.

    Logs go to stderr so that command output on stdout stays clean.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR). Falls back to
            RETRIEVECTL_LOG_LEVEL, then WARNING.
        enable_json: Whether to output JSON formatted logs
    """
    level_name = (log_level or os.environ.get("RETRIEVECTL_LOG_LEVEL") or "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if enable_json:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=level,
        force=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
