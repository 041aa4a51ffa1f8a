"""
Standardized Logging Configuration

Structured logging setup shared by every module in the package.
Supports JSON logging for production and human-readable output for development.
"""

import logging
import sys
from enum import Enum
from typing import Any, List, Optional

import structlog


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    CONSOLE = "console"


def configure_logging(
    level: str = "INFO",
    log_format: str = LogFormat.JSON.value,
    service_name: Optional[str] = None,
) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        level: Minimum log level name
        log_format: ``json`` or ``console``
        service_name: Optional service name bound to every log line
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
        force=True,
    )

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if LogFormat(log_format) == LogFormat.JSON:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if service_name:
        structlog.contextvars.bind_contextvars(service=service_name)

