"""Structured logging configuration using structlog.

This module sets up JSON-formatted logging for production deployment (one JSON
object per line, suitable for container log collectors), with console-friendly
formatting for local development.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from src.config import settings

# Substrings of event keys whose values never reach the log output
SENSITIVE_KEYS = frozenset(
    {
        "token",
        "password",
        "api_key",
        "secret",
        "authorization",
        "credential",
        "cookie",
        "encrypted",
    }
)


def add_log_level(_logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add log level to the event dict."""
    if method_name == "warn":
        # Structlog uses "warn", but we want "warning"
        event_dict["level"] = "warning"
    else:
        event_dict["level"] = method_name
    return event_dict


def censor_sensitive_data(
    _logger: logging.Logger, _method_name: str, event_dict: EventDict
) -> EventDict:
    """Censor sensitive data from log events.

    Masks fields that may contain bot tokens, API tokens, secrets or
    encrypted credential payloads.
    """

    def _censor_value(key: str, value: Any) -> Any:
        key_lower = key.lower()
        if any(sensitive in key_lower for sensitive in SENSITIVE_KEYS):
            return "***"
        if isinstance(value, dict):
            return {k: _censor_value(k, v) for k, v in value.items()}
        if isinstance(value, list):
            return [_censor_value(key, item) if isinstance(item, dict) else item for item in value]
        return value

    censored: EventDict = {}
    for key, value in event_dict.items():
        censored[key] = _censor_value(key, value)
    return censored


def configure_logging() -> None:
    """Configure structlog for the application.

    Sets up different output formats based on environment:
    - Production: JSON format for log aggregation
    - Development: Console-friendly colored output
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper()),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        censor_sensitive_data,
    ]

    if settings.is_production:
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=True,
            exception_formatter=structlog.dev.plain_traceback,
        )

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))

    # httpx logs every request URL at INFO, including query strings
    logging.getLogger("httpx").setLevel(logging.WARNING)
    # APScheduler logs each job execution at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a configured logger instance.

    Args:
        name: Optional logger name. If not provided, uses the caller's module name.

    Returns:
        Configured structlog logger instance.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("link_code_issued", telegram_id="123")
    """
    return structlog.get_logger(name)


# Configure logging on module import
configure_logging()
