"""
Structured Logging with Structlog.

Every entry is one JSON object carrying the service name, version and the
request id bound by the HTTP middleware. Credential-bearing fields are
masked before rendering, so API keys, passwords and session tokens never
reach the log stream.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from pageassist.config import settings

SECRET_FIELDS = frozenset(
    {"api_key", "password", "token", "authorization", "x_api_key", "init_data", "jwt_secret"}
)
REDACTED = "[redacted]"

# Libraries whose own request logs duplicate the middleware's
QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def add_service_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask values of known credential fields."""
    for key in event_dict.keys() & SECRET_FIELDS:
        event_dict[key] = REDACTED
    return event_dict


def _processors(log_level: str, log_format: str) -> list[Processor]:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service_context,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.ExceptionRenderer()
        if log_level == "DEBUG"
        else structlog.processors.format_exc_info,
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    return processors


def setup_logging() -> None:
    """
    Configure structlog over the stdlib root logger.

    A JSON entry looks like:
    {
        "event": "chat_turn_completed",
        "level": "info",
        "timestamp": "2026-10-19T12:00:00.123456Z",
        "logger": "pageassist.services.chat",
        "service": "pageassist-api",
        "version": "0.1.0",
        "request_id": "5f0c...",
        "cost": "0.1215"
    }
    """
    log_level = settings.log_level.upper()
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=_processors(log_level, settings.log_format),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)  # type: ignore[no-any-return]


@contextmanager
def log_context(**context: Any) -> Iterator[None]:
    """
    Bind fields to every entry logged inside the block.

    Usage:
        with log_context(request_id=request_id):
            logger.info("request_started")
    """
    with structlog.contextvars.bound_contextvars(**context):
        yield
