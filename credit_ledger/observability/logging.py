"""
Structured Logging with Structlog.

Ledger events are emitted as snake_case event names with keyword context
(user_id, amount, operation). Request ids are bound per request via
log_context so every event of one ledger call can be correlated.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from credit_ledger.config import settings

# Event keys that must never reach the log sink
_SECRET_KEYS = frozenset({"admin_key", "x_admin_key", "api_key"})


def add_service_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp every entry with the service name and version."""
    event_dict.setdefault("service", settings.service_name)
    event_dict.setdefault("version", settings.api_version)
    return event_dict


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask admin credentials passed as log context."""
    for key in _SECRET_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def setup_logging() -> None:
    """
    Configure structlog over the standard library logger.

    JSON output looks like:
    {
        "event": "credits_used",
        "level": "info",
        "timestamp": "2026-10-18T12:00:00.123456Z",
        "logger": "credit_ledger.services.ledger",
        "service": "story-credits-ledger",
        "version": "0.1.0",
        "request_id": "req-123",
        "user_id": "user-123",
        "amount": 4,
        "balance": 6
    }
    """
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    # SQL echo only when explicitly debugging
    if level > logging.DEBUG:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_service_context,
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    renderer: Processor
    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[*processors, renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger.

    Usage:
        logger = get_logger(__name__)
        logger.info("credits_used", user_id=user_id, amount=4, balance=6)
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


@contextmanager
def log_context(**kwargs: Any) -> Iterator[None]:
    """
    Bind context for every ledger event logged inside the block.

    Usage:
        with log_context(request_id="req-123"):
            await service.use_credits("user-123", 4)
    """
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield
