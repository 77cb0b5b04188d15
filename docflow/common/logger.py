"""Structured logging for the consumers and the query API.

structlog renders JSON (production) or console (development) output. While a
message is being processed the transport metadata is bound to contextvars, so
every log line of that attempt carries correlation_id / event_id / event_type.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog

from .trace import new_correlation_id


def _add_component(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Structlog processor: add component name."""
    event_dict.setdefault("component", event_dict.get("logger", "docflow"))
    return event_dict


def setup_logging(level: str = "INFO", format: str = "json") -> None:
    """Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        format: "json" for production, "console" for development.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        _add_component,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if format == "json":
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

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=log_level,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger for a module."""
    return structlog.get_logger(name)


@contextmanager
def message_context(
    *,
    consumer: str,
    correlation_id: Optional[str] = None,
    message_id: Optional[str] = None,
    routing_key: Optional[str] = None,
    **extra: Any,
) -> Iterator[str]:
    """Bind transport metadata for the duration of one processing attempt.

    Yields the effective correlation id (generated when the message has none).
    """
    cid = correlation_id or new_correlation_id()
    fields: dict[str, Any] = {"consumer": consumer, "correlation_id": cid}
    if message_id:
        fields["message_id"] = message_id
    if routing_key:
        fields["routing_key"] = routing_key
    fields.update({k: v for k, v in extra.items() if v is not None})
    with structlog.contextvars.bound_contextvars(**fields):
        yield cid
