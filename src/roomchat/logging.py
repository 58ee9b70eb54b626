"""Structured logging configuration using structlog.

Usage:
    from roomchat.logging import configure_logging, get_logger

    configure_logging()  # once, at startup
    logger = get_logger(__name__)
    logger.info("message_appended", topic="broadcast", message_id=12)

Context variables set through ``bind_context`` (the transport does this per
connection and per request) are merged into every record.
"""

import logging
import sys
from contextvars import ContextVar

import structlog

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
topic_var: ContextVar[str | None] = ContextVar("topic", default=None)


def add_chat_context(logger: logging.Logger, method_name: str, event_dict: dict) -> dict:
    request_id = request_id_var.get()
    user_id = user_id_var.get()
    topic = topic_var.get()

    if request_id:
        event_dict.setdefault("request_id", request_id)
    if user_id:
        event_dict.setdefault("user_id", user_id)
    if topic:
        event_dict.setdefault("topic", topic)
    return event_dict


def configure_logging(json_format: bool = True, level: int = logging.INFO) -> None:
    """Configure structlog and route stdlib logging through the same renderer."""
    shared_processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_chat_context,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_context(
    *,
    request_id: str | None = None,
    user_id: str | None = None,
    topic: str | None = None,
) -> None:
    """Set request-scoped context for the current task."""
    if request_id is not None:
        request_id_var.set(request_id)
    if user_id is not None:
        user_id_var.set(user_id)
    if topic is not None:
        topic_var.set(topic)


def clear_context() -> None:
    request_id_var.set(None)
    user_id_var.set(None)
    topic_var.set(None)
