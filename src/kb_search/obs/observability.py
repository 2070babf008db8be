"""Structured logging setup shared by all components."""

from __future__ import annotations

import logging

import structlog

_logger_configured = False


def configure_logging(level: int | str | None = None) -> None:
    """Configure structlog once with INFO, or again whenever a level is given."""
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured and level is None:
        return
    if level is None:
        level = logging.INFO
    elif isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format="%(message)s")
    logging.getLogger().setLevel(level)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: str = "kb_search") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)
