from __future__ import annotations

import logging
from typing import Any

import structlog


def configure_logging(level: str = "INFO", *, component: str | None = None, json_output: bool = True) -> None:
    """Route structlog through stdlib logging for the broker or worker process.

    ``component`` is bound for the whole process so broker and worker lines can
    share one log sink. Local runs may switch to the console renderer.
    """
    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.INFO))

    renderer: Any = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.clear_contextvars()
    if component:
        structlog.contextvars.bind_contextvars(component=component)


def get_logger(*, name: str | None = None, **bound: Any) -> structlog.stdlib.BoundLogger:
    logger = structlog.get_logger(name)
    return logger.bind(**bound) if bound else logger


def short_id(value: str | None, length: int = 8) -> str | None:
    """Shorten ids for log lines; full ids stay in payloads."""
    if not value:
        return None
    return value[:length]


__all__ = ["configure_logging", "get_logger", "short_id"]
