from __future__ import annotations

import logging
import sys
from typing import Any

import orjson
import structlog


def _json_serializer(obj: Any, default: Any) -> str:
    """
    High-performance JSON serializer for structured logs.

    Uses orjson for speed and deterministic output.
    """
    return orjson.dumps(obj, default=default).decode("utf-8")


def configure_logging(*, level: str = "INFO", json: bool = True) -> None:
    """
    Configure structured logging for the entire application.

    This must be called exactly once at process startup.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    renderer: Any
    if json:
        renderer = structlog.processors.JSONRenderer(serializer=_json_serializer)
    else:
        renderer = structlog.dev.ConsoleRenderer()

    processors: list[Any] = [
        # Merge context variables (session_key, exchange, etc.)
        structlog.contextvars.merge_contextvars,

        # Standard metadata
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),

        # Exception handling
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json:
        processors.append(structlog.processors.dict_tracebacks)
    processors.append(renderer)

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        cache_logger_on_first_use=True,
    )

    # uvicorn and starlette log through stdlib
    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def bind_context(**values: Any) -> None:
    """
    Bind contextual information to all future log entries of the current task.

    Example:
        bind_context(session_key="2019-06-01-2019-06-02", exchange="bitmex")
    """
    structlog.contextvars.bind_contextvars(**values)


def clear_context() -> None:
    """
    Clear all bound logging context.

    Called when a websocket handler returns.
    """
    structlog.contextvars.clear_contextvars()
