"""structlog configuration shared by every component."""

from __future__ import annotations

import logging

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, merge_contextvars


def configure_logging(level: str = "INFO", *, json: bool = True) -> None:
    """Route structlog through stdlib logging with ISO timestamps.

    JSON rendering is meant for deployed services; ``json=False`` gives a
    readable console format for local runs.
    """

    log_level = getattr(logging, str(level or "INFO").upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", level=log_level, force=True)

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if json
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def bind_turn_context(*, trace_id: str, tenant_id: str, user_id: str) -> None:
    """Attach request identifiers to every log line of the current task."""
    clear_contextvars()
    bind_contextvars(trace_id=trace_id, tenant_id=tenant_id, user_id=user_id)
