"""Structured logging for the settlement engines, built on structlog.

Development runs get colored console output; production runs emit one JSON
object per line. Amounts are ``Decimal`` and states are enums, so a processor
renders both as plain strings before the renderer sees them.

Every mutating engine operation binds the id it acts on (``escrow_id`` or
``quote_id``) as a context variable through :func:`entity_context`. An escrow
operation started by a negotiation therefore logs both ids. Sweep passes bind
a ``sweep_id`` the same way.

Usage:
    from agentic_settlement.logging_config import setup_logging, get_logger
    setup_logging(log_level="DEBUG", json_logs=False)
    logger = get_logger(__name__)
    logger.info("escrow.created", escrow_id="esc_abc", amount=Decimal("100"))
"""

from __future__ import annotations

import functools
import logging
import sys
from decimal import Decimal
from enum import Enum

import structlog

_NOISY_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "asyncio", "redis")


def _settlement_values(
    logger: object, method_name: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    for key, value in event_dict.items():
        if isinstance(value, Enum):
            event_dict[key] = value.value
        elif isinstance(value, Decimal):
            event_dict[key] = str(value)
    return event_dict


def setup_logging(log_level: str = "INFO", json_logs: bool = False) -> None:
    """Route structlog and stdlib logging through one stdout handler.

    Args:
        log_level: Standard level name; unknown names fall back to INFO.
        json_logs: JSON lines when True, colored console otherwise.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _settlement_values,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    renderer: structlog.types.Processor
    if json_logs:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bound_context(**values: object):
    """Bind context variables for the duration of a ``with`` block."""
    return structlog.contextvars.bound_contextvars(**values)


def entity_context(key: str):
    """Decorate an engine coroutine whose first argument is an entity id.

    The id is bound as ``key`` while the coroutine runs, including any events
    it publishes and any nested engine calls it makes.
    """

    def decorate(func):
        @functools.wraps(func)
        async def wrapper(self, entity_id: str, *args, **kwargs):
            with bound_context(**{key: entity_id}):
                return await func(self, entity_id, *args, **kwargs)

        return wrapper

    return decorate
