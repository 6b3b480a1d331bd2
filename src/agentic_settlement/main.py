"""Sweep process entry point for Agentic Settlement.

Lifecycle:
    1. Startup: Initialize logging, the record stores (database or memory)
       and the event sink (structured log or Redis stream).
    2. Running: Sweep escrow timeouts and quote expirations every
       ``sweep_interval_seconds``.
    3. Shutdown: On SIGINT/SIGTERM finish the current pass, then close the
       database and Redis connections.

Run with:
    uv run python -m agentic_settlement.main
    uv run settlement-sweeper
"""

from __future__ import annotations

import asyncio
import signal
from contextlib import AsyncExitStack

from agentic_settlement.config import Settings, get_settings
from agentic_settlement.container import build_engines
from agentic_settlement.infrastructure.event_sinks import LoggingEventSink
from agentic_settlement.logging_config import get_logger, setup_logging

logger = get_logger(__name__)


async def _open_stores(settings: Settings, stack: AsyncExitStack):
    if not settings.uses_database:
        return None, None

    from agentic_settlement.infrastructure.database.engine import (
        close_db,
        get_session_factory,
        init_db,
    )
    from agentic_settlement.infrastructure.database.repositories import (
        SqlEscrowStore,
        SqlNegotiationStore,
    )

    await init_db()
    stack.push_async_callback(close_db)
    factory = get_session_factory()
    return SqlEscrowStore(factory), SqlNegotiationStore(factory)


async def _open_sink(settings: Settings, stack: AsyncExitStack):
    if settings.event_sink != "redis":
        return LoggingEventSink()

    from agentic_settlement.infrastructure.redis_client import (
        RedisEventSink,
        close_redis,
        init_redis,
    )

    try:
        client = await init_redis()
    except Exception as exc:
        logger.warning("app.redis_unavailable", error=str(exc))
        return LoggingEventSink()
    stack.push_async_callback(close_redis)
    return RedisEventSink(client)


async def run_sweeper(settings: Settings | None = None) -> None:
    """Run the sweep scheduler until SIGINT/SIGTERM."""
    settings = settings or get_settings()
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    async with AsyncExitStack() as stack:
        escrow_store, negotiation_store = await _open_stores(settings, stack)
        sink = await _open_sink(settings, stack)
        engines = build_engines(escrow_store, negotiation_store, sink=sink, settings=settings)

        logger.info(
            "app.started",
            env=settings.app_env,
            store=settings.store_backend,
            event_sink=type(sink).__name__,
        )
        await engines.scheduler.run(stop)
        logger.info("app.shutting_down")

    logger.info("app.stopped")


def main() -> None:
    settings = get_settings()
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    asyncio.run(run_sweeper(settings))


if __name__ == "__main__":
    main()
