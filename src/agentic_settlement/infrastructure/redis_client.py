"""Redis client and the Redis stream event sink.

Usage:
    from agentic_settlement.infrastructure.redis_client import init_redis, RedisEventSink

    redis = await init_redis()
    sink = RedisEventSink(redis, stream="settlement:events")
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from agentic_settlement.config import get_settings
from agentic_settlement.logging_config import get_logger

if TYPE_CHECKING:
    from agentic_settlement.domain.protocols import DomainEvent

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during process startup."""
    global _redis_client
    settings = get_settings()
    _redis_client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    # Verify connectivity
    await _redis_client.ping()
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection. Called during process shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Event Stream ---


class RedisEventSink:
    """Appends each event to a capped Redis stream.

    Each stream entry carries a single ``event`` field holding the JSON
    document produced by ``DomainEvent.to_dict``. Connection errors and
    timeouts are retried briefly before the error reaches the publisher.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        stream: str | None = None,
        maxlen: int | None = None,
    ) -> None:
        settings = get_settings()
        self._client = client
        self._stream = stream or settings.redis_event_stream
        self._maxlen = maxlen if maxlen is not None else settings.redis_event_stream_maxlen

    @property
    def stream(self) -> str:
        return self._stream

    @retry(
        retry=retry_if_exception_type((RedisConnectionError, RedisTimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
        reraise=True,
    )
    async def emit(self, event: DomainEvent) -> None:
        await self._client.xadd(
            self._stream,
            {"event": json.dumps(event.to_dict())},
            maxlen=self._maxlen,
            approximate=True,
        )
