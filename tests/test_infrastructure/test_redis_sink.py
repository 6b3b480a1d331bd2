"""Tests for the Redis stream event sink (client mocked)."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from agentic_settlement.domain.enums import EscrowState, EventType
from agentic_settlement.infrastructure.redis_client import RedisEventSink
from agentic_settlement.services.escrow_service import EscrowService
from agentic_settlement.services.events import make_event


class TestRedisEventSink:
    @pytest.mark.asyncio
    async def test_appends_json_entry(self, clock) -> None:
        client = AsyncMock()
        sink = RedisEventSink(client, stream="test:events", maxlen=500)
        event = make_event(
            EventType.ESCROW_FUNDED, "esc_1", EscrowState.PENDING, EscrowState.FUNDED,
            clock.now, tx_ref="0xabc",
        )

        await sink.emit(event)

        client.xadd.assert_awaited_once()
        args, kwargs = client.xadd.call_args
        assert args[0] == "test:events"
        assert json.loads(args[1]["event"]) == event.to_dict()
        assert kwargs == {"maxlen": 500, "approximate": True}

    @pytest.mark.asyncio
    async def test_transient_connection_error_is_retried(self, clock) -> None:
        client = AsyncMock()
        client.xadd.side_effect = [RedisConnectionError("reset"), "1-0"]
        sink = RedisEventSink(client, stream="test:events", maxlen=10)

        await sink.emit(make_event(EventType.QUOTE_CREATED, "quote_1", None, "pending", clock.now))

        assert client.xadd.await_count == 2

    def test_stream_defaults_from_settings(self) -> None:
        sink = RedisEventSink(AsyncMock())
        assert sink.stream == "settlement:events"

    @pytest.mark.asyncio
    async def test_redis_outage_does_not_fail_operations(self, escrow_store, clock) -> None:
        client = AsyncMock()
        client.xadd.side_effect = ConnectionError("redis down")
        service = EscrowService(escrow_store, events=RedisEventSink(client), clock=clock)

        escrow = await service.create("payer", "payee", 5)
        funded = await service.fund(escrow.id, tx_ref="0x1")

        assert funded.state == EscrowState.FUNDED
        assert client.xadd.await_count == 2
