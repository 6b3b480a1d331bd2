"""Tests for the SweepScheduler."""

from __future__ import annotations

import asyncio

import pytest

from agentic_settlement.domain.enums import EscrowState, EventType, NegotiationState

PAYER = "client-agent"
PAYEE = "provider-agent"


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_runs_both_sweeps_with_one_now(
        self, scheduler, escrow_service, negotiation_service, clock
    ) -> None:
        escrow = await escrow_service.create(PAYER, PAYEE, 10, timeout_minutes=5)
        await escrow_service.fund(escrow.id, tx_ref="0x1")
        quote = await negotiation_service.create_quote(
            PAYEE, PAYER, "analysis", 50, valid_for_minutes=5
        )
        clock.advance(minutes=5)

        summary = await scheduler.run_once()

        assert summary.ran_at == clock.now
        assert summary.escrows.processed == [escrow.id]
        assert summary.negotiations.processed == [quote.id]
        assert not summary.failed
        assert scheduler.passes == 1

    @pytest.mark.asyncio
    async def test_explicit_now(self, scheduler, escrow_service, clock) -> None:
        escrow = await escrow_service.create(PAYER, PAYEE, 10, timeout_minutes=5)
        await escrow_service.fund(escrow.id, tx_ref="0x1")

        early = await scheduler.run_once(clock.now)
        assert early.escrows.processed == []

        late = await scheduler.run_once(clock.advance(hours=1))
        assert late.escrows.processed == [escrow.id]

    @pytest.mark.asyncio
    async def test_concurrent_passes_are_idempotent(
        self, scheduler, escrow_service, negotiation_service, sink, clock
    ) -> None:
        for _ in range(3):
            escrow = await escrow_service.create(PAYER, PAYEE, 10, timeout_minutes=1)
            await escrow_service.fund(escrow.id, tx_ref="0x")
            await negotiation_service.create_quote(PAYEE, PAYER, "x", 5, valid_for_minutes=1)
        clock.advance(minutes=1)

        await asyncio.gather(scheduler.run_once(), scheduler.run_once())

        assert len(sink.of_kind(EventType.ESCROW_REFUNDED)) == 3
        assert len(sink.of_kind(EventType.QUOTE_EXPIRED)) == 3
        assert all(e.state == EscrowState.REFUNDED for e in await escrow_service.list())
        assert all(
            n.state == NegotiationState.EXPIRED for n in await negotiation_service.list()
        )


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_stops_when_event_set(self, scheduler) -> None:
        stop = asyncio.Event()
        task = asyncio.create_task(scheduler.run(stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)
        assert scheduler.passes >= 1

    @pytest.mark.asyncio
    async def test_failing_pass_does_not_stop_loop(self, scheduler, monkeypatch) -> None:
        calls = 0
        stop = asyncio.Event()

        async def broken_run_once(now=None):
            nonlocal calls
            calls += 1
            if calls >= 3:
                stop.set()
            raise RuntimeError("boom")

        monkeypatch.setattr(scheduler, "run_once", broken_run_once)
        await asyncio.wait_for(scheduler.run(stop), timeout=1)
        assert calls == 3
