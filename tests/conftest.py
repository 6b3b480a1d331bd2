"""Shared test fixtures for the Agentic Settlement test suite.

Provides:
    - A controllable clock
    - An in-memory event sink
    - Engines wired over in-memory stores
    - Async test support via pytest-asyncio
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from agentic_settlement.infrastructure.event_sinks import InMemoryEventSink
from agentic_settlement.infrastructure.memory import InMemoryRecordStore
from agentic_settlement.services.escrow_service import EscrowService
from agentic_settlement.services.events import EventPublisher
from agentic_settlement.services.micropayment_service import MicropaymentService
from agentic_settlement.services.negotiation_service import NegotiationService
from agentic_settlement.services.sweep_service import SweepScheduler

PAYER = "client-agent"
PAYEE = "provider-agent"

START = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Deterministic clock; tests move it forward explicitly."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


# ---------------------------------------------------------------------------
# Infrastructure Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def escrow_store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def negotiation_store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


# ---------------------------------------------------------------------------
# Engine Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def escrow_service(escrow_store, sink, clock) -> EscrowService:
    return EscrowService(escrow_store, events=EventPublisher(sink), clock=clock)


@pytest.fixture
def negotiation_service(negotiation_store, escrow_service, sink, clock) -> NegotiationService:
    return NegotiationService(
        negotiation_store,
        escrow_service,
        events=EventPublisher(sink),
        clock=clock,
        quote_validity_minutes=60,
        escrow_grace_minutes=60,
    )


@pytest.fixture
def micropayments(escrow_service) -> MicropaymentService:
    return MicropaymentService(escrow_service, default_timeout_minutes=5)


@pytest.fixture
def scheduler(escrow_service, negotiation_service, clock) -> SweepScheduler:
    return SweepScheduler(escrow_service, negotiation_service, interval_seconds=0.01, clock=clock)


# ---------------------------------------------------------------------------
# Data Helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def make_locked_escrow(escrow_service):
    """Create, fund and approve an escrow; returns the locked record."""

    async def _make(**kwargs):
        kwargs.setdefault("payer", PAYER)
        kwargs.setdefault("payee", PAYEE)
        kwargs.setdefault("amount", 100)
        escrow = await escrow_service.create(**kwargs)
        await escrow_service.fund(escrow.id, tx_ref="0xfund")
        if escrow.conditions.requires_approval:
            await escrow_service.approve(escrow.id, kwargs["payer"])
            await escrow_service.approve(escrow.id, kwargs["payee"])
        return await escrow_service.get(escrow.id)

    return _make
