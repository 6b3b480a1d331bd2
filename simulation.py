#!/usr/bin/env python3
"""Agentic Settlement: End-to-End Simulation.

Replays four scenarios between a provider agent and a client agent:

    Scenario 1: Simple Escrow
        - Client creates and funds an escrow for the provider
        - Both approve -> LOCKED, provider delivers -> RELEASED on delivery

    Scenario 2: Negotiation
        - Provider quotes 500, client counters 400
        - Provider accepts the counter -> escrow of 400 created (PENDING)
        - Client funds, both approve, provider delivers, client confirms

    Scenario 3: Dispute
        - Quote accepted, escrow funded and locked, partial delivery marked
        - Client disputes
        - Arbiter resolves for the client -> REFUNDED

    Scenario 4: Timeout
        - Escrow created already overdue, funded (locks, no approval round)
        - Sweeper refunds it; a second sweep changes nothing

Usage:
    # Option A: In-memory stores (default):
    uv run python simulation.py

    # Option B: SQLite in-memory through the SQLAlchemy stores:
    uv run python simulation.py --sqlite

    # Run a specific scenario:
    uv run python simulation.py --scenario 2
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from agentic_settlement.logging_config import get_logger, setup_logging

setup_logging(log_level="WARNING", json_logs=False)
logger = get_logger("simulation")

from agentic_settlement.container import Engines, build_engines  # noqa: E402
from agentic_settlement.domain.enums import EventType  # noqa: E402
from agentic_settlement.infrastructure.event_sinks import InMemoryEventSink  # noqa: E402

PROVIDER = "data-provider-agent"
CLIENT = "research-agent"
ARBITER = "arbiter-agent"

# Module-level state
_sqlite_engine = None


@dataclass
class SimulatedClock:
    """Clock the simulation can move forward."""

    now: datetime = field(default_factory=lambda: datetime(2025, 1, 1, 12, 0, tzinfo=UTC))

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


# ---------------------------------------------------------------------------
# Store lifecycle helpers
# ---------------------------------------------------------------------------
async def build(use_sqlite: bool = False) -> tuple[Engines, InMemoryEventSink, SimulatedClock]:
    """Build engines over in-memory or SQLite stores."""
    global _sqlite_engine

    escrow_store = negotiation_store = None
    if use_sqlite:
        from agentic_settlement.infrastructure.database.engine import build_session_factory
        from agentic_settlement.infrastructure.database.repositories import (
            SqlEscrowStore,
            SqlNegotiationStore,
        )

        _sqlite_engine, factory = await build_session_factory("sqlite+aiosqlite:///:memory:")
        escrow_store, negotiation_store = SqlEscrowStore(factory), SqlNegotiationStore(factory)

    sink = InMemoryEventSink()
    clock = SimulatedClock()
    engines = build_engines(escrow_store, negotiation_store, sink=sink, clock=clock)
    return engines, sink, clock


async def shutdown() -> None:
    global _sqlite_engine
    if _sqlite_engine is not None:
        await _sqlite_engine.dispose()
        _sqlite_engine = None


# ---------------------------------------------------------------------------
# Display Helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def step(text: str) -> None:
    print(f"  • {text}")


def print_trail(sink: InMemoryEventSink, entity_id: str) -> None:
    print("\n  📜 Event Trail:")
    for i, evt in enumerate(sink.for_entity(entity_id), 1):
        print(f"    {i}. [{evt.kind}] {evt.from_state or '∅'} → {evt.to_state}")
    print()


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------
async def scenario_1_simple_escrow(engines: Engines, sink: InMemoryEventSink, clock) -> None:
    banner("SCENARIO 1: Simple Escrow")
    escrows = engines.escrows

    escrow = await escrows.create(
        payer=CLIENT,
        payee=PROVIDER,
        amount=100,
        purpose="Market data feed, one hour",
        conditions={"requiresDelivery": True},
    )
    step(f"Created {escrow.id} for {escrow.amount} {escrow.token}")

    await escrows.fund(escrow.id, tx_ref="0xsim-fund-1")
    await escrows.approve(escrow.id, CLIENT)
    escrow = await escrows.approve(escrow.id, PROVIDER)
    step(f"Funded and approved by both parties -> {escrow.state}")

    escrow = await escrows.submit_delivery(escrow.id, {"rows": 3600}, submitted_by=PROVIDER)
    step(f"Delivered, released on delivery -> {escrow.state}")

    print_trail(sink, escrow.id)
    assert escrow.state == "released"


async def scenario_2_negotiation(engines: Engines, sink: InMemoryEventSink, clock) -> None:
    banner("SCENARIO 2: Negotiation")
    negotiations = engines.negotiations

    quote = await negotiations.create_quote(
        provider_id=PROVIDER,
        client_id=CLIENT,
        service="sentiment analysis",
        price=500,
        terms={"deliveryTimeMinutes": 60},
    )
    step(f"Provider quoted {quote.price} ({quote.id})")

    quote = await negotiations.counter_offer(
        quote.id, CLIENT, 400, terms={"deliveryTimeMinutes": 30}
    )
    step(f"Client countered {quote.latest_offer.price} -> {quote.state}")

    quote = await negotiations.accept_counter(quote.id, PROVIDER)
    escrow = await engines.escrows.get(quote.escrow_id)
    step(f"Provider accepted counter: escrow {escrow.id} of {escrow.amount} ({escrow.state})")
    assert escrow.amount == 400 and escrow.state == "pending"

    await engines.escrows.fund(escrow.id, tx_ref="0xsim-fund-2")
    await engines.escrows.approve(escrow.id, CLIENT)
    await engines.escrows.approve(escrow.id, PROVIDER)

    clock.advance(minutes=20)
    await negotiations.mark_delivered(quote.id, PROVIDER, {"report": "positive"})
    quote = await negotiations.confirm_delivery(quote.id, CLIENT)
    escrow = await engines.escrows.get(quote.escrow_id)
    step(f"Delivered and confirmed -> escrow {escrow.state}")

    print_trail(sink, quote.id)
    print_trail(sink, escrow.id)
    stats = await negotiations.stats()
    step(f"Negotiations: {stats.total} total, value {stats.total_value}")


async def scenario_3_dispute(engines: Engines, sink: InMemoryEventSink, clock) -> None:
    banner("SCENARIO 3: Dispute")
    negotiations, escrows = engines.negotiations, engines.escrows

    quote = await negotiations.create_quote(
        provider_id=PROVIDER,
        client_id=CLIENT,
        service="model fine-tuning run",
        price=250,
    )
    quote = await negotiations.accept(quote.id, CLIENT)
    await escrows.fund(quote.escrow_id, tx_ref="0xsim-fund-3")
    await escrows.approve(quote.escrow_id, CLIENT)
    escrow = await escrows.approve(quote.escrow_id, PROVIDER)
    step(f"Quote accepted, escrow {escrow.id} funded and approved -> {escrow.state}")

    await negotiations.mark_delivered(quote.id, PROVIDER, {"status": "incomplete"})
    escrow = await escrows.dispute(escrow.id, CLIENT, "incomplete")
    step(f"Provider delivered partial work, client disputed -> {escrow.state}")

    escrow = await escrows.resolve_dispute(escrow.id, "refund", ARBITER)
    step(f"Arbiter ruled {escrow.dispute.decision} -> {escrow.state}")

    print_trail(sink, escrow.id)
    assert escrow.state == "refunded"


async def scenario_4_timeout(engines: Engines, sink: InMemoryEventSink, clock) -> None:
    banner("SCENARIO 4: Timeout")
    escrows = engines.escrows

    escrow = await escrows.create(
        payer=CLIENT,
        payee=PROVIDER,
        amount=75,
        purpose="Overdue job",
        conditions={"requiresApproval": False},
        timeout_minutes=-1,
    )
    await escrows.fund(escrow.id, tx_ref="0xsim-fund-4")
    step(f"Funded {escrow.id}, timeout already passed")

    first = await engines.scheduler.run_once()
    second = await engines.scheduler.run_once()
    escrow = await escrows.get(escrow.id)
    refunds = [e for e in sink.of_kind(EventType.ESCROW_REFUNDED) if e.entity_id == escrow.id]
    step(f"Sweep 1 refunded {first.escrows.count}, sweep 2 refunded {second.escrows.count}")
    step(f"Final state {escrow.state} with {len(refunds)} refund event(s)")

    print_trail(sink, escrow.id)
    assert escrow.state == "refunded" and len(refunds) == 1


SCENARIOS = {
    1: scenario_1_simple_escrow,
    2: scenario_2_negotiation,
    3: scenario_3_dispute,
    4: scenario_4_timeout,
}


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------
async def run(scenarios: list[int], use_sqlite: bool = False) -> None:
    engines, sink, clock = await build(use_sqlite=use_sqlite)
    try:
        print("\n" + "🤝" * 35)
        print("  AGENTIC SETTLEMENT SIMULATION")
        print(f"  Store: {'SQLite (in-memory)' if use_sqlite else 'in-memory'}")
        print("🤝" * 35 + "\n")

        for num in scenarios:
            await SCENARIOS[num](engines, sink, clock)

        stats = await engines.escrows.stats()
        print("\n" + "=" * 70)
        print(f"  ✅ {len(scenarios)} SCENARIO(S) COMPLETED, escrows by state: {stats.by_state}")
        print("=" * 70 + "\n")
    finally:
        await shutdown()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Agentic Settlement Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        choices=[0, *SCENARIOS],
        help="Run a specific scenario (1-4). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use the SQLAlchemy stores on SQLite in-memory.",
    )
    args = parser.parse_args()

    selected = list(SCENARIOS) if args.scenario == 0 else [args.scenario]
    asyncio.run(run(selected, use_sqlite=args.sqlite))
