"""Wiring for the engines.

Builds EscrowService, NegotiationService, MicropaymentService and the
SweepScheduler around a pair of record stores and one event sink, taking
defaults from Settings. Used by the sweep process and the simulation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from agentic_settlement.config import Settings, get_settings
from agentic_settlement.domain.models import utc_now
from agentic_settlement.infrastructure.memory import InMemoryRecordStore
from agentic_settlement.services.escrow_service import EscrowService
from agentic_settlement.services.events import EventPublisher
from agentic_settlement.services.micropayment_service import MicropaymentService
from agentic_settlement.services.negotiation_service import NegotiationService
from agentic_settlement.services.sweep_service import SweepScheduler

if TYPE_CHECKING:
    from agentic_settlement.domain.models import Clock, Escrow, Negotiation
    from agentic_settlement.domain.protocols import EventSink, RecordStore


@dataclass
class Engines:
    escrows: EscrowService
    negotiations: NegotiationService
    micropayments: MicropaymentService
    scheduler: SweepScheduler


def build_engines(
    escrow_store: RecordStore[Escrow] | None = None,
    negotiation_store: RecordStore[Negotiation] | None = None,
    sink: EventSink | None = None,
    settings: Settings | None = None,
    clock: Clock = utc_now,
) -> Engines:
    """Build all engines sharing one event publisher and clock.

    Stores default to in-memory ones.
    """
    settings = settings or get_settings()
    publisher = EventPublisher(sink)

    escrows = EscrowService(
        escrow_store if escrow_store is not None else InMemoryRecordStore(),
        events=publisher,
        clock=clock,
        default_token=settings.default_token,
    )
    negotiations = NegotiationService(
        negotiation_store if negotiation_store is not None else InMemoryRecordStore(),
        escrows,
        events=publisher,
        clock=clock,
        quote_validity_minutes=settings.default_quote_validity_minutes,
        escrow_grace_minutes=settings.escrow_timeout_grace_minutes,
    )
    return Engines(
        escrows=escrows,
        negotiations=negotiations,
        micropayments=MicropaymentService(
            escrows, default_timeout_minutes=settings.micropayment_timeout_minutes
        ),
        scheduler=SweepScheduler(
            escrows,
            negotiations,
            interval_seconds=settings.sweep_interval_seconds,
            clock=clock,
        ),
    )
