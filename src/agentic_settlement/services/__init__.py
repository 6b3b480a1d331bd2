"""Application services: use case orchestration."""

from agentic_settlement.services.escrow_service import EscrowService
from agentic_settlement.services.events import EventPublisher
from agentic_settlement.services.micropayment_service import MicropaymentService
from agentic_settlement.services.negotiation_service import NegotiationService
from agentic_settlement.services.sweep_service import SweepScheduler

__all__ = [
    "EscrowService",
    "EventPublisher",
    "MicropaymentService",
    "NegotiationService",
    "SweepScheduler",
]
