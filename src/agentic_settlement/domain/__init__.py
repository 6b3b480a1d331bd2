"""Domain layer: pure business rules with zero infrastructure dependencies."""

from agentic_settlement.domain.enums import (
    DisputeDecision,
    EscrowState,
    EventType,
    NegotiationState,
)
from agentic_settlement.domain.exceptions import (
    AlreadySetError,
    ConcurrentModificationError,
    EscrowNotFoundError,
    EscrowTimedOutError,
    IndexOutOfRangeError,
    InvalidStateTransitionError,
    NegotiationNotFoundError,
    NotFoundError,
    OrphanedEscrowError,
    PreconditionFailedError,
    QuoteExpiredError,
    SettlementError,
    UnauthorizedError,
)
from agentic_settlement.domain.models import (
    Escrow,
    EscrowConditions,
    Negotiation,
    Offer,
    QuoteTerms,
)
from agentic_settlement.domain.protocols import DomainEvent, EventSink, RecordStore
from agentic_settlement.domain.state_machine import (
    EscrowStateMachine,
    NegotiationStateMachine,
    validate_transition,
)

__all__ = [
    "DisputeDecision",
    "EscrowState",
    "EventType",
    "NegotiationState",
    "AlreadySetError",
    "ConcurrentModificationError",
    "EscrowNotFoundError",
    "EscrowTimedOutError",
    "IndexOutOfRangeError",
    "InvalidStateTransitionError",
    "NegotiationNotFoundError",
    "NotFoundError",
    "OrphanedEscrowError",
    "PreconditionFailedError",
    "QuoteExpiredError",
    "SettlementError",
    "UnauthorizedError",
    "Escrow",
    "EscrowConditions",
    "Negotiation",
    "Offer",
    "QuoteTerms",
    "DomainEvent",
    "EventSink",
    "RecordStore",
    "EscrowStateMachine",
    "NegotiationStateMachine",
    "validate_transition",
]
