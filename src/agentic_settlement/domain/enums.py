"""Domain enumerations for Agentic Settlement.

These enums define the canonical states and event kinds used throughout the
system. They are framework-agnostic (no SQLAlchemy, no Redis imports).
"""

import enum


class EscrowState(enum.StrEnum):
    """Lifecycle states of an escrow.

    State transitions are enforced by the EscrowStateMachine guard.
    See domain/state_machine.py for the transition table.
    """

    PENDING = "pending"
    FUNDED = "funded"
    LOCKED = "locked"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"

    @property
    def is_terminal(self) -> bool:
        return self in (EscrowState.RELEASED, EscrowState.REFUNDED)


class NegotiationState(enum.StrEnum):
    """Lifecycle states of a negotiation (quote)."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COUNTERED = "countered"
    EXPIRED = "expired"

    @property
    def is_open(self) -> bool:
        return self in (NegotiationState.PENDING, NegotiationState.COUNTERED)


class DisputeDecision(enum.StrEnum):
    """Binary outcome an arbiter may choose for a disputed escrow."""

    RELEASE = "release"
    REFUND = "refund"


class EventType(enum.StrEnum):
    """Kinds of events reported to the event sink.

    Every state transition MUST produce exactly one event. Delivery proofs
    produce an event as well even though the state does not change.
    """

    # Escrow lifecycle
    ESCROW_CREATED = "ESCROW_CREATED"
    ESCROW_FUNDED = "ESCROW_FUNDED"
    ESCROW_LOCKED = "ESCROW_LOCKED"
    ESCROW_DELIVERY_SUBMITTED = "ESCROW_DELIVERY_SUBMITTED"
    ESCROW_RELEASED = "ESCROW_RELEASED"
    ESCROW_REFUNDED = "ESCROW_REFUNDED"
    ESCROW_DISPUTED = "ESCROW_DISPUTED"

    # Negotiation lifecycle
    QUOTE_CREATED = "QUOTE_CREATED"
    QUOTE_COUNTERED = "QUOTE_COUNTERED"
    QUOTE_ACCEPTED = "QUOTE_ACCEPTED"
    QUOTE_REJECTED = "QUOTE_REJECTED"
    QUOTE_EXPIRED = "QUOTE_EXPIRED"
    QUOTE_DELIVERED = "QUOTE_DELIVERED"
    QUOTE_CONFIRMED = "QUOTE_CONFIRMED"
