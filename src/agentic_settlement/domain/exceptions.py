"""Domain exceptions for Agentic Settlement.

These exceptions are framework-agnostic and represent business rule violations.
They are raised synchronously to the immediate caller; the engines never
retry on their own.
"""

from __future__ import annotations


class SettlementError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "SETTLEMENT_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Lookup Errors ---


class NotFoundError(SettlementError):
    """Raised when a record id does not exist."""

    def __init__(self, entity: str, record_id: str) -> None:
        super().__init__(
            message=f"{entity.capitalize()} not found: {record_id}",
            code="NOT_FOUND",
        )
        self.entity = entity
        self.record_id = record_id


class EscrowNotFoundError(NotFoundError):
    def __init__(self, escrow_id: str) -> None:
        super().__init__("escrow", escrow_id)
        self.code = "ESCROW_NOT_FOUND"


class NegotiationNotFoundError(NotFoundError):
    def __init__(self, negotiation_id: str) -> None:
        super().__init__("negotiation", negotiation_id)
        self.code = "NEGOTIATION_NOT_FOUND"


class DuplicateRecordError(SettlementError):
    """Raised when a store is asked to add an id it already holds."""

    def __init__(self, record_id: str) -> None:
        super().__init__(
            message=f"Record already exists: {record_id}",
            code="DUPLICATE_RECORD",
        )
        self.record_id = record_id


# --- State Machine Errors ---


class InvalidStateTransitionError(SettlementError):
    """Raised when an attempted transition is not allowed from the current state.

    Example: fund on a released escrow (pending is the only fundable state).
    """

    def __init__(
        self,
        current_state: str,
        attempted: str,
        entity_id: str | None = None,
        detail: str | None = None,
    ) -> None:
        target = f" on {entity_id}" if entity_id else ""
        message = f"Invalid state transition: cannot {attempted}{target} in state {current_state}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message=message, code="INVALID_STATE_TRANSITION")
        self.current_state = str(current_state)
        self.attempted = attempted
        self.entity_id = entity_id


class EscrowTimedOutError(InvalidStateTransitionError):
    """Raised when a funded/locked escrow is past its timeout; only refund is legal."""

    def __init__(self, current_state: str, attempted: str, escrow_id: str, timeout_at: str) -> None:
        super().__init__(
            current_state,
            attempted,
            entity_id=escrow_id,
            detail=f"timed out at {timeout_at}, only refund is allowed",
        )
        self.code = "ESCROW_TIMED_OUT"


class QuoteExpiredError(InvalidStateTransitionError):
    """Raised when an open quote is acted on after its validity window."""

    def __init__(self, current_state: str, attempted: str, quote_id: str, valid_until: str) -> None:
        super().__init__(
            current_state,
            attempted,
            entity_id=quote_id,
            detail=f"quote expired at {valid_until}",
        )
        self.code = "QUOTE_EXPIRED"


# --- Authorization Errors ---


class UnauthorizedError(SettlementError):
    """Raised when the caller is not a party entitled to perform the action."""

    def __init__(self, actor: str, action: str, entity_id: str) -> None:
        super().__init__(
            message=f"{actor} is not allowed to {action} {entity_id}",
            code="UNAUTHORIZED",
        )
        self.actor = actor
        self.action = action
        self.entity_id = entity_id


# --- Precondition Errors ---


class PreconditionFailedError(SettlementError):
    """Raised when a state-independent condition is not met."""

    def __init__(self, message: str, code: str = "PRECONDITION_FAILED") -> None:
        super().__init__(message=message, code=code)


class InvalidAmountError(PreconditionFailedError):
    def __init__(self, amount: object) -> None:
        super().__init__(
            message=f"Amount must be a finite number greater than zero, got {amount}",
            code="INVALID_AMOUNT",
        )
        self.amount = amount


class DeliveryProofRequiredError(PreconditionFailedError):
    def __init__(self, entity_id: str, action: str = "release") -> None:
        super().__init__(
            message=f"Delivery proof required to {action}: {entity_id}",
            code="DELIVERY_PROOF_REQUIRED",
        )
        self.entity_id = entity_id


class InvalidDisputeDecisionError(PreconditionFailedError):
    def __init__(self, decision: str) -> None:
        super().__init__(
            message=f"Invalid dispute resolution: {decision} (expected 'release' or 'refund')",
            code="INVALID_DISPUTE_DECISION",
        )
        self.decision = decision


# --- Write-once / Index Errors ---


class AlreadySetError(SettlementError):
    """Raised when a write-once field has already been written."""

    def __init__(self, field: str, entity_id: str) -> None:
        super().__init__(
            message=f"Field '{field}' is already set on {entity_id}",
            code="ALREADY_SET",
        )
        self.field = field
        self.entity_id = entity_id


class IndexOutOfRangeError(SettlementError):
    """Raised when a counter-offer index does not exist."""

    def __init__(self, index: int, size: int) -> None:
        super().__init__(
            message=f"Offer index {index} out of range (0..{size - 1})"
            if size
            else f"Offer index {index} out of range (no offers)",
            code="INDEX_OUT_OF_RANGE",
        )
        self.index = index
        self.size = size


# --- Consistency Errors ---


class ConcurrentModificationError(SettlementError):
    """Raised when a record changed underneath an optimistic write."""

    def __init__(self, entity: str, record_id: str) -> None:
        super().__init__(
            message=f"Concurrent modification of {entity} {record_id}, retry the operation",
            code="CONCURRENT_MODIFICATION",
        )
        self.entity = entity
        self.record_id = record_id


class OrphanedEscrowError(SettlementError):
    """Raised when an escrow was created but could not be bound to its negotiation.

    The escrow is left as-is (no negotiation references it). It is reported,
    never repaired automatically.
    """

    def __init__(self, escrow_id: str, negotiation_id: str, cause: Exception) -> None:
        super().__init__(
            message=(
                f"Escrow {escrow_id} was created but could not be bound to "
                f"negotiation {negotiation_id}: {cause}"
            ),
            code="ORPHANED_ESCROW",
        )
        self.escrow_id = escrow_id
        self.negotiation_id = negotiation_id
        self.cause = cause
