"""Domain records for escrows and negotiations.

Records are pydantic models with snake_case attributes. Their persisted form,
``model_dump(mode="json", by_alias=True)``, is a flat camelCase record
(``timeoutAt``, ``requiresApproval``, ``escrowId`` ...). Amounts are Decimal
so no floating point rounding ever touches value.

History is structurally append-only:
    - timeline stamps and other write-once fields go through ``set_once``
    - ``approvals`` and ``offers`` are tuples, extended by rebuilding
"""

from __future__ import annotations

import secrets
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from agentic_settlement.domain.enums import EscrowState, NegotiationState
from agentic_settlement.domain.exceptions import AlreadySetError

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock for the engines."""
    return datetime.now(UTC)


def new_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(16)}"


class Record(BaseModel):
    """Base class for persisted domain records."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
    )

    def set_once(self, field: str, value: Any, owner_id: str | None = None) -> None:
        """Write a field that may only be written once."""
        if getattr(self, field) is not None:
            raise AlreadySetError(field, owner_id or getattr(self, "id", type(self).__name__))
        setattr(self, field, value)

    def to_document(self) -> dict[str, Any]:
        """Serialize to the flat camelCase record used by stores and sinks."""
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Escrow
# ---------------------------------------------------------------------------


class EscrowConditions(Record):
    """Release conditions, fixed at creation."""

    model_config = ConfigDict(frozen=True)

    requires_approval: bool = True
    requires_delivery: bool = False
    requires_arbiter: bool = False
    requires_client_confirmation: bool = False
    custom_conditions: tuple[str, ...] = ()

    @property
    def auto_release_on_delivery(self) -> bool:
        """Delivery alone settles the escrow: no arbiter, no client sign-off."""
        return (
            self.requires_delivery
            and not self.requires_arbiter
            and not self.requires_client_confirmation
        )


class EscrowTimeline(Record):
    """Instant each state was entered. Stamps are write-once."""

    created: datetime
    funded: datetime | None = None
    locked: datetime | None = None
    released: datetime | None = None
    refunded: datetime | None = None
    disputed: datetime | None = None

    def stamp(self, state: EscrowState, at: datetime, owner_id: str | None = None) -> None:
        field = "created" if state is EscrowState.PENDING else state.value
        self.set_once(field, at, owner_id=owner_id)


class DeliveryProof(Record):
    submitted_by: str
    submitted_at: datetime
    data: Any = None
    signature: str | None = None


class DisputeRecord(Record):
    disputer_id: str
    reason: str
    raised_at: datetime
    arbiter: str | None = None
    decision: str | None = None
    resolved_at: datetime | None = None


class Escrow(Record):
    """A conditional payment held between a payer and a payee."""

    id: str = Field(default_factory=lambda: new_id("esc"))
    payer: str
    payee: str
    amount: Decimal = Field(gt=0)
    token: str = "USDC"
    purpose: str = ""
    conditions: EscrowConditions = Field(default_factory=EscrowConditions)
    state: EscrowState = EscrowState.PENDING
    approvals: tuple[str, ...] = ()
    delivery_proof: DeliveryProof | None = None
    dispute: DisputeRecord | None = None
    timeout_at: datetime | None = None
    timeline: EscrowTimeline
    tx_ref: str | None = None
    release_reason: str | None = None
    refund_reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def parties(self) -> tuple[str, str]:
        return (self.payer, self.payee)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def fully_approved(self) -> bool:
        return all(party in self.approvals for party in self.parties)

    def is_overdue(self, now: datetime) -> bool:
        """True when the escrow holds value past its timeout."""
        return (
            self.timeout_at is not None
            and now >= self.timeout_at
            and self.state in (EscrowState.FUNDED, EscrowState.LOCKED)
        )

    def add_approval(self, approver_id: str) -> bool:
        """Record an approval. Returns False when it was already present."""
        if approver_id in self.approvals:
            return False
        self.approvals = (*self.approvals, approver_id)
        return True


# ---------------------------------------------------------------------------
# Negotiation
# ---------------------------------------------------------------------------


class QuoteTerms(Record):
    """Structured terms attached to a quote. Unknown keys are kept as-is."""

    model_config = ConfigDict(extra="allow", frozen=True)

    escrow_required: bool = True
    requires_arbiter: bool = False
    auto_release: bool = False
    delivery_time_minutes: int | None = Field(default=None, ge=0)
    quality_guarantee: str | None = None
    refund_policy: str | None = None

    def overlay(self, overrides: dict[str, Any] | QuoteTerms | None) -> QuoteTerms:
        """Return new terms with ``overrides`` applied on top of these."""
        if overrides is None:
            return self
        if isinstance(overrides, QuoteTerms):
            overrides = overrides.model_dump(by_alias=True, exclude_unset=True)
        merged = self.model_dump(by_alias=True)
        for key, value in overrides.items():
            # Normalize snake_case names to aliases so the override wins.
            field = QuoteTerms.model_fields.get(key)
            merged[field.alias if field is not None and field.alias else key] = value
        return QuoteTerms.model_validate(merged)


class Offer(Record):
    """One counter-offer in a negotiation. ``terms`` are the full effective terms."""

    model_config = ConfigDict(frozen=True)

    by: str
    price: Decimal = Field(gt=0)
    terms: QuoteTerms
    timestamp: datetime


class Negotiation(Record):
    """A price-and-terms agreement between a provider and a client."""

    id: str = Field(default_factory=lambda: new_id("quote"))
    provider_id: str
    client_id: str
    service: str
    price: Decimal = Field(gt=0)
    terms: QuoteTerms = Field(default_factory=QuoteTerms)
    state: NegotiationState = NegotiationState.PENDING
    offers: tuple[Offer, ...] = ()
    agreed_price: Decimal | None = None
    agreed_terms: QuoteTerms | None = None
    escrow_id: str | None = None
    delivery_proof: Any = None
    delivered_at: datetime | None = None
    confirmed_at: datetime | None = None
    rejection_reason: str | None = None
    valid_until: datetime
    created_at: datetime
    accepted_at: datetime | None = None
    rejected_at: datetime | None = None
    expired_at: datetime | None = None

    @property
    def latest_offer(self) -> Offer | None:
        return self.offers[-1] if self.offers else None

    def is_overdue(self, now: datetime) -> bool:
        return self.state.is_open and now >= self.valid_until

    def append_offer(self, offer: Offer) -> int:
        """Append a counter-offer and return its index."""
        self.offers = (*self.offers, offer)
        return len(self.offers) - 1
