"""Pydantic result schemas returned by the engines.

These are read-only views (sweep reports, statistics, status snapshots).
They are separate from the domain records so callers can serialize them
without touching persisted state.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from agentic_settlement.domain.models import Escrow


class _View(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Sweeps
# ---------------------------------------------------------------------------


class SweepFailure(_View):
    """One record the sweep could not process."""

    record_id: str
    error: str
    code: str | None = None


class SweepReport(_View):
    """Outcome of one sweep over one record type."""

    processed: list[str] = Field(default_factory=list, description="Ids mutated by this pass")
    skipped: list[str] = Field(
        default_factory=list,
        description="Ids that were due in the snapshot but no longer due under lock",
    )
    failures: list[SweepFailure] = Field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.processed)


class SweepSummary(_View):
    """Combined result of a scheduler pass."""

    ran_at: datetime
    escrows: SweepReport
    negotiations: SweepReport

    @property
    def failed(self) -> bool:
        return bool(self.escrows.failures or self.negotiations.failures)


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


class EscrowStats(_View):
    total: int = 0
    by_state: dict[str, int] = Field(default_factory=dict)
    total_locked: dict[str, Decimal] = Field(
        default_factory=dict,
        description="Value held in locked escrows, per token",
    )
    active_escrows: int = 0


class NegotiationStats(_View):
    total: int = 0
    by_state: dict[str, int] = Field(default_factory=dict)
    total_value: Decimal = Decimal("0")
    active_negotiations: int = 0
    avg_negotiation_time_ms: float = 0.0


# ---------------------------------------------------------------------------
# Status / Verification
# ---------------------------------------------------------------------------


class EscrowStatusView(_View):
    escrow_id: str
    state: str
    allowed_events: list[str]
    timeout_at: datetime | None = None
    approvals: list[str] = Field(default_factory=list)
    has_delivery_proof: bool = False


class PaymentVerification(_View):
    """Result of checking a micropayment escrow against an expected amount."""

    valid: bool
    escrow: Escrow | None = None
    error: str | None = None


class OrphanedEscrow(_View):
    """An escrow whose negotiation does not reference it."""

    escrow_id: str
    negotiation_id: str
    reason: str
