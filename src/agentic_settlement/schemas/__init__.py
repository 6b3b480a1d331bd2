"""Pydantic result schemas."""

from agentic_settlement.schemas.reports import (
    EscrowStats,
    EscrowStatusView,
    NegotiationStats,
    OrphanedEscrow,
    PaymentVerification,
    SweepFailure,
    SweepReport,
    SweepSummary,
)

__all__ = [
    "EscrowStats",
    "EscrowStatusView",
    "NegotiationStats",
    "OrphanedEscrow",
    "PaymentVerification",
    "SweepFailure",
    "SweepReport",
    "SweepSummary",
]
