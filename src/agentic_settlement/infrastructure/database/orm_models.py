"""SQLAlchemy 2.0 ORM models for Agentic Settlement.

Two tables:
    1. escrows:       one row per escrow record.
    2. negotiations:  one row per quote.

Design decisions:
    - The full domain record is stored as a camelCase JSON document
      (JSONB on PostgreSQL), exactly as it serializes. Append-only arrays
      (timeline, offers) round-trip in order.
    - Scalar columns duplicate the fields that are filtered on (state,
      parties) so the sweep and list queries hit indexes.
    - A ``version`` column drives SQLAlchemy's optimistic version check; a
      stale write raises StaleDataError instead of silently overwriting.
    - CHECK constraints keep the state column to known values.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import JSON, CheckConstraint, DateTime, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

DocumentType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# 1. escrows
# ---------------------------------------------------------------------------
class EscrowRow(Base):
    """Persisted escrow record."""

    __tablename__ = "escrows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # --- Query columns (mirrors of the document) ---
    state: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="Current lifecycle state (guarded by EscrowStateMachine)",
    )
    payer: Mapped[str] = mapped_column(String(128), nullable=False)
    payee: Mapped[str] = mapped_column(String(128), nullable=False)

    # --- Authoritative record ---
    document: Mapped[dict] = mapped_column(
        DocumentType,
        nullable=False,
        comment="Flat camelCase escrow record",
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "state IN ('pending', 'funded', 'locked', 'released', 'refunded', 'disputed')",
            name="ck_escrow_valid_state",
        ),
        Index("idx_escrow_state", "state"),
        Index("idx_escrow_payer", "payer"),
        Index("idx_escrow_payee", "payee"),
        Index("idx_escrow_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<EscrowRow id={self.id} state={self.state} version={self.version}>"


# ---------------------------------------------------------------------------
# 2. negotiations
# ---------------------------------------------------------------------------
class NegotiationRow(Base):
    """Persisted negotiation (quote) record."""

    __tablename__ = "negotiations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    state: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_id: Mapped[str] = mapped_column(String(128), nullable=False)
    client_id: Mapped[str] = mapped_column(String(128), nullable=False)

    document: Mapped[dict] = mapped_column(
        DocumentType,
        nullable=False,
        comment="Flat camelCase negotiation record",
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "state IN ('pending', 'accepted', 'rejected', 'countered', 'expired')",
            name="ck_negotiation_valid_state",
        ),
        Index("idx_negotiation_state", "state"),
        Index("idx_negotiation_provider", "provider_id"),
        Index("idx_negotiation_client", "client_id"),
    )

    def __repr__(self) -> str:
        return f"<NegotiationRow id={self.id} state={self.state} version={self.version}>"
