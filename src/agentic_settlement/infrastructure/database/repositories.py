"""SQLAlchemy record stores.

Each store opens its own session per call from an ``async_sessionmaker``.
``locked`` runs the read-modify-write inside one transaction with
``SELECT ... FOR UPDATE`` on the row; the ``version`` column adds an
optimistic check for backends that ignore row locks (SQLite).
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, ClassVar, Generic

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from agentic_settlement.domain.exceptions import (
    ConcurrentModificationError,
    DuplicateRecordError,
)
from agentic_settlement.domain.models import Escrow, Negotiation
from agentic_settlement.domain.protocols import RecordT
from agentic_settlement.infrastructure.database.orm_models import (
    EscrowRow,
    NegotiationRow,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Collection

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from agentic_settlement.infrastructure.database.orm_models import Base


class SqlAlchemyRecordStore(Generic[RecordT]):
    """RecordStore over a single table holding JSON documents."""

    entity: ClassVar[str]
    row_model: ClassVar[type[Base]]
    record_model: ClassVar[type[Escrow] | type[Negotiation]]

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def _columns(self, record: RecordT) -> dict[str, Any]:
        """Scalar query columns mirrored from the record."""
        raise NotImplementedError

    def _to_record(self, row: Base) -> RecordT:
        return self.record_model.model_validate(row.document)  # type: ignore[attr-defined,return-value]

    def _apply(self, row: Base, record: RecordT) -> None:
        for name, value in self._columns(record).items():
            setattr(row, name, value)
        row.document = record.to_document()  # type: ignore[attr-defined]

    # ------------------------------------------------------------------
    # RecordStore
    # ------------------------------------------------------------------

    async def add(self, record: RecordT) -> RecordT:
        """Insert a new row."""
        row = self.row_model(id=record.id)  # type: ignore[attr-defined]
        self._apply(row, record)
        try:
            async with self._session_factory() as session, session.begin():
                session.add(row)
        except IntegrityError as err:
            raise DuplicateRecordError(record.id) from err  # type: ignore[attr-defined]
        return record

    async def get(self, record_id: str) -> RecordT | None:
        """Fetch a record by id."""
        async with self._session_factory() as session:
            row = await session.get(self.row_model, record_id)
            return self._to_record(row) if row is not None else None

    async def list(
        self,
        states: Collection[str] | None = None,
        **criteria: Any,
    ) -> list[RecordT]:
        """Fetch records filtered by state and equality on query columns."""
        stmt = select(self.row_model)
        if states is not None:
            stmt = stmt.where(self.row_model.state.in_([str(s) for s in states]))
        for name, value in criteria.items():
            stmt = stmt.where(getattr(self.row_model, name) == value)
        stmt = stmt.order_by(self.row_model.created_at.asc())

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [self._to_record(row) for row in result.scalars().all()]

    @asynccontextmanager
    async def locked(self, record_id: str) -> AsyncIterator[RecordT | None]:
        """Yield a working copy under a row lock; commit it on clean exit."""
        try:
            async with self._session_factory() as session, session.begin():
                row = await session.get(self.row_model, record_id, with_for_update=True)
                if row is None:
                    yield None
                    return
                record = self._to_record(row)
                yield record
                self._apply(row, record)
        except StaleDataError as err:
            raise ConcurrentModificationError(self.entity, record_id) from err


class SqlEscrowStore(SqlAlchemyRecordStore[Escrow]):
    entity = "escrow"
    row_model = EscrowRow
    record_model = Escrow

    def _columns(self, record: Escrow) -> dict[str, Any]:
        return {"state": record.state.value, "payer": record.payer, "payee": record.payee}


class SqlNegotiationStore(SqlAlchemyRecordStore[Negotiation]):
    entity = "negotiation"
    row_model = NegotiationRow
    record_model = Negotiation

    def _columns(self, record: Negotiation) -> dict[str, Any]:
        return {
            "state": record.state.value,
            "provider_id": record.provider_id,
            "client_id": record.client_id,
        }
