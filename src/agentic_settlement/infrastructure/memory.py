"""In-memory record store.

Holds records in a dict keyed by id with one ``asyncio.Lock`` per record.
Records are deep-copied on the way in and out, so a caller mutating a
returned object never touches stored state, and an aborted ``locked`` block
leaves the stored record exactly as it was.

Suitable for tests, simulations and single-process deployments.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Generic

from pydantic import BaseModel

from agentic_settlement.domain.exceptions import DuplicateRecordError
from agentic_settlement.domain.protocols import RecordT

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Collection


class InMemoryRecordStore(Generic[RecordT]):
    """RecordStore backed by a process-local dict."""

    def __init__(self) -> None:
        self._records: dict[str, BaseModel] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, record_id: str) -> asyncio.Lock:
        lock = self._locks.get(record_id)
        if lock is None:
            lock = self._locks[record_id] = asyncio.Lock()
        return lock

    async def add(self, record: RecordT) -> RecordT:
        """Insert a new record."""
        record_id = record.id  # type: ignore[attr-defined]
        async with self._lock_for(record_id):
            if record_id in self._records:
                raise DuplicateRecordError(record_id)
            self._records[record_id] = record.model_copy(deep=True)  # type: ignore[attr-defined]
        return record

    async def get(self, record_id: str) -> RecordT | None:
        """Return a copy of the record, or None."""
        record = self._records.get(record_id)
        return record.model_copy(deep=True) if record is not None else None  # type: ignore[return-value]

    async def list(
        self,
        states: Collection[str] | None = None,
        **criteria: Any,
    ) -> list[RecordT]:
        """Return copies of records matching the state set and equality criteria."""
        wanted = {str(state) for state in states} if states is not None else None
        results = []
        for record in list(self._records.values()):
            if wanted is not None and str(record.state) not in wanted:  # type: ignore[attr-defined]
                continue
            if any(getattr(record, name) != value for name, value in criteria.items()):
                continue
            results.append(record.model_copy(deep=True))
        return results  # type: ignore[return-value]

    @asynccontextmanager
    async def locked(self, record_id: str) -> AsyncIterator[RecordT | None]:
        """Yield a working copy under the record's lock; persist it on clean exit."""
        async with self._lock_for(record_id):
            current = self._records.get(record_id)
            if current is None:
                yield None
                return
            working = current.model_copy(deep=True)
            yield working  # type: ignore[misc]
            self._records[record_id] = working.model_copy(deep=True)

    def __len__(self) -> int:
        return len(self._records)
