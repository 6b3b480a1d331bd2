"""Collaborator Protocols.

Defines the interfaces the engines depend on: the per-record store and the
event sink. These are Protocols (structural subtyping) so concrete backends
don't need to inherit from a base class, they just need to match the shape.

The domain layer has ZERO imports from SQLAlchemy, Redis, or any external service.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Collection
    from contextlib import AbstractAsyncContextManager

    from agentic_settlement.domain.enums import EventType

RecordT = TypeVar("RecordT")


@dataclass(frozen=True)
class DomainEvent:
    """A state transition reported to the event sink.

    Attributes:
        kind: EventType of the transition.
        entity_id: Escrow or negotiation id.
        from_state: State before the transition (None on creation).
        to_state: State after the transition.
        timestamp: Engine clock reading when the transition happened.
        payload: Transition-specific context (reason, tx ref, arbiter ...).
    """

    kind: EventType
    entity_id: str
    from_state: str | None
    to_state: str
    timestamp: datetime
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize with the external field names."""
        return {
            "kind": str(self.kind),
            "entityId": self.entity_id,
            "fromState": self.from_state,
            "toState": self.to_state,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }


@runtime_checkable
class EventSink(Protocol):
    """Receives one event per successful state transition.

    Concrete implementations:
        - infrastructure/event_sinks.py  (in-memory, structlog)
        - infrastructure/redis_client.py (Redis stream)
    """

    async def emit(self, event: DomainEvent) -> None:
        ...


@runtime_checkable
class RecordStore(Protocol[RecordT]):
    """Persistence backend with atomic read-modify-write per record.

    Concrete implementations:
        - infrastructure/memory.py                  (asyncio locks)
        - infrastructure/database/repositories.py   (SQLAlchemy, row locks)
    """

    async def add(self, record: RecordT) -> RecordT:
        """Insert a new record. Raises DuplicateRecordError on id clash."""
        ...

    async def get(self, record_id: str) -> RecordT | None:
        """Return a detached copy of the record, or None."""
        ...

    async def list(
        self,
        states: Collection[str] | None = None,
        **criteria: Any,
    ) -> list[RecordT]:
        """Return detached copies filtered by state and equality criteria."""
        ...

    def locked(self, record_id: str) -> AbstractAsyncContextManager[RecordT | None]:
        """Hold the record's exclusive lock and yield a working copy.

        The copy is written back only when the block exits without an
        exception. Yields None when the id does not exist.
        """
        ...
