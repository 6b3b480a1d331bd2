"""Process-local event sinks.

    - InMemoryEventSink: keeps every event in a list (tests, simulation).
    - LoggingEventSink:  writes each event as a structlog line.

The Redis stream sink lives next to the Redis client in redis_client.py.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from agentic_settlement.logging_config import get_logger

if TYPE_CHECKING:
    from agentic_settlement.domain.enums import EventType
    from agentic_settlement.domain.protocols import DomainEvent

logger = get_logger(__name__)


class InMemoryEventSink:
    """Collects events in emission order."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    async def emit(self, event: DomainEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: EventType) -> list[DomainEvent]:
        return [event for event in self.events if event.kind == kind]

    def for_entity(self, entity_id: str) -> list[DomainEvent]:
        return [event for event in self.events if event.entity_id == entity_id]

    def clear(self) -> None:
        self.events.clear()


class LoggingEventSink:
    """Writes events to the structured log under ``settlement.event``."""

    async def emit(self, event: DomainEvent) -> None:
        logger.info(
            "settlement.event",
            kind=str(event.kind),
            entity_id=event.entity_id,
            from_state=event.from_state,
            to_state=event.to_state,
            payload=event.payload,
        )
