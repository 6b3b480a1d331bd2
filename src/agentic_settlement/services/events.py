"""Event publishing for the engines.

Engines hand every transition to an ``EventPublisher`` after the record lock
has been released. The publisher forwards to the configured sink; a failing
sink is logged and never fails the operation that produced the event.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from agentic_settlement.domain.protocols import DomainEvent
from agentic_settlement.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime

    from agentic_settlement.domain.enums import EventType
    from agentic_settlement.domain.protocols import EventSink

logger = get_logger(__name__)


class EventPublisher:
    """Wraps an EventSink with failure isolation."""

    def __init__(self, sink: EventSink | None = None) -> None:
        self._sink = sink

    @property
    def sink(self) -> EventSink | None:
        return self._sink

    async def publish(self, event: DomainEvent) -> None:
        if self._sink is None:
            return
        try:
            await self._sink.emit(event)
        except Exception:
            logger.exception(
                "events.emit_failed",
                kind=str(event.kind),
                entity_id=event.entity_id,
            )

    async def publish_all(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            await self.publish(event)


def make_event(
    kind: EventType,
    entity_id: str,
    from_state: str | None,
    to_state: str,
    timestamp: datetime,
    **payload: Any,
) -> DomainEvent:
    """Build a DomainEvent, dropping payload entries that are None."""
    return DomainEvent(
        kind=kind,
        entity_id=entity_id,
        from_state=str(from_state) if from_state is not None else None,
        to_state=str(to_state),
        timestamp=timestamp,
        payload={key: value for key, value in payload.items() if value is not None},
    )
