"""Sweep Scheduler: periodic escrow timeouts and quote expirations.

Both sweeps in a pass share one ``now``. Records are re-checked under their
own lock before mutation, so several schedulers may run against the same
store without refunding or expiring anything twice.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import TYPE_CHECKING

from agentic_settlement.domain.models import utc_now
from agentic_settlement.logging_config import bound_context, get_logger
from agentic_settlement.schemas.reports import SweepSummary

if TYPE_CHECKING:
    from datetime import datetime

    from agentic_settlement.domain.models import Clock
    from agentic_settlement.services.escrow_service import EscrowService
    from agentic_settlement.services.negotiation_service import NegotiationService

logger = get_logger(__name__)


class SweepScheduler:
    """Runs escrow and negotiation sweeps on an interval."""

    def __init__(
        self,
        escrow_service: EscrowService,
        negotiation_service: NegotiationService,
        interval_seconds: float = 30.0,
        clock: Clock = utc_now,
    ) -> None:
        self._escrows = escrow_service
        self._negotiations = negotiation_service
        self._interval = interval_seconds
        self._clock = clock
        self.passes = 0

    async def run_once(self, now: datetime | None = None) -> SweepSummary:
        """Run one pass of both sweeps."""
        now = now or self._clock()
        with bound_context(sweep_id=uuid.uuid4().hex[:12]):
            escrows = await self._escrows.sweep_timeouts(now)
            negotiations = await self._negotiations.sweep_expirations(now)
            self.passes += 1
            logger.debug(
                "sweep.pass_complete",
                refunded=len(escrows.processed),
                expired=len(negotiations.processed),
                failures=len(escrows.failures) + len(negotiations.failures),
            )
        return SweepSummary(ran_at=now, escrows=escrows, negotiations=negotiations)

    async def run(self, stop_event: asyncio.Event) -> None:
        """Sweep every interval until ``stop_event`` is set."""
        logger.info("sweep.started", interval_seconds=self._interval)
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("sweep.pass_failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval)
            except TimeoutError:
                pass
        logger.info("sweep.stopped", passes=self.passes)
