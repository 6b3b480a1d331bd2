"""Escrow Service: core business logic for the escrow lifecycle.

This is the application layer that coordinates between:
    - Domain state machine (transition guard)
    - Record store (per-record atomic read-modify-write)
    - Event publisher (one event per transition)

Every mutating operation runs inside ``store.locked(escrow_id)``. Guards run
against the working copy before anything is changed; any exception inside
the block leaves the stored record untouched. Events are published once the
block has exited, i.e. after the write is committed and the lock released.
"""

from __future__ import annotations

from collections import Counter
from contextlib import asynccontextmanager
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from statemachine.exceptions import TransitionNotAllowed

from agentic_settlement.domain.enums import DisputeDecision, EscrowState, EventType
from agentic_settlement.domain.exceptions import (
    DeliveryProofRequiredError,
    EscrowNotFoundError,
    EscrowTimedOutError,
    InvalidAmountError,
    InvalidDisputeDecisionError,
    InvalidStateTransitionError,
    UnauthorizedError,
)
from agentic_settlement.domain.models import (
    DeliveryProof,
    DisputeRecord,
    Escrow,
    EscrowConditions,
    EscrowTimeline,
    utc_now,
)
from agentic_settlement.domain.state_machine import EscrowStateMachine, validate_transition
from agentic_settlement.logging_config import entity_context, get_logger
from agentic_settlement.schemas.reports import (
    EscrowStats,
    EscrowStatusView,
    SweepFailure,
    SweepReport,
)
from agentic_settlement.services.events import EventPublisher, make_event

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from datetime import datetime

    from agentic_settlement.domain.models import Clock
    from agentic_settlement.domain.protocols import DomainEvent, EventSink, RecordStore

logger = get_logger(__name__)

_CUSTODY_STATES = (EscrowState.FUNDED, EscrowState.LOCKED)


class EscrowService:
    """Manages the escrow lifecycle."""

    def __init__(
        self,
        store: RecordStore[Escrow],
        events: EventPublisher | EventSink | None = None,
        clock: Clock = utc_now,
        default_token: str = "USDC",
    ) -> None:
        self._store = store
        self._events = events if isinstance(events, EventPublisher) else EventPublisher(events)
        self._clock = clock
        self._default_token = default_token

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create(
        self,
        payer: str,
        payee: str,
        amount: Decimal | int | str,
        purpose: str = "",
        conditions: EscrowConditions | dict[str, Any] | None = None,
        timeout_minutes: float | None = None,
        token: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Escrow:
        """Create a new escrow in PENDING state.

        ``timeout_minutes`` is relative to the engine clock and may be
        negative, producing an escrow that is overdue as soon as it is funded.
        """
        try:
            value = Decimal(str(amount))
        except InvalidOperation as err:
            raise InvalidAmountError(amount) from err
        if not value.is_finite() or not value > 0:
            raise InvalidAmountError(value)
        amount = value

        now = self._clock()
        if isinstance(conditions, dict):
            conditions = EscrowConditions.model_validate(conditions)
        timeout_at = None
        if timeout_minutes is not None:
            timeout_at = now + timedelta(minutes=timeout_minutes)

        escrow = Escrow(
            payer=payer,
            payee=payee,
            amount=amount,
            token=token or self._default_token,
            purpose=purpose,
            conditions=conditions or EscrowConditions(),
            timeout_at=timeout_at,
            timeline=EscrowTimeline(created=now),
            metadata=dict(metadata or {}),
        )
        await self._store.add(escrow)

        await self._events.publish(
            make_event(
                EventType.ESCROW_CREATED,
                escrow.id,
                None,
                escrow.state,
                now,
                payer=payer,
                payee=payee,
                amount=str(amount),
                token=escrow.token,
            )
        )
        logger.info(
            "escrow.created",
            escrow_id=escrow.id,
            amount=str(amount),
            token=escrow.token,
            timeout_at=escrow.timeout_at.isoformat() if escrow.timeout_at else None,
        )
        return escrow

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get(self, escrow_id: str) -> Escrow:
        """Get an escrow or raise EscrowNotFoundError."""
        escrow = await self._store.get(escrow_id)
        if escrow is None:
            raise EscrowNotFoundError(escrow_id)
        return escrow

    async def list(
        self,
        payer: str | None = None,
        payee: str | None = None,
        state: EscrowState | str | None = None,
        min_amount: Decimal | int | str | None = None,
    ) -> list[Escrow]:
        criteria = {
            key: value for key, value in (("payer", payer), ("payee", payee)) if value is not None
        }
        states = [EscrowState(state)] if state is not None else None
        escrows = await self._store.list(states=states, **criteria)
        if min_amount is not None:
            floor = Decimal(str(min_amount))
            escrows = [escrow for escrow in escrows if escrow.amount >= floor]
        return escrows

    async def get_status(self, escrow_id: str) -> EscrowStatusView:
        """Get escrow state with the events that may fire next."""
        escrow = await self.get(escrow_id)
        allowed = EscrowStateMachine(current_status=escrow.state.value).get_allowed_events()
        if escrow.is_overdue(self._clock()):
            allowed = [name for name in allowed if name == "refund_payer"]
        return EscrowStatusView(
            escrow_id=escrow.id,
            state=escrow.state.value,
            allowed_events=allowed,
            timeout_at=escrow.timeout_at,
            approvals=list(escrow.approvals),
            has_delivery_proof=escrow.delivery_proof is not None,
        )

    async def stats(self) -> EscrowStats:
        escrows = await self._store.list()
        locked: dict[str, Decimal] = {}
        for escrow in escrows:
            if escrow.state is EscrowState.LOCKED:
                locked[escrow.token] = locked.get(escrow.token, Decimal("0")) + escrow.amount
        return EscrowStats(
            total=len(escrows),
            by_state=dict(Counter(escrow.state.value for escrow in escrows)),
            total_locked=locked,
            active_escrows=sum(1 for escrow in escrows if escrow.state in _CUSTODY_STATES),
        )

    # ------------------------------------------------------------------
    # Funding / Approval
    # ------------------------------------------------------------------

    @entity_context("escrow_id")
    async def fund(self, escrow_id: str, tx_ref: str) -> Escrow:
        """Record that value is in custody. Locks immediately when no approval is required."""
        now = self._clock()
        emitted: list[DomainEvent] = []
        async with self._locked(escrow_id) as escrow:
            self._apply_transition(
                escrow, "fund", EventType.ESCROW_FUNDED, now, emitted, tx_ref=tx_ref
            )
            escrow.set_once("tx_ref", tx_ref, owner_id=escrow.id)
            if not escrow.conditions.requires_approval:
                self._apply_transition(
                    escrow, "lock_funds", EventType.ESCROW_LOCKED, now, emitted,
                    reason="no approval required",
                )

        await self._events.publish_all(emitted)
        logger.info("escrow.funded", escrow_id=escrow_id, tx_ref=tx_ref, state=escrow.state.value)
        return escrow

    @entity_context("escrow_id")
    async def approve(self, escrow_id: str, approver_id: str) -> Escrow:
        """Record a party's approval; locks once both payer and payee approved.

        Approving twice is a no-op.
        """
        now = self._clock()
        emitted: list[DomainEvent] = []
        async with self._locked(escrow_id) as escrow:
            if escrow.state is not EscrowState.FUNDED:
                raise InvalidStateTransitionError(escrow.state, "approve", entity_id=escrow.id)
            self._require_party(escrow, approver_id, "approve")
            self._guard_not_timed_out(escrow, "approve", now)

            if escrow.add_approval(approver_id) and escrow.fully_approved:
                self._apply_transition(
                    escrow, "lock_funds", EventType.ESCROW_LOCKED, now, emitted,
                    reason="approved by both parties",
                    approvals=list(escrow.approvals),
                )

        await self._events.publish_all(emitted)
        logger.info(
            "escrow.approved",
            escrow_id=escrow_id,
            approver=approver_id,
            state=escrow.state.value,
        )
        return escrow

    # ------------------------------------------------------------------
    # Delivery / Settlement
    # ------------------------------------------------------------------

    @entity_context("escrow_id")
    async def submit_delivery(
        self,
        escrow_id: str,
        data: Any,
        submitted_by: str | None = None,
        signature: str | None = None,
    ) -> Escrow:
        """Attach delivery proof. Releases immediately when delivery alone settles."""
        now = self._clock()
        emitted: list[DomainEvent] = []
        async with self._locked(escrow_id) as escrow:
            if escrow.state is not EscrowState.LOCKED:
                raise InvalidStateTransitionError(
                    escrow.state, "submit_delivery", entity_id=escrow.id
                )
            self._guard_not_timed_out(escrow, "submit_delivery", now)

            submitter = submitted_by or escrow.payee
            escrow.set_once(
                "delivery_proof",
                DeliveryProof(
                    submitted_by=submitter,
                    submitted_at=now,
                    data=data,
                    signature=signature,
                ),
            )
            emitted.append(
                make_event(
                    EventType.ESCROW_DELIVERY_SUBMITTED,
                    escrow.id,
                    escrow.state,
                    escrow.state,
                    now,
                    submitted_by=submitter,
                )
            )

            if escrow.conditions.auto_release_on_delivery:
                escrow.set_once("release_reason", "delivery submitted", owner_id=escrow.id)
                self._apply_transition(
                    escrow, "release_funds", EventType.ESCROW_RELEASED, now, emitted,
                    reason="delivery submitted",
                    auto=True,
                )

        await self._events.publish_all(emitted)
        logger.info(
            "escrow.delivery_submitted",
            escrow_id=escrow_id,
            submitted_by=submitter,
            state=escrow.state.value,
        )
        return escrow

    @entity_context("escrow_id")
    async def release(self, escrow_id: str, reason: str = "manual release") -> Escrow:
        """Release custody to the payee."""
        now = self._clock()
        emitted: list[DomainEvent] = []
        async with self._locked(escrow_id) as escrow:
            self._fire_transition(escrow, "release_funds")
            self._guard_not_timed_out(escrow, "release", now)
            if escrow.conditions.requires_delivery and escrow.delivery_proof is None:
                raise DeliveryProofRequiredError(escrow.id)

            escrow.set_once("release_reason", reason, owner_id=escrow.id)
            self._apply_transition(
                escrow, "release_funds", EventType.ESCROW_RELEASED, now, emitted, reason=reason
            )

        await self._events.publish_all(emitted)
        logger.info("escrow.released", escrow_id=escrow_id, reason=reason)
        return escrow

    @entity_context("escrow_id")
    async def refund(self, escrow_id: str, reason: str = "manual refund") -> Escrow:
        """Return custody to the payer. Legal from funded, locked and disputed."""
        now = self._clock()
        emitted: list[DomainEvent] = []
        async with self._locked(escrow_id) as escrow:
            self._refund(escrow, reason, now, emitted)

        await self._events.publish_all(emitted)
        logger.info("escrow.refunded", escrow_id=escrow_id, reason=reason)
        return escrow

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    @entity_context("escrow_id")
    async def dispute(self, escrow_id: str, disputer_id: str, reason: str) -> Escrow:
        """Freeze a locked escrow until an arbiter resolves it."""
        now = self._clock()
        emitted: list[DomainEvent] = []
        async with self._locked(escrow_id) as escrow:
            self._fire_transition(escrow, "raise_dispute")
            self._require_party(escrow, disputer_id, "dispute")
            self._guard_not_timed_out(escrow, "dispute", now)

            escrow.set_once(
                "dispute",
                DisputeRecord(disputer_id=disputer_id, reason=reason, raised_at=now),
                owner_id=escrow.id,
            )
            self._apply_transition(
                escrow, "raise_dispute", EventType.ESCROW_DISPUTED, now, emitted,
                disputer_id=disputer_id,
                reason=reason,
            )

        await self._events.publish_all(emitted)
        logger.info("escrow.dispute_raised", escrow_id=escrow_id, by=disputer_id)
        return escrow

    @entity_context("escrow_id")
    async def resolve_dispute(
        self,
        escrow_id: str,
        decision: DisputeDecision | str,
        arbiter: str,
    ) -> Escrow:
        """Settle a disputed escrow entirely to one side."""
        try:
            decision = DisputeDecision(decision)
        except ValueError as err:
            raise InvalidDisputeDecisionError(str(decision)) from err

        if decision is DisputeDecision.RELEASE:
            event_name, kind, reason_field = (
                "resolve_for_payee", EventType.ESCROW_RELEASED, "release_reason",
            )
        else:
            event_name, kind, reason_field = (
                "resolve_for_payer", EventType.ESCROW_REFUNDED, "refund_reason",
            )

        now = self._clock()
        reason = f"dispute resolved by {arbiter}"
        emitted: list[DomainEvent] = []
        async with self._locked(escrow_id) as escrow:
            self._fire_transition(escrow, event_name)
            if escrow.dispute is not None:
                escrow.dispute.set_once("arbiter", arbiter, owner_id=escrow.id)
                escrow.dispute.set_once("decision", decision.value, owner_id=escrow.id)
                escrow.dispute.set_once("resolved_at", now, owner_id=escrow.id)
            escrow.set_once(reason_field, reason, owner_id=escrow.id)
            self._apply_transition(
                escrow, event_name, kind, now, emitted,
                reason=reason,
                arbiter=arbiter,
                decision=decision.value,
            )

        await self._events.publish_all(emitted)
        logger.info(
            "escrow.dispute_resolved",
            escrow_id=escrow_id,
            arbiter=arbiter,
            decision=decision.value,
        )
        return escrow

    # ------------------------------------------------------------------
    # Timeouts
    # ------------------------------------------------------------------

    async def sweep_timeouts(self, now: datetime | None = None) -> SweepReport:
        """Refund every funded/locked escrow whose timeout has passed.

        Candidates come from an unlocked snapshot and are re-checked under
        their record lock, so concurrent sweeps refund each escrow once.
        A failing record is logged and reported; the sweep moves on.
        """
        now = now or self._clock()
        report = SweepReport()
        snapshot = await self._store.list(states=list(_CUSTODY_STATES))

        for candidate in snapshot:
            if not candidate.is_overdue(now):
                continue
            try:
                refunded = await self._refund_if_overdue(candidate.id, now)
            except Exception as exc:
                logger.exception("sweep.escrow_failed", escrow_id=candidate.id)
                report.failures.append(
                    SweepFailure(
                        record_id=candidate.id,
                        error=str(exc),
                        code=getattr(exc, "code", None),
                    )
                )
                continue
            (report.processed if refunded else report.skipped).append(candidate.id)

        if report.processed or report.failures:
            logger.info(
                "sweep.escrows_done",
                refunded=len(report.processed),
                skipped=len(report.skipped),
                failed=len(report.failures),
            )
        return report

    @entity_context("escrow_id")
    async def _refund_if_overdue(self, escrow_id: str, now: datetime) -> bool:
        emitted: list[DomainEvent] = []
        async with self._store.locked(escrow_id) as escrow:
            if escrow is None or not escrow.is_overdue(now):
                return False
            self._refund(escrow, "timeout", now, emitted)

        await self._events.publish_all(emitted)
        logger.info("escrow.timeout_refunded", escrow_id=escrow_id)
        return True

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _locked(self, escrow_id: str) -> AsyncIterator[Escrow]:
        async with self._store.locked(escrow_id) as escrow:
            if escrow is None:
                raise EscrowNotFoundError(escrow_id)
            yield escrow

    def _refund(
        self,
        escrow: Escrow,
        reason: str,
        now: datetime,
        emitted: list[DomainEvent],
    ) -> None:
        self._fire_transition(escrow, "refund_payer")
        escrow.set_once("refund_reason", reason, owner_id=escrow.id)
        self._apply_transition(
            escrow, "refund_payer", EventType.ESCROW_REFUNDED, now, emitted, reason=reason
        )

    def _fire_transition(self, escrow: Escrow, event_name: str) -> EscrowState:
        """Validate a state machine transition and return the target state.

        Raises InvalidStateTransitionError if the transition is illegal.
        """
        try:
            return EscrowState(validate_transition(escrow.state.value, event_name))
        except TransitionNotAllowed as err:
            raise InvalidStateTransitionError(
                escrow.state, event_name, entity_id=escrow.id
            ) from err

    def _apply_transition(
        self,
        escrow: Escrow,
        event_name: str,
        kind: EventType,
        now: datetime,
        emitted: list[DomainEvent],
        **payload: Any,
    ) -> None:
        from_state = escrow.state
        to_state = self._fire_transition(escrow, event_name)
        escrow.timeline.stamp(to_state, now, owner_id=escrow.id)
        escrow.state = to_state
        emitted.append(make_event(kind, escrow.id, from_state, to_state, now, **payload))

    @staticmethod
    def _guard_not_timed_out(escrow: Escrow, action: str, now: datetime) -> None:
        if escrow.is_overdue(now):
            raise EscrowTimedOutError(
                escrow.state, action, escrow.id, escrow.timeout_at.isoformat()
            )

    @staticmethod
    def _require_party(escrow: Escrow, actor: str, action: str) -> None:
        if actor not in escrow.parties:
            raise UnauthorizedError(actor, action, escrow.id)
