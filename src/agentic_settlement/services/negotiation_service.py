"""Negotiation Service: quotes, counter-offers and their escrow binding.

A quote moves pending -> (countered ->)* accepted | rejected | expired under
NegotiationStateMachine. Acceptance creates the escrow through
EscrowService, then binds its id under the negotiation lock. The two records
are never locked together; if the binding write fails the escrow is left
unreferenced and OrphanedEscrowError is raised carrying both ids.
"""

from __future__ import annotations

from collections import Counter
from contextlib import asynccontextmanager
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from statemachine.exceptions import TransitionNotAllowed

from agentic_settlement.domain.enums import EscrowState, EventType, NegotiationState
from agentic_settlement.domain.exceptions import (
    AlreadySetError,
    DeliveryProofRequiredError,
    EscrowTimedOutError,
    IndexOutOfRangeError,
    InvalidAmountError,
    InvalidStateTransitionError,
    NegotiationNotFoundError,
    OrphanedEscrowError,
    PreconditionFailedError,
    QuoteExpiredError,
    UnauthorizedError,
)
from agentic_settlement.domain.models import (
    EscrowConditions,
    Negotiation,
    Offer,
    QuoteTerms,
    utc_now,
)
from agentic_settlement.domain.state_machine import NegotiationStateMachine, validate_transition
from agentic_settlement.logging_config import entity_context, get_logger
from agentic_settlement.schemas.reports import (
    NegotiationStats,
    OrphanedEscrow,
    SweepFailure,
    SweepReport,
)
from agentic_settlement.services.events import EventPublisher, make_event

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from datetime import datetime

    from agentic_settlement.domain.models import Clock, Escrow
    from agentic_settlement.domain.protocols import DomainEvent, EventSink, RecordStore
    from agentic_settlement.services.escrow_service import EscrowService

logger = get_logger(__name__)

_OPEN_STATES = (NegotiationState.PENDING, NegotiationState.COUNTERED)


class NegotiationService:
    """Manages quotes and the escrows created when they are accepted."""

    def __init__(
        self,
        store: RecordStore[Negotiation],
        escrow_service: EscrowService,
        events: EventPublisher | EventSink | None = None,
        clock: Clock = utc_now,
        quote_validity_minutes: int = 60,
        escrow_grace_minutes: int = 60,
    ) -> None:
        self._store = store
        self._escrows = escrow_service
        self._events = events if isinstance(events, EventPublisher) else EventPublisher(events)
        self._clock = clock
        self._quote_validity_minutes = quote_validity_minutes
        self._escrow_grace_minutes = escrow_grace_minutes

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def create_quote(
        self,
        provider_id: str,
        client_id: str,
        service: str,
        price: Decimal | int | str,
        terms: QuoteTerms | dict[str, Any] | None = None,
        valid_for_minutes: float | None = None,
    ) -> Negotiation:
        """Open a quote from a provider to a client."""
        price = _positive(price)
        now = self._clock()
        validity = (
            valid_for_minutes if valid_for_minutes is not None else self._quote_validity_minutes
        )

        negotiation = Negotiation(
            provider_id=provider_id,
            client_id=client_id,
            service=service,
            price=price,
            terms=QuoteTerms().overlay(terms),
            valid_until=now + timedelta(minutes=validity),
            created_at=now,
        )
        await self._store.add(negotiation)

        await self._events.publish(
            make_event(
                EventType.QUOTE_CREATED,
                negotiation.id,
                None,
                negotiation.state,
                now,
                provider_id=provider_id,
                client_id=client_id,
                price=str(price),
            )
        )
        logger.info(
            "negotiation.quote_created",
            quote_id=negotiation.id,
            provider=provider_id,
            client=client_id,
            price=str(price),
        )
        return negotiation

    async def get(self, quote_id: str) -> Negotiation:
        """Get a negotiation or raise NegotiationNotFoundError."""
        negotiation = await self._store.get(quote_id)
        if negotiation is None:
            raise NegotiationNotFoundError(quote_id)
        return negotiation

    async def list(
        self,
        provider_id: str | None = None,
        client_id: str | None = None,
        state: NegotiationState | str | None = None,
    ) -> list[Negotiation]:
        criteria = {
            key: value
            for key, value in (("provider_id", provider_id), ("client_id", client_id))
            if value is not None
        }
        states = [NegotiationState(state)] if state is not None else None
        return await self._store.list(states=states, **criteria)

    # ------------------------------------------------------------------
    # Client actions
    # ------------------------------------------------------------------

    @entity_context("quote_id")
    async def accept(self, quote_id: str, client_id: str) -> Negotiation:
        """Client accepts the quote at its current price and terms."""
        negotiation = await self.get(quote_id)
        self._check_actionable(negotiation, "accept", client_id, negotiation.client_id)
        return await self._accept(
            negotiation,
            event_name="accept",
            actor=client_id,
            price=negotiation.price,
            terms=negotiation.terms,
        )

    @entity_context("quote_id")
    async def reject(self, quote_id: str, client_id: str, reason: str = "") -> Negotiation:
        """Client rejects an open quote. Allowed after expiry of the validity window."""
        now = self._clock()
        emitted: list[DomainEvent] = []
        async with self._locked(quote_id) as negotiation:
            self._require_actor(negotiation, client_id, negotiation.client_id, "reject")
            self._apply_transition(
                negotiation, "reject", EventType.QUOTE_REJECTED, now, emitted, reason=reason
            )
            negotiation.set_once("rejection_reason", reason)
            negotiation.set_once("rejected_at", now)

        await self._events.publish_all(emitted)
        logger.info("negotiation.rejected", quote_id=quote_id, reason=reason)
        return negotiation

    @entity_context("quote_id")
    async def counter_offer(
        self,
        quote_id: str,
        client_id: str,
        price: Decimal | int | str,
        terms: QuoteTerms | dict[str, Any] | None = None,
    ) -> Negotiation:
        """Client proposes a different price and/or terms."""
        price = _positive(price)
        now = self._clock()
        emitted: list[DomainEvent] = []
        async with self._locked(quote_id) as negotiation:
            self._check_actionable(negotiation, "counter", client_id, negotiation.client_id, now)
            offer = Offer(
                by=client_id,
                price=price,
                terms=negotiation.terms.overlay(terms),
                timestamp=now,
            )
            index = negotiation.append_offer(offer)
            negotiation.price = offer.price
            negotiation.terms = offer.terms
            self._apply_transition(
                negotiation, "counter", EventType.QUOTE_COUNTERED, now, emitted,
                price=str(price),
                offer_index=index,
            )

        await self._events.publish_all(emitted)
        logger.info(
            "negotiation.countered",
            quote_id=quote_id,
            price=str(price),
            offer_index=index,
        )
        return negotiation

    # ------------------------------------------------------------------
    # Provider actions
    # ------------------------------------------------------------------

    @entity_context("quote_id")
    async def accept_counter(
        self,
        quote_id: str,
        provider_id: str,
        offer_index: int | None = None,
    ) -> Negotiation:
        """Provider accepts a counter-offer, the latest one by default."""
        negotiation = await self.get(quote_id)
        self._check_actionable(
            negotiation, "accept_counter", provider_id, negotiation.provider_id
        )
        index = self._resolve_offer_index(negotiation, offer_index)
        offer = negotiation.offers[index]
        return await self._accept(
            negotiation,
            event_name="accept_counter",
            actor=provider_id,
            price=offer.price,
            terms=offer.terms,
            offer_index=index,
            require_latest=offer_index is None,
        )

    @entity_context("quote_id")
    async def mark_delivered(self, quote_id: str, provider_id: str, proof: Any) -> Negotiation:
        """Provider reports delivery; the proof is handed to the bound escrow first."""
        negotiation = await self.get(quote_id)
        self._check_delivery_actor(
            negotiation, provider_id, negotiation.provider_id, "mark_delivered"
        )
        if proof is None:
            raise DeliveryProofRequiredError(quote_id, action="mark_delivered")
        if negotiation.delivery_proof is not None:
            raise AlreadySetError("delivery_proof", quote_id)

        escrow: Escrow | None = None
        if negotiation.escrow_id is not None:
            try:
                escrow = await self._escrows.submit_delivery(
                    negotiation.escrow_id, proof, submitted_by=provider_id
                )
            except EscrowTimedOutError:
                raise
            except InvalidStateTransitionError as err:
                raise InvalidStateTransitionError(
                    negotiation.state,
                    "mark_delivered",
                    entity_id=quote_id,
                    detail=f"escrow {negotiation.escrow_id} is {err.current_state}, not locked",
                ) from err

        now = self._clock()
        emitted: list[DomainEvent] = []
        async with self._locked(quote_id) as negotiation:
            self._check_delivery_actor(
                negotiation, provider_id, negotiation.provider_id, "mark_delivered"
            )
            negotiation.set_once("delivery_proof", proof)
            negotiation.set_once("delivered_at", now)
            emitted.append(
                make_event(
                    EventType.QUOTE_DELIVERED,
                    negotiation.id,
                    negotiation.state,
                    negotiation.state,
                    now,
                    escrow_id=negotiation.escrow_id,
                )
            )
        await self._events.publish_all(emitted)

        terms = negotiation.agreed_terms or negotiation.terms
        if escrow is not None and terms.auto_release and escrow.state is EscrowState.LOCKED:
            escrow = await self._escrows.release(escrow.id, reason="auto-release on delivery")

        logger.info(
            "negotiation.delivered",
            quote_id=quote_id,
            escrow_id=negotiation.escrow_id,
            escrow_state=escrow.state.value if escrow is not None else None,
        )
        return negotiation

    @entity_context("quote_id")
    async def confirm_delivery(self, quote_id: str, client_id: str) -> Negotiation:
        """Client confirms delivery; releases the bound escrow if it is not already released."""
        negotiation = await self.get(quote_id)
        self._check_delivery_actor(
            negotiation, client_id, negotiation.client_id, "confirm_delivery"
        )
        if negotiation.delivery_proof is None:
            raise PreconditionFailedError(
                f"Delivery has not been marked on {quote_id}",
                code="DELIVERY_NOT_MARKED",
            )
        if negotiation.confirmed_at is not None:
            raise AlreadySetError("confirmed_at", quote_id)

        if negotiation.escrow_id is not None:
            await self._release_bound_escrow(negotiation.escrow_id)

        now = self._clock()
        emitted: list[DomainEvent] = []
        async with self._locked(quote_id) as negotiation:
            negotiation.set_once("confirmed_at", now)
            emitted.append(
                make_event(
                    EventType.QUOTE_CONFIRMED,
                    negotiation.id,
                    negotiation.state,
                    negotiation.state,
                    now,
                    escrow_id=negotiation.escrow_id,
                )
            )

        await self._events.publish_all(emitted)
        logger.info("negotiation.confirmed", quote_id=quote_id, escrow_id=negotiation.escrow_id)
        return negotiation

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    async def sweep_expirations(self, now: datetime | None = None) -> SweepReport:
        """Expire every open quote whose validity window has passed."""
        now = now or self._clock()
        report = SweepReport()
        snapshot = await self._store.list(states=list(_OPEN_STATES))

        for candidate in snapshot:
            if not candidate.is_overdue(now):
                continue
            try:
                expired = await self._expire_if_overdue(candidate.id, now)
            except Exception as exc:
                logger.exception("sweep.negotiation_failed", quote_id=candidate.id)
                report.failures.append(
                    SweepFailure(
                        record_id=candidate.id,
                        error=str(exc),
                        code=getattr(exc, "code", None),
                    )
                )
                continue
            (report.processed if expired else report.skipped).append(candidate.id)

        if report.processed or report.failures:
            logger.info(
                "sweep.negotiations_done",
                expired=len(report.processed),
                skipped=len(report.skipped),
                failed=len(report.failures),
            )
        return report

    @entity_context("quote_id")
    async def _expire_if_overdue(self, quote_id: str, now: datetime) -> bool:
        emitted: list[DomainEvent] = []
        async with self._store.locked(quote_id) as negotiation:
            if negotiation is None or not negotiation.is_overdue(now):
                return False
            self._apply_transition(negotiation, "expire", EventType.QUOTE_EXPIRED, now, emitted)
            negotiation.set_once("expired_at", now)

        await self._events.publish_all(emitted)
        logger.info("negotiation.expired", quote_id=quote_id)
        return True

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def stats(self) -> NegotiationStats:
        negotiations = await self._store.list()
        accepted = [n for n in negotiations if n.state is NegotiationState.ACCEPTED]
        durations = [
            (n.accepted_at - n.created_at).total_seconds() * 1000
            for n in accepted
            if n.accepted_at is not None
        ]
        return NegotiationStats(
            total=len(negotiations),
            by_state=dict(Counter(n.state.value for n in negotiations)),
            total_value=sum((n.agreed_price or Decimal("0") for n in accepted), Decimal("0")),
            active_negotiations=sum(1 for n in negotiations if n.state.is_open),
            avg_negotiation_time_ms=sum(durations) / len(durations) if durations else 0.0,
        )

    async def find_orphaned_escrows(self) -> list[OrphanedEscrow]:
        """Report escrows whose negotiation does not reference them. Nothing is repaired."""
        orphans: list[OrphanedEscrow] = []
        for escrow in await self._escrows.list():
            negotiation_id = escrow.metadata.get("negotiationId")
            if not negotiation_id:
                continue
            negotiation = await self._store.get(negotiation_id)
            if negotiation is None:
                reason = "negotiation not found"
            elif negotiation.escrow_id != escrow.id:
                reason = f"negotiation references {negotiation.escrow_id or 'no escrow'}"
            else:
                continue
            orphans.append(
                OrphanedEscrow(escrow_id=escrow.id, negotiation_id=negotiation_id, reason=reason)
            )

        if orphans:
            logger.warning("negotiation.orphans_found", count=len(orphans))
        return orphans

    # ------------------------------------------------------------------
    # Acceptance
    # ------------------------------------------------------------------

    async def _accept(
        self,
        negotiation: Negotiation,
        event_name: str,
        actor: str,
        price: Decimal,
        terms: QuoteTerms,
        offer_index: int | None = None,
        require_latest: bool = False,
    ) -> Negotiation:
        escrow = None
        if terms.escrow_required:
            escrow = await self._escrows.create(
                payer=negotiation.client_id,
                payee=negotiation.provider_id,
                amount=price,
                purpose=f"Quote {negotiation.id}: {negotiation.service}",
                conditions=EscrowConditions(
                    requires_approval=True,
                    requires_delivery=True,
                    requires_arbiter=terms.requires_arbiter,
                    requires_client_confirmation=not terms.auto_release,
                ),
                timeout_minutes=self._escrow_timeout(terms),
                metadata={"negotiationId": negotiation.id},
            )

        now = self._clock()
        emitted: list[DomainEvent] = []
        try:
            async with self._locked(negotiation.id) as current:
                owner = current.client_id if event_name == "accept" else current.provider_id
                self._check_actionable(current, event_name, actor, owner, now)
                if require_latest and offer_index != len(current.offers) - 1:
                    raise PreconditionFailedError(
                        f"A newer offer arrived on {current.id}; accept it explicitly by index",
                        code="OFFER_SUPERSEDED",
                    )
                current.set_once("agreed_price", price)
                current.set_once("agreed_terms", terms)
                current.set_once("accepted_at", now)
                if escrow is not None:
                    current.set_once("escrow_id", escrow.id)
                self._apply_transition(
                    current, event_name, EventType.QUOTE_ACCEPTED, now, emitted,
                    agreed_price=str(price),
                    escrow_id=escrow.id if escrow is not None else None,
                    offer_index=offer_index,
                )
        except Exception as exc:
            if escrow is None:
                raise
            logger.error(
                "negotiation.orphaned_escrow",
                quote_id=negotiation.id,
                escrow_id=escrow.id,
                error=str(exc),
            )
            raise OrphanedEscrowError(escrow.id, negotiation.id, exc) from exc

        await self._events.publish_all(emitted)
        logger.info(
            "negotiation.accepted",
            quote_id=current.id,
            agreed_price=str(price),
            escrow_id=current.escrow_id,
        )
        return current

    def _escrow_timeout(self, terms: QuoteTerms) -> int | None:
        if terms.delivery_time_minutes is None:
            return None
        return terms.delivery_time_minutes + self._escrow_grace_minutes

    async def _release_bound_escrow(self, escrow_id: str) -> None:
        escrow = await self._escrows.get(escrow_id)
        if escrow.state is EscrowState.RELEASED:
            return
        try:
            await self._escrows.release(escrow_id, reason="client confirmed delivery")
        except InvalidStateTransitionError:
            # Released concurrently (auto-release) is fine; anything else is not.
            escrow = await self._escrows.get(escrow_id)
            if escrow.state is not EscrowState.RELEASED:
                raise

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _locked(self, quote_id: str) -> AsyncIterator[Negotiation]:
        async with self._store.locked(quote_id) as negotiation:
            if negotiation is None:
                raise NegotiationNotFoundError(quote_id)
            yield negotiation

    def _check_actionable(
        self,
        negotiation: Negotiation,
        event_name: str,
        actor: str,
        owner: str,
        now: datetime | None = None,
    ) -> None:
        """Party, transition and validity-window checks for an open quote."""
        self._require_actor(negotiation, actor, owner, event_name)
        self._fire_transition(negotiation, event_name)
        now = now or self._clock()
        if negotiation.is_overdue(now):
            raise QuoteExpiredError(
                negotiation.state,
                event_name,
                negotiation.id,
                negotiation.valid_until.isoformat(),
            )

    def _check_delivery_actor(
        self,
        negotiation: Negotiation,
        actor: str,
        owner: str,
        action: str,
    ) -> None:
        self._require_actor(negotiation, actor, owner, action)
        if negotiation.state is not NegotiationState.ACCEPTED:
            raise InvalidStateTransitionError(negotiation.state, action, entity_id=negotiation.id)

    @staticmethod
    def _resolve_offer_index(negotiation: Negotiation, offer_index: int | None) -> int:
        size = len(negotiation.offers)
        index = size - 1 if offer_index is None else offer_index
        if not 0 <= index < size:
            raise IndexOutOfRangeError(index, size)
        return index

    def _fire_transition(self, negotiation: Negotiation, event_name: str) -> NegotiationState:
        try:
            return NegotiationState(
                validate_transition(
                    negotiation.state.value, event_name, machine=NegotiationStateMachine
                )
            )
        except TransitionNotAllowed as err:
            raise InvalidStateTransitionError(
                negotiation.state, event_name, entity_id=negotiation.id
            ) from err

    def _apply_transition(
        self,
        negotiation: Negotiation,
        event_name: str,
        kind: EventType,
        now: datetime,
        emitted: list[DomainEvent],
        **payload: Any,
    ) -> None:
        from_state = negotiation.state
        negotiation.state = self._fire_transition(negotiation, event_name)
        emitted.append(
            make_event(kind, negotiation.id, from_state, negotiation.state, now, **payload)
        )

    @staticmethod
    def _require_actor(negotiation: Negotiation, actor: str, owner: str, action: str) -> None:
        if actor != owner:
            raise UnauthorizedError(actor, action, negotiation.id)


def _positive(value: Decimal | int | str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except InvalidOperation as err:
        raise InvalidAmountError(value) from err
    if not amount.is_finite() or not amount > 0:
        raise InvalidAmountError(amount)
    return amount
