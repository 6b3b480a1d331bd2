"""Tests for EscrowService over the in-memory store."""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from agentic_settlement.domain.enums import EscrowState, EventType
from agentic_settlement.domain.exceptions import (
    AlreadySetError,
    DeliveryProofRequiredError,
    EscrowNotFoundError,
    EscrowTimedOutError,
    InvalidAmountError,
    InvalidDisputeDecisionError,
    InvalidStateTransitionError,
    UnauthorizedError,
)

PAYER = "client-agent"
PAYEE = "provider-agent"
OUTSIDER = "mallory-agent"
ARBITER = "arbiter-agent"


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_pending(self, escrow_service, sink, clock) -> None:
        escrow = await escrow_service.create(PAYER, PAYEE, "100.50", purpose="report")

        assert escrow.state == EscrowState.PENDING
        assert escrow.amount == Decimal("100.50")
        assert escrow.token == "USDC"
        assert escrow.timeline.created == clock.now
        assert escrow.timeout_at is None

        [event] = sink.events
        assert event.kind == EventType.ESCROW_CREATED
        assert event.from_state is None
        assert event.to_state == "pending"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, "0.00"])
    async def test_non_positive_amount(self, escrow_service, sink, amount) -> None:
        with pytest.raises(InvalidAmountError):
            await escrow_service.create(PAYER, PAYEE, amount)
        assert sink.events == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["NaN", "abc", "Infinity", "-Infinity"])
    async def test_non_numeric_amount(self, escrow_service, sink, amount) -> None:
        with pytest.raises(InvalidAmountError) as exc_info:
            await escrow_service.create(PAYER, PAYEE, amount)
        assert exc_info.value.code == "INVALID_AMOUNT"
        assert sink.events == []
        assert await escrow_service.list() == []

    @pytest.mark.asyncio
    async def test_timeout_relative_to_clock(self, escrow_service, clock) -> None:
        escrow = await escrow_service.create(PAYER, PAYEE, 10, timeout_minutes=30)
        assert (escrow.timeout_at - clock.now).total_seconds() == 30 * 60

    @pytest.mark.asyncio
    async def test_get_missing(self, escrow_service) -> None:
        with pytest.raises(EscrowNotFoundError):
            await escrow_service.get("esc_missing")

    @pytest.mark.asyncio
    async def test_list_filters(self, escrow_service) -> None:
        await escrow_service.create(PAYER, PAYEE, 10)
        big = await escrow_service.create(PAYER, PAYEE, 500)
        await escrow_service.create("other-payer", PAYEE, 900)

        assert len(await escrow_service.list(payee=PAYEE)) == 3
        assert len(await escrow_service.list(payer=PAYER)) == 2
        assert [e.id for e in await escrow_service.list(payer=PAYER, min_amount=100)] == [big.id]
        assert await escrow_service.list(state="locked") == []


class TestFundAndApprove:
    @pytest.mark.asyncio
    async def test_fund_records_tx_ref(self, escrow_service, clock) -> None:
        escrow = await escrow_service.create(PAYER, PAYEE, 10)
        funded = await escrow_service.fund(escrow.id, tx_ref="0xabc")

        assert funded.state == EscrowState.FUNDED
        assert funded.tx_ref == "0xabc"
        assert funded.timeline.funded == clock.now

    @pytest.mark.asyncio
    async def test_fund_twice_rejected(self, escrow_service) -> None:
        escrow = await escrow_service.create(PAYER, PAYEE, 10)
        await escrow_service.fund(escrow.id, tx_ref="0xabc")

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            await escrow_service.fund(escrow.id, tx_ref="0xdef")
        assert exc_info.value.current_state == "funded"
        assert exc_info.value.attempted == "fund"
        assert (await escrow_service.get(escrow.id)).tx_ref == "0xabc"

    @pytest.mark.asyncio
    async def test_fund_without_approval_locks_atomically(self, escrow_service, sink) -> None:
        escrow = await escrow_service.create(
            PAYER, PAYEE, 10, conditions={"requiresApproval": False}
        )
        locked = await escrow_service.fund(escrow.id, tx_ref="0xabc")

        assert locked.state == EscrowState.LOCKED
        kinds = [e.kind for e in sink.for_entity(escrow.id)]
        assert kinds == [
            EventType.ESCROW_CREATED,
            EventType.ESCROW_FUNDED,
            EventType.ESCROW_LOCKED,
        ]

    @pytest.mark.asyncio
    async def test_both_approvals_lock(self, escrow_service, sink) -> None:
        escrow = await escrow_service.create(PAYER, PAYEE, 10)
        await escrow_service.fund(escrow.id, tx_ref="0xabc")

        first = await escrow_service.approve(escrow.id, PAYER)
        assert first.state == EscrowState.FUNDED
        second = await escrow_service.approve(escrow.id, PAYEE)
        assert second.state == EscrowState.LOCKED
        assert second.approvals == (PAYER, PAYEE)
        assert len(sink.of_kind(EventType.ESCROW_LOCKED)) == 1

    @pytest.mark.asyncio
    async def test_approval_is_idempotent(self, escrow_service, sink) -> None:
        escrow = await escrow_service.create(PAYER, PAYEE, 10)
        await escrow_service.fund(escrow.id, tx_ref="0xabc")
        before = len(sink.events)

        await escrow_service.approve(escrow.id, PAYER)
        again = await escrow_service.approve(escrow.id, PAYER)

        assert again.approvals == (PAYER,)
        assert again.state == EscrowState.FUNDED
        assert len(sink.events) == before

    @pytest.mark.asyncio
    async def test_outsider_cannot_approve(self, escrow_service) -> None:
        escrow = await escrow_service.create(PAYER, PAYEE, 10)
        await escrow_service.fund(escrow.id, tx_ref="0xabc")
        with pytest.raises(UnauthorizedError):
            await escrow_service.approve(escrow.id, OUTSIDER)

    @pytest.mark.asyncio
    async def test_approve_requires_funded(self, escrow_service) -> None:
        escrow = await escrow_service.create(PAYER, PAYEE, 10)
        with pytest.raises(InvalidStateTransitionError):
            await escrow_service.approve(escrow.id, PAYER)


class TestDeliveryAndRelease:
    @pytest.mark.asyncio
    async def test_release_requires_delivery_proof(
        self, escrow_service, make_locked_escrow
    ) -> None:
        escrow = await make_locked_escrow(
            conditions={"requiresDelivery": True, "requiresArbiter": True}
        )

        with pytest.raises(DeliveryProofRequiredError):
            await escrow_service.release(escrow.id)
        assert (await escrow_service.get(escrow.id)).state == EscrowState.LOCKED

    @pytest.mark.asyncio
    async def test_release_without_delivery_requirement(
        self, escrow_service, make_locked_escrow, clock
    ) -> None:
        escrow = await make_locked_escrow()
        released = await escrow_service.release(escrow.id, reason="done")

        assert released.state == EscrowState.RELEASED
        assert released.release_reason == "done"
        assert released.timeline.released == clock.now

    @pytest.mark.asyncio
    async def test_delivery_auto_releases(self, escrow_service, make_locked_escrow, sink) -> None:
        escrow = await make_locked_escrow(conditions={"requiresDelivery": True})
        released = await escrow_service.submit_delivery(escrow.id, {"rows": 10})

        assert released.state == EscrowState.RELEASED
        assert released.delivery_proof.submitted_by == PAYEE
        kinds = [e.kind for e in sink.for_entity(escrow.id)][-2:]
        assert kinds == [EventType.ESCROW_DELIVERY_SUBMITTED, EventType.ESCROW_RELEASED]

    @pytest.mark.asyncio
    async def test_delivery_waits_for_client_confirmation(
        self, escrow_service, make_locked_escrow
    ) -> None:
        escrow = await make_locked_escrow(
            conditions={"requiresDelivery": True, "requiresClientConfirmation": True}
        )
        delivered = await escrow_service.submit_delivery(escrow.id, "proof", signature="sig")

        assert delivered.state == EscrowState.LOCKED
        assert delivered.delivery_proof.signature == "sig"
        released = await escrow_service.release(escrow.id)
        assert released.state == EscrowState.RELEASED

    @pytest.mark.asyncio
    async def test_delivery_is_write_once(self, escrow_service, make_locked_escrow) -> None:
        escrow = await make_locked_escrow(conditions={"requiresArbiter": True})
        await escrow_service.submit_delivery(escrow.id, "first")
        with pytest.raises(AlreadySetError):
            await escrow_service.submit_delivery(escrow.id, "second")
        assert (await escrow_service.get(escrow.id)).delivery_proof.data == "first"

    @pytest.mark.asyncio
    async def test_delivery_requires_locked(self, escrow_service) -> None:
        escrow = await escrow_service.create(PAYER, PAYEE, 10)
        with pytest.raises(InvalidStateTransitionError):
            await escrow_service.submit_delivery(escrow.id, "proof")


class TestRefund:
    @pytest.mark.asyncio
    async def test_refund_from_funded(self, escrow_service, sink) -> None:
        escrow = await escrow_service.create(PAYER, PAYEE, 10)
        await escrow_service.fund(escrow.id, tx_ref="0xabc")
        refunded = await escrow_service.refund(escrow.id, reason="cancelled")

        assert refunded.state == EscrowState.REFUNDED
        assert refunded.refund_reason == "cancelled"
        assert sink.events[-1].payload["reason"] == "cancelled"

    @pytest.mark.asyncio
    async def test_refund_pending_rejected(self, escrow_service) -> None:
        escrow = await escrow_service.create(PAYER, PAYEE, 10)
        with pytest.raises(InvalidStateTransitionError):
            await escrow_service.refund(escrow.id)

    @pytest.mark.asyncio
    async def test_terminal_escrow_is_never_mutated(
        self, escrow_service, make_locked_escrow
    ) -> None:
        escrow = await make_locked_escrow()
        released = await escrow_service.release(escrow.id)

        for attempt in (
            escrow_service.refund(escrow.id),
            escrow_service.release(escrow.id),
            escrow_service.dispute(escrow.id, PAYER, "late"),
        ):
            with pytest.raises(InvalidStateTransitionError):
                await attempt
        assert (await escrow_service.get(escrow.id)).to_document() == released.to_document()


class TestDisputes:
    @pytest.mark.asyncio
    async def test_dispute_and_refund(self, escrow_service, make_locked_escrow, sink) -> None:
        escrow = await make_locked_escrow()
        disputed = await escrow_service.dispute(escrow.id, PAYER, "never delivered")
        assert disputed.state == EscrowState.DISPUTED
        assert disputed.dispute.disputer_id == PAYER

        resolved = await escrow_service.resolve_dispute(escrow.id, "refund", ARBITER)
        assert resolved.state == EscrowState.REFUNDED
        assert resolved.dispute.arbiter == ARBITER
        assert resolved.dispute.decision == "refund"

        event = sink.events[-1]
        assert event.kind == EventType.ESCROW_REFUNDED
        assert event.payload["arbiter"] == ARBITER
        assert event.payload["decision"] == "refund"

    @pytest.mark.asyncio
    async def test_resolve_for_payee(self, escrow_service, make_locked_escrow) -> None:
        escrow = await make_locked_escrow()
        await escrow_service.dispute(escrow.id, PAYEE, "client unresponsive")
        resolved = await escrow_service.resolve_dispute(escrow.id, "release", ARBITER)
        assert resolved.state == EscrowState.RELEASED

    @pytest.mark.asyncio
    async def test_disputed_escrow_cannot_be_released_directly(
        self, escrow_service, make_locked_escrow
    ) -> None:
        escrow = await make_locked_escrow()
        await escrow_service.dispute(escrow.id, PAYER, "bad")
        with pytest.raises(InvalidStateTransitionError):
            await escrow_service.release(escrow.id)

    @pytest.mark.asyncio
    async def test_disputed_escrow_can_be_refunded(
        self, escrow_service, make_locked_escrow
    ) -> None:
        escrow = await make_locked_escrow()
        await escrow_service.dispute(escrow.id, PAYER, "bad")
        refunded = await escrow_service.refund(escrow.id, reason="settled off-line")
        assert refunded.state == EscrowState.REFUNDED

    @pytest.mark.asyncio
    async def test_outsider_cannot_dispute(self, escrow_service, make_locked_escrow) -> None:
        escrow = await make_locked_escrow()
        with pytest.raises(UnauthorizedError):
            await escrow_service.dispute(escrow.id, OUTSIDER, "griefing")

    @pytest.mark.asyncio
    async def test_invalid_decision(self, escrow_service, make_locked_escrow) -> None:
        escrow = await make_locked_escrow()
        await escrow_service.dispute(escrow.id, PAYER, "bad")
        with pytest.raises(InvalidDisputeDecisionError):
            await escrow_service.resolve_dispute(escrow.id, "split", ARBITER)
        assert (await escrow_service.get(escrow.id)).state == EscrowState.DISPUTED


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_overdue_escrow_only_refunds(
        self, escrow_service, make_locked_escrow, clock
    ) -> None:
        escrow = await make_locked_escrow(timeout_minutes=10)
        clock.advance(minutes=10)

        with pytest.raises(EscrowTimedOutError):
            await escrow_service.release(escrow.id)
        with pytest.raises(EscrowTimedOutError):
            await escrow_service.dispute(escrow.id, PAYER, "late")
        refunded = await escrow_service.refund(escrow.id)
        assert refunded.state == EscrowState.REFUNDED

    @pytest.mark.asyncio
    async def test_fund_allowed_when_already_overdue(self, escrow_service) -> None:
        escrow = await escrow_service.create(PAYER, PAYEE, 10, timeout_minutes=-1)
        funded = await escrow_service.fund(escrow.id, tx_ref="0xabc")
        assert funded.state == EscrowState.FUNDED
        with pytest.raises(EscrowTimedOutError):
            await escrow_service.approve(escrow.id, PAYER)

    @pytest.mark.asyncio
    async def test_sweep_refunds_once(self, escrow_service, sink, clock) -> None:
        due = await escrow_service.create(PAYER, PAYEE, 10, timeout_minutes=5)
        later = await escrow_service.create(PAYER, PAYEE, 10, timeout_minutes=60)
        never_funded = await escrow_service.create(PAYER, PAYEE, 10, timeout_minutes=1)
        await escrow_service.fund(due.id, tx_ref="0x1")
        await escrow_service.fund(later.id, tx_ref="0x2")
        clock.advance(minutes=5)

        first = await escrow_service.sweep_timeouts(clock.now)
        second = await escrow_service.sweep_timeouts(clock.now)

        assert first.processed == [due.id]
        assert second.processed == []
        assert (await escrow_service.get(due.id)).refund_reason == "timeout"
        assert (await escrow_service.get(later.id)).state == EscrowState.FUNDED
        assert (await escrow_service.get(never_funded.id)).state == EscrowState.PENDING
        refunds = sink.of_kind(EventType.ESCROW_REFUNDED)
        assert len(refunds) == 1
        assert refunds[0].payload == {"reason": "timeout"}

    @pytest.mark.asyncio
    async def test_concurrent_sweeps_refund_once(self, escrow_service, sink, clock) -> None:
        escrows = [
            await escrow_service.create(PAYER, PAYEE, 10, timeout_minutes=1) for _ in range(5)
        ]
        for escrow in escrows:
            await escrow_service.fund(escrow.id, tx_ref="0x")
        clock.advance(minutes=2)

        reports = await asyncio.gather(
            *(escrow_service.sweep_timeouts(clock.now) for _ in range(3))
        )

        processed = [escrow_id for report in reports for escrow_id in report.processed]
        assert sorted(processed) == sorted(e.id for e in escrows)
        assert len(sink.of_kind(EventType.ESCROW_REFUNDED)) == 5

    @pytest.mark.asyncio
    async def test_sweep_continues_past_failures(
        self, escrow_service, escrow_store, clock, monkeypatch
    ) -> None:
        bad = await escrow_service.create(PAYER, PAYEE, 10, timeout_minutes=1)
        good = await escrow_service.create(PAYER, PAYEE, 10, timeout_minutes=1)
        await escrow_service.fund(bad.id, tx_ref="0x1")
        await escrow_service.fund(good.id, tx_ref="0x2")
        clock.advance(minutes=1)

        original = escrow_store.locked

        def flaky_locked(record_id):
            if record_id == bad.id:
                raise RuntimeError("storage unavailable")
            return original(record_id)

        monkeypatch.setattr(escrow_store, "locked", flaky_locked)
        report = await escrow_service.sweep_timeouts(clock.now)

        assert report.processed == [good.id]
        assert [f.record_id for f in report.failures] == [bad.id]
        assert report.failures[0].error == "storage unavailable"


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_release_and_refund_one_wins(
        self, escrow_service, make_locked_escrow
    ) -> None:
        escrow = await make_locked_escrow()
        results = await asyncio.gather(
            escrow_service.release(escrow.id),
            escrow_service.refund(escrow.id),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], InvalidStateTransitionError)
        assert (await escrow_service.get(escrow.id)).is_terminal


class TestStatusAndStats:
    @pytest.mark.asyncio
    async def test_status_lists_allowed_events(self, escrow_service, make_locked_escrow) -> None:
        escrow = await make_locked_escrow()
        status = await escrow_service.get_status(escrow.id)
        assert status.state == "locked"
        assert set(status.allowed_events) == {"release_funds", "refund_payer", "raise_dispute"}

    @pytest.mark.asyncio
    async def test_status_when_overdue(self, escrow_service, make_locked_escrow, clock) -> None:
        escrow = await make_locked_escrow(timeout_minutes=1)
        clock.advance(minutes=1)
        status = await escrow_service.get_status(escrow.id)
        assert status.allowed_events == ["refund_payer"]

    @pytest.mark.asyncio
    async def test_stats(self, escrow_service, make_locked_escrow) -> None:
        await make_locked_escrow(amount=100)
        await make_locked_escrow(amount=50, token="SHIB")
        await escrow_service.create(PAYER, PAYEE, 5)

        stats = await escrow_service.stats()
        assert stats.total == 3
        assert stats.by_state == {"locked": 2, "pending": 1}
        assert stats.total_locked == {"USDC": Decimal("100"), "SHIB": Decimal("50")}
        assert stats.active_escrows == 2
