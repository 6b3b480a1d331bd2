"""Micropayment Service: pay-per-request escrow presets.

Presets for HTTP 402 style micropayments on top of EscrowService:
no approval round, delivery required, short timeout, and release as soon as
the content is delivered unless the caller opts out of auto-release.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from agentic_settlement.domain.enums import EscrowState
from agentic_settlement.domain.exceptions import EscrowNotFoundError
from agentic_settlement.domain.models import EscrowConditions
from agentic_settlement.logging_config import get_logger
from agentic_settlement.schemas.reports import PaymentVerification

if TYPE_CHECKING:
    from agentic_settlement.domain.models import Escrow
    from agentic_settlement.services.escrow_service import EscrowService

logger = get_logger(__name__)

PROTOCOL = "x402"
PURPOSE_PREFIX = "X402: "


class MicropaymentService:
    """Creates, verifies and settles micropayment escrows."""

    def __init__(self, escrow_service: EscrowService, default_timeout_minutes: int = 5) -> None:
        self._escrows = escrow_service
        self._default_timeout = default_timeout_minutes

    async def create_escrow(
        self,
        recipient: str,
        amount: Decimal | int | str,
        description: str,
        token: str = "USDC",
        payer: str = "x402-client",
        auto_release: bool = True,
        timeout_minutes: int | None = None,
    ) -> Escrow:
        """Create a micropayment escrow. Funding it locks it immediately."""
        escrow = await self._escrows.create(
            payer=payer,
            payee=recipient,
            amount=amount,
            purpose=f"{PURPOSE_PREFIX}{description}",
            conditions=EscrowConditions(
                requires_approval=False,
                requires_delivery=True,
                requires_arbiter=False,
                requires_client_confirmation=not auto_release,
            ),
            timeout_minutes=timeout_minutes if timeout_minutes is not None else self._default_timeout,
            token=token,
            metadata={"protocol": PROTOCOL, "autoRelease": auto_release},
        )
        logger.info("micropayment.escrow_created", escrow_id=escrow.id, recipient=recipient)
        return escrow

    async def verify_payment(
        self,
        escrow_id: str,
        expected_amount: Decimal | int | str,
    ) -> PaymentVerification:
        """Check that an escrow is a funded micropayment covering ``expected_amount``.

        Never raises for an unknown id; the failure is reported in ``error``.
        """
        try:
            escrow = await self._escrows.get(escrow_id)
        except EscrowNotFoundError:
            return PaymentVerification(valid=False, error="Escrow not found")

        expected = Decimal(str(expected_amount))
        if escrow.state not in (EscrowState.FUNDED, EscrowState.LOCKED):
            error = f"Escrow not funded (state: {escrow.state.value})"
        elif escrow.amount < expected:
            error = f"Insufficient payment: {escrow.amount} < {expected}"
        elif not is_micropayment(escrow):
            error = "Not an X402 escrow"
        else:
            return PaymentVerification(valid=True, escrow=escrow)

        logger.info("micropayment.verification_failed", escrow_id=escrow_id, error=error)
        return PaymentVerification(valid=False, escrow=escrow, error=error)

    async def release_after_delivery(self, escrow_id: str, service_description: str) -> Escrow:
        """Record delivery of the paid content and settle the escrow."""
        escrow = await self._escrows.get(escrow_id)
        if escrow.delivery_proof is None:
            escrow = await self._escrows.submit_delivery(
                escrow_id,
                {"service": service_description},
                submitted_by=escrow.payee,
            )

        if escrow.state is EscrowState.LOCKED:
            if escrow.metadata.get("autoRelease"):
                reason = f"X402 auto-release: {service_description}"
            else:
                reason = service_description
            escrow = await self._escrows.release(escrow_id, reason=reason)

        logger.info(
            "micropayment.settled",
            escrow_id=escrow_id,
            state=escrow.state.value,
        )
        return escrow


def is_micropayment(escrow: Escrow) -> bool:
    return (
        escrow.metadata.get("protocol") == PROTOCOL
        and escrow.purpose.startswith(PURPOSE_PREFIX)
    )
