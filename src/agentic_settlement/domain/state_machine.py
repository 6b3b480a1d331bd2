"""Escrow and Negotiation State Machine Guards.

Uses python-statemachine to enforce legal state transitions at the domain level.
No matter what a caller asks for, an illegal transition (e.g., pending -> released)
will raise TransitionNotAllowed.

The machines are instantiated per-operation at the record's current state and
validate a transition before the record's state field is updated.

Escrow transition table:
    pending   -> funded     (fund)
    funded    -> locked     (lock_funds)
    locked    -> released   (release_funds)
    funded    -> refunded   (refund_payer)
    locked    -> refunded   (refund_payer)
    disputed  -> refunded   (refund_payer)
    locked    -> disputed   (raise_dispute)
    disputed  -> released   (resolve_for_payee)
    disputed  -> refunded   (resolve_for_payer)

Negotiation transition table:
    pending   -> accepted   (accept)
    pending   -> rejected   (reject)
    countered -> rejected   (reject)
    pending   -> countered  (counter)
    countered -> countered  (counter)
    countered -> accepted   (accept_counter)
    pending   -> expired    (expire)
    countered -> expired    (expire)
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed


class _GuardMachine(StateMachine):
    """Shared construction and helpers for the guard machines."""

    event_names: tuple[str, ...] = ()

    def __init__(self, current_status: str) -> None:
        """Initialize the state machine at a given status.

        Args:
            current_status: The current state value (e.g., "funded").
                           Must match one of the State values exactly.
        """
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches the domain enum)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [name for name in self.event_names if self._can_fire(name)]

    def _can_fire(self, event_name: str) -> bool:
        probe = type(self)(current_status=self.status)
        try:
            getattr(probe, event_name)()
        except TransitionNotAllowed:
            return False
        return True


class EscrowStateMachine(_GuardMachine):
    """State machine that guards the escrow lifecycle.

    Usage:
        sm = EscrowStateMachine("funded")
        sm.lock_funds()      # transitions to locked
        sm.status            # "locked"
    """

    # --- States ---
    pending = State("Pending", initial=True)
    funded = State("Funded")
    locked = State("Locked")
    disputed = State("Disputed")
    released = State("Released", final=True)
    refunded = State("Refunded", final=True)

    # --- Events / Transitions ---

    # Custody
    fund = pending.to(funded)
    lock_funds = funded.to(locked)

    # Settlement
    release_funds = locked.to(released)
    refund_payer = funded.to(refunded) | locked.to(refunded) | disputed.to(refunded)

    # Disputes
    raise_dispute = locked.to(disputed)
    resolve_for_payee = disputed.to(released)
    resolve_for_payer = disputed.to(refunded)

    event_names = (
        "fund",
        "lock_funds",
        "release_funds",
        "refund_payer",
        "raise_dispute",
        "resolve_for_payee",
        "resolve_for_payer",
    )


class NegotiationStateMachine(_GuardMachine):
    """State machine that guards the negotiation (quote) lifecycle."""

    pending = State("Pending", initial=True)
    countered = State("Countered")
    accepted = State("Accepted", final=True)
    rejected = State("Rejected", final=True)
    expired = State("Expired", final=True)

    accept = pending.to(accepted)
    reject = pending.to(rejected) | countered.to(rejected)
    counter = pending.to(countered) | countered.to(countered)
    accept_counter = countered.to(accepted)
    expire = pending.to(expired) | countered.to(expired)

    event_names = ("accept", "reject", "counter", "accept_counter", "expire")


def validate_transition(
    current_status: str,
    event_name: str,
    machine: type[_GuardMachine] = EscrowStateMachine,
) -> str:
    """Validate a state transition and return the new status.

    This is a convenience function that creates a temporary state machine,
    fires the named event, and returns the resulting status string.

    Args:
        current_status: Current state value.
        event_name: The event to fire (e.g., "lock_funds").
        machine: The guard machine class to use.

    Returns:
        The new status string after the transition.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status or event name is invalid.
    """
    sm = machine(current_status=current_status)

    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )

    event_method()
    return sm.status
