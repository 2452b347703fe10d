"""
Account Provisioning State Machine.

    pending_confirmation ──identity_confirmed──▶ confirmed
    confirmed ──provisioning_triggered──▶ profile_created | blocked_duplicate_admin
    profile_created ──role_resolved──▶ role_assigned

``role_assigned`` and ``blocked_duplicate_admin`` are terminal. A blocked
signup still ends with a usable account holding the default role.
"""

from __future__ import annotations

import enum

from rbi_registry.core.errors import InvalidTransition
from rbi_registry.core.schema import ProvisioningState


class ProvisioningEvent(str, enum.Enum):
    """Events that drive an account through provisioning."""

    IDENTITY_CONFIRMED = "identity_confirmed"
    PROVISIONING_TRIGGERED = "provisioning_triggered"
    ROLE_RESOLVED = "role_resolved"


INITIAL_STATE = ProvisioningState.PENDING_CONFIRMATION

TERMINAL_STATES = frozenset({
    ProvisioningState.ROLE_ASSIGNED,
    ProvisioningState.BLOCKED_DUPLICATE_ADMIN,
})

TRANSITIONS: dict[tuple[ProvisioningState, ProvisioningEvent], frozenset[ProvisioningState]] = {
    (ProvisioningState.PENDING_CONFIRMATION, ProvisioningEvent.IDENTITY_CONFIRMED): frozenset({
        ProvisioningState.CONFIRMED,
    }),
    (ProvisioningState.CONFIRMED, ProvisioningEvent.PROVISIONING_TRIGGERED): frozenset({
        ProvisioningState.PROFILE_CREATED,
        ProvisioningState.BLOCKED_DUPLICATE_ADMIN,
    }),
    (ProvisioningState.PROFILE_CREATED, ProvisioningEvent.ROLE_RESOLVED): frozenset({
        ProvisioningState.ROLE_ASSIGNED,
    }),
}

# Position of each state along the happy path; blocked ranks with role_assigned
_PROGRESS = {
    ProvisioningState.PENDING_CONFIRMATION: 0,
    ProvisioningState.CONFIRMED: 1,
    ProvisioningState.PROFILE_CREATED: 2,
    ProvisioningState.ROLE_ASSIGNED: 3,
    ProvisioningState.BLOCKED_DUPLICATE_ADMIN: 3,
}


class ProvisioningStateMachine:
    """Validates provisioning transitions against the transition table."""

    def __init__(
        self,
        transitions: dict[
            tuple[ProvisioningState, ProvisioningEvent], frozenset[ProvisioningState]
        ] | None = None,
    ) -> None:
        self.transitions = transitions or TRANSITIONS

    def next_states(
        self, state: ProvisioningState, event: ProvisioningEvent
    ) -> frozenset[ProvisioningState]:
        return self.transitions.get((state, event), frozenset())

    def transition(
        self,
        state: ProvisioningState,
        event: ProvisioningEvent,
        target: ProvisioningState | None = None,
    ) -> ProvisioningState:
        """
        Apply ``event`` to ``state``.

        ``target`` picks among several permitted outcomes and is required
        when the event has more than one.

        Raises:
            InvalidTransition: the event is not valid here, or ``target``
                is not one of its outcomes.
        """
        allowed = self.next_states(state, event)
        if not allowed:
            raise InvalidTransition(state.value, event.value)
        if target is None:
            if len(allowed) != 1:
                raise InvalidTransition(state.value, event.value)
            return next(iter(allowed))
        if target not in allowed:
            raise InvalidTransition(state.value, f"{event.value}->{target.value}")
        return target

    @staticmethod
    def is_terminal(state: ProvisioningState) -> bool:
        return state in TERMINAL_STATES

    @staticmethod
    def has_reached(state: ProvisioningState, milestone: ProvisioningState) -> bool:
        """Whether ``state`` is at or past ``milestone`` along the lifecycle."""
        return _PROGRESS[state] >= _PROGRESS[milestone]
