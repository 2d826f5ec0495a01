"""EnrollmentStateMachine class and the sequence lifecycle check."""

from __future__ import annotations

from sequencer.domain.errors import InvalidTransitionError
from sequencer.domain.types import EnrollmentStatus, SequenceStatus
from sequencer.state_machine.transitions import (
    SEQUENCE_TRANSITIONS,
    TERMINAL_STATES,
    TRANSITIONS,
)


class EnrollmentStateMachine:
    """Finite state machine governing one enrollment's lifecycle.

    Tracks the current status and step and validates transitions against
    the transition map.

    Usage::

        sm = EnrollmentStateMachine()
        sm.trigger("advance")    # step 1 done -> step 2, still ACTIVE
        sm.trigger("complete")   # -> COMPLETED (terminal)
    """

    def __init__(
        self,
        initial_status: EnrollmentStatus = EnrollmentStatus.ACTIVE,
        current_step: int = 1,
    ) -> None:
        self._status: EnrollmentStatus = initial_status
        self._current_step = current_step

    @property
    def status(self) -> EnrollmentStatus:
        """Return the current enrollment status."""
        return self._status

    @property
    def current_step(self) -> int:
        """Return the 1-based step the enrollment is waiting on."""
        return self._current_step

    @property
    def is_terminal(self) -> bool:
        """Return True once the enrollment is completed, stopped, or opted out."""
        return self._status in TERMINAL_STATES

    def trigger(self, event: str) -> EnrollmentStatus:
        """Apply an event to the current status and transition.

        ``advance`` also moves ``current_step`` forward by one.

        Raises:
            InvalidTransitionError: If the transition is not allowed from
                the current status, or if the machine is terminal.
        """
        if self.is_terminal:
            raise InvalidTransitionError(self._status, event)

        key = (self._status, event)
        if key not in TRANSITIONS:
            raise InvalidTransitionError(self._status, event)

        new_status = TRANSITIONS[key]
        self._status = new_status
        if event == "advance":
            self._current_step += 1
        return new_status


def next_sequence_status(current: SequenceStatus, event: str) -> SequenceStatus:
    """Return the status a sequence moves to on *event*.

    Raises:
        InvalidTransitionError: If the lifecycle does not allow *event* from
            *current* (e.g. anything from ``archived``).
    """
    key = (current, event)
    if key not in SEQUENCE_TRANSITIONS:
        raise InvalidTransitionError(current, event)
    return SEQUENCE_TRANSITIONS[key]
