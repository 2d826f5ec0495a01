"""Enrollment and sequence lifecycle state machines with transition validation."""

from sequencer.state_machine.machine import EnrollmentStateMachine, next_sequence_status
from sequencer.state_machine.transitions import (
    SEQUENCE_TRANSITIONS,
    TERMINAL_STATES,
    TRANSITIONS,
    EnrollmentEvent,
    SequenceEvent,
)

__all__ = [
    "SEQUENCE_TRANSITIONS",
    "TERMINAL_STATES",
    "TRANSITIONS",
    "EnrollmentEvent",
    "EnrollmentStateMachine",
    "SequenceEvent",
    "next_sequence_status",
]
