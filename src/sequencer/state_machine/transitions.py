"""Transition maps for enrollment and sequence lifecycles."""

from enum import StrEnum

from sequencer.domain.types import (
    TERMINAL_ENROLLMENT_STATUSES,
    EnrollmentStatus,
    SequenceStatus,
)


class EnrollmentEvent(StrEnum):
    """Events that can move an enrollment between statuses."""

    ADVANCE = "advance"
    COMPLETE = "complete"
    STOP = "stop"
    OPT_OUT = "opt_out"


class SequenceEvent(StrEnum):
    """Lifecycle events for a sequence definition."""

    ACTIVATE = "activate"
    PAUSE = "pause"
    ARCHIVE = "archive"


# All valid (current_status, event) -> next_status mappings for enrollments.
# ADVANCE is a self-loop: the enrollment moves to its next step but stays active.
TRANSITIONS: dict[tuple[EnrollmentStatus, str], EnrollmentStatus] = {
    (EnrollmentStatus.ACTIVE, EnrollmentEvent.ADVANCE): EnrollmentStatus.ACTIVE,
    (EnrollmentStatus.ACTIVE, EnrollmentEvent.COMPLETE): EnrollmentStatus.COMPLETED,
    (EnrollmentStatus.ACTIVE, EnrollmentEvent.STOP): EnrollmentStatus.STOPPED,
    (EnrollmentStatus.ACTIVE, EnrollmentEvent.OPT_OUT): EnrollmentStatus.OPTED_OUT,
}

TERMINAL_STATES: frozenset[EnrollmentStatus] = TERMINAL_ENROLLMENT_STATUSES

SEQUENCE_TRANSITIONS: dict[tuple[SequenceStatus, str], SequenceStatus] = {
    (SequenceStatus.DRAFT, SequenceEvent.ACTIVATE): SequenceStatus.ACTIVE,
    (SequenceStatus.PAUSED, SequenceEvent.ACTIVATE): SequenceStatus.ACTIVE,
    (SequenceStatus.ACTIVE, SequenceEvent.PAUSE): SequenceStatus.PAUSED,
    (SequenceStatus.DRAFT, SequenceEvent.ARCHIVE): SequenceStatus.ARCHIVED,
    (SequenceStatus.ACTIVE, SequenceEvent.ARCHIVE): SequenceStatus.ARCHIVED,
    (SequenceStatus.PAUSED, SequenceEvent.ARCHIVE): SequenceStatus.ARCHIVED,
}
