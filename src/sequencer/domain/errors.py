"""Domain-specific exception classes for the sequence engine."""

from sequencer.domain.types import EnrollmentStatus, SequenceStatus


class SequencerError(Exception):
    """Base class for all domain errors in the sequence engine."""


class SequenceNotFoundError(SequencerError):
    """Raised when a sequence id does not exist.

    Attributes:
        sequence_id: The id that was looked up.
    """

    def __init__(self, sequence_id: str) -> None:
        self.sequence_id = sequence_id
        super().__init__(f"Sequence '{sequence_id}' not found")


class StepNotFoundError(SequencerError):
    """Raised when a step id does not exist."""

    def __init__(self, step_id: str) -> None:
        self.step_id = step_id
        super().__init__(f"Step '{step_id}' not found")


class EnrollmentNotFoundError(SequencerError):
    """Raised when an enrollment id does not exist."""

    def __init__(self, enrollment_id: str) -> None:
        self.enrollment_id = enrollment_id
        super().__init__(f"Enrollment '{enrollment_id}' not found")


class SequenceValidationError(SequencerError):
    """Raised when a definition edit or lifecycle change violates a rule.

    Examples: activating a sequence without steps, editing steps while the
    sequence is active, or an email step without a subject.
    """


class SequenceNotActiveError(SequenceValidationError):
    """Raised when contacts are enrolled into a sequence that is not active.

    Attributes:
        sequence_id: The sequence that was targeted.
        status: Its current status.
    """

    def __init__(self, sequence_id: str, status: SequenceStatus) -> None:
        self.sequence_id = sequence_id
        self.status = status
        super().__init__(
            f"Sequence '{sequence_id}' must be active to enroll contacts (status: {status})"
        )


class InvalidTransitionError(SequencerError):
    """Raised when an invalid enrollment state transition is attempted.

    Attributes:
        current_status: The status the enrollment was in.
        event: The event that was rejected.
    """

    def __init__(self, current_status: EnrollmentStatus | SequenceStatus, event: str) -> None:
        self.current_status = current_status
        self.event = event
        super().__init__(
            f"Cannot apply event '{event}' in state '{current_status}'"
        )
