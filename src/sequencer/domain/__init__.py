"""Domain types, models, and errors for the sequence engine."""

from sequencer.domain.errors import (
    EnrollmentNotFoundError,
    InvalidTransitionError,
    SequenceNotActiveError,
    SequenceNotFoundError,
    SequencerError,
    SequenceValidationError,
    StepNotFoundError,
)
from sequencer.domain.models import (
    Audience,
    Contact,
    Enrollment,
    Sequence,
    SendWindow,
    Signals,
    Step,
    StepCondition,
    StepLog,
    Trigger,
    Workspace,
)
from sequencer.domain.types import (
    Channel,
    ConditionAction,
    ConditionType,
    DeliveryEvent,
    EnrollmentStatus,
    SequenceStatus,
    StepOutcome,
    TriggerType,
)

__all__ = [
    "Audience",
    "Channel",
    "ConditionAction",
    "ConditionType",
    "Contact",
    "DeliveryEvent",
    "Enrollment",
    "EnrollmentNotFoundError",
    "EnrollmentStatus",
    "InvalidTransitionError",
    "SendWindow",
    "Sequence",
    "SequenceNotActiveError",
    "SequenceNotFoundError",
    "SequenceStatus",
    "SequenceValidationError",
    "SequencerError",
    "Signals",
    "Step",
    "StepCondition",
    "StepLog",
    "StepNotFoundError",
    "StepOutcome",
    "Trigger",
    "TriggerType",
    "Workspace",
]
