"""Domain enumerations for drip sequences, steps, enrollments, and step logs."""

from enum import StrEnum


class SequenceStatus(StrEnum):
    """Lifecycle states of a sequence definition."""

    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class TriggerType(StrEnum):
    """How contacts enter a sequence."""

    MANUAL = "manual"
    CONTACT_CREATED = "contact_created"
    KEYWORD_JOIN = "keyword_join"
    STAGE_CHANGE = "stage_change"


class AudienceType(StrEnum):
    """Audience filter kinds a sequence can target."""

    ALL = "all"
    STAGE = "stage"
    CATEGORY = "category"
    INACTIVE = "inactive"


class Channel(StrEnum):
    """Delivery channels for a step."""

    SMS = "sms"
    EMAIL = "email"


class ConditionType(StrEnum):
    """Predicates a step can gate on."""

    NONE = "none"
    REPLIED = "replied"
    CLICKED = "clicked"
    NO_REPLY = "no_reply"
    OPTED_OUT = "opted_out"


class ConditionAction(StrEnum):
    """What happens to a step when its condition holds."""

    CONTINUE = "continue"
    SKIP = "skip"
    STOP = "stop"


class EnrollmentStatus(StrEnum):
    """States of a contact's progress through one sequence."""

    ACTIVE = "active"
    COMPLETED = "completed"
    STOPPED = "stopped"
    OPTED_OUT = "opted_out"


class StepOutcome(StrEnum):
    """Outcome recorded in a step log row."""

    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    SKIPPED = "skipped"


class DeliveryEvent(StrEnum):
    """Asynchronous events reported back by the delivery provider."""

    DELIVERED = "delivered"
    FAILED = "failed"
    REPLIED = "replied"
    CLICKED = "clicked"
    OPTED_OUT = "opted_out"


# Enrollment statuses that never transition again
TERMINAL_ENROLLMENT_STATUSES: frozenset[EnrollmentStatus] = frozenset(
    {
        EnrollmentStatus.COMPLETED,
        EnrollmentStatus.STOPPED,
        EnrollmentStatus.OPTED_OUT,
    }
)

# Sequence statuses in which steps and settings may be edited
EDITABLE_SEQUENCE_STATUSES: frozenset[SequenceStatus] = frozenset(
    {SequenceStatus.DRAFT, SequenceStatus.PAUSED}
)

MAX_STEPS_PER_SEQUENCE = 20
