"""Pydantic v2 models for sequence definitions, enrollments, and step logs.

Triggers, audiences, and step conditions are tagged unions discriminated on
``type``: each variant carries only the fields that apply to it.
"""

from __future__ import annotations

from datetime import datetime, time
from typing import Annotated, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_serializer,
    field_validator,
    model_validator,
)

from sequencer.domain.types import (
    Channel,
    ConditionAction,
    ConditionType,
    EnrollmentStatus,
    SequenceStatus,
    StepOutcome,
    TriggerType,
)

# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


class ManualTrigger(BaseModel):
    """Contacts are enrolled explicitly (single, bulk, or by audience)."""

    model_config = ConfigDict(frozen=True)

    type: Literal["manual"] = "manual"


class ContactCreatedTrigger(BaseModel):
    """Contacts are enrolled when they are created."""

    model_config = ConfigDict(frozen=True)

    type: Literal["contact_created"] = "contact_created"


class KeywordJoinTrigger(BaseModel):
    """Contacts are enrolled when they text a keyword."""

    model_config = ConfigDict(frozen=True)

    type: Literal["keyword_join"] = "keyword_join"
    keyword: str

    @field_validator("keyword")
    @classmethod
    def keyword_must_not_be_empty(cls, v: str) -> str:
        """Select a keyword for the keyword join trigger."""
        if not v.strip():
            raise ValueError("keyword must not be empty")
        return v.strip()


class StageChangeTrigger(BaseModel):
    """Contacts are enrolled when they enter a pipeline stage."""

    model_config = ConfigDict(frozen=True)

    type: Literal["stage_change"] = "stage_change"
    stage: str

    @field_validator("stage")
    @classmethod
    def stage_must_not_be_empty(cls, v: str) -> str:
        """Select a stage for the stage change trigger."""
        if not v.strip():
            raise ValueError("stage must not be empty")
        return v.strip()


Trigger = Annotated[
    ManualTrigger | ContactCreatedTrigger | KeywordJoinTrigger | StageChangeTrigger,
    Field(discriminator="type"),
]


def trigger_value(trigger: Trigger) -> str | None:
    """Return the keyword or stage a trigger is bound to, if any."""
    if isinstance(trigger, KeywordJoinTrigger):
        return trigger.keyword
    if isinstance(trigger, StageChangeTrigger):
        return trigger.stage
    return None


# ---------------------------------------------------------------------------
# Audiences
# ---------------------------------------------------------------------------


class AllAudience(BaseModel):
    """Every reachable contact in the workspace."""

    model_config = ConfigDict(frozen=True)

    type: Literal["all"] = "all"


class StageAudience(BaseModel):
    """Contacts currently in a given pipeline stage."""

    model_config = ConfigDict(frozen=True)

    type: Literal["stage"] = "stage"
    stage: str


class CategoryAudience(BaseModel):
    """Contacts tagged with a given category."""

    model_config = ConfigDict(frozen=True)

    type: Literal["category"] = "category"
    category_id: str


class InactiveAudience(BaseModel):
    """Contacts not messaged within the last ``inactive_days`` days."""

    model_config = ConfigDict(frozen=True)

    type: Literal["inactive"] = "inactive"
    inactive_days: int = Field(ge=7, le=365)


Audience = Annotated[
    AllAudience | StageAudience | CategoryAudience | InactiveAudience,
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Step conditions and send windows
# ---------------------------------------------------------------------------


class NoCondition(BaseModel):
    """The step always sends."""

    model_config = ConfigDict(frozen=True)

    type: Literal["none"] = "none"


class SignalCondition(BaseModel):
    """Apply ``action`` when the named signal predicate holds.

    When the predicate does not hold the step falls through to sending.
    """

    model_config = ConfigDict(frozen=True)

    type: Literal["replied", "clicked", "no_reply", "opted_out"]
    action: ConditionAction = ConditionAction.CONTINUE

    @property
    def condition_type(self) -> ConditionType:
        return ConditionType(self.type)


StepCondition = Annotated[NoCondition | SignalCondition, Field(discriminator="type")]


class SendWindow(BaseModel):
    """A daily local time-of-day range in which a step may be sent.

    A send that comes due outside the range is deferred to the next opening,
    never skipped.
    """

    model_config = ConfigDict(frozen=True)

    start: time
    end: time

    @model_validator(mode="after")
    def start_must_precede_end(self) -> SendWindow:
        """Reject empty or inverted windows."""
        if self.start >= self.end:
            raise ValueError(
                f"send window start ({self.start:%H:%M}) must be before end ({self.end:%H:%M})"
            )
        return self

    @field_serializer("start", "end")
    def _format_time(self, value: time) -> str:
        return value.strftime("%H:%M")


# ---------------------------------------------------------------------------
# Sequence and step definitions
# ---------------------------------------------------------------------------


class StepDraft(BaseModel):
    """Input for adding a step to a sequence."""

    channel: Channel = Channel.SMS
    subject: str | None = Field(default=None, max_length=200)
    body: str = Field(min_length=1, max_length=5000)
    delay_minutes: int = Field(default=1440, ge=0, le=525600)
    condition: StepCondition = Field(default_factory=NoCondition)
    send_window: SendWindow | None = None

    @field_validator("body")
    @classmethod
    def body_must_not_be_blank(cls, v: str) -> str:
        """Ensure the message body is not empty or whitespace-only."""
        if not v.strip():
            raise ValueError("body must not be empty")
        return v.strip()

    @model_validator(mode="after")
    def subject_matches_channel(self) -> StepDraft:
        """Email steps need a subject; SMS steps never carry one."""
        if self.channel == Channel.EMAIL and not (self.subject and self.subject.strip()):
            raise ValueError("Email steps require a subject line")
        if self.channel == Channel.SMS:
            self.subject = None
        return self


class StepUpdate(BaseModel):
    """Partial update of a step.  Only fields explicitly set are applied."""

    channel: Channel | None = None
    subject: str | None = Field(default=None, max_length=200)
    body: str | None = Field(default=None, min_length=1, max_length=5000)
    delay_minutes: int | None = Field(default=None, ge=0, le=525600)
    condition: StepCondition | None = None
    send_window: SendWindow | None = None


class Step(BaseModel):
    """One message of a sequence, positioned by its 1-based ``order``."""

    model_config = ConfigDict(frozen=True)

    id: str
    sequence_id: str
    order: int = Field(ge=1)
    channel: Channel
    subject: str | None = None
    body: str
    delay_minutes: int = Field(ge=0)
    condition: StepCondition = Field(default_factory=NoCondition)
    send_window: SendWindow | None = None


class SequenceDraft(BaseModel):
    """Input for creating a sequence.  New sequences always start as drafts."""

    workspace_id: str
    name: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    trigger: Trigger = Field(default_factory=ManualTrigger)
    audience: Audience = Field(default_factory=AllAudience)
    frequency_cap_days: int | None = Field(default=None, ge=1, le=365)

    @field_validator("name")
    @classmethod
    def name_must_not_be_empty(cls, v: str) -> str:
        """Ensure the name is not empty or whitespace-only."""
        if not v.strip():
            raise ValueError("name must not be empty")
        return v.strip()


class SequenceUpdate(BaseModel):
    """Partial update of sequence settings.  Only explicitly set fields apply."""

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    trigger: Trigger | None = None
    audience: Audience | None = None
    frequency_cap_days: int | None = Field(default=None, ge=1, le=365)


class Sequence(BaseModel):
    """A drip sequence definition with its ordered steps."""

    model_config = ConfigDict(frozen=True)

    id: str
    workspace_id: str
    name: str
    description: str | None = None
    status: SequenceStatus = SequenceStatus.DRAFT
    trigger: Trigger = Field(default_factory=ManualTrigger)
    audience: Audience = Field(default_factory=AllAudience)
    frequency_cap_days: int | None = None
    steps: list[Step] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    def step_at(self, order: int) -> Step | None:
        """Return the step with the given 1-based order, or ``None``."""
        for step in self.steps:
            if step.order == order:
                return step
        return None

    @property
    def trigger_type(self) -> TriggerType:
        return TriggerType(self.trigger.type)


# ---------------------------------------------------------------------------
# Contacts and workspaces (owned by the surrounding application)
# ---------------------------------------------------------------------------


class Contact(BaseModel):
    """The slice of a CRM contact the engine needs."""

    model_config = ConfigDict(frozen=True)

    id: str
    workspace_id: str
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    email: str | None = None
    stage: str | None = None
    category_ids: frozenset[str] = frozenset()
    last_contacted_at: datetime | None = None
    opted_out: bool = False


class Workspace(BaseModel):
    """A location (workspace) that owns sequences and contacts."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    phone: str | None = None
    from_email: str | None = None
    from_name: str | None = None
    timezone: str | None = None


# ---------------------------------------------------------------------------
# Enrollments and step logs
# ---------------------------------------------------------------------------


class Signals(BaseModel):
    """Asynchronous facts accumulated on an enrollment since it started."""

    model_config = ConfigDict(frozen=True)

    replied_at: datetime | None = None
    clicked_at: datetime | None = None
    opted_out_at: datetime | None = None


class Enrollment(BaseModel):
    """A contact's live progress through one sequence."""

    model_config = ConfigDict(frozen=True)

    id: str
    sequence_id: str
    contact_id: str
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    current_step: int = Field(default=1, ge=1)
    enrolled_at: datetime
    next_step_at: datetime | None = None
    step_entered_at: datetime | None = None
    completed_at: datetime | None = None
    stopped_at: datetime | None = None
    stopped_reason: str | None = None
    signals: Signals = Field(default_factory=Signals)

    @model_validator(mode="after")
    def next_step_at_iff_active(self) -> Enrollment:
        """``next_step_at`` is set exactly when the enrollment is active."""
        is_active = self.status == EnrollmentStatus.ACTIVE
        if is_active != (self.next_step_at is not None):
            raise ValueError(
                f"next_step_at must be set iff status is active (status: {self.status})"
            )
        return self


class StepLog(BaseModel):
    """One attempted step execution for an enrollment."""

    model_config = ConfigDict(frozen=True)

    id: int
    enrollment_id: str
    step_id: str
    step_order: int
    channel: Channel
    outcome: StepOutcome
    message_id: str | None = None
    skipped_reason: str | None = None
    error_message: str | None = None
    created_at: datetime
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    failed_at: datetime | None = None
    replied_at: datetime | None = None


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


class EnrollResult(BaseModel):
    """Outcome of attempting to enroll one contact."""

    contact_id: str
    enrolled: bool
    enrollment_id: str | None = None
    skipped_reason: str | None = None


class EnrollSummary(BaseModel):
    """Counts for a bulk enrollment.  Partial success is the norm."""

    enrolled: int = 0
    skipped: int = 0
    results: list[EnrollResult] = Field(default_factory=list)


class AutoEnrollDetail(BaseModel):
    sequence_id: str
    sequence_name: str
    enrolled: bool
    reason: str | None = None


class AutoEnrollResult(BaseModel):
    """Outcome of a domain-event trigger across all matching sequences."""

    sequences_checked: int = 0
    enrolled: int = 0
    skipped: int = 0
    details: list[AutoEnrollDetail] = Field(default_factory=list)


class EnrollmentStats(BaseModel):
    active: int = 0
    completed: int = 0
    stopped: int = 0
    opted_out: int = 0
    total: int = 0


class SequenceDetail(BaseModel):
    """A sequence with its steps plus aggregate enrollment counts."""

    sequence: Sequence
    enrollment_stats: EnrollmentStats


class EnrollmentPage(BaseModel):
    enrollments: list[Enrollment]
    total: int
    page: int
    limit: int


class StepStats(BaseModel):
    """Per-step performance counts built from step logs."""

    step_id: str
    order: int
    channel: Channel
    subject: str | None = None
    body_preview: str
    sent: int = 0
    delivered: int = 0
    failed: int = 0
    skipped: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total(self) -> int:
        return self.sent + self.delivered + self.failed + self.skipped


class DeliveryReceipt(BaseModel):
    """Synchronous answer of the delivery gateway to a send request."""

    model_config = ConfigDict(frozen=True)

    accepted: bool
    message_id: str | None = None
    error: str | None = None


class SweepResult(BaseModel):
    """Counters for one pass of the scheduler over due enrollments."""

    claimed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    stopped: int = 0
    completed: int = 0
    opted_out: int = 0
    deferred: int = 0
    errors: int = 0
    batches: int = 0
