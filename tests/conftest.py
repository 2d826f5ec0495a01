"""Shared pytest fixtures for the sequencer test suite."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta

import pytest
import structlog

from sequencer.domain.models import Contact, DeliveryReceipt, Sequence, SequenceDraft, StepDraft
from sequencer.domain.types import Channel
from sequencer.state.contact_store import ContactStore
from sequencer.state.enrollment_store import EnrollmentStore
from sequencer.state.schema import Database, init_db
from sequencer.state.sequence_store import SequenceStore
from sequencer.state.step_log_store import StepLogStore

T0 = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)
WORKSPACE_ID = "ws-1"


class FakeClock:
    """A settable clock.  Call it to read the time, ``advance()`` to move it."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeGateway:
    """Records every send; accepts by default."""

    def __init__(self, accept: bool = True, error: str | None = None) -> None:
        self.accept = accept
        self.error = error
        self.sent: list[dict] = []

    def send(
        self,
        channel: Channel,
        contact: Contact,
        body: str,
        subject: str | None,
        idempotency_key: str,
    ) -> DeliveryReceipt:
        self.sent.append(
            {
                "channel": channel,
                "contact_id": contact.id,
                "body": body,
                "subject": subject,
                "idempotency_key": idempotency_key,
            }
        )
        if self.accept:
            return DeliveryReceipt(accepted=True, message_id=f"msg-{len(self.sent)}")
        return DeliveryReceipt(accepted=False, error=self.error or "rejected")


@pytest.fixture(autouse=True)
def _reset_structlog_config() -> Iterator[None]:
    """Reset structlog so a logger bound to one test's captured stream doesn't leak."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db() -> Iterator[Database]:
    """In-memory database with the full schema."""
    database = init_db(":memory:")
    yield database
    database.close()


@pytest.fixture
def sequence_store(db: Database, clock: FakeClock) -> SequenceStore:
    return SequenceStore(db, clock=clock)


@pytest.fixture
def enrollment_store(db: Database) -> EnrollmentStore:
    return EnrollmentStore(db)


@pytest.fixture
def step_log_store(db: Database) -> StepLogStore:
    return StepLogStore(db)


@pytest.fixture
def contact_store(db: Database, clock: FakeClock) -> ContactStore:
    return ContactStore(db, clock=clock)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def make_contact():
    """Factory for reachable contacts in the default workspace."""

    def _make(contact_id: str = "c-1", **overrides) -> Contact:
        fields = {
            "id": contact_id,
            "workspace_id": WORKSPACE_ID,
            "first_name": "Ana",
            "last_name": "Silva",
            "phone": "+15550001111",
            "email": f"{contact_id}@example.com",
        }
        fields.update(overrides)
        return Contact(**fields)

    return _make


@pytest.fixture
def make_sequence(sequence_store: SequenceStore):
    """Factory for sequences; one immediate SMS step and active by default."""

    def _make(
        steps: list[StepDraft] | None = None,
        *,
        activate: bool = True,
        **draft_fields,
    ) -> Sequence:
        fields = {"workspace_id": WORKSPACE_ID, "name": "Welcome"}
        fields.update(draft_fields)
        sequence = sequence_store.create_sequence(SequenceDraft(**fields))
        if steps is None:
            steps = [StepDraft(body="Hi {first_name}", delay_minutes=0)]
        for step in steps:
            sequence_store.add_step(sequence.id, step)
        if activate:
            sequence_store.activate(sequence.id)
        return sequence_store.get_sequence(sequence.id)

    return _make
