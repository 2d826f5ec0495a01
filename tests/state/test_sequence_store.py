"""Tests for SequenceStore: sequence CRUD, lifecycle, and step ordering.

Uses an in-memory SQLite database for isolation and speed.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from sequencer.domain.errors import (
    InvalidTransitionError,
    SequenceNotFoundError,
    SequenceValidationError,
    StepNotFoundError,
)
from sequencer.domain.models import (
    KeywordJoinTrigger,
    SequenceDraft,
    SequenceUpdate,
    StageAudience,
    StageChangeTrigger,
    StepDraft,
    StepUpdate,
)
from sequencer.domain.types import Channel, SequenceStatus, TriggerType
from sequencer.state.sequence_store import SequenceStore


def _draft(**overrides) -> SequenceDraft:
    fields = {"workspace_id": "ws-1", "name": "Welcome"}
    fields.update(overrides)
    return SequenceDraft(**fields)


def _orders_and_bodies(store: SequenceStore, sequence_id: str) -> list[tuple[int, str]]:
    return [(s.order, s.body) for s in store.get_sequence(sequence_id).steps]


class TestCreateAndRead:
    def test_create_starts_as_draft(self, sequence_store: SequenceStore) -> None:
        sequence = sequence_store.create_sequence(_draft(description="hello"))
        assert sequence.status == SequenceStatus.DRAFT
        assert sequence.description == "hello"
        assert sequence.steps == []
        assert sequence.created_at == sequence.updated_at

    def test_get_unknown_raises(self, sequence_store: SequenceStore) -> None:
        with pytest.raises(SequenceNotFoundError):
            sequence_store.get_sequence("missing")
        assert sequence_store.find_sequence("missing") is None

    def test_list_filters_and_orders_newest_first(
        self, sequence_store: SequenceStore, clock
    ) -> None:
        first = sequence_store.create_sequence(_draft(name="First"))
        clock.advance(minutes=1)
        second = sequence_store.create_sequence(_draft(name="Second"))
        sequence_store.create_sequence(_draft(name="Other", workspace_id="ws-2"))

        listed = sequence_store.list_sequences("ws-1")
        assert [s.id for s in listed] == [second.id, first.id]
        assert sequence_store.list_sequences("ws-1", SequenceStatus.ACTIVE) == []
        assert len(sequence_store.list_sequences()) == 3

    def test_detail_counts_enrollments(
        self, sequence_store: SequenceStore, enrollment_store, clock, make_sequence
    ) -> None:
        sequence = make_sequence()
        enrollment_store.create(sequence.id, "c-1", clock.now, clock.now)
        second = enrollment_store.create(sequence.id, "c-2", clock.now, clock.now)
        assert second is not None
        enrollment_store.stop(second.id, clock.now, "manual")

        detail = sequence_store.get_sequence_detail(sequence.id)
        assert detail.sequence.id == sequence.id
        assert detail.enrollment_stats.active == 1
        assert detail.enrollment_stats.stopped == 1
        assert detail.enrollment_stats.total == 2


class TestActiveByTrigger:
    def test_keyword_match_is_case_insensitive(
        self, sequence_store: SequenceStore, make_sequence
    ) -> None:
        sequence = make_sequence(trigger=KeywordJoinTrigger(keyword="Join"))
        found = sequence_store.list_active_by_trigger("ws-1", TriggerType.KEYWORD_JOIN, " JOIN ")
        assert [s.id for s in found] == [sequence.id]

    def test_empty_value_matches_nothing(
        self, sequence_store: SequenceStore, make_sequence
    ) -> None:
        make_sequence(trigger=StageChangeTrigger(stage="Lead"))
        assert sequence_store.list_active_by_trigger("ws-1", TriggerType.STAGE_CHANGE, "") == []

    def test_only_active_sequences_match(
        self, sequence_store: SequenceStore, make_sequence
    ) -> None:
        draft = make_sequence(trigger=KeywordJoinTrigger(keyword="JOIN"), activate=False)
        paused = make_sequence(trigger=KeywordJoinTrigger(keyword="JOIN"))
        sequence_store.pause(paused.id)
        archived = make_sequence(trigger=KeywordJoinTrigger(keyword="JOIN"))
        sequence_store.archive(archived.id)

        found = sequence_store.list_active_by_trigger("ws-1", TriggerType.KEYWORD_JOIN, "JOIN")
        assert found == []
        assert draft.status == SequenceStatus.DRAFT

    def test_other_workspace_never_matches(
        self, sequence_store: SequenceStore, make_sequence
    ) -> None:
        make_sequence(trigger={"type": "contact_created"})
        assert sequence_store.list_active_by_trigger("ws-2", TriggerType.CONTACT_CREATED) == []


class TestUpdateSequence:
    def test_rename_while_active(self, sequence_store: SequenceStore, make_sequence) -> None:
        sequence = make_sequence()
        updated = sequence_store.update_sequence(sequence.id, SequenceUpdate(name=" Renamed "))
        assert updated.name == "Renamed"

    def test_audience_change_requires_pause(
        self, sequence_store: SequenceStore, make_sequence
    ) -> None:
        sequence = make_sequence()
        update = SequenceUpdate(audience=StageAudience(stage="Lead"))
        with pytest.raises(SequenceValidationError, match="Pause"):
            sequence_store.update_sequence(sequence.id, update)

        sequence_store.pause(sequence.id)
        updated = sequence_store.update_sequence(sequence.id, update)
        assert updated.audience == StageAudience(stage="Lead")

    def test_trigger_change_updates_lookup(
        self, sequence_store: SequenceStore, make_sequence
    ) -> None:
        sequence = make_sequence(activate=False)
        sequence_store.update_sequence(
            sequence.id, SequenceUpdate(trigger=KeywordJoinTrigger(keyword="PROMO"))
        )
        sequence_store.activate(sequence.id)
        found = sequence_store.list_active_by_trigger("ws-1", TriggerType.KEYWORD_JOIN, "promo")
        assert [s.id for s in found] == [sequence.id]

    def test_clear_frequency_cap(self, sequence_store: SequenceStore) -> None:
        sequence = sequence_store.create_sequence(_draft(frequency_cap_days=7))
        updated = sequence_store.update_sequence(
            sequence.id, SequenceUpdate(frequency_cap_days=None)
        )
        assert updated.frequency_cap_days is None

    def test_archived_cannot_be_edited(
        self, sequence_store: SequenceStore, make_sequence
    ) -> None:
        sequence = make_sequence()
        sequence_store.archive(sequence.id)
        with pytest.raises(SequenceValidationError, match="Archived"):
            sequence_store.update_sequence(sequence.id, SequenceUpdate(name="New"))

    def test_empty_update_is_noop(self, sequence_store: SequenceStore, clock) -> None:
        sequence = sequence_store.create_sequence(_draft())
        clock.advance(minutes=5)
        assert sequence_store.update_sequence(sequence.id, SequenceUpdate()) == sequence


class TestLifecycle:
    def test_activate_without_steps_rejected(self, sequence_store: SequenceStore) -> None:
        sequence = sequence_store.create_sequence(_draft())
        with pytest.raises(SequenceValidationError, match="at least one step"):
            sequence_store.activate(sequence.id)

    def test_pause_and_resume(self, sequence_store: SequenceStore, make_sequence) -> None:
        sequence = make_sequence()
        assert sequence_store.pause(sequence.id).status == SequenceStatus.PAUSED
        assert sequence_store.activate(sequence.id).status == SequenceStatus.ACTIVE

    def test_pause_draft_rejected(self, sequence_store: SequenceStore) -> None:
        sequence = sequence_store.create_sequence(_draft())
        with pytest.raises(InvalidTransitionError):
            sequence_store.pause(sequence.id)

    def test_archived_cannot_be_reactivated(
        self, sequence_store: SequenceStore, make_sequence
    ) -> None:
        sequence = make_sequence()
        sequence_store.archive(sequence.id)
        with pytest.raises(InvalidTransitionError):
            sequence_store.activate(sequence.id)

    def test_delete_active_rejected(self, sequence_store: SequenceStore, make_sequence) -> None:
        sequence = make_sequence()
        with pytest.raises(SequenceValidationError):
            sequence_store.delete_sequence(sequence.id)

    def test_delete_cascades(
        self, sequence_store: SequenceStore, enrollment_store, clock, make_sequence
    ) -> None:
        sequence = make_sequence()
        enrollment = enrollment_store.create(sequence.id, "c-1", clock.now, clock.now)
        assert enrollment is not None
        sequence_store.pause(sequence.id)
        sequence_store.delete_sequence(sequence.id)
        assert sequence_store.find_sequence(sequence.id) is None
        assert enrollment_store.find(enrollment.id) is None
        with pytest.raises(StepNotFoundError):
            sequence_store.get_step(sequence.steps[0].id)


class TestSteps:
    def test_add_appends_in_order(self, sequence_store: SequenceStore) -> None:
        sequence = sequence_store.create_sequence(_draft())
        for body in ("one", "two", "three"):
            sequence_store.add_step(sequence.id, StepDraft(body=body))
        assert _orders_and_bodies(sequence_store, sequence.id) == [
            (1, "one"),
            (2, "two"),
            (3, "three"),
        ]

    def test_add_to_active_rejected(self, sequence_store: SequenceStore, make_sequence) -> None:
        sequence = make_sequence()
        with pytest.raises(SequenceValidationError, match="Pause"):
            sequence_store.add_step(sequence.id, StepDraft(body="more"))

    def test_step_limit(self, sequence_store: SequenceStore) -> None:
        sequence = sequence_store.create_sequence(_draft())
        for i in range(20):
            sequence_store.add_step(sequence.id, StepDraft(body=f"step {i}"))
        with pytest.raises(SequenceValidationError, match="Maximum 20"):
            sequence_store.add_step(sequence.id, StepDraft(body="one too many"))

    def test_delete_closes_gap(self, sequence_store: SequenceStore) -> None:
        sequence = sequence_store.create_sequence(_draft())
        steps = [sequence_store.add_step(sequence.id, StepDraft(body=b)) for b in "abc"]
        sequence_store.delete_step(steps[1].id)
        assert _orders_and_bodies(sequence_store, sequence.id) == [(1, "a"), (2, "c")]

    def test_reorder(self, sequence_store: SequenceStore) -> None:
        sequence = sequence_store.create_sequence(_draft())
        a, b, c = (sequence_store.add_step(sequence.id, StepDraft(body=x)) for x in "abc")
        reordered = sequence_store.reorder_steps(sequence.id, [c.id, a.id, b.id])
        assert [(s.order, s.body) for s in reordered] == [(1, "c"), (2, "a"), (3, "b")]

    def test_repeated_reorders_keep_contiguous_orders(
        self, sequence_store: SequenceStore
    ) -> None:
        sequence = sequence_store.create_sequence(_draft())
        a, b, c, d = (sequence_store.add_step(sequence.id, StepDraft(body=x)) for x in "abcd")
        permutations = [[d, c, b, a], [b, d, a, c], [c, a, d, b]]

        for permutation in permutations:
            sequence_store.reorder_steps(sequence.id, [s.id for s in permutation])
            stored = sequence_store.get_sequence(sequence.id).steps
            assert [s.order for s in stored] == [1, 2, 3, 4]
            assert [s.id for s in stored] == [s.id for s in permutation]

    @pytest.mark.parametrize("mutation", ["missing", "duplicate", "foreign"])
    def test_reorder_requires_exact_permutation(
        self, sequence_store: SequenceStore, mutation: str
    ) -> None:
        sequence = sequence_store.create_sequence(_draft())
        a, b = (sequence_store.add_step(sequence.id, StepDraft(body=x)) for x in "ab")
        ids = {
            "missing": [a.id],
            "duplicate": [a.id, a.id, b.id],
            "foreign": [a.id, "other"],
        }[mutation]
        with pytest.raises(SequenceValidationError):
            sequence_store.reorder_steps(sequence.id, ids)
        assert _orders_and_bodies(sequence_store, sequence.id) == [(1, "a"), (2, "b")]

    def test_update_partial(self, sequence_store: SequenceStore) -> None:
        sequence = sequence_store.create_sequence(_draft())
        step = sequence_store.add_step(sequence.id, StepDraft(body="Hi", delay_minutes=60))
        updated = sequence_store.update_step(step.id, StepUpdate(delay_minutes=120))
        assert updated.delay_minutes == 120
        assert updated.body == "Hi"

    def test_update_to_email_without_subject_rejected(
        self, sequence_store: SequenceStore
    ) -> None:
        sequence = sequence_store.create_sequence(_draft())
        step = sequence_store.add_step(sequence.id, StepDraft(body="Hi"))
        with pytest.raises(SequenceValidationError, match="subject"):
            sequence_store.update_step(step.id, StepUpdate(channel=Channel.EMAIL))

    def test_update_touches_sequence(self, sequence_store: SequenceStore, clock) -> None:
        sequence = sequence_store.create_sequence(_draft())
        step = sequence_store.add_step(sequence.id, StepDraft(body="Hi"))
        clock.advance(hours=1)
        sequence_store.update_step(step.id, StepUpdate(body="Hello"))
        refreshed = sequence_store.get_sequence(sequence.id)
        assert refreshed.updated_at - sequence.created_at == timedelta(hours=1)
