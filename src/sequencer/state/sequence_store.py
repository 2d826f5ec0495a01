"""SQLite-backed sequence definition store.

CRUD over sequences and their steps.  Beyond plain CRUD the store keeps step
``order`` values a contiguous ``1..N`` run through every add, delete, and
reorder, refuses to activate a sequence without steps, and refuses structural
step edits while a sequence is active (callers must pause first).
"""

from __future__ import annotations

import sqlite3
import uuid

import structlog

from sequencer.clock import Clock, utc_now
from sequencer.domain.errors import (
    SequenceNotFoundError,
    SequenceValidationError,
    StepNotFoundError,
)
from sequencer.domain.models import (
    EnrollmentStats,
    Sequence,
    SequenceDetail,
    SequenceDraft,
    SequenceUpdate,
    Step,
    StepDraft,
    StepUpdate,
    trigger_value,
)
from sequencer.domain.types import (
    EDITABLE_SEQUENCE_STATUSES,
    MAX_STEPS_PER_SEQUENCE,
    SequenceStatus,
    TriggerType,
)
from sequencer.state.schema import Database
from sequencer.state.serializers import (
    dump_audience,
    dump_condition,
    dump_send_window,
    dump_trigger,
    format_ts,
    load_audience,
    load_trigger,
    parse_ts,
    step_from_row,
)
from sequencer.state_machine import SequenceEvent, next_sequence_status

logger = structlog.get_logger()


class SequenceStore:
    """Persist and retrieve sequence definitions with their ordered steps."""

    def __init__(self, db: Database, clock: Clock = utc_now) -> None:
        self._db = db
        self._clock = clock

    # ------------------------------------------------------------------
    # Sequences
    # ------------------------------------------------------------------

    def create_sequence(self, draft: SequenceDraft) -> Sequence:
        """Create a new sequence in ``draft`` status."""
        sequence_id = str(uuid.uuid4())
        now = format_ts(self._clock())
        self._db.execute(
            """
            INSERT INTO sequences (
                id, workspace_id, name, description, status, trigger_type,
                trigger_value, trigger_json, audience_json, frequency_cap_days,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                sequence_id,
                draft.workspace_id,
                draft.name,
                draft.description,
                SequenceStatus.DRAFT.value,
                draft.trigger.type,
                trigger_value(draft.trigger),
                dump_trigger(draft.trigger),
                dump_audience(draft.audience),
                draft.frequency_cap_days,
                now,
                now,
            ),
        )
        logger.info("sequence_created", sequence_id=sequence_id, workspace_id=draft.workspace_id)
        return self.get_sequence(sequence_id)

    def find_sequence(self, sequence_id: str) -> Sequence | None:
        """Return the sequence with its steps, or ``None`` if unknown."""
        row = self._db.query_one("SELECT * FROM sequences WHERE id = ?", (sequence_id,))
        if row is None:
            return None
        return self._to_sequence(row)

    def get_sequence(self, sequence_id: str) -> Sequence:
        """Return the sequence with its steps.

        Raises:
            SequenceNotFoundError: If the id is unknown.
        """
        sequence = self.find_sequence(sequence_id)
        if sequence is None:
            raise SequenceNotFoundError(sequence_id)
        return sequence

    def get_sequence_detail(self, sequence_id: str) -> SequenceDetail:
        """Return the sequence, its steps, and enrollment counts by status."""
        sequence = self.get_sequence(sequence_id)
        rows = self._db.query(
            "SELECT status, COUNT(*) AS n FROM enrollments WHERE sequence_id = ? GROUP BY status",
            (sequence_id,),
        )
        counts = {row["status"]: row["n"] for row in rows}
        stats = EnrollmentStats(
            active=counts.get("active", 0),
            completed=counts.get("completed", 0),
            stopped=counts.get("stopped", 0),
            opted_out=counts.get("opted_out", 0),
            total=sum(counts.values()),
        )
        return SequenceDetail(sequence=sequence, enrollment_stats=stats)

    def list_sequences(
        self,
        workspace_id: str | None = None,
        status: SequenceStatus | None = None,
    ) -> list[Sequence]:
        """List sequences, newest first, optionally filtered."""
        conditions: list[str] = []
        params: list[str] = []
        if workspace_id is not None:
            conditions.append("workspace_id = ?")
            params.append(workspace_id)
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)

        rows = self._db.query(
            f"SELECT * FROM sequences {where_clause} ORDER BY created_at DESC, rowid DESC",
            params,
        )
        return [self._to_sequence(row) for row in rows]

    def list_active_by_trigger(
        self,
        workspace_id: str,
        trigger_type: TriggerType,
        value: str | None = None,
    ) -> list[Sequence]:
        """Return active sequences of a workspace bound to a trigger.

        Keyword and stage values are compared case-insensitively after
        trimming.  Archived, paused, and draft sequences never match.
        """
        sql = (
            "SELECT * FROM sequences WHERE workspace_id = ? AND status = ? AND trigger_type = ?"
        )
        params: list[str] = [workspace_id, SequenceStatus.ACTIVE.value, trigger_type.value]
        if trigger_type in (TriggerType.KEYWORD_JOIN, TriggerType.STAGE_CHANGE):
            if not value or not value.strip():
                return []
            sql += " AND lower(trigger_value) = lower(?)"
            params.append(value.strip())
        rows = self._db.query(sql + " ORDER BY created_at, rowid", params)
        return [self._to_sequence(row) for row in rows]

    def update_sequence(self, sequence_id: str, update: SequenceUpdate) -> Sequence:
        """Apply the explicitly set fields of *update*.

        Name and description can change in any non-archived status.
        Trigger, audience, and frequency cap shape who gets enrolled and can
        only change while the sequence is draft or paused.

        Raises:
            SequenceValidationError: If the change is not allowed in the
                sequence's current status.
        """
        sequence = self.get_sequence(sequence_id)
        fields = update.model_fields_set

        if sequence.status == SequenceStatus.ARCHIVED:
            raise SequenceValidationError("Archived sequences cannot be edited")

        enrollment_fields = {"trigger", "audience", "frequency_cap_days"} & fields
        if enrollment_fields and sequence.status not in EDITABLE_SEQUENCE_STATUSES:
            raise SequenceValidationError(
                "Pause the sequence before changing audience, trigger, or frequency cap settings"
            )

        assignments: list[str] = []
        params: list[object] = []
        if "name" in fields:
            if update.name is None or not update.name.strip():
                raise SequenceValidationError("name must not be empty")
            assignments.append("name = ?")
            params.append(update.name.strip())
        if "description" in fields:
            assignments.append("description = ?")
            params.append(update.description)
        if "trigger" in fields and update.trigger is not None:
            assignments.extend(["trigger_type = ?", "trigger_value = ?", "trigger_json = ?"])
            params.extend(
                [update.trigger.type, trigger_value(update.trigger), dump_trigger(update.trigger)]
            )
        if "audience" in fields and update.audience is not None:
            assignments.append("audience_json = ?")
            params.append(dump_audience(update.audience))
        if "frequency_cap_days" in fields:
            assignments.append("frequency_cap_days = ?")
            params.append(update.frequency_cap_days)

        if not assignments:
            return sequence

        assignments.append("updated_at = ?")
        params.append(format_ts(self._clock()))
        params.append(sequence_id)
        self._db.execute(
            f"UPDATE sequences SET {', '.join(assignments)} WHERE id = ?",
            params,
        )
        return self.get_sequence(sequence_id)

    def delete_sequence(self, sequence_id: str) -> None:
        """Delete a sequence with its steps, enrollments, and logs.

        Raises:
            SequenceValidationError: If the sequence is active.
        """
        sequence = self.get_sequence(sequence_id)
        if sequence.status == SequenceStatus.ACTIVE:
            raise SequenceValidationError("Pause or archive the sequence before deleting")
        self._db.execute("DELETE FROM sequences WHERE id = ?", (sequence_id,))
        logger.info("sequence_deleted", sequence_id=sequence_id)

    def activate(self, sequence_id: str) -> Sequence:
        """Move a draft or paused sequence to ``active``.

        Raises:
            SequenceValidationError: If the sequence has no steps.
            InvalidTransitionError: If the sequence is already active or archived.
        """
        sequence = self.get_sequence(sequence_id)
        new_status = next_sequence_status(sequence.status, SequenceEvent.ACTIVATE)
        if not sequence.steps:
            raise SequenceValidationError("Add at least one step before activating")
        return self._set_status(sequence, new_status)

    def pause(self, sequence_id: str) -> Sequence:
        """Move an active sequence to ``paused``.  Enrollments stop progressing."""
        sequence = self.get_sequence(sequence_id)
        status = next_sequence_status(sequence.status, SequenceEvent.PAUSE)
        return self._set_status(sequence, status)

    def archive(self, sequence_id: str) -> Sequence:
        """Archive a sequence.  Archived sequences match no triggers, ever."""
        sequence = self.get_sequence(sequence_id)
        return self._set_status(
            sequence, next_sequence_status(sequence.status, SequenceEvent.ARCHIVE)
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def add_step(self, sequence_id: str, draft: StepDraft) -> Step:
        """Append a step at ``order = N + 1``.

        Raises:
            SequenceValidationError: If the sequence is active or archived,
                or already has the maximum number of steps.
        """
        step_id = str(uuid.uuid4())
        now = format_ts(self._clock())
        with self._db.transaction() as conn:
            sequence = self._require_editable(sequence_id, "Pause the sequence before adding steps")
            if len(sequence.steps) >= MAX_STEPS_PER_SEQUENCE:
                raise SequenceValidationError(
                    f"Maximum {MAX_STEPS_PER_SEQUENCE} steps per sequence"
                )
            conn.execute(
                """
                INSERT INTO steps (
                    id, sequence_id, step_order, channel, subject, body,
                    delay_minutes, condition_json, send_window_json,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    step_id,
                    sequence_id,
                    len(sequence.steps) + 1,
                    draft.channel.value,
                    draft.subject,
                    draft.body,
                    draft.delay_minutes,
                    dump_condition(draft.condition),
                    dump_send_window(draft.send_window),
                    now,
                    now,
                ),
            )
            self._touch(conn, sequence_id)
        return self.get_step(step_id)

    def get_step(self, step_id: str) -> Step:
        """Return one step.

        Raises:
            StepNotFoundError: If the id is unknown.
        """
        row = self._db.query_one("SELECT * FROM steps WHERE id = ?", (step_id,))
        if row is None:
            raise StepNotFoundError(step_id)
        return step_from_row(row)

    def update_step(self, step_id: str, update: StepUpdate) -> Step:
        """Apply the explicitly set fields of *update* to a step.

        The merged step is re-validated as a whole, so switching a step to
        email without a subject fails.

        Raises:
            SequenceValidationError: If the sequence is active, or the
                merged step is invalid.
        """
        step = self.get_step(step_id)
        merged = {
            "channel": step.channel,
            "subject": step.subject,
            "body": step.body,
            "delay_minutes": step.delay_minutes,
            "condition": step.condition,
            "send_window": step.send_window,
        }
        for field in update.model_fields_set:
            merged[field] = getattr(update, field)
        if merged["condition"] is None:
            merged.pop("condition")

        try:
            draft = StepDraft.model_validate(merged)
        except ValueError as exc:
            raise SequenceValidationError(str(exc)) from exc

        with self._db.transaction() as conn:
            self._require_editable(step.sequence_id, "Pause the sequence before editing steps")
            conn.execute(
                """
                UPDATE steps SET
                    channel = ?, subject = ?, body = ?, delay_minutes = ?,
                    condition_json = ?, send_window_json = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    draft.channel.value,
                    draft.subject,
                    draft.body,
                    draft.delay_minutes,
                    dump_condition(draft.condition),
                    dump_send_window(draft.send_window),
                    format_ts(self._clock()),
                    step_id,
                ),
            )
            self._touch(conn, step.sequence_id)
        return self.get_step(step_id)

    def delete_step(self, step_id: str) -> None:
        """Delete a step and close the gap so orders stay ``1..N``.

        Raises:
            SequenceValidationError: If the sequence is active.
        """
        step = self.get_step(step_id)
        with self._db.transaction() as conn:
            sequence = self._require_editable(
                step.sequence_id, "Pause the sequence before deleting steps"
            )
            conn.execute("DELETE FROM steps WHERE id = ?", (step_id,))
            remaining = [s.id for s in sequence.steps if s.id != step_id]
            self._renumber(conn, step.sequence_id, remaining)
            self._touch(conn, step.sequence_id)
        logger.info("step_deleted", sequence_id=step.sequence_id, step_id=step_id)

    def reorder_steps(self, sequence_id: str, step_ids: list[str]) -> list[Step]:
        """Reorder steps so that ``step_ids[i]`` gets ``order = i + 1``.

        Raises:
            SequenceValidationError: If the sequence is active, or *step_ids*
                is not exactly a permutation of the sequence's steps.
        """
        with self._db.transaction() as conn:
            sequence = self._require_editable(
                sequence_id, "Pause the sequence before reordering steps"
            )
            current_ids = {s.id for s in sequence.steps}
            if len(step_ids) != len(set(step_ids)) or set(step_ids) != current_ids:
                raise SequenceValidationError(
                    "step_ids must list every step of the sequence exactly once"
                )
            self._renumber(conn, sequence_id, step_ids)
            self._touch(conn, sequence_id)
        return self.get_sequence(sequence_id).steps

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _to_sequence(self, row: sqlite3.Row) -> Sequence:
        step_rows = self._db.query(
            "SELECT * FROM steps WHERE sequence_id = ? ORDER BY step_order",
            (row["id"],),
        )
        return Sequence(
            id=row["id"],
            workspace_id=row["workspace_id"],
            name=row["name"],
            description=row["description"],
            status=row["status"],
            trigger=load_trigger(row["trigger_json"]),
            audience=load_audience(row["audience_json"]),
            frequency_cap_days=row["frequency_cap_days"],
            steps=[step_from_row(r) for r in step_rows],
            created_at=parse_ts(row["created_at"]),
            updated_at=parse_ts(row["updated_at"]),
        )

    def _require_editable(self, sequence_id: str, message: str) -> Sequence:
        sequence = self.get_sequence(sequence_id)
        if sequence.status not in EDITABLE_SEQUENCE_STATUSES:
            raise SequenceValidationError(message)
        return sequence

    def _set_status(self, sequence: Sequence, status: SequenceStatus) -> Sequence:
        self._db.execute(
            "UPDATE sequences SET status = ?, updated_at = ? WHERE id = ?",
            (status.value, format_ts(self._clock()), sequence.id),
        )
        logger.info(
            "sequence_status_changed",
            sequence_id=sequence.id,
            from_status=sequence.status.value,
            to_status=status.value,
        )
        return self.get_sequence(sequence.id)

    def _touch(self, conn: sqlite3.Connection, sequence_id: str) -> None:
        conn.execute(
            "UPDATE sequences SET updated_at = ? WHERE id = ?",
            (format_ts(self._clock()), sequence_id),
        )

    @staticmethod
    def _renumber(conn: sqlite3.Connection, sequence_id: str, ordered_ids: list[str]) -> None:
        # Park every row on a negative order first so the unique
        # (sequence_id, step_order) index never sees a transient collision.
        for index, step_id in enumerate(ordered_ids, start=1):
            conn.execute(
                "UPDATE steps SET step_order = ? WHERE id = ? AND sequence_id = ?",
                (-index, step_id, sequence_id),
            )
        conn.execute(
            "UPDATE steps SET step_order = -step_order WHERE sequence_id = ? AND step_order < 0",
            (sequence_id,),
        )
