"""SQLite-backed enrollment store.

Every state-changing write is a single conditional ``UPDATE`` whose
``WHERE`` clause re-states the precondition (``status = 'active'``, and for
scheduler writes the caller's claim token).  A write that loses a race
simply matches zero rows; callers get ``False`` back and do nothing.

Claims are durable leases: ``claim()`` stamps a random token and an expiry
on a due enrollment, and only the holder of the token can advance,
complete, stop, or reschedule it.  Opt-out ignores claims on purpose, so an
opt-out always wins against an in-flight sweep.
"""

from __future__ import annotations

import sqlite3
import uuid
from datetime import datetime

import structlog

from sequencer.domain.errors import EnrollmentNotFoundError
from sequencer.domain.models import Enrollment, EnrollmentPage
from sequencer.domain.types import EnrollmentStatus
from sequencer.state.schema import Database
from sequencer.state.serializers import enrollment_from_row, format_ts

logger = structlog.get_logger()

_SIGNAL_COLUMNS = frozenset({"replied_at", "clicked_at"})


class EnrollmentStore:
    """Persist enrollments and apply their guarded state transitions."""

    def __init__(self, db: Database) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Creation and eligibility lookups
    # ------------------------------------------------------------------

    def create(
        self,
        sequence_id: str,
        contact_id: str,
        enrolled_at: datetime,
        next_step_at: datetime,
    ) -> Enrollment | None:
        """Insert an active enrollment at step 1.

        Returns:
            The new enrollment, or ``None`` if the contact already has an
            active enrollment in this sequence (the partial unique index
            rejected the insert).
        """
        enrollment_id = str(uuid.uuid4())
        try:
            self._db.execute(
                """
                INSERT INTO enrollments (
                    id, sequence_id, contact_id, status, current_step,
                    enrolled_at, next_step_at, updated_at
                ) VALUES (?, ?, ?, 'active', 1, ?, ?, ?)
                """,
                (
                    enrollment_id,
                    sequence_id,
                    contact_id,
                    format_ts(enrolled_at),
                    format_ts(next_step_at),
                    format_ts(enrolled_at),
                ),
            )
        except sqlite3.IntegrityError:
            return None
        return self.get(enrollment_id)

    def has_active(self, sequence_id: str, contact_id: str) -> bool:
        row = self._db.query_one(
            "SELECT 1 FROM enrollments "
            "WHERE sequence_id = ? AND contact_id = ? AND status = 'active'",
            (sequence_id, contact_id),
        )
        return row is not None

    def enrolled_since(self, sequence_id: str, contact_id: str, since: datetime) -> bool:
        """Return True if any enrollment (any status) started at or after *since*."""
        row = self._db.query_one(
            "SELECT 1 FROM enrollments "
            "WHERE sequence_id = ? AND contact_id = ? AND enrolled_at >= ? LIMIT 1",
            (sequence_id, contact_id, format_ts(since)),
        )
        return row is not None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find(self, enrollment_id: str) -> Enrollment | None:
        row = self._db.query_one("SELECT * FROM enrollments WHERE id = ?", (enrollment_id,))
        return enrollment_from_row(row) if row else None

    def get(self, enrollment_id: str) -> Enrollment:
        """Return one enrollment.

        Raises:
            EnrollmentNotFoundError: If the id is unknown.
        """
        enrollment = self.find(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFoundError(enrollment_id)
        return enrollment

    def list_for_sequence(
        self,
        sequence_id: str,
        status: EnrollmentStatus | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> EnrollmentPage:
        """Page through a sequence's enrollments, newest first."""
        where = "WHERE sequence_id = ?"
        params: list[object] = [sequence_id]
        if status is not None:
            where += " AND status = ?"
            params.append(status.value)

        total_row = self._db.query_one(f"SELECT COUNT(*) AS n FROM enrollments {where}", params)
        rows = self._db.query(
            f"SELECT * FROM enrollments {where} "
            "ORDER BY enrolled_at DESC, rowid DESC LIMIT ? OFFSET ?",
            [*params, limit, (page - 1) * limit],
        )
        return EnrollmentPage(
            enrollments=[enrollment_from_row(r) for r in rows],
            total=total_row["n"] if total_row else 0,
            page=page,
            limit=limit,
        )

    def list_for_contact(self, contact_id: str, limit: int = 20) -> list[Enrollment]:
        """Return a contact's most recent enrollments across sequences."""
        rows = self._db.query(
            "SELECT * FROM enrollments WHERE contact_id = ? "
            "ORDER BY enrolled_at DESC, rowid DESC LIMIT ?",
            (contact_id, limit),
        )
        return [enrollment_from_row(r) for r in rows]

    def active_ids_for_contact(self, contact_id: str) -> list[str]:
        rows = self._db.query(
            "SELECT id FROM enrollments WHERE contact_id = ? AND status = 'active'",
            (contact_id,),
        )
        return [r["id"] for r in rows]

    def due_ids(self, now: datetime, limit: int) -> list[str]:
        """Return ids of active enrollments due at *now* and not under a live claim.

        Enrollments of paused, draft, or archived sequences are left out so
        they do not crowd live work out of a batch.
        """
        now_ts = format_ts(now)
        rows = self._db.query(
            """
            SELECT e.id AS id FROM enrollments e
            JOIN sequences s ON s.id = e.sequence_id
            WHERE e.status = 'active'
              AND s.status = 'active'
              AND e.next_step_at <= ?
              AND (e.claim_expires_at IS NULL OR e.claim_expires_at < ?)
            ORDER BY e.next_step_at, e.rowid
            LIMIT ?
            """,
            (now_ts, now_ts, limit),
        )
        return [r["id"] for r in rows]

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    def claim(self, enrollment_id: str, now: datetime, lease_until: datetime) -> str | None:
        """Atomically claim a due enrollment.

        Compare-and-set on ``status``, ``next_step_at``, and the current
        lease: succeeds only if the enrollment is still active, still due,
        and not held by a live claim.

        Returns:
            The claim token, or ``None`` if another worker won (or the
            enrollment is no longer due).
        """
        token = uuid.uuid4().hex
        now_ts = format_ts(now)
        cursor = self._db.execute(
            """
            UPDATE enrollments
            SET claim_token = ?, claim_expires_at = ?
            WHERE id = ?
              AND status = 'active'
              AND next_step_at <= ?
              AND (claim_expires_at IS NULL OR claim_expires_at < ?)
            """,
            (token, format_ts(lease_until), enrollment_id, now_ts, now_ts),
        )
        return token if cursor.rowcount == 1 else None

    def holds_claim(self, enrollment_id: str, token: str) -> Enrollment | None:
        """Return the enrollment if it is still active and *token* still holds it."""
        row = self._db.query_one(
            "SELECT * FROM enrollments WHERE id = ? AND claim_token = ? AND status = 'active'",
            (enrollment_id, token),
        )
        return enrollment_from_row(row) if row else None

    def release(self, enrollment_id: str, token: str) -> bool:
        """Drop a claim without changing anything else."""
        cursor = self._db.execute(
            "UPDATE enrollments SET claim_token = NULL, claim_expires_at = NULL "
            "WHERE id = ? AND claim_token = ?",
            (enrollment_id, token),
        )
        return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Scheduler transitions (claim-guarded)
    # ------------------------------------------------------------------

    def reschedule(
        self, enrollment_id: str, token: str, next_step_at: datetime, now: datetime
    ) -> bool:
        """Move ``next_step_at`` without touching the step (send-window deferral)."""
        cursor = self._db.execute(
            """
            UPDATE enrollments
            SET next_step_at = ?, claim_token = NULL, claim_expires_at = NULL, updated_at = ?
            WHERE id = ? AND claim_token = ? AND status = 'active'
            """,
            (format_ts(next_step_at), format_ts(now), enrollment_id, token),
        )
        return cursor.rowcount == 1

    def advance(
        self,
        enrollment_id: str,
        token: str,
        next_step: int,
        next_step_at: datetime,
        now: datetime,
    ) -> bool:
        """Move to *next_step*, due at *next_step_at*, and release the claim."""
        cursor = self._db.execute(
            """
            UPDATE enrollments
            SET current_step = ?, step_entered_at = ?, next_step_at = ?,
                claim_token = NULL, claim_expires_at = NULL, updated_at = ?
            WHERE id = ? AND claim_token = ? AND status = 'active'
            """,
            (
                next_step,
                format_ts(now),
                format_ts(next_step_at),
                format_ts(now),
                enrollment_id,
                token,
            ),
        )
        return cursor.rowcount == 1

    def complete(self, enrollment_id: str, token: str, now: datetime) -> bool:
        """Finish the enrollment, keeping ``current_step`` at the last step run."""
        cursor = self._db.execute(
            """
            UPDATE enrollments
            SET status = 'completed', completed_at = ?, next_step_at = NULL,
                claim_token = NULL, claim_expires_at = NULL, updated_at = ?
            WHERE id = ? AND claim_token = ? AND status = 'active'
            """,
            (format_ts(now), format_ts(now), enrollment_id, token),
        )
        return cursor.rowcount == 1

    def stop(
        self,
        enrollment_id: str,
        now: datetime,
        reason: str,
        token: str | None = None,
    ) -> bool:
        """Stop an active enrollment.

        With a *token* the write is claim-guarded (scheduler); without one it
        applies to any active enrollment (manual stop).
        """
        sql = """
            UPDATE enrollments
            SET status = 'stopped', stopped_at = ?, stopped_reason = ?, next_step_at = NULL,
                claim_token = NULL, claim_expires_at = NULL, updated_at = ?
            WHERE id = ? AND status = 'active'
        """
        params: list[object] = [format_ts(now), reason, format_ts(now), enrollment_id]
        if token is not None:
            sql += " AND claim_token = ?"
            params.append(token)
        cursor = self._db.execute(sql, params)
        return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Signal-driven transitions (unguarded by claims)
    # ------------------------------------------------------------------

    def opt_out(self, enrollment_id: str, now: datetime, reason: str) -> bool:
        """Force an active enrollment to ``opted_out`` regardless of any claim."""
        cursor = self._db.execute(
            """
            UPDATE enrollments
            SET status = 'opted_out', stopped_at = ?, stopped_reason = ?, opted_out_at = ?,
                next_step_at = NULL, claim_token = NULL, claim_expires_at = NULL, updated_at = ?
            WHERE id = ? AND status = 'active'
            """,
            (format_ts(now), reason, format_ts(now), format_ts(now), enrollment_id),
        )
        if cursor.rowcount == 1:
            logger.info("enrollment_opted_out", enrollment_id=enrollment_id, reason=reason)
            return True
        return False

    def record_signal(self, enrollment_id: str, column: str, at: datetime) -> bool:
        """Stamp ``replied_at`` or ``clicked_at``; the first occurrence wins.

        Raises:
            ValueError: If *column* is not a signal column.
        """
        if column not in _SIGNAL_COLUMNS:
            raise ValueError(f"Unknown signal column: {column}")
        cursor = self._db.execute(
            f"UPDATE enrollments SET {column} = ?, updated_at = ? "
            f"WHERE id = ? AND {column} IS NULL",
            (format_ts(at), format_ts(at), enrollment_id),
        )
        return cursor.rowcount == 1
