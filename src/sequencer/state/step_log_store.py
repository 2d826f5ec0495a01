"""Append-only record of step executions, plus delivery-status updates.

The scheduler appends one row per attempted step.  Delivery callbacks may
only move a ``sent`` row to ``delivered`` or ``failed`` and stamp
``replied_at``; nothing in the engine reads these rows to make decisions.
"""

from __future__ import annotations

import re
from datetime import datetime

from sequencer.domain.models import Sequence, StepLog, StepStats
from sequencer.domain.types import Channel, StepOutcome
from sequencer.state.schema import Database
from sequencer.state.serializers import format_ts, step_log_from_row

_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")

BODY_PREVIEW_LENGTH = 80


def body_preview(body: str) -> str:
    """Plain-text preview of a message body (HTML tags removed)."""
    text = _SPACE_RE.sub(" ", _TAG_RE.sub(" ", body)).strip()
    return text[:BODY_PREVIEW_LENGTH]


class StepLogStore:
    """Write and aggregate ``step_logs`` rows."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def append(
        self,
        enrollment_id: str,
        step_id: str,
        step_order: int,
        channel: Channel,
        outcome: StepOutcome,
        now: datetime,
        *,
        message_id: str | None = None,
        skipped_reason: str | None = None,
        error_message: str | None = None,
    ) -> int:
        """Insert a log row and return its id.

        Call inside the same transaction as the enrollment transition it
        records.
        """
        cursor = self._db.execute(
            """
            INSERT INTO step_logs (
                enrollment_id, step_id, step_order, channel, outcome,
                message_id, skipped_reason, error_message,
                created_at, sent_at, failed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                enrollment_id,
                step_id,
                step_order,
                channel.value,
                outcome.value,
                message_id,
                skipped_reason,
                error_message,
                format_ts(now),
                format_ts(now) if outcome == StepOutcome.SENT else None,
                format_ts(now) if outcome == StepOutcome.FAILED else None,
            ),
        )
        row_id: int = cursor.lastrowid  # type: ignore[assignment]
        return row_id

    def for_enrollment(self, enrollment_id: str) -> list[StepLog]:
        rows = self._db.query(
            "SELECT * FROM step_logs WHERE enrollment_id = ? ORDER BY id",
            (enrollment_id,),
        )
        return [step_log_from_row(r) for r in rows]

    def mark_delivery(
        self,
        enrollment_id: str,
        step_order: int,
        outcome: StepOutcome,
        at: datetime,
    ) -> int:
        """Move the ``sent`` row for (enrollment, step) to delivered or failed.

        Returns:
            Number of rows updated (0 if the row was already final).

        Raises:
            ValueError: If *outcome* is not ``delivered`` or ``failed``.
        """
        if outcome == StepOutcome.DELIVERED:
            column = "delivered_at"
        elif outcome == StepOutcome.FAILED:
            column = "failed_at"
        else:
            raise ValueError(f"Delivery callbacks cannot set outcome {outcome}")

        cursor = self._db.execute(
            f"""
            UPDATE step_logs SET outcome = ?, {column} = ?
            WHERE enrollment_id = ? AND step_order = ? AND outcome = 'sent'
            """,
            (outcome.value, format_ts(at), enrollment_id, step_order),
        )
        return cursor.rowcount

    def mark_replied(self, enrollment_id: str, at: datetime, step_order: int | None = None) -> int:
        """Stamp ``replied_at`` on sent/delivered rows not already marked."""
        sql = (
            "UPDATE step_logs SET replied_at = ? "
            "WHERE enrollment_id = ? AND outcome IN ('sent', 'delivered') AND replied_at IS NULL"
        )
        params: list[object] = [format_ts(at), enrollment_id]
        if step_order is not None:
            sql += " AND step_order = ?"
            params.append(step_order)
        cursor = self._db.execute(sql, params)
        return cursor.rowcount

    def step_stats(self, sequence: Sequence) -> list[StepStats]:
        """Count outcomes per step of *sequence*, in step order."""
        rows = self._db.query(
            """
            SELECT l.step_id AS step_id, l.outcome AS outcome, COUNT(*) AS n
            FROM step_logs l
            JOIN steps s ON s.id = l.step_id
            WHERE s.sequence_id = ?
            GROUP BY l.step_id, l.outcome
            """,
            (sequence.id,),
        )
        counts: dict[str, dict[str, int]] = {}
        for row in rows:
            counts.setdefault(row["step_id"], {})[row["outcome"]] = row["n"]

        stats: list[StepStats] = []
        for step in sorted(sequence.steps, key=lambda s: s.order):
            by_outcome = counts.get(step.id, {})
            stats.append(
                StepStats(
                    step_id=step.id,
                    order=step.order,
                    channel=step.channel,
                    subject=step.subject,
                    body_preview=body_preview(step.body),
                    sent=by_outcome.get(StepOutcome.SENT, 0),
                    delivered=by_outcome.get(StepOutcome.DELIVERED, 0),
                    failed=by_outcome.get(StepOutcome.FAILED, 0),
                    skipped=by_outcome.get(StepOutcome.SKIPPED, 0),
                )
            )
        return stats
