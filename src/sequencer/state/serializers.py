"""Serialization helpers between domain models and SQLite columns.

Timestamps are stored as fixed-width UTC ISO 8601 strings with microseconds
(``2026-01-15T12:00:00.000000Z``) so that lexicographic order in SQL equals
chronological order.  Tagged unions (trigger, audience, condition, send
window) are stored as JSON produced by their pydantic models.
"""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime

from pydantic import TypeAdapter

from sequencer.domain.models import (
    Audience,
    Enrollment,
    SendWindow,
    Signals,
    Step,
    StepCondition,
    StepLog,
    Trigger,
)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_trigger_adapter: TypeAdapter[Trigger] = TypeAdapter(Trigger)
_audience_adapter: TypeAdapter[Audience] = TypeAdapter(Audience)
_condition_adapter: TypeAdapter[StepCondition] = TypeAdapter(StepCondition)


def format_ts(value: datetime | None) -> str | None:
    """Format an aware datetime as a UTC column value.

    Naive datetimes are taken to be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(_TS_FORMAT)


def parse_ts(value: str | None) -> datetime | None:
    """Parse a column value produced by :func:`format_ts`."""
    if value is None:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=UTC)


def dump_trigger(trigger: Trigger) -> str:
    return _trigger_adapter.dump_json(trigger).decode()


def load_trigger(raw: str) -> Trigger:
    return _trigger_adapter.validate_json(raw)


def dump_audience(audience: Audience) -> str:
    return _audience_adapter.dump_json(audience).decode()


def load_audience(raw: str) -> Audience:
    return _audience_adapter.validate_json(raw)


def dump_condition(condition: StepCondition) -> str:
    return _condition_adapter.dump_json(condition).decode()


def load_condition(raw: str) -> StepCondition:
    return _condition_adapter.validate_json(raw)


def dump_send_window(window: SendWindow | None) -> str | None:
    if window is None:
        return None
    return window.model_dump_json()


def load_send_window(raw: str | None) -> SendWindow | None:
    if raw is None:
        return None
    return SendWindow.model_validate_json(raw)


def step_from_row(row: sqlite3.Row) -> Step:
    """Build a :class:`Step` from a ``steps`` row."""
    return Step(
        id=row["id"],
        sequence_id=row["sequence_id"],
        order=row["step_order"],
        channel=row["channel"],
        subject=row["subject"],
        body=row["body"],
        delay_minutes=row["delay_minutes"],
        condition=load_condition(row["condition_json"]),
        send_window=load_send_window(row["send_window_json"]),
    )


def enrollment_from_row(row: sqlite3.Row) -> Enrollment:
    """Build an :class:`Enrollment` from an ``enrollments`` row."""
    return Enrollment(
        id=row["id"],
        sequence_id=row["sequence_id"],
        contact_id=row["contact_id"],
        status=row["status"],
        current_step=row["current_step"],
        enrolled_at=parse_ts(row["enrolled_at"]),
        next_step_at=parse_ts(row["next_step_at"]),
        step_entered_at=parse_ts(row["step_entered_at"]),
        completed_at=parse_ts(row["completed_at"]),
        stopped_at=parse_ts(row["stopped_at"]),
        stopped_reason=row["stopped_reason"],
        signals=Signals(
            replied_at=parse_ts(row["replied_at"]),
            clicked_at=parse_ts(row["clicked_at"]),
            opted_out_at=parse_ts(row["opted_out_at"]),
        ),
    )


def step_log_from_row(row: sqlite3.Row) -> StepLog:
    """Build a :class:`StepLog` from a ``step_logs`` row."""
    return StepLog(
        id=row["id"],
        enrollment_id=row["enrollment_id"],
        step_id=row["step_id"],
        step_order=row["step_order"],
        channel=row["channel"],
        outcome=row["outcome"],
        message_id=row["message_id"],
        skipped_reason=row["skipped_reason"],
        error_message=row["error_message"],
        created_at=parse_ts(row["created_at"]),
        sent_at=parse_ts(row["sent_at"]),
        delivered_at=parse_ts(row["delivered_at"]),
        failed_at=parse_ts(row["failed_at"]),
        replied_at=parse_ts(row["replied_at"]),
    )
