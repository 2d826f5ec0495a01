"""SQLite schema and connection handling for the sequence engine.

``init_db()`` opens a WAL-mode connection, creates the tables and indexes,
and wraps the connection in a :class:`Database`.  Each worker process (or
each concurrent scheduler in tests) owns its own ``Database``; writes that
span several statements go through :meth:`Database.transaction`, which takes
SQLite's write lock up front with ``BEGIN IMMEDIATE``.

Two engine invariants are enforced by the schema itself:

- ``next_step_at`` is non-null iff an enrollment is ``active`` (CHECK).
- At most one ``active`` enrollment per (sequence, contact) (partial
  unique index).
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sequencer.resilience.retry import retry_on_busy

_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS sequences (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL DEFAULT 'draft',
        trigger_type TEXT NOT NULL DEFAULT 'manual',
        trigger_value TEXT,
        trigger_json TEXT NOT NULL,
        audience_json TEXT NOT NULL,
        frequency_cap_days INTEGER,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS steps (
        id TEXT PRIMARY KEY,
        sequence_id TEXT NOT NULL REFERENCES sequences (id) ON DELETE CASCADE,
        step_order INTEGER NOT NULL,
        channel TEXT NOT NULL,
        subject TEXT,
        body TEXT NOT NULL,
        delay_minutes INTEGER NOT NULL DEFAULT 0,
        condition_json TEXT NOT NULL,
        send_window_json TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS enrollments (
        id TEXT PRIMARY KEY,
        sequence_id TEXT NOT NULL REFERENCES sequences (id) ON DELETE CASCADE,
        contact_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        current_step INTEGER NOT NULL DEFAULT 1,
        enrolled_at TEXT NOT NULL,
        next_step_at TEXT,
        step_entered_at TEXT,
        completed_at TEXT,
        stopped_at TEXT,
        stopped_reason TEXT,
        replied_at TEXT,
        clicked_at TEXT,
        opted_out_at TEXT,
        claim_token TEXT,
        claim_expires_at TEXT,
        updated_at TEXT NOT NULL,
        CHECK ((status = 'active') = (next_step_at IS NOT NULL))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS step_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        enrollment_id TEXT NOT NULL REFERENCES enrollments (id) ON DELETE CASCADE,
        step_id TEXT NOT NULL,
        step_order INTEGER NOT NULL,
        channel TEXT NOT NULL,
        outcome TEXT NOT NULL,
        message_id TEXT,
        skipped_reason TEXT,
        error_message TEXT,
        created_at TEXT NOT NULL,
        sent_at TEXT,
        delivered_at TEXT,
        failed_at TEXT,
        replied_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workspaces (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        phone TEXT,
        from_email TEXT,
        from_name TEXT,
        timezone TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contacts (
        id TEXT PRIMARY KEY,
        workspace_id TEXT NOT NULL,
        first_name TEXT,
        last_name TEXT,
        phone TEXT,
        email TEXT,
        stage TEXT,
        category_ids_json TEXT NOT NULL DEFAULT '[]',
        last_contacted_at TEXT,
        opted_out INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL
    )
    """,
]

_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_sequences_trigger "
    "ON sequences (workspace_id, status, trigger_type)",
    "CREATE UNIQUE INDEX IF NOT EXISTS ux_steps_order ON steps (sequence_id, step_order)",
    "CREATE UNIQUE INDEX IF NOT EXISTS ux_enrollments_one_active "
    "ON enrollments (sequence_id, contact_id) WHERE status = 'active'",
    "CREATE INDEX IF NOT EXISTS idx_enrollments_due ON enrollments (status, next_step_at)",
    "CREATE INDEX IF NOT EXISTS idx_enrollments_contact ON enrollments (contact_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_enrollments_sequence "
    "ON enrollments (sequence_id, enrolled_at)",
    "CREATE INDEX IF NOT EXISTS idx_step_logs_step ON step_logs (step_id, outcome)",
    "CREATE INDEX IF NOT EXISTS idx_step_logs_enrollment ON step_logs (enrollment_id)",
    "CREATE INDEX IF NOT EXISTS idx_contacts_workspace ON contacts (workspace_id, opted_out)",
]


class Database:
    """A SQLite connection plus the lock and transaction discipline around it.

    The connection runs in autocommit mode (``isolation_level=None``);
    single statements commit on their own and multi-statement writes use
    :meth:`transaction`.  The re-entrant lock serializes threads sharing
    this connection (HTTP handlers and the background sweep).
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = threading.RLock()
        self._depth = 0

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    @retry_on_busy("begin_immediate")
    def _begin(self) -> None:
        self._conn.execute("BEGIN IMMEDIATE")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements atomically.

        Nested calls join the outer transaction.  Any exception rolls the
        whole transaction back and propagates.
        """
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield self._conn
                finally:
                    self._depth -= 1
                return

            self._begin()
            self._depth = 1
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")
            finally:
                self._depth = 0

    @retry_on_busy("execute")
    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """Execute one statement (autocommit unless inside a transaction)."""
        with self._lock:
            return self._conn.execute(sql, params)

    def query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        """Return all rows of a SELECT."""
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
        """Return the first row of a SELECT, or ``None``."""
        with self._lock:
            row: sqlite3.Row | None = self._conn.execute(sql, params).fetchone()
            return row

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def init_schema(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes if they do not already exist.

    Args:
        conn: An open sqlite3.Connection.
    """
    for ddl in _TABLES:
        conn.execute(ddl)
    for ddl in _INDEXES:
        conn.execute(ddl)


def init_db(db_path: Path | str) -> Database:
    """Open (creating if needed) the engine database with WAL mode and schema.

    Args:
        db_path: Path to the SQLite database file, or ``":memory:"``.

    Returns:
        A :class:`Database` wrapping the open connection.
    """
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(
        str(db_path),
        check_same_thread=False,
        isolation_level=None,
        timeout=5.0,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    init_schema(conn)
    return Database(conn)


def close_db(db: Database) -> None:
    """Close the database connection."""
    db.close()
