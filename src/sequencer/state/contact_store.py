"""Local mirror of CRM contacts and workspaces.

The CRM owns contacts; it pushes snapshots here (``PUT /contacts/{id}``,
domain events) so the engine can resolve contacts, workspaces, and simple
audiences without calling back.  :class:`ContactStore` implements both the
``ContactDirectory`` and the ``AudienceMatcher`` collaborator protocols.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta

from sequencer.clock import Clock, utc_now
from sequencer.domain.models import (
    AllAudience,
    Audience,
    CategoryAudience,
    Contact,
    InactiveAudience,
    StageAudience,
    Workspace,
)
from sequencer.state.schema import Database
from sequencer.state.serializers import format_ts, parse_ts


def _contact_from_row(row: sqlite3.Row) -> Contact:
    return Contact(
        id=row["id"],
        workspace_id=row["workspace_id"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        phone=row["phone"],
        email=row["email"],
        stage=row["stage"],
        category_ids=frozenset(json.loads(row["category_ids_json"])),
        last_contacted_at=parse_ts(row["last_contacted_at"]),
        opted_out=bool(row["opted_out"]),
    )


class ContactStore:
    """SQLite-backed contact directory and audience matcher."""

    def __init__(self, db: Database, clock: Clock = utc_now) -> None:
        self._db = db
        self._clock = clock

    # -- Directory -------------------------------------------------------------

    def get_contact(self, contact_id: str) -> Contact | None:
        row = self._db.query_one("SELECT * FROM contacts WHERE id = ?", (contact_id,))
        return _contact_from_row(row) if row else None

    def get_workspace(self, workspace_id: str) -> Workspace | None:
        row = self._db.query_one("SELECT * FROM workspaces WHERE id = ?", (workspace_id,))
        if row is None:
            return None
        return Workspace(
            id=row["id"],
            name=row["name"],
            phone=row["phone"],
            from_email=row["from_email"],
            from_name=row["from_name"],
            timezone=row["timezone"],
        )

    def upsert_contact(self, contact: Contact) -> Contact:
        """Insert or replace the snapshot of one contact.

        A local opt-out survives a snapshot that says otherwise, and
        ``last_contacted_at`` never moves backwards.  Returns the stored row.
        """
        self._db.execute(
            """
            INSERT INTO contacts (
                id, workspace_id, first_name, last_name, phone, email, stage,
                category_ids_json, last_contacted_at, opted_out, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                workspace_id = excluded.workspace_id,
                first_name = excluded.first_name,
                last_name = excluded.last_name,
                phone = excluded.phone,
                email = excluded.email,
                stage = excluded.stage,
                category_ids_json = excluded.category_ids_json,
                last_contacted_at = CASE
                    WHEN contacts.last_contacted_at IS NULL
                        OR excluded.last_contacted_at > contacts.last_contacted_at
                    THEN excluded.last_contacted_at
                    ELSE contacts.last_contacted_at
                END,
                opted_out = MAX(contacts.opted_out, excluded.opted_out),
                updated_at = excluded.updated_at
            """,
            (
                contact.id,
                contact.workspace_id,
                contact.first_name,
                contact.last_name,
                contact.phone,
                contact.email,
                contact.stage,
                json.dumps(sorted(contact.category_ids)),
                format_ts(contact.last_contacted_at),
                int(contact.opted_out),
                format_ts(self._clock()),
            ),
        )
        stored = self.get_contact(contact.id)
        return stored if stored is not None else contact

    def upsert_workspace(self, workspace: Workspace) -> Workspace:
        """Insert or replace the snapshot of one workspace."""
        self._db.execute(
            """
            INSERT INTO workspaces (id, name, phone, from_email, from_name, timezone, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                name = excluded.name,
                phone = excluded.phone,
                from_email = excluded.from_email,
                from_name = excluded.from_name,
                timezone = excluded.timezone,
                updated_at = excluded.updated_at
            """,
            (
                workspace.id,
                workspace.name,
                workspace.phone,
                workspace.from_email,
                workspace.from_name,
                workspace.timezone,
                format_ts(self._clock()),
            ),
        )
        return workspace

    def set_opted_out(self, contact_id: str, opted_out: bool = True) -> bool:
        cursor = self._db.execute(
            "UPDATE contacts SET opted_out = ?, updated_at = ? WHERE id = ?",
            (int(opted_out), format_ts(self._clock()), contact_id),
        )
        return cursor.rowcount == 1

    def touch_last_contacted(self, contact_id: str, at: datetime) -> bool:
        """Record that the engine messaged the contact at *at*."""
        stamp = format_ts(at)
        cursor = self._db.execute(
            """
            UPDATE contacts SET last_contacted_at = ?, updated_at = ?
            WHERE id = ? AND (last_contacted_at IS NULL OR last_contacted_at < ?)
            """,
            (stamp, format_ts(self._clock()), contact_id, stamp),
        )
        return cursor.rowcount == 1

    # -- Audience matching -----------------------------------------------------

    def match_audience(
        self,
        workspace_id: str,
        audience: Audience,
        exclude_recently_enrolled_within: timedelta | None,
    ) -> list[str]:
        """Return ids of reachable contacts of the workspace in *audience*.

        With a window, contacts enrolled into any sequence of the workspace
        within it are left out; the per-sequence frequency cap is checked
        again at enrollment time.
        """
        now = self._clock()
        sql = "SELECT c.id AS id FROM contacts c WHERE c.workspace_id = ? AND c.opted_out = 0"
        params: list[object] = [workspace_id]

        if isinstance(audience, StageAudience):
            sql += " AND lower(trim(coalesce(c.stage, ''))) = lower(trim(?))"
            params.append(audience.stage)
        elif isinstance(audience, CategoryAudience):
            sql += " AND EXISTS (SELECT 1 FROM json_each(c.category_ids_json) WHERE value = ?)"
            params.append(audience.category_id)
        elif isinstance(audience, InactiveAudience):
            sql += " AND (c.last_contacted_at IS NULL OR c.last_contacted_at <= ?)"
            params.append(format_ts(now - timedelta(days=audience.inactive_days)))
        elif not isinstance(audience, AllAudience):
            raise ValueError(f"Unsupported audience: {audience!r}")

        if exclude_recently_enrolled_within is not None:
            sql += """
                AND NOT EXISTS (
                    SELECT 1 FROM enrollments e
                    JOIN sequences s ON s.id = e.sequence_id
                    WHERE e.contact_id = c.id AND s.workspace_id = c.workspace_id
                      AND e.enrolled_at >= ?
                )
            """
            params.append(format_ts(now - exclude_recently_enrolled_within))

        rows = self._db.query(sql + " ORDER BY c.rowid", params)
        return [r["id"] for r in rows]
