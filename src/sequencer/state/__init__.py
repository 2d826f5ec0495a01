"""Sequence engine persistence package.

SQLite-backed stores for sequence definitions, enrollments, step logs, and
the local contact mirror, plus the schema and serialization helpers they
share.
"""

from sequencer.state.contact_store import ContactStore
from sequencer.state.enrollment_store import EnrollmentStore
from sequencer.state.schema import Database, close_db, init_db, init_schema
from sequencer.state.sequence_store import SequenceStore
from sequencer.state.serializers import format_ts, parse_ts
from sequencer.state.step_log_store import StepLogStore

__all__ = [
    "ContactStore",
    "Database",
    "EnrollmentStore",
    "SequenceStore",
    "StepLogStore",
    "close_db",
    "format_ts",
    "init_db",
    "init_schema",
    "parse_ts",
]
