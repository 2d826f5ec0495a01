"""Operator CLI for the sequence engine.

Subcommands:

- ``sweep``       -- run one scheduler sweep (or ``--loop`` until interrupted)
- ``import``      -- create sequences from a YAML definitions file
- ``enrollments`` -- list a sequence's enrollments
- ``step-stats``  -- show per-step send counts for a sequence

Output formats for the query commands: table (default) or JSON.

Usage::

    python -m sequencer.cli import sequences.yaml --activate
    python -m sequencer.cli enrollments seq_123 --status active --format json
    python -m sequencer.cli sweep --loop
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

import structlog

from sequencer.config import get_settings
from sequencer.definitions import import_definitions, load_definitions
from sequencer.domain.errors import SequencerError
from sequencer.domain.types import EnrollmentStatus
from sequencer.wiring import close_services, initialize_services


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser with one subparser per command.

    Returns:
        A configured :class:`argparse.ArgumentParser`.
    """
    parser = argparse.ArgumentParser(description="Manage drip sequences")
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="Path to the sequencer database (default: DB_PATH setting)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sweep = sub.add_parser("sweep", help="Run the step scheduler")
    sweep.add_argument(
        "--loop",
        action="store_true",
        help="Keep sweeping every SWEEP_INTERVAL_SECONDS until interrupted",
    )

    imp = sub.add_parser("import", help="Import sequences from a YAML file")
    imp.add_argument("file", type=str, help="Path to the definitions file")
    imp.add_argument(
        "--activate",
        action="store_true",
        help="Activate every imported sequence",
    )

    enrollments = sub.add_parser("enrollments", help="List enrollments of a sequence")
    enrollments.add_argument("sequence_id", type=str)
    enrollments.add_argument(
        "--status",
        type=str,
        choices=[s.value for s in EnrollmentStatus],
        help="Filter by enrollment status",
    )
    enrollments.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Maximum results (default: 50)",
    )
    _add_format_argument(enrollments)

    stats = sub.add_parser("step-stats", help="Per-step counts for a sequence")
    stats.add_argument("sequence_id", type=str)
    _add_format_argument(stats)

    return parser


def _add_format_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--format",
        type=str,
        choices=["table", "json"],
        default="table",
        dest="output_format",
        help="Output format (default: table)",
    )


def format_table(rows: list[dict[str, Any]], columns: list[tuple[str, str, int]]) -> str:
    """Format *rows* as a fixed-width table.

    Args:
        rows: Dicts to print, one per line.
        columns: ``(key, header, width)`` for each column.  Long values are
            truncated to the column width.

    Returns:
        Formatted table string with header row.
    """
    if not rows:
        return "No results found."

    def truncate(value: Any, width: int) -> str:
        s = "" if value is None else str(value)
        if len(s) > width:
            return s[: width - 3] + "..."
        return s

    header_line = "  ".join(header.ljust(width) for _, header, width in columns)
    lines = [header_line, "-" * len(header_line)]
    for row in rows:
        lines.append(
            "  ".join(truncate(row.get(key), width).ljust(width) for key, _, width in columns)
        )
    return "\n".join(lines)


def format_json(rows: list[dict[str, Any]]) -> str:
    """Format *rows* as a pretty-printed JSON string."""
    return json.dumps(rows, indent=2, default=str)


ENROLLMENT_COLUMNS = [
    ("id", "Enrollment", 24),
    ("contact_id", "Contact", 20),
    ("status", "Status", 10),
    ("current_step", "Step", 4),
    ("next_step_at", "Next step at", 27),
    ("stopped_reason", "Reason", 20),
]

STEP_STATS_COLUMNS = [
    ("order", "#", 3),
    ("channel", "Channel", 7),
    ("body_preview", "Body", 40),
    ("sent", "Sent", 6),
    ("delivered", "Delivered", 9),
    ("failed", "Failed", 6),
    ("skipped", "Skipped", 7),
]


def configure_cli_logging() -> None:
    """Write log lines to stderr so command output on stdout stays parseable."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
        cache_logger_on_first_use=False,
    )


def _run(args: argparse.Namespace, services: dict[str, Any]) -> int:
    if args.command == "sweep":
        scheduler = services["scheduler"]
        if scheduler is None:
            print("DELIVERY_URL is not set; nothing can be sent.", file=sys.stderr)
            return 1
        if args.loop:
            try:
                scheduler.run_forever(services["settings"].sweep_interval_seconds)
            except KeyboardInterrupt:
                pass
            return 0
        print(format_json([scheduler.sweep().model_dump()]))
        return 0

    if args.command == "import":
        definitions = load_definitions(Path(args.file))
        created = import_definitions(
            services["sequence_store"], definitions, activate=args.activate
        )
        for sequence in created:
            print(f"{sequence.id}  {sequence.status}  {sequence.name}")
        print(f"Imported {len(created)} sequence(s).")
        return 0

    if args.command == "enrollments":
        services["sequence_store"].get_sequence(args.sequence_id)
        page = services["enrollment_store"].list_for_sequence(
            args.sequence_id,
            status=EnrollmentStatus(args.status) if args.status else None,
            page=1,
            limit=args.limit,
        )
        rows = [e.model_dump(mode="json") for e in page.enrollments]
        if args.output_format == "json":
            print(format_json(rows))
        else:
            print(format_table(rows, ENROLLMENT_COLUMNS))
            print(f"\n{len(rows)} of {page.total} enrollment(s)")
        return 0

    # step-stats
    sequence = services["sequence_store"].get_sequence(args.sequence_id)
    rows = [s.model_dump(mode="json") for s in services["step_log_store"].step_stats(sequence)]
    if args.output_format == "json":
        print(format_json(rows))
    else:
        print(format_table(rows, STEP_STATS_COLUMNS))
    return 0


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, run the command, and return the exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_cli_logging()

    settings = get_settings()
    if args.db:
        settings = settings.model_copy(update={"db_path": Path(args.db)})
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)

    services = initialize_services(settings)
    try:
        return _run(args, services)
    except (SequencerError, FileNotFoundError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        close_services(services)


if __name__ == "__main__":
    sys.exit(main())
