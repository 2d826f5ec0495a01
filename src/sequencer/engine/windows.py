"""Send-window arithmetic in a workspace's local time zone."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from sequencer.domain.models import SendWindow

logger = structlog.get_logger()


def resolve_timezone(name: str | None, default: str = "UTC") -> ZoneInfo:
    """Return the zone named *name*, falling back to *default* when unknown."""
    for candidate in (name, default):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown time zone, falling back", timezone=candidate)
    return ZoneInfo("UTC")


def is_within_window(window: SendWindow, now: datetime, tz: ZoneInfo) -> bool:
    """Return True if *now* falls inside ``[start, end]`` local time."""
    local = now.astimezone(tz).time()
    return window.start <= local <= window.end


def next_window_open(window: SendWindow, now: datetime, tz: ZoneInfo) -> datetime:
    """Return the next moment (UTC) the window opens after *now*.

    Today's opening if it is still ahead in local time, otherwise
    tomorrow's.
    """
    local_now = now.astimezone(tz)
    opening = datetime.combine(local_now.date(), window.start, tzinfo=tz)
    if opening <= local_now:
        opening = datetime.combine(local_now.date() + timedelta(days=1), window.start, tzinfo=tz)
    return opening.astimezone(UTC)
