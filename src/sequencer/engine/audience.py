"""Per-contact audience filter used by event-driven triggers."""

from __future__ import annotations

from datetime import datetime, timedelta

from sequencer.domain.models import (
    Audience,
    CategoryAudience,
    Contact,
    InactiveAudience,
    StageAudience,
)


def audience_skip_reason(audience: Audience, contact: Contact, now: datetime) -> str | None:
    """Return why *contact* falls outside *audience*, or ``None`` if it is inside.

    ``inactive`` admits contacts never messaged, or last messaged at least
    ``inactive_days`` ago.
    """
    if isinstance(audience, StageAudience):
        if (contact.stage or "").strip().lower() != audience.stage.strip().lower():
            return "audience_filter_stage"
    elif isinstance(audience, CategoryAudience):
        if audience.category_id not in contact.category_ids:
            return "audience_filter_category"
    elif isinstance(audience, InactiveAudience):
        cutoff = now - timedelta(days=audience.inactive_days)
        if contact.last_contacted_at is not None and contact.last_contacted_at > cutoff:
            return "audience_filter_inactive"
    return None
