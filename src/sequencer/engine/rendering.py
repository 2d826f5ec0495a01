"""Default token renderer for step bodies and subjects."""

from __future__ import annotations

import re

from sequencer.domain.models import Contact, Workspace

_TOKEN_RE = re.compile(r"\{([a-z_]+)\}")

FIRST_NAME_FALLBACK = "there"


class TemplateTokenRenderer:
    """Replace ``{token}`` placeholders with contact and workspace values.

    Supported tokens: ``first_name`` and ``full_name`` (both fall back to
    "there"), ``last_name``, ``phone``, ``email``, ``location_name``,
    ``location_phone``.  Unknown tokens are left in place.
    """

    def render(self, template: str, contact: Contact, workspace: Workspace | None) -> str:
        values = self._values(contact, workspace)

        def _substitute(match: re.Match[str]) -> str:
            value = values.get(match.group(1))
            return match.group(0) if value is None else value

        return _TOKEN_RE.sub(_substitute, template)

    @staticmethod
    def _values(contact: Contact, workspace: Workspace | None) -> dict[str, str]:
        first = contact.first_name or ""
        last = contact.last_name or ""
        return {
            "first_name": first or FIRST_NAME_FALLBACK,
            "last_name": last,
            "full_name": " ".join(part for part in (first, last) if part) or FIRST_NAME_FALLBACK,
            "phone": contact.phone or "",
            "email": contact.email or "",
            "location_name": workspace.name if workspace else "",
            "location_phone": (workspace.phone or "") if workspace else "",
        }
