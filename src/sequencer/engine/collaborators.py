"""Interfaces of the services the engine depends on but does not own.

Contact storage, audience querying, message transport, and template
rendering all live in the surrounding application.  The engine only sees
these protocols; tests substitute in-memory fakes.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Protocol

from sequencer.domain.models import Audience, Contact, DeliveryReceipt, Workspace
from sequencer.domain.types import Channel


class ContactDirectory(Protocol):
    """Lookup of contacts and the workspaces that own them.

    ``touch_last_contacted`` keeps the contact's last-message time current
    for the ``inactive`` audience.
    """

    def get_contact(self, contact_id: str) -> Contact | None: ...

    def get_workspace(self, workspace_id: str) -> Workspace | None: ...

    def touch_last_contacted(self, contact_id: str, at: datetime) -> bool: ...


class AudienceMatcher(Protocol):
    """Resolve an audience filter to a list of contact ids."""

    def match_audience(
        self,
        workspace_id: str,
        audience: Audience,
        exclude_recently_enrolled_within: timedelta | None,
    ) -> list[str]: ...


class DeliveryGateway(Protocol):
    """Hand a rendered message to the transport provider.

    Implementations must treat ``idempotency_key`` as a dedupe key: a second
    call with the same key must not produce a second message.
    """

    def send(
        self,
        channel: Channel,
        contact: Contact,
        body: str,
        subject: str | None,
        idempotency_key: str,
    ) -> DeliveryReceipt: ...


class TokenRenderer(Protocol):
    """Substitute contact and workspace tokens into a message template."""

    def render(self, template: str, contact: Contact, workspace: Workspace | None) -> str: ...
