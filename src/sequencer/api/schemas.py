"""Request bodies for the HTTP API that are not domain models themselves."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from sequencer.domain.models import Contact
from sequencer.domain.types import DeliveryEvent

MAX_CONTACTS_PER_REQUEST = 500


class ReorderRequest(BaseModel):
    step_ids: list[str] = Field(min_length=1)


class EnrollRequest(BaseModel):
    contact_ids: list[str] = Field(min_length=1, max_length=MAX_CONTACTS_PER_REQUEST)


class StopRequest(BaseModel):
    reason: str = Field(default="manual", min_length=1, max_length=200)


class DeliveryEventRequest(BaseModel):
    """Callback payload from the delivery provider.

    ``enrollment_id`` and ``step_order`` come back from the tags attached at
    send time; inbound replies and STOP keywords carry only ``contact_id``.
    """

    contact_id: str
    enrollment_id: str | None = None
    step_order: int | None = Field(default=None, ge=1)
    event: DeliveryEvent
    occurred_at: datetime | None = None


class KeywordJoinRequest(BaseModel):
    contact: Contact
    keyword: str = Field(min_length=1)


class StageChangeRequest(BaseModel):
    contact: Contact
    stage: str = Field(min_length=1)


class OptOutRequest(BaseModel):
    reason: str = Field(default="contact_opted_out", min_length=1, max_length=200)
