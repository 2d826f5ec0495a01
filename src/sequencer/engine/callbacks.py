"""Handle asynchronous events reported back by the delivery provider.

Delivery receipts update step logs.  Replies and clicks become enrollment
signals that later step conditions read.  Opt-outs flag the contact and end
all of its enrollments at once, whether or not a scheduler currently holds a
claim on them.
"""

from __future__ import annotations

from datetime import datetime

import structlog

from sequencer.clock import Clock, utc_now
from sequencer.domain.types import DeliveryEvent, EnrollmentStatus, StepOutcome
from sequencer.observability.metrics import ENROLLMENT_TRANSITIONS
from sequencer.state.contact_store import ContactStore
from sequencer.state.enrollment_store import EnrollmentStore
from sequencer.state.schema import Database
from sequencer.state.step_log_store import StepLogStore

logger = structlog.get_logger()

_SIGNAL_COLUMN = {
    DeliveryEvent.REPLIED: "replied_at",
    DeliveryEvent.CLICKED: "clicked_at",
}


class DeliveryEventHandler:
    """Apply delivery-provider events to enrollments and step logs."""

    def __init__(
        self,
        db: Database,
        enrollments: EnrollmentStore,
        step_logs: StepLogStore,
        contacts: ContactStore | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._db = db
        self._enrollments = enrollments
        self._step_logs = step_logs
        self._contacts = contacts
        self._clock = clock

    def on_delivery_event(
        self,
        contact_id: str,
        enrollment_id: str | None,
        step_order: int | None,
        event: DeliveryEvent,
        occurred_at: datetime | None = None,
    ) -> int:
        """Apply one provider event.

        With ``enrollment_id=None`` the event applies to every active
        enrollment of the contact (an inbound reply or STOP keyword that is
        not tied to a specific message).

        Returns:
            Number of enrollments the event changed.
        """
        at = occurred_at or self._clock()
        if event == DeliveryEvent.OPTED_OUT:
            # STOP applies to the contact, not just the message it answered.
            return self.on_contact_opted_out(contact_id, reason="opted_out", occurred_at=at)

        targets = self._targets(contact_id, enrollment_id)
        if not targets:
            logger.info(
                "Delivery event matched no enrollment",
                contact_id=contact_id,
                enrollment_id=enrollment_id,
                event=event.value,
            )
            return 0

        if event in (DeliveryEvent.DELIVERED, DeliveryEvent.FAILED):
            return self._apply_receipt(targets, step_order, event, at)

        changed = 0
        column = _SIGNAL_COLUMN[event]
        with self._db.transaction():
            for target in targets:
                if self._enrollments.record_signal(target, column, at):
                    changed += 1
                if event == DeliveryEvent.REPLIED:
                    self._step_logs.mark_replied(target, at, step_order)
        logger.info(
            "Signal recorded",
            contact_id=contact_id,
            event=event.value,
            enrollments=changed,
        )
        return changed

    def on_contact_opted_out(
        self,
        contact_id: str,
        reason: str = "contact_opted_out",
        occurred_at: datetime | None = None,
    ) -> int:
        """Flag the contact opted out and end every active enrollment it has.

        Later trigger events skip a flagged contact, so it is not re-enrolled.
        """
        if self._contacts is not None and not self._contacts.set_opted_out(contact_id):
            logger.info("Opt-out for contact not in the mirror", contact_id=contact_id)
        targets = self._enrollments.active_ids_for_contact(contact_id)
        return self._opt_out(targets, occurred_at or self._clock(), reason=reason)

    def _targets(self, contact_id: str, enrollment_id: str | None) -> list[str]:
        if enrollment_id is None:
            return self._enrollments.active_ids_for_contact(contact_id)
        enrollment = self._enrollments.find(enrollment_id)
        if enrollment is None or enrollment.contact_id != contact_id:
            return []
        return [enrollment.id]

    def _apply_receipt(
        self,
        targets: list[str],
        step_order: int | None,
        event: DeliveryEvent,
        at: datetime,
    ) -> int:
        if step_order is None:
            logger.warning("Delivery receipt without step order ignored", event=event.value)
            return 0
        outcome = StepOutcome.DELIVERED if event == DeliveryEvent.DELIVERED else StepOutcome.FAILED
        updated = 0
        for target in targets:
            updated += self._step_logs.mark_delivery(target, step_order, outcome, at)
        return updated

    def _opt_out(self, targets: list[str], at: datetime, reason: str) -> int:
        changed = 0
        for target in targets:
            if self._enrollments.opt_out(target, at, reason):
                changed += 1
                ENROLLMENT_TRANSITIONS.labels(status=EnrollmentStatus.OPTED_OUT.value).inc()
        return changed
