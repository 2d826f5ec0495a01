"""Enrollment entry points: manual, audience-wide, and domain events.

All paths share one per-contact eligibility rule (:meth:`TriggerListener._enroll_contact`):
an unknown, foreign, or opted-out contact is skipped; so is a contact that
already has an active enrollment in the sequence, or that was enrolled
within the sequence's frequency cap.  Ineligibility is never an error, it
is a skip with a reason.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from datetime import datetime, timedelta

import structlog

from sequencer.clock import Clock, utc_now
from sequencer.domain.errors import SequenceNotActiveError, SequencerError
from sequencer.domain.models import (
    AutoEnrollDetail,
    AutoEnrollResult,
    Contact,
    EnrollResult,
    EnrollSummary,
    Sequence,
)
from sequencer.domain.types import SequenceStatus, TriggerType
from sequencer.engine.audience import audience_skip_reason
from sequencer.engine.collaborators import AudienceMatcher, ContactDirectory
from sequencer.observability.metrics import ENROLLMENTS_CREATED
from sequencer.state.enrollment_store import EnrollmentStore
from sequencer.state.sequence_store import SequenceStore

logger = structlog.get_logger()


class TriggerListener:
    """Create enrollments from explicit requests and contact events."""

    def __init__(
        self,
        sequences: SequenceStore,
        enrollments: EnrollmentStore,
        directory: ContactDirectory,
        audience_matcher: AudienceMatcher | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._sequences = sequences
        self._enrollments = enrollments
        self._directory = directory
        self._audience_matcher = audience_matcher
        self._clock = clock

    # ------------------------------------------------------------------
    # Manual and audience enrollment
    # ------------------------------------------------------------------

    def enroll(self, sequence_id: str, contact_ids: Iterable[str]) -> EnrollSummary:
        """Enroll the given contacts into an active sequence.

        Duplicate ids are enrolled once.  The audience filter does not apply
        to an explicit list.

        Raises:
            SequenceNotFoundError: If the sequence does not exist.
            SequenceNotActiveError: If the sequence is not active.
        """
        sequence = self._active_sequence(sequence_id)
        return self._enroll_many(sequence, dict.fromkeys(contact_ids), source="manual")

    def enroll_by_audience(self, sequence_id: str) -> EnrollSummary:
        """Enroll every contact the sequence's audience resolves to.

        Raises:
            SequenceNotFoundError: If the sequence does not exist.
            SequenceNotActiveError: If the sequence is not active.
            RuntimeError: If no audience matcher is configured.
        """
        sequence = self._active_sequence(sequence_id)
        if self._audience_matcher is None:
            raise RuntimeError("No audience matcher configured")

        window = (
            timedelta(days=sequence.frequency_cap_days)
            if sequence.frequency_cap_days is not None
            else None
        )
        contact_ids = self._audience_matcher.match_audience(
            sequence.workspace_id, sequence.audience, window
        )
        logger.info(
            "Audience resolved",
            sequence_id=sequence.id,
            audience=sequence.audience.type,
            matched=len(contact_ids),
        )
        return self._enroll_many(sequence, dict.fromkeys(contact_ids), source="audience")

    # ------------------------------------------------------------------
    # Domain events
    # ------------------------------------------------------------------

    def on_contact_created(self, contact: Contact) -> AutoEnrollResult:
        return self._auto_enroll(contact, TriggerType.CONTACT_CREATED, None)

    def on_keyword_join(self, contact: Contact, keyword: str) -> AutoEnrollResult:
        return self._auto_enroll(contact, TriggerType.KEYWORD_JOIN, keyword)

    def on_stage_change(self, contact: Contact, new_stage: str) -> AutoEnrollResult:
        # The event may arrive before the directory reflects the new stage.
        moved = contact.model_copy(update={"stage": new_stage})
        return self._auto_enroll(moved, TriggerType.STAGE_CHANGE, new_stage)

    def _auto_enroll(
        self,
        contact: Contact,
        trigger_type: TriggerType,
        value: str | None,
    ) -> AutoEnrollResult:
        """Enroll *contact* into every active sequence listening for this event.

        Never raises: a failure for one sequence is logged and counted as a
        skip.
        """
        result = AutoEnrollResult()
        try:
            sequences = self._sequences.list_active_by_trigger(
                contact.workspace_id, trigger_type, value
            )
            contact = self._with_mirrored_opt_out(contact)
        except sqlite3.Error:
            logger.exception(
                "Failed to load sequences for trigger",
                trigger=trigger_type.value,
                contact_id=contact.id,
            )
            return result

        now = self._clock()
        for sequence in sequences:
            result.sequences_checked += 1
            try:
                reason = audience_skip_reason(sequence.audience, contact, now)
                if reason is not None:
                    outcome = EnrollResult(
                        contact_id=contact.id, enrolled=False, skipped_reason=reason
                    )
                else:
                    outcome = self._enroll_contact(
                        sequence, contact.id, now, source=trigger_type.value, contact=contact
                    )
            except (SequencerError, sqlite3.Error) as exc:
                logger.error(
                    "Auto-enrollment failed",
                    sequence_id=sequence.id,
                    contact_id=contact.id,
                    error=str(exc),
                )
                outcome = EnrollResult(
                    contact_id=contact.id, enrolled=False, skipped_reason="error"
                )

            if outcome.enrolled:
                result.enrolled += 1
            else:
                result.skipped += 1
            result.details.append(
                AutoEnrollDetail(
                    sequence_id=sequence.id,
                    sequence_name=sequence.name,
                    enrolled=outcome.enrolled,
                    reason=outcome.skipped_reason,
                )
            )

        if result.sequences_checked:
            logger.info(
                "Trigger processed",
                trigger=trigger_type.value,
                contact_id=contact.id,
                sequences_checked=result.sequences_checked,
                enrolled=result.enrolled,
            )
        return result

    def _with_mirrored_opt_out(self, contact: Contact) -> Contact:
        """Carry an opt-out recorded locally onto the event's contact snapshot."""
        if contact.opted_out:
            return contact
        stored = self._directory.get_contact(contact.id)
        if stored is not None and stored.opted_out:
            return contact.model_copy(update={"opted_out": True})
        return contact

    # ------------------------------------------------------------------
    # Shared per-contact rule
    # ------------------------------------------------------------------

    def _active_sequence(self, sequence_id: str) -> Sequence:
        sequence = self._sequences.get_sequence(sequence_id)
        if sequence.status != SequenceStatus.ACTIVE:
            raise SequenceNotActiveError(sequence.id, sequence.status)
        return sequence

    def _enroll_many(
        self, sequence: Sequence, contact_ids: Iterable[str], source: str
    ) -> EnrollSummary:
        summary = EnrollSummary()
        now = self._clock()
        for contact_id in contact_ids:
            outcome = self._enroll_contact(sequence, contact_id, now, source=source)
            summary.results.append(outcome)
            if outcome.enrolled:
                summary.enrolled += 1
            else:
                summary.skipped += 1

        logger.info(
            "Enrollment batch processed",
            sequence_id=sequence.id,
            source=source,
            enrolled=summary.enrolled,
            skipped=summary.skipped,
        )
        return summary

    def _enroll_contact(
        self,
        sequence: Sequence,
        contact_id: str,
        now: datetime,
        *,
        source: str,
        contact: Contact | None = None,
    ) -> EnrollResult:
        """Apply the eligibility rule to one contact and enroll if eligible."""

        def skip(reason: str) -> EnrollResult:
            return EnrollResult(contact_id=contact_id, enrolled=False, skipped_reason=reason)

        first_step = sequence.step_at(1)
        if first_step is None:
            return skip("no_steps")

        if contact is None:
            contact = self._directory.get_contact(contact_id)
        if contact is None:
            return skip("contact_not_found")
        if contact.workspace_id != sequence.workspace_id:
            return skip("wrong_workspace")
        if contact.opted_out:
            return skip("opted_out")
        if self._enrollments.has_active(sequence.id, contact_id):
            return skip("already_enrolled")
        if sequence.frequency_cap_days is not None and self._enrollments.enrolled_since(
            sequence.id, contact_id, now - timedelta(days=sequence.frequency_cap_days)
        ):
            return skip("frequency_cap")

        enrollment = self._enrollments.create(
            sequence.id,
            contact_id,
            enrolled_at=now,
            next_step_at=now + timedelta(minutes=first_step.delay_minutes),
        )
        if enrollment is None:
            # Lost a race with a concurrent enrollment of the same contact.
            return skip("already_enrolled")

        ENROLLMENTS_CREATED.labels(source=source).inc()
        logger.debug(
            "Contact enrolled",
            sequence_id=sequence.id,
            contact_id=contact_id,
            enrollment_id=enrollment.id,
            source=source,
        )
        return EnrollResult(contact_id=contact_id, enrolled=True, enrollment_id=enrollment.id)
