"""Step scheduler: finds due enrollments and executes their current step.

One sweep claims due enrollments in batches (oldest ``next_step_at``
first) and, for each claimed enrollment, runs:

1. sequence still active?        otherwise release the claim
2. contact opted out?            force ``opted_out``
3. current step exists?          otherwise ``completed``
4. inside the send window?       otherwise reschedule to the next opening
5. step condition                ``stop`` / ``skip`` / ``continue``
6. render, re-check, dispatch    StepLog ``sent`` or ``failed``
7. advance                       next step, or ``completed`` after the last

Every write after the claim is conditioned on the claim token and on the
enrollment still being active, so a concurrent opt-out or a competing
worker makes the write a no-op instead of a double transition.  The
gateway receives ``"<enrollment_id>:<step_id>"`` as its idempotency key,
which keeps a re-attempt after an expired lease from sending twice.
"""

from __future__ import annotations

import sqlite3
import threading
import uuid
from datetime import datetime, timedelta

import structlog

from sequencer.clock import Clock, utc_now
from sequencer.domain.models import (
    Contact,
    Enrollment,
    Sequence,
    SignalCondition,
    Step,
    SweepResult,
    Workspace,
)
from sequencer.domain.types import (
    ConditionAction,
    EnrollmentStatus,
    SequenceStatus,
    StepOutcome,
)
from sequencer.engine.collaborators import ContactDirectory, DeliveryGateway, TokenRenderer
from sequencer.engine.conditions import evaluate_condition
from sequencer.engine.rendering import TemplateTokenRenderer
from sequencer.engine.windows import is_within_window, next_window_open, resolve_timezone
from sequencer.observability.metrics import (
    ENROLLMENT_TRANSITIONS,
    STEP_OUTCOMES,
    SWEEP_DURATION,
)
from sequencer.state.enrollment_store import EnrollmentStore
from sequencer.state.schema import Database
from sequencer.state.sequence_store import SequenceStore
from sequencer.state.step_log_store import StepLogStore
from sequencer.state_machine import EnrollmentEvent, EnrollmentStateMachine

logger = structlog.get_logger()

ERROR_REASON_MAX_LENGTH = 200


def idempotency_key(enrollment_id: str, step_id: str) -> str:
    """Dedupe key handed to the delivery gateway for one (enrollment, step)."""
    return f"{enrollment_id}:{step_id}"


class StepScheduler:
    """Drive due enrollments through their steps.

    Args:
        db: Database shared by the stores (used for multi-write transactions).
        sequences: Sequence definition store.
        enrollments: Enrollment store.
        step_logs: Step log store.
        directory: Contact and workspace lookup.
        gateway: Delivery gateway.
        renderer: Token renderer; defaults to :class:`TemplateTokenRenderer`.
        clock: Time source.
        batch_size: Enrollments claimed per batch.
        max_batches: Upper bound on batches per sweep.
        lease_seconds: How long a claim holds before another worker may
            retake the enrollment.
        default_timezone: Zone used for send windows when the workspace has
            none.
    """

    def __init__(
        self,
        db: Database,
        sequences: SequenceStore,
        enrollments: EnrollmentStore,
        step_logs: StepLogStore,
        directory: ContactDirectory,
        gateway: DeliveryGateway,
        renderer: TokenRenderer | None = None,
        clock: Clock = utc_now,
        *,
        batch_size: int = 50,
        max_batches: int = 10,
        lease_seconds: int = 300,
        default_timezone: str = "UTC",
    ) -> None:
        self._db = db
        self._sequences = sequences
        self._enrollments = enrollments
        self._step_logs = step_logs
        self._directory = directory
        self._gateway = gateway
        self._renderer: TokenRenderer = renderer or TemplateTokenRenderer()
        self._clock = clock
        self._batch_size = batch_size
        self._max_batches = max_batches
        self._lease = timedelta(seconds=lease_seconds)
        self._default_timezone = default_timezone

    # ------------------------------------------------------------------
    # Sweep loop
    # ------------------------------------------------------------------

    def sweep(self) -> SweepResult:
        """Process every enrollment due now, up to ``max_batches`` batches."""
        result = SweepResult()
        log = logger.bind(sweep_id=uuid.uuid4().hex[:12])

        with SWEEP_DURATION.time():
            for _ in range(self._max_batches):
                now = self._clock()
                due = self._enrollments.due_ids(now, self._batch_size)
                if not due:
                    break
                result.batches += 1
                for enrollment_id in due:
                    self._process(enrollment_id, now, result, log)
                if len(due) < self._batch_size:
                    break

        if result.claimed:
            log.info("Sweep finished", **result.model_dump())
        return result

    def run_forever(
        self, interval_seconds: float, stop_event: threading.Event | None = None
    ) -> None:
        """Sweep every *interval_seconds* until *stop_event* is set."""
        stop_event = stop_event or threading.Event()
        logger.info("Scheduler loop started", interval_seconds=interval_seconds)
        while not stop_event.is_set():
            try:
                self.sweep()
            except Exception:
                logger.exception("Sweep failed")
            stop_event.wait(interval_seconds)
        logger.info("Scheduler loop stopped")

    # ------------------------------------------------------------------
    # Per-enrollment processing
    # ------------------------------------------------------------------

    def _process(
        self,
        enrollment_id: str,
        now: datetime,
        result: SweepResult,
        log: structlog.typing.FilteringBoundLogger,
    ) -> None:
        try:
            token = self._enrollments.claim(enrollment_id, now, now + self._lease)
        except sqlite3.Error:
            result.errors += 1
            log.exception("Enrollment claim failed", enrollment_id=enrollment_id)
            return
        if token is None:
            return
        result.claimed += 1

        try:
            self._execute(enrollment_id, token, now, result, log)
        except Exception as exc:
            # One broken enrollment must not block the rest of the sweep.
            result.errors += 1
            log.exception("Enrollment processing failed", enrollment_id=enrollment_id)
            reason = f"error: {str(exc)[:ERROR_REASON_MAX_LENGTH]}"
            try:
                stopped = self._enrollments.stop(enrollment_id, now, reason, token=token)
            except sqlite3.Error:
                # The lease expires and another sweep retries the enrollment.
                log.exception("Failed to stop enrollment", enrollment_id=enrollment_id)
                return
            if stopped:
                ENROLLMENT_TRANSITIONS.labels(status=EnrollmentStatus.STOPPED.value).inc()

    def _execute(
        self,
        enrollment_id: str,
        token: str,
        now: datetime,
        result: SweepResult,
        log: structlog.typing.FilteringBoundLogger,
    ) -> None:
        enrollment = self._enrollments.holds_claim(enrollment_id, token)
        if enrollment is None:
            return
        log = log.bind(enrollment_id=enrollment.id, sequence_id=enrollment.sequence_id)

        sequence = self._sequences.find_sequence(enrollment.sequence_id)
        if sequence is None or sequence.status != SequenceStatus.ACTIVE:
            self._enrollments.release(enrollment.id, token)
            return

        contact = self._directory.get_contact(enrollment.contact_id)
        if contact is None:
            if self._enrollments.stop(enrollment.id, now, "contact_not_found", token=token):
                result.stopped += 1
                self._count_transition(EnrollmentStatus.STOPPED)
                log.warning("Contact no longer exists, enrollment stopped")
            return
        if contact.opted_out:
            EnrollmentStateMachine(enrollment.status, enrollment.current_step).trigger(
                EnrollmentEvent.OPT_OUT
            )
            if self._enrollments.opt_out(enrollment.id, now, "contact_opted_out"):
                result.opted_out += 1
                self._count_transition(EnrollmentStatus.OPTED_OUT)
            return

        step = sequence.step_at(enrollment.current_step)
        if step is None:
            # Steps were removed while the sequence was paused.
            if self._enrollments.complete(enrollment.id, token, now):
                result.completed += 1
                self._count_transition(EnrollmentStatus.COMPLETED)
            return

        workspace = self._directory.get_workspace(sequence.workspace_id)

        if step.send_window is not None:
            tz = resolve_timezone(workspace.timezone if workspace else None, self._default_timezone)
            if not is_within_window(step.send_window, now, tz):
                opens_at = next_window_open(step.send_window, now, tz)
                if self._enrollments.reschedule(enrollment.id, token, opens_at, now):
                    result.deferred += 1
                    log.debug(
                        "Step deferred to send window",
                        step=step.order,
                        opens_at=opens_at.isoformat(),
                    )
                return

        action = evaluate_condition(
            step.condition,
            enrollment.signals,
            enrollment.step_entered_at,
            now=now,
            delay_minutes=step.delay_minutes,
        )
        if action == ConditionAction.STOP:
            self._stop_on_condition(enrollment, step, token, now, result)
            return
        if action == ConditionAction.SKIP:
            self._skip_on_condition(enrollment, sequence, step, token, now, result)
            return

        self._send(enrollment, sequence, step, contact, workspace, token, now, result, log)

    def _stop_on_condition(
        self,
        enrollment: Enrollment,
        step: Step,
        token: str,
        now: datetime,
        result: SweepResult,
    ) -> None:
        machine = EnrollmentStateMachine(enrollment.status, enrollment.current_step)
        machine.trigger(EnrollmentEvent.STOP)
        with self._db.transaction():
            if not self._enrollments.stop(enrollment.id, now, "condition", token=token):
                return
            self._record(
                enrollment,
                step,
                StepOutcome.SKIPPED,
                now,
                skipped_reason=f"stopped_{_condition_name(step)}",
            )
        result.stopped += 1
        result.skipped += 1
        self._count_transition(EnrollmentStatus.STOPPED)

    def _skip_on_condition(
        self,
        enrollment: Enrollment,
        sequence: Sequence,
        step: Step,
        token: str,
        now: datetime,
        result: SweepResult,
    ) -> None:
        with self._db.transaction():
            if not self._advance(enrollment, sequence, step, token, now, result):
                return
            self._record(
                enrollment,
                step,
                StepOutcome.SKIPPED,
                now,
                skipped_reason=f"condition_{_condition_name(step)}",
            )
        result.skipped += 1

    def _send(
        self,
        enrollment: Enrollment,
        sequence: Sequence,
        step: Step,
        contact: Contact,
        workspace: Workspace | None,
        token: str,
        now: datetime,
        result: SweepResult,
        log: structlog.typing.FilteringBoundLogger,
    ) -> None:
        body = self._renderer.render(step.body, contact, workspace)
        subject = self._renderer.render(step.subject, contact, workspace) if step.subject else None

        # An opt-out may have landed after the claim; never send past it.
        if self._enrollments.holds_claim(enrollment.id, token) is None:
            log.info("Enrollment changed before dispatch, send aborted", step=step.order)
            return

        receipt = self._gateway.send(
            step.channel,
            contact,
            body,
            subject,
            idempotency_key(enrollment.id, step.id),
        )
        outcome = StepOutcome.SENT if receipt.accepted else StepOutcome.FAILED

        with self._db.transaction():
            # The message left regardless of what happened to the enrollment since.
            self._record(
                enrollment,
                step,
                outcome,
                now,
                message_id=receipt.message_id,
                error_message=receipt.error,
            )
            self._advance(enrollment, sequence, step, token, now, result)
            if receipt.accepted:
                self._directory.touch_last_contacted(contact.id, now)

        if receipt.accepted:
            result.sent += 1
            log.info(
                "Step sent",
                step=step.order,
                channel=step.channel.value,
                message_id=receipt.message_id,
            )
        else:
            result.failed += 1
            log.warning(
                "Step delivery rejected",
                step=step.order,
                channel=step.channel.value,
                error=receipt.error,
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _advance(
        self,
        enrollment: Enrollment,
        sequence: Sequence,
        step: Step,
        token: str,
        now: datetime,
        result: SweepResult,
    ) -> bool:
        """Move past *step*: to the next step, or to ``completed`` after the last."""
        machine = EnrollmentStateMachine(enrollment.status, step.order)
        next_step = sequence.step_at(step.order + 1)

        if next_step is None:
            machine.trigger(EnrollmentEvent.COMPLETE)
            if not self._enrollments.complete(enrollment.id, token, now):
                return False
            result.completed += 1
            self._count_transition(EnrollmentStatus.COMPLETED)
            return True

        machine.trigger(EnrollmentEvent.ADVANCE)
        return self._enrollments.advance(
            enrollment.id,
            token,
            machine.current_step,
            now + timedelta(minutes=next_step.delay_minutes),
            now,
        )

    def _record(
        self,
        enrollment: Enrollment,
        step: Step,
        outcome: StepOutcome,
        now: datetime,
        **details: str | None,
    ) -> None:
        self._step_logs.append(
            enrollment.id,
            step.id,
            step.order,
            step.channel,
            outcome,
            now,
            **details,
        )
        STEP_OUTCOMES.labels(outcome=outcome.value).inc()

    @staticmethod
    def _count_transition(status: EnrollmentStatus) -> None:
        ENROLLMENT_TRANSITIONS.labels(status=status.value).inc()


def _condition_name(step: Step) -> str:
    condition = step.condition
    return condition.type if isinstance(condition, SignalCondition) else "none"
