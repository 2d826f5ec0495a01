"""Step condition evaluation.

A pure function of the step's condition, the enrollment's accumulated
signals, and the time the enrollment entered its current step.  It never
reads step logs.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from sequencer.domain.models import NoCondition, SignalCondition, Signals, StepCondition
from sequencer.domain.types import ConditionAction, ConditionType


def condition_holds(
    condition: StepCondition,
    signals: Signals,
    step_entered_at: datetime | None,
    *,
    now: datetime,
    delay_minutes: int,
) -> bool:
    """Return True if the condition's predicate is satisfied."""
    if isinstance(condition, NoCondition):
        return False

    kind = condition.condition_type
    if kind == ConditionType.REPLIED:
        return signals.replied_at is not None
    if kind == ConditionType.CLICKED:
        return signals.clicked_at is not None
    if kind == ConditionType.OPTED_OUT:
        return signals.opted_out_at is not None
    if kind == ConditionType.NO_REPLY:
        # Step 1 has no prior message, so "no reply" cannot be meaningful yet.
        if signals.replied_at is not None or step_entered_at is None:
            return False
        return now - step_entered_at >= timedelta(minutes=delay_minutes)
    return False


def evaluate_condition(
    condition: StepCondition,
    signals: Signals,
    step_entered_at: datetime | None,
    *,
    now: datetime,
    delay_minutes: int,
) -> ConditionAction:
    """Return what to do with the current step.

    The configured action when the predicate holds, otherwise ``continue``.

    Args:
        condition: The step's condition.
        signals: Signals recorded on the enrollment so far.
        step_entered_at: When the enrollment entered the current step
            (``None`` while on step 1).
        now: Evaluation time.
        delay_minutes: The current step's delay; ``no_reply`` requires at
            least this long since the previous step.
    """
    if isinstance(condition, SignalCondition) and condition_holds(
        condition, signals, step_entered_at, now=now, delay_minutes=delay_minutes
    ):
        return condition.action
    return ConditionAction.CONTINUE
