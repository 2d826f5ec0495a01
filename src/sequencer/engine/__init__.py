"""Sequence engine core: enrollment triggers, the step scheduler, and signal handling."""

from sequencer.engine.audience import audience_skip_reason
from sequencer.engine.callbacks import DeliveryEventHandler
from sequencer.engine.collaborators import (
    AudienceMatcher,
    ContactDirectory,
    DeliveryGateway,
    TokenRenderer,
)
from sequencer.engine.conditions import evaluate_condition
from sequencer.engine.rendering import TemplateTokenRenderer
from sequencer.engine.scheduler import StepScheduler, idempotency_key
from sequencer.engine.triggers import TriggerListener
from sequencer.engine.windows import is_within_window, next_window_open

__all__ = [
    "AudienceMatcher",
    "ContactDirectory",
    "DeliveryEventHandler",
    "DeliveryGateway",
    "StepScheduler",
    "TemplateTokenRenderer",
    "TokenRenderer",
    "TriggerListener",
    "audience_skip_reason",
    "evaluate_condition",
    "idempotency_key",
    "is_within_window",
    "next_window_open",
]
