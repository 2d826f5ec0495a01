"""Prometheus metrics instrumentation for the sequence engine.

Provides:
- ``setup_metrics(app)``: Attach prometheus-fastapi-instrumentator to a FastAPI app,
  exposing ``/metrics`` with HTTP request duration/count plus the engine counters.
- ``ENROLLMENTS_CREATED``: Counter of enrollments created, by source.
- ``STEP_OUTCOMES``: Counter of step log rows written by the scheduler, by outcome.
- ``ENROLLMENT_TRANSITIONS``: Counter of enrollments reaching a terminal status.
- ``SWEEP_DURATION``: Histogram of scheduler sweep durations.

Counters are updated where the transitions happen (not by polling the database).
"""

from __future__ import annotations

from fastapi import FastAPI
from prometheus_client import Counter, Histogram
from prometheus_fastapi_instrumentator import Instrumentator

ENROLLMENTS_CREATED: Counter = Counter(
    "sequencer_enrollments_created_total",
    "Enrollments created, by source (manual, audience, or trigger type)",
    ["source"],
)

STEP_OUTCOMES: Counter = Counter(
    "sequencer_step_outcomes_total",
    "Step executions recorded by the scheduler, by outcome",
    ["outcome"],
)

ENROLLMENT_TRANSITIONS: Counter = Counter(
    "sequencer_enrollment_transitions_total",
    "Enrollments moved to a terminal status",
    ["status"],
)

SWEEP_DURATION: Histogram = Histogram(
    "sequencer_sweep_duration_seconds",
    "Wall-clock duration of one scheduler sweep",
)


def setup_metrics(app: FastAPI) -> None:
    """Instrument *app* with Prometheus HTTP metrics and expose ``/metrics``.

    Excludes health/ready/metrics endpoints from instrumentation to avoid
    noise in dashboards.

    Args:
        app: The FastAPI application to instrument.
    """
    Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        excluded_handlers=["/health", "/ready", "/metrics"],
    ).instrument(app).expose(app, include_in_schema=False, should_gzip=True)
