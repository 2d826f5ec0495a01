"""Resilience utilities for outbound API calls and database contention."""

from sequencer.resilience.retry import resilient_api_call, retry_on_busy

__all__ = [
    "resilient_api_call",
    "retry_on_busy",
]
