"""Retry decorators built on tenacity.

Two policies:

- ``resilient_api_call``: outbound HTTP calls to the delivery provider.
  3 attempts with exponential backoff and jitter, transport errors only.
- ``retry_on_busy``: SQLite writes that hit ``database is locked`` while
  another worker holds the write lock.  Short backoff, 5 attempts.

Both log a warning before each retry and an error on final failure, then
re-raise the original exception.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from typing import Any, TypeVar

import httpx
import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

logger = structlog.get_logger()

F = TypeVar("F", bound=Callable[..., Any])


def _operation_name(retry_state: RetryCallState) -> str:
    return getattr(retry_state.fn, "_operation_name", "unknown") if retry_state.fn else "unknown"


def _before_sleep_log(retry_state: RetryCallState) -> None:
    """Log a warning before each retry attempt."""
    logger.warning(
        "retrying_call",
        operation=_operation_name(retry_state),
        attempt=retry_state.attempt_number,
        wait=retry_state.next_action.sleep if retry_state.next_action else 0,
    )


def _log_final_failure(retry_state: RetryCallState) -> Any:
    """Log retry exhaustion and re-raise the last exception."""
    exception = retry_state.outcome.exception() if retry_state.outcome else None
    logger.error(
        "call_failed_after_retries",
        operation=_operation_name(retry_state),
        attempts=retry_state.attempt_number,
        exception=str(exception),
    )
    if retry_state.outcome is not None:
        return retry_state.outcome.result()
    return None


def _is_busy_error(exc: BaseException) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def resilient_api_call(api_name: str) -> Callable[[F], F]:
    """Create a retry decorator for an outbound HTTP call.

    Retries ``httpx.TransportError`` (connection failures, timeouts) only;
    HTTP status errors are answers, not outages, and are never retried.

    Args:
        api_name: Human-readable name for the API (used in logs).

    Returns:
        A decorator that wraps the function with retry logic.
    """

    def decorator(func: F) -> F:
        func._operation_name = api_name  # type: ignore[attr-defined]

        wrapped = retry(
            retry=retry_if_exception_type(httpx.TransportError),
            stop=stop_after_attempt(3),
            wait=wait_exponential_jitter(initial=1, max=30, jitter=5),
            before_sleep=_before_sleep_log,
            retry_error_callback=_log_final_failure,
            reraise=True,
        )(func)

        return wrapped  # type: ignore[return-value]

    return decorator


def retry_on_busy(operation: str) -> Callable[[F], F]:
    """Create a retry decorator for SQLite lock contention.

    Args:
        operation: Name of the database operation (used in logs).

    Returns:
        A decorator that retries ``sqlite3.OperationalError`` raised because
        the database is locked or busy.
    """

    def decorator(func: F) -> F:
        func._operation_name = operation  # type: ignore[attr-defined]

        wrapped = retry(
            retry=retry_if_exception(_is_busy_error),
            stop=stop_after_attempt(5),
            wait=wait_exponential_jitter(initial=0.05, max=1, jitter=0.1),
            before_sleep=_before_sleep_log,
            retry_error_callback=_log_final_failure,
            reraise=True,
        )(func)

        return wrapped  # type: ignore[return-value]

    return decorator
