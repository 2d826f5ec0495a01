"""Tests for the tenacity retry policies."""

from __future__ import annotations

import sqlite3

import httpx
import pytest

from sequencer.resilience.retry import resilient_api_call, retry_on_busy


def _no_wait(func) -> None:
    func.retry.sleep = lambda _seconds: None


class TestRetryOnBusy:
    def test_retries_locked_database(self) -> None:
        calls: list[int] = []

        @retry_on_busy("insert")
        def write() -> str:
            calls.append(1)
            if len(calls) < 3:
                raise sqlite3.OperationalError("database is locked")
            return "ok"

        _no_wait(write)
        assert write() == "ok"
        assert len(calls) == 3

    def test_other_operational_errors_propagate_at_once(self) -> None:
        calls: list[int] = []

        @retry_on_busy("insert")
        def write() -> None:
            calls.append(1)
            raise sqlite3.OperationalError("no such table: enrollments")

        with pytest.raises(sqlite3.OperationalError, match="no such table"):
            write()
        assert len(calls) == 1

    def test_gives_up_after_five_attempts(self) -> None:
        calls: list[int] = []

        @retry_on_busy("insert")
        def write() -> None:
            calls.append(1)
            raise sqlite3.OperationalError("database is busy")

        _no_wait(write)
        with pytest.raises(sqlite3.OperationalError):
            write()
        assert len(calls) == 5


class TestResilientApiCall:
    def test_transport_errors_retried_three_times(self) -> None:
        calls: list[int] = []

        @resilient_api_call("delivery")
        def post() -> None:
            calls.append(1)
            raise httpx.ConnectError("connection refused")

        _no_wait(post)
        with pytest.raises(httpx.ConnectError):
            post()
        assert len(calls) == 3

    def test_non_transport_errors_not_retried(self) -> None:
        calls: list[int] = []

        @resilient_api_call("delivery")
        def post() -> None:
            calls.append(1)
            raise ValueError("bad payload")

        with pytest.raises(ValueError):
            post()
        assert len(calls) == 1
