"""Tests for centralized Settings, startup validation, and get_settings cache.

Covers: defaults, env-override, production delivery gate, dev-mode warnings,
and lru_cache behavior.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from sequencer.config import Settings, get_settings, validate_settings

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _clear_settings_cache() -> None:
    """Clear get_settings lru_cache before each test."""
    get_settings.cache_clear()


# ---------------------------------------------------------------------------
# Settings defaults
# ---------------------------------------------------------------------------

class TestSettingsDefaults:
    """Verify that Settings fields have the expected default values."""

    def test_settings_defaults(self) -> None:
        s = Settings(_env_file=None)  # type: ignore[call-arg]

        assert s.production is False
        assert s.http_port == 8000
        assert s.db_path == Path("data/sequencer.db")
        assert s.default_timezone == "UTC"
        assert s.sweep_enabled is True
        assert s.sweep_interval_seconds == 60.0
        assert s.sweep_batch_size == 50
        assert s.claim_lease_seconds == 300
        assert s.delivery_url == ""
        assert s.worker_id

    def test_settings_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PRODUCTION", "true")
        monkeypatch.setenv("HTTP_PORT", "9090")
        monkeypatch.setenv("DELIVERY_API_KEY", "key-123")
        monkeypatch.setenv("SWEEP_BATCH_SIZE", "10")

        s = Settings(_env_file=None)  # type: ignore[call-arg]

        assert s.production is True
        assert s.http_port == 9090
        assert s.delivery_api_key.get_secret_value() == "key-123"
        assert s.sweep_batch_size == 10

    def test_secret_not_in_repr(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("UNSUBSCRIBE_SECRET", "very-secret")
        s = Settings(_env_file=None)  # type: ignore[call-arg]
        assert "very-secret" not in repr(s)

    def test_rejects_non_positive_interval(self) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, sweep_interval_seconds=0)  # type: ignore[call-arg]


# ---------------------------------------------------------------------------
# Startup validation
# ---------------------------------------------------------------------------

class TestValidateSettings:
    """Verify validate_settings behaviour in production and dev modes."""

    def test_production_exits_without_delivery_config(self) -> None:
        settings = Settings(
            _env_file=None,  # type: ignore[call-arg]
            production=True,
            delivery_url="",
            delivery_api_key="",  # type: ignore[arg-type]
        )

        with pytest.raises(SystemExit) as exc_info:
            validate_settings(settings)

        assert exc_info.value.code == 1

    def test_production_exits_on_unknown_timezone(self) -> None:
        settings = Settings(
            _env_file=None,  # type: ignore[call-arg]
            production=True,
            delivery_url="https://provider.test/send",
            delivery_api_key="key",  # type: ignore[arg-type]
            default_timezone="Mars/Olympus",
        )

        with pytest.raises(SystemExit):
            validate_settings(settings)

    def test_production_valid(self) -> None:
        settings = Settings(
            _env_file=None,  # type: ignore[call-arg]
            production=True,
            delivery_url="https://provider.test/send",
            delivery_api_key="key",  # type: ignore[arg-type]
            default_timezone="America/New_York",
        )

        # Should NOT raise or exit
        validate_settings(settings)

    def test_dev_mode_warns(self) -> None:
        """Dev mode logs warnings but does NOT exit."""
        settings = Settings(
            _env_file=None,  # type: ignore[call-arg]
            production=False,
            delivery_url="",
        )

        validate_settings(settings)


# ---------------------------------------------------------------------------
# get_settings cache
# ---------------------------------------------------------------------------

class TestGetSettingsCached:
    """Verify lru_cache on get_settings."""

    def test_get_settings_cached(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Calling get_settings() twice returns the exact same object."""
        monkeypatch.delenv("PRODUCTION", raising=False)

        first = get_settings()
        second = get_settings()

        assert first is second
