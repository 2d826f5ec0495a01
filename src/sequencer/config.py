"""Centralized, typed configuration using pydantic-settings.

Provides a single ``Settings`` class backed by ``.env`` file and environment
variables, a cached ``get_settings()`` accessor, and a ``validate_settings()``
startup gate that enforces delivery configuration in production mode.

IMPORTANT: This module has ZERO imports from the ``sequencer`` package to
prevent circular imports.  Only stdlib, pydantic, pydantic_settings, and
structlog are used.
"""

from __future__ import annotations

import socket
import sys
from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from pydantic import Field, SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger()


class Settings(BaseSettings):
    """Application settings loaded from environment variables and ``.env`` file.

    ``SecretStr`` fields prevent accidental leaks in logs or error output.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- General ---------------------------------------------------------------
    production: bool = False
    http_port: int = 8000
    db_path: Path = Path("data/sequencer.db")
    default_timezone: str = "UTC"
    app_url: str = ""
    unsubscribe_secret: SecretStr = SecretStr("")

    # -- Scheduler sweep -------------------------------------------------------
    sweep_enabled: bool = True
    sweep_interval_seconds: float = Field(default=60.0, gt=0)
    sweep_batch_size: int = Field(default=50, ge=1)
    sweep_max_batches: int = Field(default=10, ge=1)
    claim_lease_seconds: int = Field(default=300, ge=1)
    worker_id: str = Field(default_factory=socket.gethostname)

    # -- Delivery provider -----------------------------------------------------
    delivery_url: str = ""
    delivery_api_key: SecretStr = SecretStr("")
    delivery_timeout_seconds: float = 10.0

    # -- Observability ---------------------------------------------------------
    sentry_dsn: str = ""


@lru_cache
def get_settings() -> Settings:
    """Return a cached ``Settings`` instance.

    Call ``get_settings.cache_clear()`` in tests to reset.
    """
    try:
        return Settings()
    except ValidationError as exc:
        # Structured errors only; the exception text may carry SecretStr input.
        logger.error("settings_validation_failed", errors=exc.errors())
        sys.exit(1)


def validate_settings(settings: Settings) -> None:
    """Enforce required configuration at startup.

    In **production** mode the process exits with an error block if the
    delivery provider is not configured or the default time zone is unknown.
    In **development** mode each problem is logged as a warning.

    Args:
        settings: The loaded application settings.
    """
    errors: list[str] = []

    if not settings.delivery_url:
        errors.append("DELIVERY_URL is empty or not set")

    if not settings.delivery_api_key.get_secret_value():
        errors.append("DELIVERY_API_KEY is empty or not set")

    try:
        ZoneInfo(settings.default_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        errors.append(f"DEFAULT_TIMEZONE is not a known time zone: {settings.default_timezone}")

    if not errors:
        logger.info("settings_validation_passed")
        return

    if settings.production:
        for err in errors:
            logger.error("setting_missing", detail=err)
        print("\n=== STARTUP FAILED ===", file=sys.stderr)
        print("Invalid configuration for production mode:", file=sys.stderr)
        for err in errors:
            print(f"  - {err}", file=sys.stderr)
        print("======================\n", file=sys.stderr)
        sys.exit(1)
    else:
        for err in errors:
            logger.warning("setting_missing_dev", detail=err)
