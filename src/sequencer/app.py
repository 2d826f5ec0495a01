"""Application entry point for the sequence engine.

Runs the HTTP API (FastAPI) and the periodic scheduler sweep concurrently in
a single long-running process.

Configures:
- **structlog** with JSON rendering (production) or colored console (development)
- **Sentry** error forwarding through the structlog processor chain
- **Prometheus** metrics at ``/metrics`` plus request ID propagation
- **Scheduler sweep** every ``SWEEP_INTERVAL_SECONDS`` in a worker thread
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
import uvicorn
from fastapi import FastAPI

from sequencer.api.routes import register_exception_handlers
from sequencer.api.routes import router as api_router
from sequencer.config import get_settings, validate_settings
from sequencer.health import register_health_routes
from sequencer.observability.metrics import setup_metrics
from sequencer.observability.middleware import RequestIdMiddleware
from sequencer.observability.sentry import get_sentry_processor, init_sentry
from sequencer.wiring import close_services, initialize_services

logger = structlog.get_logger()


def configure_logging(production: bool = False, sentry_enabled: bool = False) -> None:
    """Configure structlog for production (JSON) or development (console).

    Production mode (*production=True*): JSON rendering at INFO level.
    Development mode: colored console rendering at DEBUG level.

    Args:
        production: Enable production mode if ``True``.
        sentry_enabled: Forward ERROR events to Sentry if ``True``.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if sentry_enabled:
        shared_processors.append(get_sentry_processor())

    if production:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
        log_level = logging.INFO
    else:
        renderer = structlog.dev.ConsoleRenderer()
        log_level = logging.DEBUG

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(service="sequencer")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Start the periodic sweep when enabled and stop it on shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        Control to the application.
    """
    services = app.state.services
    settings = app.state.settings
    sweep_task: asyncio.Task[None] | None = None
    if settings.sweep_enabled and services.get("scheduler") is not None:
        sweep_task = asyncio.create_task(
            run_sweep_periodically(services, settings.sweep_interval_seconds)
        )
    logger.info("FastAPI application starting", sweep=sweep_task is not None)
    yield
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    logger.info("FastAPI application stopped")


def create_app(services: dict[str, Any]) -> FastAPI:
    """Create the FastAPI app with the API router, health routes, and metrics.

    Args:
        services: The initialized services dict from ``initialize_services``.

    Returns:
        The configured FastAPI application.
    """
    fastapi_app = FastAPI(title="Sequencer", lifespan=lifespan)
    fastapi_app.state.services = services
    fastapi_app.state.settings = services.get("settings") or get_settings()
    fastapi_app.add_middleware(RequestIdMiddleware)
    fastapi_app.include_router(api_router)
    register_exception_handlers(fastapi_app)
    register_health_routes(fastapi_app)
    setup_metrics(fastapi_app)
    return fastapi_app


async def run_sweep_periodically(services: dict[str, Any], interval_seconds: float) -> None:
    """Run one scheduler sweep every *interval_seconds*.

    The sweep is blocking SQLite and HTTP work, so it runs in a thread.  A
    failed sweep is logged and the loop carries on.

    Args:
        services: The initialized services dict.
        interval_seconds: Pause between the end of one sweep and the next.
    """
    scheduler = services.get("scheduler")
    if scheduler is None:
        return

    while True:
        try:
            await asyncio.to_thread(scheduler.sweep)
        except Exception:
            logger.exception("Scheduler sweep failed")
        await asyncio.sleep(interval_seconds)


async def main() -> None:
    """Main entry point: serve the API with the sweep running alongside.

    1. Configure logging and Sentry
    2. Validate settings
    3. Initialize services and create the FastAPI app
    4. Run uvicorn until shutdown, then close services
    """
    settings = get_settings()
    sentry_enabled = init_sentry(
        settings.sentry_dsn,
        environment="production" if settings.production else "development",
    )
    configure_logging(production=settings.production, sentry_enabled=sentry_enabled)
    logger.info("Application starting", worker_id=settings.worker_id)

    validate_settings(settings)

    services = initialize_services(settings)
    fastapi_app = create_app(services)

    config = uvicorn.Config(
        fastapi_app,
        host="0.0.0.0",
        port=settings.http_port,
        log_level="info",
    )
    server = uvicorn.Server(config)

    try:
        await server.serve()
    finally:
        close_services(services)


if __name__ == "__main__":
    asyncio.run(main())
