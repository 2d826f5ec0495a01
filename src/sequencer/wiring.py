"""Construction of the engine's shared services.

``initialize_services()`` opens the database and builds every store and
engine component once per process.  The HTTP app, the background sweep, and
the CLI all work from the same services dict.
"""

from __future__ import annotations

from typing import Any

import structlog

from sequencer.clock import Clock, utc_now
from sequencer.config import Settings, get_settings
from sequencer.delivery import HttpDeliveryGateway
from sequencer.engine.callbacks import DeliveryEventHandler
from sequencer.engine.collaborators import DeliveryGateway
from sequencer.engine.rendering import TemplateTokenRenderer
from sequencer.engine.scheduler import StepScheduler
from sequencer.engine.triggers import TriggerListener
from sequencer.state.contact_store import ContactStore
from sequencer.state.enrollment_store import EnrollmentStore
from sequencer.state.schema import Database, close_db, init_db
from sequencer.state.sequence_store import SequenceStore
from sequencer.state.step_log_store import StepLogStore

logger = structlog.get_logger()


def initialize_services(
    settings: Settings | None = None,
    *,
    db: Database | None = None,
    gateway: DeliveryGateway | None = None,
    clock: Clock = utc_now,
) -> dict[str, Any]:
    """Set up all shared services.

    Opens the database (unless *db* is given), creates the stores, the
    trigger listener, the delivery event handler, and, when a delivery
    gateway is available, the step scheduler.

    Args:
        settings: Application settings.  If ``None``, ``get_settings()`` is used.
        db: An already open database (tests pass an in-memory one).
        gateway: Delivery gateway override.  Without one, an
            :class:`HttpDeliveryGateway` is built when ``DELIVERY_URL`` is set.
        clock: Time source shared by every component.

    Returns:
        A dict of initialized service instances keyed by name.
    """
    if settings is None:
        settings = get_settings()

    services: dict[str, Any] = {"settings": settings, "clock": clock}

    if db is None:
        db = init_db(settings.db_path)
        logger.info("Database opened", db_path=str(settings.db_path))
    services["db"] = db

    sequence_store = SequenceStore(db, clock=clock)
    enrollment_store = EnrollmentStore(db)
    step_log_store = StepLogStore(db)
    contact_store = ContactStore(db, clock=clock)
    services.update(
        sequence_store=sequence_store,
        enrollment_store=enrollment_store,
        step_log_store=step_log_store,
        contact_store=contact_store,
    )

    services["trigger_listener"] = TriggerListener(
        sequence_store,
        enrollment_store,
        contact_store,
        audience_matcher=contact_store,
        clock=clock,
    )
    services["delivery_events"] = DeliveryEventHandler(
        db, enrollment_store, step_log_store, contacts=contact_store, clock=clock
    )

    if gateway is None and settings.delivery_url:
        gateway = HttpDeliveryGateway(
            settings.delivery_url,
            settings.delivery_api_key.get_secret_value(),
            timeout=settings.delivery_timeout_seconds,
            app_url=settings.app_url,
            unsubscribe_secret=settings.unsubscribe_secret.get_secret_value(),
        )
        logger.info("HttpDeliveryGateway initialized")
    services["gateway"] = gateway

    if gateway is not None:
        services["scheduler"] = StepScheduler(
            db,
            sequence_store,
            enrollment_store,
            step_log_store,
            contact_store,
            gateway,
            renderer=TemplateTokenRenderer(),
            clock=clock,
            batch_size=settings.sweep_batch_size,
            max_batches=settings.sweep_max_batches,
            lease_seconds=settings.claim_lease_seconds,
            default_timezone=settings.default_timezone,
        )
    else:
        services["scheduler"] = None
        logger.info("DELIVERY_URL not set, step scheduler disabled")

    return services


def close_services(services: dict[str, Any]) -> None:
    """Release the gateway's HTTP client and close the database."""
    gateway = services.get("gateway")
    if isinstance(gateway, HttpDeliveryGateway):
        gateway.close()
    db = services.get("db")
    if db is not None:
        close_db(db)
        logger.info("Database connection closed")
