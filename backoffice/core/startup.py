"""Application startup and shutdown lifecycle management."""

from contextlib import asynccontextmanager
import structlog
from fastapi import FastAPI

from backoffice.config import settings
from backoffice.models import Database
from backoffice.core import EventBus, OverdueMonitor
from backoffice.core.events import register_event_handlers

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan management for startup/shutdown.
    Manages background tasks for event processing and overdue checking.
    """
    logger.info("application_starting", environment=settings.environment)

    settings.validate_critical_config()

    # Initialize database
    db = Database()
    await db.init()
    logger.info("database_initialized")

    event_bus = EventBus(max_queue_size=settings.event_bus_max_queue_size)
    await event_bus.start()

    overdue_monitor = OverdueMonitor(
        db,
        event_bus,
        check_interval=settings.overdue_check_interval_seconds,
    )
    await overdue_monitor.start()

    register_event_handlers(event_bus, db)

    # Store in app state for access in routes
    app.state.db = db
    app.state.event_bus = event_bus
    app.state.overdue_monitor = overdue_monitor

    logger.info("application_ready")

    yield

    # Shutdown
    logger.info("application_shutting_down")

    await overdue_monitor.stop()
    await event_bus.stop()
    await db.close()

    logger.info("application_stopped")
