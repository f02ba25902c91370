"""Shared dependencies for API routes."""

import asyncio
from datetime import datetime
from typing import Callable, Optional
import structlog
from fastapi import Header, HTTPException, Request

from backoffice.models import Database
from backoffice.models.schemas import EventType
from backoffice.core import (
    EventBus,
    OverdueMonitor,
    WorkflowError,
    NotFoundError,
    InvalidStateError,
    ConcurrentModificationError,
)

logger = structlog.get_logger()


def get_event_bus(request: Request) -> EventBus:
    """Get event bus from app state."""
    return request.app.state.event_bus


def get_overdue_monitor(request: Request) -> OverdueMonitor:
    """Get overdue monitor from app state."""
    return request.app.state.overdue_monitor


def get_database(request: Request) -> Database:
    """Get database instance from app state."""
    return request.app.state.db


def get_clock(request: Request) -> Optional[Callable[[], datetime]]:
    """Get the clock override from app state, if one is installed."""
    return getattr(request.app.state, "clock", None)


def get_current_user_id(x_user_id: str = Header(None, alias="X-User-Id")) -> str:
    """
    Acting user for the request.
    Authentication happens upstream; this only reads the forwarded user id.
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return x_user_id


def to_http_exception(error: WorkflowError) -> HTTPException:
    """Map engine errors onto HTTP status codes"""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (InvalidStateError, ConcurrentModificationError)):
        return HTTPException(status_code=409, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


async def publish_event(event_bus: EventBus, event_type: EventType, data: dict):
    """
    Publish after the change is committed.
    A full queue loses the event but never fails the request that caused it.
    """
    try:
        await event_bus.publish(event_type, data)
    except asyncio.QueueFull:
        logger.error("event_dropped", event_type=event_type.value)
