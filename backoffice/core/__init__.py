"""Core business logic components."""

from backoffice.core.exceptions import (
    WorkflowError,
    NotFoundError,
    InvalidStateError,
    ConcurrentModificationError,
)
from backoffice.core.scheduler import schedule_due_dates
from backoffice.core.template_service import TemplateService
from backoffice.core.workflow_engine import WorkflowEngine
from backoffice.core.notification_service import NotificationService
from backoffice.core.event_bus import EventBus
from backoffice.core.overdue_monitor import OverdueMonitor

__all__ = [
    'WorkflowError',
    'NotFoundError',
    'InvalidStateError',
    'ConcurrentModificationError',
    'schedule_due_dates',
    'TemplateService',
    'WorkflowEngine',
    'NotificationService',
    'EventBus',
    'OverdueMonitor',
]
