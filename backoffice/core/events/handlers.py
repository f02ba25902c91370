"""Event handlers that turn workflow events into user notifications."""

import structlog

from backoffice.core.event_bus import EventBus
from backoffice.core.notification_service import NotificationService
from backoffice.models import Database
from backoffice.models.schemas import EventType, NotificationKind

logger = structlog.get_logger()


def _workflow_link(workflow_id: str) -> str:
    return f"/workflows/{workflow_id}"


def register_event_handlers(event_bus: EventBus, db: Database):
    """
    Register notification handlers for workflow events.

    Args:
        event_bus: The event bus instance
        db: Database instance for session management
    """

    async def handle_step_activated(data: dict):
        """Tell the assignee a step is now theirs to work on"""
        assignee_id = data.get("assignee_id")
        if not assignee_id:
            logger.debug("step_activated_without_assignee", step_id=data["step_id"])
            return

        due = data.get("due_date")
        message = f"Due {due[:10]}" if due else None

        async with db.session() as session:
            await NotificationService(session).notify(
                assignee_id,
                NotificationKind.STEP_ASSIGNED,
                f"Step ready: {data['title']}",
                message=message,
                link=_workflow_link(data["workflow_id"]),
            )

    async def handle_step_overdue(data: dict):
        """Warn the assignee that a step passed its due date"""
        assignee_id = data.get("assignee_id")
        if not assignee_id:
            return

        async with db.session() as session:
            await NotificationService(session).notify(
                assignee_id,
                NotificationKind.STEP_OVERDUE,
                f"Step overdue: {data['title']}",
                message=f"Was due {data['due_date'][:10]}",
                link=_workflow_link(data["workflow_id"]),
            )

    async def notify_assignees(data: dict, kind: NotificationKind, title: str):
        async with db.session() as session:
            service = NotificationService(session)
            for assignee_id in data.get("assignee_ids", []):
                await service.notify(
                    assignee_id,
                    kind,
                    title,
                    link=_workflow_link(data["workflow_id"]),
                )

        logger.info(
            "workflow_assignees_notified",
            workflow_id=data["workflow_id"],
            kind=kind.value,
            recipients=len(data.get("assignee_ids", [])),
        )

    async def handle_workflow_completed(data: dict):
        await notify_assignees(
            data,
            NotificationKind.WORKFLOW_COMPLETED,
            f"Workflow completed for {data['customer_business_id']}",
        )

    async def handle_workflow_cancelled(data: dict):
        await notify_assignees(
            data,
            NotificationKind.WORKFLOW_CANCELLED,
            f"Workflow cancelled for {data['customer_business_id']}",
        )

    event_bus.subscribe(EventType.STEP_ACTIVATED, handle_step_activated)
    event_bus.subscribe(EventType.STEP_OVERDUE, handle_step_overdue)
    event_bus.subscribe(EventType.WORKFLOW_COMPLETED, handle_workflow_completed)
    event_bus.subscribe(EventType.WORKFLOW_CANCELLED, handle_workflow_cancelled)

    logger.info("event_handlers_registered", count=4)
