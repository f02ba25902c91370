"""Health check and metrics endpoints."""

from datetime import datetime
from fastapi import APIRouter, Depends
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from backoffice.api.v1.dependencies import get_event_bus, get_overdue_monitor
from backoffice.models import Workflow, WorkflowStep, get_db
from backoffice.models.schemas import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    return HealthResponse(status="healthy", timestamp=datetime.now().timestamp())


@router.get("/metrics")
async def metrics(
    db_session: AsyncSession = Depends(get_db),
    event_bus = Depends(get_event_bus),
    overdue_monitor = Depends(get_overdue_monitor),
):
    """
    System metrics endpoint for observability.
    Returns workflow and step counts by status, and background task stats.
    """
    workflow_counts = await db_session.execute(
        select(Workflow.status, func.count(Workflow.id)).group_by(Workflow.status)
    )
    workflows_by_status = {status: count for status, count in workflow_counts.fetchall()}

    step_counts = await db_session.execute(
        select(WorkflowStep.status, func.count(WorkflowStep.id)).group_by(WorkflowStep.status)
    )
    steps_by_status = {status: count for status, count in step_counts.fetchall()}

    return {
        "timestamp": datetime.now().timestamp(),
        "workflows": {
            "total": sum(workflows_by_status.values()),
            "by_status": workflows_by_status,
        },
        "steps": {
            "total": sum(steps_by_status.values()),
            "by_status": steps_by_status,
        },
        "event_bus": event_bus.get_stats(),
        "overdue_monitor": {
            "check_interval_seconds": overdue_monitor.check_interval,
            "running": overdue_monitor.running,
        },
    }
