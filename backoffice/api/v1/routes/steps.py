"""Workflow step API endpoints."""

from typing import List
import structlog
from fastapi import APIRouter, Depends, Query

from backoffice.api.v1.dependencies import (
    get_event_bus,
    get_clock,
    get_current_user_id,
    publish_event,
    to_http_exception,
)
from backoffice.config import settings
from backoffice.models import get_db
from backoffice.core import WorkflowEngine, WorkflowError
from backoffice.models.orm import WorkflowStep
from backoffice.models.schemas import (
    EventType,
    StepStatus,
    WorkflowStatus,
    WorkflowStepResponse,
    WorkflowStepUpdate,
)

router = APIRouter(prefix="/api/workflows/steps", tags=["steps"])
logger = structlog.get_logger()


async def _publish_follow_up(engine: WorkflowEngine, event_bus, step: WorkflowStep):
    """
    Announce what a resolved step set in motion: the step activated after it,
    and the workflow completing when it was the last open step.
    """
    steps = await engine.get_workflow_steps(step.workflow_id)
    workflow = await engine.get_workflow(step.workflow_id)

    for candidate in steps:
        if candidate.sort_order > step.sort_order and candidate.status == StepStatus.ACTIVE.value:
            await publish_event(event_bus, EventType.STEP_ACTIVATED, candidate.to_event_data())
            break

    if workflow.status == WorkflowStatus.COMPLETED.value:
        await publish_event(event_bus, EventType.WORKFLOW_COMPLETED, workflow.to_event_data())


@router.get("/due", response_model=List[WorkflowStepResponse])
async def list_due_steps(
    assignee_id: str = None,
    within_days: int = Query(settings.due_soon_days, ge=0),
    db_session = Depends(get_db),
    clock = Depends(get_clock),
):
    """
    Current steps due within the given number of days, overdue ones included.
    within_days=0 lists only steps already due.
    """
    engine = WorkflowEngine(db_session, clock=clock)
    steps = await engine.list_due_steps(assignee_id=assignee_id, within_days=within_days)
    return [WorkflowStepResponse(**step.to_dict()) for step in steps]


@router.patch("/{step_id}", response_model=WorkflowStepResponse)
async def update_step(
    step_id: str,
    update_req: WorkflowStepUpdate,
    user_id: str = Depends(get_current_user_id),
    db_session = Depends(get_db),
):
    """Reassign or annotate a step"""
    engine = WorkflowEngine(db_session)

    try:
        step = await engine.update_step_details(
            step_id,
            assignee_id=update_req.assignee_id,
            note=update_req.note,
        )
    except WorkflowError as e:
        raise to_http_exception(e)

    logger.info("workflow_step_updated_via_api", step_id=step_id, updated_by=user_id)
    return WorkflowStepResponse(**step.to_dict())


@router.post("/{step_id}/complete", response_model=WorkflowStepResponse)
async def complete_step(
    step_id: str,
    user_id: str = Depends(get_current_user_id),
    db_session = Depends(get_db),
    event_bus = Depends(get_event_bus),
    clock = Depends(get_clock),
):
    """
    Mark the active step done.
    The next pending step is activated, or the workflow completes.
    """
    engine = WorkflowEngine(db_session, clock=clock)

    try:
        step = await engine.complete_step(step_id, user_id)
    except WorkflowError as e:
        raise to_http_exception(e)

    await publish_event(event_bus, EventType.STEP_COMPLETED, step.to_event_data())
    await _publish_follow_up(engine, event_bus, step)

    return WorkflowStepResponse(**step.to_dict())


@router.post("/{step_id}/skip", response_model=WorkflowStepResponse)
async def skip_step(
    step_id: str,
    user_id: str = Depends(get_current_user_id),
    db_session = Depends(get_db),
    event_bus = Depends(get_event_bus),
    clock = Depends(get_clock),
):
    """Skip an unresolved step"""
    engine = WorkflowEngine(db_session, clock=clock)

    try:
        step = await engine.skip_step(step_id)
    except WorkflowError as e:
        raise to_http_exception(e)

    logger.info("workflow_step_skipped_via_api", step_id=step_id, skipped_by=user_id)

    await publish_event(event_bus, EventType.STEP_SKIPPED, step.to_event_data())
    await _publish_follow_up(engine, event_bus, step)

    return WorkflowStepResponse(**step.to_dict())
