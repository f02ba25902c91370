"""Workflow management API endpoints."""

import math
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
from backoffice.models.schemas import (
    EventType,
    StepStatus,
    WorkflowStart,
    WorkflowStatus,
    WorkflowResponse,
    WorkflowListResponse,
    Pagination,
)

router = APIRouter(prefix="/api/workflows", tags=["workflows"])
logger = structlog.get_logger()


@router.post("", response_model=WorkflowResponse, status_code=201)
async def start_workflow(
    start_req: WorkflowStart,
    user_id: str = Depends(get_current_user_id),
    db_session = Depends(get_db),
    event_bus = Depends(get_event_bus),
    clock = Depends(get_clock),
):
    """
    Start a workflow from a template.
    The first step becomes ACTIVE; every step is assigned to assignee_id.
    """
    engine = WorkflowEngine(db_session, clock=clock)

    try:
        workflow = await engine.start_workflow(
            start_req.template_id,
            start_req.customer_business_id,
            start_req.start_date,
            start_req.assignee_id,
        )
    except WorkflowError as e:
        raise to_http_exception(e)

    logger.info("workflow_started_via_api", workflow_id=workflow.id, started_by=user_id)

    await publish_event(event_bus, EventType.WORKFLOW_STARTED, workflow.to_event_data())
    for step in workflow.steps:
        if step.status == StepStatus.ACTIVE.value:
            await publish_event(event_bus, EventType.STEP_ACTIVATED, step.to_event_data())

    return WorkflowResponse(**workflow.to_dict())


@router.get("", response_model=WorkflowListResponse)
async def list_workflows(
    customer_business_id: str = None,
    status: WorkflowStatus = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    db_session = Depends(get_db),
):
    """List workflows newest first, optionally filtered by customer business and status"""
    engine = WorkflowEngine(db_session)
    workflows, total = await engine.list_workflows(customer_business_id, status, page, per_page)

    return WorkflowListResponse(
        data=[WorkflowResponse(**wf.to_dict()) for wf in workflows],
        pagination=Pagination(
            page=page,
            per_page=per_page,
            total=total,
            total_pages=math.ceil(total / per_page) if total else 0,
        ),
    )


@router.get("/{workflow_id}", response_model=WorkflowResponse)
async def get_workflow(
    workflow_id: str,
    db_session = Depends(get_db),
):
    """Get workflow by ID with its steps"""
    engine = WorkflowEngine(db_session)

    try:
        workflow = await engine.get_workflow(workflow_id)
        return WorkflowResponse(**workflow.to_dict())
    except WorkflowError as e:
        raise to_http_exception(e)


@router.post("/{workflow_id}/cancel", response_model=WorkflowResponse)
async def cancel_workflow(
    workflow_id: str,
    user_id: str = Depends(get_current_user_id),
    db_session = Depends(get_db),
    event_bus = Depends(get_event_bus),
    clock = Depends(get_clock),
):
    """
    Cancel an active workflow.
    Every unresolved step is skipped.
    """
    engine = WorkflowEngine(db_session, clock=clock)

    try:
        workflow = await engine.cancel_workflow(workflow_id)
    except WorkflowError as e:
        raise to_http_exception(e)

    logger.info("workflow_cancelled_via_api", workflow_id=workflow_id, cancelled_by=user_id)
    await publish_event(event_bus, EventType.WORKFLOW_CANCELLED, workflow.to_event_data())

    return WorkflowResponse(**workflow.to_dict())
