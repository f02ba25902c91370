"""Workflow template catalog API endpoints."""

from typing import List
import structlog
from fastapi import APIRouter, Depends

from backoffice.api.v1.dependencies import to_http_exception
from backoffice.models import get_db
from backoffice.core import TemplateService, WorkflowError
from backoffice.models.schemas import (
    WorkflowTemplateCreate,
    WorkflowTemplateUpdate,
    WorkflowTemplateResponse,
    StepTemplateReplace,
)

router = APIRouter(prefix="/api/workflow-templates", tags=["templates"])
logger = structlog.get_logger()


@router.post("", response_model=WorkflowTemplateResponse, status_code=201)
async def create_template(
    template_req: WorkflowTemplateCreate,
    db_session = Depends(get_db),
):
    """Create a workflow template with its ordered steps"""
    service = TemplateService(db_session)
    template = await service.create_template(
        template_req.name,
        template_req.business_id,
        template_req.steps,
        description=template_req.description,
    )
    return WorkflowTemplateResponse(**template.to_dict())


@router.get("", response_model=List[WorkflowTemplateResponse])
async def list_templates(
    business_id: str = None,
    is_active: bool = None,
    db_session = Depends(get_db),
):
    """List templates, optionally filtered by business and active flag"""
    service = TemplateService(db_session)
    templates = await service.list_templates(business_id, is_active)
    return [WorkflowTemplateResponse(**template.to_dict()) for template in templates]


@router.get("/{template_id}", response_model=WorkflowTemplateResponse)
async def get_template(
    template_id: str,
    db_session = Depends(get_db),
):
    """Get template by ID"""
    service = TemplateService(db_session)

    try:
        template = await service.get_template(template_id)
        return WorkflowTemplateResponse(**template.to_dict())
    except WorkflowError as e:
        raise to_http_exception(e)


@router.patch("/{template_id}", response_model=WorkflowTemplateResponse)
async def update_template(
    template_id: str,
    update_req: WorkflowTemplateUpdate,
    db_session = Depends(get_db),
):
    """Update template name, description or active flag"""
    service = TemplateService(db_session)

    try:
        template = await service.update_template(
            template_id,
            name=update_req.name,
            description=update_req.description,
            is_active=update_req.is_active,
        )
        return WorkflowTemplateResponse(**template.to_dict())
    except WorkflowError as e:
        raise to_http_exception(e)


@router.put("/{template_id}/steps", response_model=WorkflowTemplateResponse)
async def replace_template_steps(
    template_id: str,
    steps_req: StepTemplateReplace,
    db_session = Depends(get_db),
):
    """
    Replace every step of a template.
    Rejected with 409 once any workflow has been started from it.
    """
    service = TemplateService(db_session)

    try:
        template = await service.replace_steps(template_id, steps_req.steps)
        return WorkflowTemplateResponse(**template.to_dict())
    except WorkflowError as e:
        raise to_http_exception(e)
