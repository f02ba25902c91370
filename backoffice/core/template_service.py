"""
Workflow template catalog.
Admin-side configuration of ordered step definitions, plus the resolver the
engine uses to load a template's steps at workflow start.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.orm import selectinload
from typing import List, Optional, Sequence
import structlog

from backoffice.models.orm import WorkflowTemplate, StepTemplate, Workflow
from backoffice.models.schemas import StepTemplateCreate
from backoffice.core.exceptions import NotFoundError, InvalidStateError

logger = structlog.get_logger()


class TemplateService:
    """
    Manages workflow templates and their step definitions.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_template(
        self,
        name: str,
        business_id: str,
        steps: Sequence[StepTemplateCreate],
        description: Optional[str] = None,
    ) -> WorkflowTemplate:
        """Create a template with its ordered step definitions"""
        template = WorkflowTemplate(
            name=name.strip(),
            business_id=business_id,
            description=description or None,
            is_active=True,
        )
        template.steps = [self._build_step(step) for step in steps]

        self.db.add(template)
        await self.db.commit()

        logger.info(
            "workflow_template_created",
            template_id=template.id,
            business_id=business_id,
            num_steps=len(template.steps),
        )

        return await self.get_template(template.id)

    async def get_template(self, template_id: str) -> WorkflowTemplate:
        """Get template by ID with steps ordered by sort_order"""
        result = await self.db.execute(
            select(WorkflowTemplate)
            .options(selectinload(WorkflowTemplate.steps))
            .where(WorkflowTemplate.id == template_id)
            .execution_options(populate_existing=True)
        )
        template = result.scalar_one_or_none()

        if not template:
            raise NotFoundError("WorkflowTemplate", template_id)

        return template

    async def list_templates(
        self,
        business_id: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> List[WorkflowTemplate]:
        """List templates, optionally filtered by business and active flag"""
        query = (
            select(WorkflowTemplate)
            .options(selectinload(WorkflowTemplate.steps))
            .order_by(WorkflowTemplate.business_id, WorkflowTemplate.name)
        )

        if business_id:
            query = query.where(WorkflowTemplate.business_id == business_id)
        if is_active is not None:
            query = query.where(WorkflowTemplate.is_active == is_active)

        result = await self.db.execute(query)
        return result.scalars().all()

    async def update_template(
        self,
        template_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> WorkflowTemplate:
        """
        Update template metadata.

        Running workflows are unaffected: they hold copies of step titles and
        their own due dates.
        """
        template = await self.get_template(template_id)

        if name is not None:
            template.name = name.strip()
        if description is not None:
            template.description = description or None
        if is_active is not None:
            template.is_active = is_active

        await self.db.commit()

        logger.info(
            "workflow_template_updated",
            template_id=template_id,
            is_active=template.is_active,
        )

        return await self.get_template(template_id)

    async def replace_steps(
        self,
        template_id: str,
        steps: Sequence[StepTemplateCreate],
    ) -> WorkflowTemplate:
        """
        Replace every step definition of a template.

        Step templates are frozen once any workflow has been started from the
        template, because running steps read days_from_previous back from them.

        Raises:
            NotFoundError: template does not exist
            InvalidStateError: template is referenced by workflows
        """
        template = await self.get_template(template_id)

        try:
            # Flush the orphan deletes first so reused sort orders don't collide.
            # The usage count must run inside this write transaction
            template.steps.clear()
            await self.db.flush()

            usage = await self.count_workflows(template_id)
            if usage > 0:
                logger.warning(
                    "template_steps_locked",
                    template_id=template_id,
                    workflow_count=usage,
                )
                raise InvalidStateError(
                    f"Template {template_id} is used by {usage} workflow(s); its steps can no longer change",
                    current_state="IN_USE",
                )

            template.steps.extend(self._build_step(step) for step in steps)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "workflow_template_steps_replaced",
            template_id=template_id,
            num_steps=len(steps),
        )

        return await self.get_template(template_id)

    async def count_workflows(self, template_id: str) -> int:
        """Count workflows started from a template"""
        result = await self.db.execute(
            select(func.count(Workflow.id)).where(Workflow.template_id == template_id)
        )
        return result.scalar() or 0

    async def resolve_steps(self, template_id: str) -> List[StepTemplate]:
        """
        Load the ordered step definitions of a template.

        Raises:
            NotFoundError: template does not exist
            InvalidStateError: template is inactive or defines no steps
        """
        template = await self.get_template(template_id)

        if not template.is_active:
            raise InvalidStateError(
                f"Workflow template {template.name} is not active",
                current_state="INACTIVE",
            )

        if not template.steps:
            raise InvalidStateError(
                f"Workflow template {template.name} defines no steps",
                current_state="EMPTY",
            )

        return sorted(template.steps, key=lambda step: step.sort_order)

    @staticmethod
    def _build_step(step: StepTemplateCreate) -> StepTemplate:
        return StepTemplate(
            title=step.title.strip(),
            description=step.description or None,
            sort_order=step.sort_order,
            is_required=step.is_required,
            days_from_start=step.days_from_start,
            days_from_previous=step.days_from_previous,
            assignee_role=step.assignee_role or None,
        )
