"""
Workflow engine with step state machine management.
Handles workflow instantiation, step transitions and cancellation.

Every mutating operation is one transaction: the rows are read, the
preconditions checked and the writes applied on the same session, and each
write is a conditional UPDATE guarded by the status that was read. A writer
that loses a race therefore matches zero rows and fails instead of
overwriting the winner.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func
from sqlalchemy.orm import selectinload
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Tuple
import structlog

from backoffice.models.orm import Workflow, WorkflowStep, StepTemplate
from backoffice.models.schemas import (
    WorkflowStatus,
    StepStatus,
    OPEN_STEP_STATUSES,
    RESOLVED_STEP_STATUSES,
    STEP_TRANSITIONS,
)
from backoffice.core.exceptions import (
    NotFoundError,
    InvalidStateError,
    ConcurrentModificationError,
)
from backoffice.core.scheduler import schedule_due_dates, add_days
from backoffice.core.template_service import TemplateService

logger = structlog.get_logger()


def _values(statuses: Iterable[StepStatus]) -> List[str]:
    return [status.value for status in statuses]


def can_transition(current: StepStatus, target: StepStatus) -> bool:
    """Check if a step may move from current to target"""
    return target in STEP_TRANSITIONS.get(current, [])


def to_local_naive(moment: datetime) -> datetime:
    """
    Express a timestamp in naive local time, the frame of datetime.now and of
    every stored column. Naive values are taken as already local.
    """
    if moment.tzinfo is None:
        return moment
    return moment.astimezone().replace(tzinfo=None)


class WorkflowEngine:
    """
    Manages workflow instances and the step state machine.

    PENDING -> ACTIVE -> DONE | SKIPPED. WAITING is set by collaborators and
    is treated like ACTIVE/PENDING for skipping and cancellation.
    """

    def __init__(self, db: AsyncSession, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.clock = clock or datetime.now

    @asynccontextmanager
    async def _atomic(self):
        """Commit everything done inside the block, or roll all of it back"""
        try:
            yield
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

    # ------------------------------------------------------------------
    # Instantiation
    # ------------------------------------------------------------------

    async def start_workflow(
        self,
        template_id: str,
        customer_business_id: str,
        start_date: Optional[datetime],
        assignee_id: str,
    ) -> Workflow:
        """
        Start a workflow from a template.

        The first step is created ACTIVE and the rest PENDING, each with the
        due date projected by the scheduler. Workflow and steps are inserted
        in one transaction.

        Raises:
            NotFoundError: template does not exist
            InvalidStateError: template is inactive or has no steps
        """
        start_date = to_local_naive(start_date) if start_date else self.clock()

        async with self._atomic():
            step_templates = await TemplateService(self.db).resolve_steps(template_id)
            due_dates = schedule_due_dates(start_date, step_templates)

            workflow = Workflow(
                template_id=template_id,
                customer_business_id=customer_business_id,
                status=WorkflowStatus.ACTIVE.value,
                started_at=start_date,
            )
            workflow.steps = [
                WorkflowStep(
                    step_template_id=step_template.id,
                    title=step_template.title,
                    description=step_template.description,
                    sort_order=step_template.sort_order,
                    assignee_id=assignee_id,
                    due_date=due_date,
                    status=(StepStatus.ACTIVE if index == 0 else StepStatus.PENDING).value,
                )
                for index, (step_template, due_date) in enumerate(zip(step_templates, due_dates))
            ]

            self.db.add(workflow)
            await self.db.flush()

        logger.info(
            "workflow_started",
            workflow_id=workflow.id,
            template_id=template_id,
            customer_business_id=customer_business_id,
            num_steps=len(step_templates),
            start_date=start_date.isoformat(),
        )

        return await self.get_workflow(workflow.id)

    # ------------------------------------------------------------------
    # Step transitions
    # ------------------------------------------------------------------

    async def complete_step(self, step_id: str, user_id: str) -> WorkflowStep:
        """
        Mark an ACTIVE step DONE and activate the next pending step.

        Raises:
            NotFoundError: step does not exist
            InvalidStateError: step is not ACTIVE or its workflow is not ACTIVE
        """
        async with self._atomic():
            step, workflow_status = await self._load_step_with_workflow(step_id)
            current = StepStatus(step.status)

            if not can_transition(current, StepStatus.DONE):
                raise self._rejected(
                    "step_complete_rejected",
                    f"Step {step_id} is not active and cannot be completed "
                    f"(current status: {current.value})",
                    current.value,
                    step_id=step_id,
                )
            self._require_active_workflow(step.workflow_id, workflow_status)

            now = self.clock()
            await self._resolve_step(step, current, StepStatus.DONE, now, allowed=(StepStatus.ACTIVE,))
            await self._activate_next_step(step.workflow_id, step.sort_order, now)

        logger.info(
            "workflow_step_completed",
            step_id=step_id,
            workflow_id=step.workflow_id,
            sort_order=step.sort_order,
            completed_by=user_id,
        )

        return await self.get_step(step_id)

    async def skip_step(self, step_id: str) -> WorkflowStep:
        """
        Mark an unresolved step SKIPPED.

        Skipping the current (ACTIVE or WAITING) step hands over to the next
        pending step. Skipping a later PENDING step leaves the current step
        where it is, so at most one step is ever ACTIVE.

        Raises:
            NotFoundError: step does not exist
            InvalidStateError: step already DONE/SKIPPED or workflow not ACTIVE
        """
        async with self._atomic():
            step, workflow_status = await self._load_step_with_workflow(step_id)
            current = StepStatus(step.status)

            if not can_transition(current, StepStatus.SKIPPED):
                raise self._rejected(
                    "step_skip_rejected",
                    f"Step {step_id} is already resolved (current status: {current.value})",
                    current.value,
                    step_id=step_id,
                )
            self._require_active_workflow(step.workflow_id, workflow_status)

            now = self.clock()
            await self._resolve_step(step, current, StepStatus.SKIPPED, now, allowed=OPEN_STEP_STATUSES)

            if current == StepStatus.PENDING:
                await self._complete_if_exhausted(step.workflow_id, now)
            else:
                await self._activate_next_step(step.workflow_id, step.sort_order, now)

        logger.info(
            "workflow_step_skipped",
            step_id=step_id,
            workflow_id=step.workflow_id,
            sort_order=step.sort_order,
            previous_status=current.value,
        )

        return await self.get_step(step_id)

    async def _load_step_with_workflow(self, step_id: str) -> Tuple[WorkflowStep, WorkflowStatus]:
        """Read a step and its workflow's status inside the current transaction"""
        result = await self.db.execute(
            select(WorkflowStep, Workflow.status)
            .join(Workflow, WorkflowStep.workflow_id == Workflow.id)
            .where(WorkflowStep.id == step_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        row = result.first()

        if row is None:
            raise NotFoundError("WorkflowStep", step_id)

        step, workflow_status = row
        return step, WorkflowStatus(workflow_status)

    def _require_active_workflow(self, workflow_id: str, workflow_status: WorkflowStatus):
        if workflow_status != WorkflowStatus.ACTIVE:
            raise self._rejected(
                "workflow_not_active",
                f"Workflow {workflow_id} is not active (current status: {workflow_status.value})",
                workflow_status.value,
                workflow_id=workflow_id,
            )

    async def _resolve_step(
        self,
        step: WorkflowStep,
        observed: StepStatus,
        target: StepStatus,
        now: datetime,
        allowed: Tuple[StepStatus, ...],
    ):
        """
        Move a step into DONE/SKIPPED, guarded by the status that was read.

        completed_at is written here and nowhere else, so it is set exactly
        once per step.
        """
        result = await self.db.execute(
            update(WorkflowStep)
            .where(WorkflowStep.id == step.id, WorkflowStep.status == observed.value)
            .values(status=target.value, completed_at=now)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            current = await self._current_step_status(step.id)
            logger.warning(
                "concurrent_step_modification_detected",
                step_id=step.id,
                expected_status=observed.value,
                current_status=current.value,
                attempted_status=target.value,
            )
            if current not in allowed:
                raise InvalidStateError(
                    f"Step {step.id} can no longer move to {target.value} "
                    f"(current status: {current.value})",
                    current_state=current.value,
                )
            raise ConcurrentModificationError(
                f"Step {step.id} was modified concurrently. "
                f"Expected status {observed.value}, found {current.value}. Please retry."
            )

    async def _current_step_status(self, step_id: str) -> StepStatus:
        result = await self.db.execute(
            select(WorkflowStep.status).where(WorkflowStep.id == step_id)
        )
        return StepStatus(result.scalar_one())

    async def _activate_next_step(
        self,
        workflow_id: str,
        completed_sort_order: int,
        completion_time: datetime,
    ) -> Optional[WorkflowStep]:
        """
        Activate the first PENDING step after completed_sort_order.

        A step whose template defines days_from_previous gets its due date
        re-anchored to completion_time; any other step keeps its projected
        due date. When nothing is pending the workflow completion rule runs.

        Returns:
            The activated step, or None if there was nothing to activate
        """
        result = await self.db.execute(
            select(WorkflowStep, StepTemplate.days_from_previous)
            .outerjoin(StepTemplate, WorkflowStep.step_template_id == StepTemplate.id)
            .where(
                WorkflowStep.workflow_id == workflow_id,
                WorkflowStep.sort_order > completed_sort_order,
                WorkflowStep.status == StepStatus.PENDING.value,
            )
            .order_by(WorkflowStep.sort_order)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        row = result.first()

        if row is None:
            await self._complete_if_exhausted(workflow_id, completion_time)
            return None

        next_step, days_from_previous = row
        due_date = next_step.due_date
        if days_from_previous is not None:
            due_date = add_days(completion_time, days_from_previous)

        update_result = await self.db.execute(
            update(WorkflowStep)
            .where(
                WorkflowStep.id == next_step.id,
                WorkflowStep.status == StepStatus.PENDING.value,
            )
            .values(status=StepStatus.ACTIVE.value, due_date=due_date)
            .execution_options(synchronize_session=False)
        )

        if update_result.rowcount == 0:
            logger.warning(
                "concurrent_step_activation_detected",
                workflow_id=workflow_id,
                step_id=next_step.id,
            )
            raise ConcurrentModificationError(
                f"Step {next_step.id} was modified concurrently while being activated. Please retry."
            )

        logger.info(
            "workflow_step_activated",
            workflow_id=workflow_id,
            step_id=next_step.id,
            sort_order=next_step.sort_order,
            due_date=due_date.isoformat() if due_date else None,
            due_date_reanchored=days_from_previous is not None,
        )

        return next_step

    async def _complete_if_exhausted(self, workflow_id: str, completion_time: datetime) -> bool:
        """
        The single workflow completion rule: an ACTIVE workflow with no step
        left in PENDING, ACTIVE or WAITING becomes COMPLETED.

        Returns:
            True if the workflow was completed by this call
        """
        result = await self.db.execute(
            select(func.count(WorkflowStep.id)).where(
                WorkflowStep.workflow_id == workflow_id,
                WorkflowStep.status.in_(_values(OPEN_STEP_STATUSES)),
            )
        )
        remaining = result.scalar() or 0

        if remaining > 0:
            return False

        update_result = await self.db.execute(
            update(Workflow)
            .where(Workflow.id == workflow_id, Workflow.status == WorkflowStatus.ACTIVE.value)
            .values(
                status=WorkflowStatus.COMPLETED.value,
                completed_at=completion_time,
                updated_at=self.clock(),
            )
            .execution_options(synchronize_session=False)
        )

        if update_result.rowcount == 0:
            raise ConcurrentModificationError(
                f"Workflow {workflow_id} was modified concurrently while completing. Please retry."
            )

        logger.info(
            "workflow_completed",
            workflow_id=workflow_id,
            completed_at=completion_time.isoformat(),
        )
        return True

    async def refresh_completion(self, workflow_id: str) -> Workflow:
        """
        Re-apply the completion rule to a workflow.

        Completes an ACTIVE workflow whose steps are all resolved, stamping
        the latest step completion time. Workflows that are already terminal
        are returned unchanged, so calling this repeatedly is harmless.
        """
        async with self._atomic():
            workflow = await self._load_workflow_for_update(workflow_id)

            if workflow.status == WorkflowStatus.ACTIVE.value:
                result = await self.db.execute(
                    select(func.max(WorkflowStep.completed_at)).where(
                        WorkflowStep.workflow_id == workflow_id
                    )
                )
                last_completion = result.scalar() or self.clock()
                await self._complete_if_exhausted(workflow_id, last_completion)

        return await self.get_workflow(workflow_id)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_workflow(self, workflow_id: str) -> Workflow:
        """
        Cancel an ACTIVE workflow.

        Every PENDING, ACTIVE or WAITING step becomes SKIPPED with the
        cancellation time; DONE and SKIPPED steps keep their completed_at.

        Raises:
            NotFoundError: workflow does not exist
            InvalidStateError: workflow is not ACTIVE
        """
        async with self._atomic():
            workflow = await self._load_workflow_for_update(workflow_id)
            self._require_active_workflow(workflow_id, WorkflowStatus(workflow.status))

            now = self.clock()
            update_result = await self.db.execute(
                update(Workflow)
                .where(Workflow.id == workflow_id, Workflow.status == WorkflowStatus.ACTIVE.value)
                .values(
                    status=WorkflowStatus.CANCELLED.value,
                    completed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )

            if update_result.rowcount == 0:
                result = await self.db.execute(
                    select(Workflow.status).where(Workflow.id == workflow_id)
                )
                current = result.scalar_one()
                raise self._rejected(
                    "workflow_cancel_rejected",
                    f"Workflow {workflow_id} is no longer active (current status: {current})",
                    current,
                    workflow_id=workflow_id,
                )

            steps_result = await self.db.execute(
                update(WorkflowStep)
                .where(
                    WorkflowStep.workflow_id == workflow_id,
                    WorkflowStep.status.in_(_values(OPEN_STEP_STATUSES)),
                )
                .values(status=StepStatus.SKIPPED.value, completed_at=now)
                .execution_options(synchronize_session=False)
            )

        logger.info(
            "workflow_cancelled",
            workflow_id=workflow_id,
            steps_skipped=steps_result.rowcount,
            cancelled_at=now.isoformat(),
        )

        # Bulk update bypassed the session; reload any steps it already holds
        await self.get_workflow_steps(workflow_id)
        return await self.get_workflow(workflow_id)

    async def _load_workflow_for_update(self, workflow_id: str) -> Workflow:
        result = await self.db.execute(
            select(Workflow)
            .where(Workflow.id == workflow_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        workflow = result.scalar_one_or_none()

        if not workflow:
            raise NotFoundError("Workflow", workflow_id)

        return workflow

    def _rejected(self, event: str, message: str, current_state: str, **context) -> InvalidStateError:
        logger.warning(event, current_state=current_state, **context)
        return InvalidStateError(message, current_state=current_state)

    # ------------------------------------------------------------------
    # Queries and step details
    # ------------------------------------------------------------------

    async def get_workflow(self, workflow_id: str) -> Workflow:
        """Get workflow by ID with its steps in sort order"""
        result = await self.db.execute(
            select(Workflow)
            .options(selectinload(Workflow.steps))
            .where(Workflow.id == workflow_id)
            .execution_options(populate_existing=True)
        )
        workflow = result.scalar_one_or_none()

        if not workflow:
            raise NotFoundError("Workflow", workflow_id)

        return workflow

    async def get_workflow_steps(self, workflow_id: str) -> List[WorkflowStep]:
        """Get all steps for a workflow in sort order, re-read from the database"""
        result = await self.db.execute(
            select(WorkflowStep)
            .where(WorkflowStep.workflow_id == workflow_id)
            .order_by(WorkflowStep.sort_order)
            .execution_options(populate_existing=True)
        )
        return result.scalars().all()

    async def get_step(self, step_id: str) -> WorkflowStep:
        """Get workflow step by ID"""
        result = await self.db.execute(
            select(WorkflowStep)
            .where(WorkflowStep.id == step_id)
            .execution_options(populate_existing=True)
        )
        step = result.scalar_one_or_none()

        if not step:
            raise NotFoundError("WorkflowStep", step_id)

        return step

    async def list_workflows(
        self,
        customer_business_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Tuple[List[Workflow], int]:
        """List workflows newest first, optionally filtered; returns (page items, total)"""
        filters = []
        if customer_business_id:
            filters.append(Workflow.customer_business_id == customer_business_id)
        if status:
            filters.append(Workflow.status == status.value)

        total_result = await self.db.execute(
            select(func.count(Workflow.id)).where(*filters)
        )
        total = total_result.scalar() or 0

        result = await self.db.execute(
            select(Workflow)
            .options(selectinload(Workflow.steps))
            .where(*filters)
            .order_by(Workflow.created_at.desc(), Workflow.id)
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        return result.scalars().all(), total

    async def list_due_steps(
        self,
        assignee_id: Optional[str] = None,
        within_days: int = 0,
        now: Optional[datetime] = None,
        only_unflagged: bool = False,
    ) -> List[WorkflowStep]:
        """
        Current steps of active workflows that are due by now + within_days.

        within_days=0 lists overdue steps only. only_unflagged restricts the
        result to steps the overdue monitor has not notified about yet.
        """
        now = now or self.clock()
        horizon = now + timedelta(days=within_days)

        query = (
            select(WorkflowStep)
            .join(Workflow, WorkflowStep.workflow_id == Workflow.id)
            .where(
                Workflow.status == WorkflowStatus.ACTIVE.value,
                WorkflowStep.status.in_(_values((StepStatus.ACTIVE, StepStatus.WAITING))),
                WorkflowStep.due_date.is_not(None),
                WorkflowStep.due_date <= horizon,
            )
            .order_by(WorkflowStep.due_date, WorkflowStep.id)
        )

        if assignee_id:
            query = query.where(WorkflowStep.assignee_id == assignee_id)
        if only_unflagged:
            query = query.where(WorkflowStep.overdue_notified_at.is_(None))

        result = await self.db.execute(query)
        return result.scalars().all()

    async def mark_overdue_notified(self, step_id: str, now: Optional[datetime] = None) -> bool:
        """
        Flag a step as notified about being overdue.

        Only a current step (ACTIVE or WAITING) of an ACTIVE workflow can be
        flagged, so a step resolved after it was listed is left alone.

        Returns:
            True if this call set the flag, False if it was already set or the
            step is no longer current
        """
        now = now or self.clock()
        active_workflows = select(Workflow.id).where(Workflow.status == WorkflowStatus.ACTIVE.value)

        async with self._atomic():
            result = await self.db.execute(
                update(WorkflowStep)
                .where(
                    WorkflowStep.id == step_id,
                    WorkflowStep.overdue_notified_at.is_(None),
                    WorkflowStep.status.in_(_values((StepStatus.ACTIVE, StepStatus.WAITING))),
                    WorkflowStep.workflow_id.in_(active_workflows),
                )
                .values(overdue_notified_at=now)
                .execution_options(synchronize_session=False)
            )

        return result.rowcount > 0

    async def clear_overdue_notified(self, step_id: str):
        """Drop the overdue flag so the next check announces the step again"""
        async with self._atomic():
            await self.db.execute(
                update(WorkflowStep)
                .where(WorkflowStep.id == step_id)
                .values(overdue_notified_at=None)
                .execution_options(synchronize_session=False)
            )

    async def update_step_details(
        self,
        step_id: str,
        assignee_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> WorkflowStep:
        """
        Reassign or annotate a step. Never changes status.

        Notes can be written on any step; reassignment needs an unresolved
        step in an active workflow. An empty note clears it.
        """
        async with self._atomic():
            step, workflow_status = await self._load_step_with_workflow(step_id)

            if assignee_id is not None:
                current = StepStatus(step.status)
                if current in RESOLVED_STEP_STATUSES:
                    raise self._rejected(
                        "step_reassign_rejected",
                        f"Step {step_id} is already resolved (current status: {current.value})",
                        current.value,
                        step_id=step_id,
                    )
                self._require_active_workflow(step.workflow_id, workflow_status)
                step.assignee_id = assignee_id

            if note is not None:
                step.note = note or None

        logger.info(
            "workflow_step_details_updated",
            step_id=step_id,
            assignee_changed=assignee_id is not None,
            note_changed=note is not None,
        )

        return await self.get_step(step_id)
