#!/usr/bin/env python3
"""
Test: Workflow Engine
Purpose: Walk workflows through the step state machine

Tests:
- Start a workflow from a template
- Complete steps, re-anchoring due dates to actual completion
- Skip the current step and later pending steps
- Automatic completion once every step is resolved
- Cancellation
- Rejected transitions
"""

import asyncio
import sys
from datetime import datetime
from sqlalchemy import select, func, update

from fixtures import (
    run_tests, TestContext, create_test_template, start_test_workflow, make_step,
    step_by_title, assert_equal, assert_true, assert_raises_async, assert_single_active_step,
)

from backoffice.core import NotFoundError, InvalidStateError, TemplateService
from backoffice.models.orm import Workflow, WorkflowStep
from backoffice.models.schemas import StepStatus, WorkflowStatus


async def _start_three_step_workflow(ctx):
    async with ctx.get_session() as session:
        template = await create_test_template(session)

    async with ctx.engine() as engine:
        return await start_test_workflow(engine, template.id)


async def test_start_workflow():
    """First step ACTIVE, the rest PENDING, projected due dates"""
    async with TestContext() as ctx:
        workflow = await _start_three_step_workflow(ctx)

        async with ctx.engine() as engine:
            workflow = await engine.get_workflow(workflow.id)

        assert_equal(workflow.status, WorkflowStatus.ACTIVE.value)
        assert_equal(workflow.started_at, datetime(2026, 1, 1))
        assert_equal(workflow.completed_at, None)
        assert_equal([step.title for step in workflow.steps], ["A", "B", "C"])
        assert_equal(
            [step.status for step in workflow.steps],
            [StepStatus.ACTIVE.value, StepStatus.PENDING.value, StepStatus.PENDING.value],
        )
        assert_equal(
            [step.due_date for step in workflow.steps],
            [datetime(2026, 1, 1), datetime(2026, 1, 4), datetime(2026, 1, 6)],
        )
        assert_true(all(step.assignee_id == "user-1" for step in workflow.steps))
        assert_true(all(step.completed_at is None for step in workflow.steps))


async def test_start_date_defaults_to_clock():
    async with TestContext() as ctx:
        ctx.clock.set(datetime(2026, 4, 1, 10, 0))

        async with ctx.get_session() as session:
            template = await create_test_template(session)

        async with ctx.engine() as engine:
            workflow = await engine.start_workflow(template.id, "cb-1", None, "user-1")

        assert_equal(workflow.started_at, datetime(2026, 4, 1, 10, 0))
        assert_equal(workflow.steps[1].due_date, datetime(2026, 4, 4, 10, 0))


async def test_complete_step_reanchors_next_due_date():
    """Completing A a day late moves B's due date with it"""
    async with TestContext() as ctx:
        workflow = await _start_three_step_workflow(ctx)
        step_a = step_by_title(workflow, "A")

        ctx.clock.set(datetime(2026, 1, 2))
        async with ctx.engine() as engine:
            completed = await engine.complete_step(step_a.id, "user-1")

        assert_equal(completed.status, StepStatus.DONE.value)
        assert_equal(completed.completed_at, datetime(2026, 1, 2))

        async with ctx.engine() as engine:
            workflow = await engine.get_workflow(workflow.id)

        step_b = step_by_title(workflow, "B")
        step_c = step_by_title(workflow, "C")
        assert_equal(step_b.status, StepStatus.ACTIVE.value)
        assert_equal(step_b.due_date, datetime(2026, 1, 5), "Anchored to actual completion")
        assert_equal(step_c.status, StepStatus.PENDING.value)
        assert_equal(step_c.due_date, datetime(2026, 1, 6), "Not yet activated, projection kept")
        assert_equal(workflow.status, WorkflowStatus.ACTIVE.value)


async def test_complete_all_steps_completes_workflow():
    async with TestContext() as ctx:
        workflow = await _start_three_step_workflow(ctx)

        for title, completed_on in (("A", 2), ("B", 5), ("C", 8)):
            ctx.clock.set(datetime(2026, 1, completed_on))
            async with ctx.engine() as engine:
                current = step_by_title(await engine.get_workflow(workflow.id), title)
                await engine.complete_step(current.id, "user-1")

        async with ctx.engine() as engine:
            workflow = await engine.get_workflow(workflow.id)

        assert_equal(workflow.status, WorkflowStatus.COMPLETED.value)
        assert_equal(workflow.completed_at, datetime(2026, 1, 8), "Completed when C completed")
        assert_equal(step_by_title(workflow, "C").due_date, datetime(2026, 1, 7))
        assert_true(all(step.status == StepStatus.DONE.value for step in workflow.steps))


async def test_skip_active_step_activates_next():
    async with TestContext() as ctx:
        workflow = await _start_three_step_workflow(ctx)

        ctx.clock.set(datetime(2026, 1, 2))
        async with ctx.engine() as engine:
            skipped = await engine.skip_step(step_by_title(workflow, "A").id)

        assert_equal(skipped.status, StepStatus.SKIPPED.value)
        assert_equal(skipped.completed_at, datetime(2026, 1, 2))

        async with ctx.engine() as engine:
            workflow = await engine.get_workflow(workflow.id)

        step_b = step_by_title(workflow, "B")
        assert_equal(step_b.status, StepStatus.ACTIVE.value)
        assert_equal(step_b.due_date, datetime(2026, 1, 5))


async def test_skip_pending_step_keeps_current_step():
    """Skipping a later step never creates a second ACTIVE step"""
    async with TestContext() as ctx:
        workflow = await _start_three_step_workflow(ctx)

        async with ctx.engine() as engine:
            await engine.skip_step(step_by_title(workflow, "B").id)
            workflow = await engine.get_workflow(workflow.id)

        assert_equal(step_by_title(workflow, "A").status, StepStatus.ACTIVE.value)
        assert_equal(step_by_title(workflow, "B").status, StepStatus.SKIPPED.value)
        assert_equal(step_by_title(workflow, "C").status, StepStatus.PENDING.value)
        assert_single_active_step(workflow)

        # Completing A jumps straight to C
        ctx.clock.set(datetime(2026, 1, 3))
        async with ctx.engine() as engine:
            await engine.complete_step(step_by_title(workflow, "A").id, "user-1")
            workflow = await engine.get_workflow(workflow.id)

        step_c = step_by_title(workflow, "C")
        assert_equal(step_c.status, StepStatus.ACTIVE.value)
        assert_equal(step_c.due_date, datetime(2026, 1, 5), "C is 2 days after A's completion")


async def test_skipping_last_open_step_completes_workflow():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            template = await create_test_template(session, steps=[make_step("Only", 1)])

        async with ctx.engine() as engine:
            workflow = await start_test_workflow(engine, template.id)

        ctx.clock.set(datetime(2026, 1, 9))
        async with ctx.engine() as engine:
            await engine.skip_step(workflow.steps[0].id)
            workflow = await engine.get_workflow(workflow.id)

        assert_equal(workflow.status, WorkflowStatus.COMPLETED.value)
        assert_equal(workflow.completed_at, datetime(2026, 1, 9))


async def test_activation_order_is_monotonic():
    """Steps activate in strictly increasing sort order, gaps allowed"""
    async with TestContext() as ctx:
        steps = [make_step(f"S{order}", order) for order in (10, 20, 35, 40)]
        async with ctx.get_session() as session:
            template = await create_test_template(session, steps=steps)

        async with ctx.engine() as engine:
            workflow = await start_test_workflow(engine, template.id)

        activated = []
        for _ in range(len(steps)):
            async with ctx.engine() as engine:
                workflow = await engine.get_workflow(workflow.id)
                assert_single_active_step(workflow)
                active = [step for step in workflow.steps if step.status == StepStatus.ACTIVE.value]
                if not active:
                    break
                activated.append(active[0].sort_order)
                await engine.complete_step(active[0].id, "user-1")

        assert_equal(activated, [10, 20, 35, 40])


async def test_complete_non_active_step_rejected():
    async with TestContext() as ctx:
        workflow = await _start_three_step_workflow(ctx)

        async with ctx.engine() as engine:
            error = await assert_raises_async(
                InvalidStateError,
                engine.complete_step(step_by_title(workflow, "B").id, "user-1"),
            )
        assert_equal(error.current_state, StepStatus.PENDING.value)

        async with ctx.engine() as engine:
            await engine.complete_step(step_by_title(workflow, "A").id, "user-1")

        async with ctx.engine() as engine:
            error = await assert_raises_async(
                InvalidStateError,
                engine.complete_step(step_by_title(workflow, "A").id, "user-1"),
            )
        assert_equal(error.current_state, StepStatus.DONE.value)


async def test_skip_resolved_step_rejected():
    async with TestContext() as ctx:
        workflow = await _start_three_step_workflow(ctx)
        step_a = step_by_title(workflow, "A")

        async with ctx.engine() as engine:
            await engine.skip_step(step_a.id)

        async with ctx.engine() as engine:
            await assert_raises_async(InvalidStateError, engine.skip_step(step_a.id))


async def test_waiting_step_can_be_skipped():
    async with TestContext() as ctx:
        workflow = await _start_three_step_workflow(ctx)
        step_a = step_by_title(workflow, "A")

        async with ctx.get_session() as session:
            await session.execute(
                update(WorkflowStep)
                .where(WorkflowStep.id == step_a.id)
                .values(status=StepStatus.WAITING.value)
            )
            await session.commit()

        async with ctx.engine() as engine:
            await assert_raises_async(InvalidStateError, engine.complete_step(step_a.id, "user-1"))
            await engine.skip_step(step_a.id)
            workflow = await engine.get_workflow(workflow.id)

        assert_equal(step_by_title(workflow, "A").status, StepStatus.SKIPPED.value)
        assert_equal(step_by_title(workflow, "B").status, StepStatus.ACTIVE.value)


async def test_cancel_workflow():
    """Open steps are skipped at the cancellation time, resolved ones untouched"""
    async with TestContext() as ctx:
        workflow = await _start_three_step_workflow(ctx)

        ctx.clock.set(datetime(2026, 1, 2))
        async with ctx.engine() as engine:
            await engine.complete_step(step_by_title(workflow, "A").id, "user-1")

        ctx.clock.set(datetime(2026, 1, 3, 15, 0))
        async with ctx.engine() as engine:
            cancelled = await engine.cancel_workflow(workflow.id)

        assert_equal(cancelled.status, WorkflowStatus.CANCELLED.value)
        assert_equal(cancelled.completed_at, datetime(2026, 1, 3, 15, 0))

        async with ctx.engine() as engine:
            workflow = await engine.get_workflow(workflow.id)

        assert_equal(step_by_title(workflow, "A").status, StepStatus.DONE.value)
        assert_equal(step_by_title(workflow, "A").completed_at, datetime(2026, 1, 2))
        for title in ("B", "C"):
            step = step_by_title(workflow, title)
            assert_equal(step.status, StepStatus.SKIPPED.value, f"{title} should be skipped")
            assert_equal(step.completed_at, datetime(2026, 1, 3, 15, 0))


async def test_cancelled_workflow_rejects_changes():
    async with TestContext() as ctx:
        workflow = await _start_three_step_workflow(ctx)

        async with ctx.engine() as engine:
            await engine.cancel_workflow(workflow.id)

        async with ctx.engine() as engine:
            error = await assert_raises_async(InvalidStateError, engine.cancel_workflow(workflow.id))
            assert_equal(error.current_state, WorkflowStatus.CANCELLED.value)
            await assert_raises_async(
                InvalidStateError,
                engine.complete_step(step_by_title(workflow, "A").id, "user-1"),
            )
            await assert_raises_async(
                InvalidStateError,
                engine.skip_step(step_by_title(workflow, "C").id),
            )


async def test_cancel_completed_workflow_rejected():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            template = await create_test_template(session, steps=[make_step("Only", 1)])

        async with ctx.engine() as engine:
            workflow = await start_test_workflow(engine, template.id)
            await engine.complete_step(workflow.steps[0].id, "user-1")

        async with ctx.engine() as engine:
            error = await assert_raises_async(InvalidStateError, engine.cancel_workflow(workflow.id))
        assert_equal(error.current_state, WorkflowStatus.COMPLETED.value)


async def test_refresh_completion_is_idempotent():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            template = await create_test_template(session, steps=[make_step("Only", 1)])

        async with ctx.engine() as engine:
            workflow = await start_test_workflow(engine, template.id)

        ctx.clock.set(datetime(2026, 1, 4))
        async with ctx.engine() as engine:
            await engine.complete_step(workflow.steps[0].id, "user-1")

        ctx.clock.set(datetime(2026, 2, 1))
        for _ in range(2):
            async with ctx.engine() as engine:
                refreshed = await engine.refresh_completion(workflow.id)
            assert_equal(refreshed.status, WorkflowStatus.COMPLETED.value)
            assert_equal(refreshed.completed_at, datetime(2026, 1, 4), "completed_at set once")


async def test_refresh_completion_leaves_open_workflow():
    async with TestContext() as ctx:
        workflow = await _start_three_step_workflow(ctx)

        async with ctx.engine() as engine:
            refreshed = await engine.refresh_completion(workflow.id)

        assert_equal(refreshed.status, WorkflowStatus.ACTIVE.value)
        assert_equal(refreshed.completed_at, None)


async def test_start_from_empty_template_rejected():
    """No workflow row is written when the template has no steps"""
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            template = await create_test_template(session, steps=[])

        async with ctx.engine() as engine:
            error = await assert_raises_async(
                InvalidStateError,
                start_test_workflow(engine, template.id),
            )
        assert_equal(error.current_state, "EMPTY")

        async with ctx.get_session() as session:
            count = (await session.execute(select(func.count(Workflow.id)))).scalar()
        assert_equal(count, 0)


async def test_start_from_inactive_template_rejected():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            template = await create_test_template(session)
            await TemplateService(session).update_template(template.id, is_active=False)

        async with ctx.engine() as engine:
            error = await assert_raises_async(
                InvalidStateError,
                start_test_workflow(engine, template.id),
            )
        assert_equal(error.current_state, "INACTIVE")


async def test_unknown_ids_raise_not_found():
    async with TestContext() as ctx:
        async with ctx.engine() as engine:
            await assert_raises_async(NotFoundError, start_test_workflow(engine, "missing-template"))
            await assert_raises_async(NotFoundError, engine.complete_step("missing-step", "user-1"))
            await assert_raises_async(NotFoundError, engine.skip_step("missing-step"))
            await assert_raises_async(NotFoundError, engine.cancel_workflow("missing-workflow"))
            await assert_raises_async(NotFoundError, engine.get_workflow("missing-workflow"))


async def main():
    return await run_tests("Workflow Engine Tests", [
        ("Start workflow", test_start_workflow),
        ("Start date defaults to clock", test_start_date_defaults_to_clock),
        ("Complete step re-anchors next due date", test_complete_step_reanchors_next_due_date),
        ("Complete all steps completes workflow", test_complete_all_steps_completes_workflow),
        ("Skip active step activates next", test_skip_active_step_activates_next),
        ("Skip pending step keeps current step", test_skip_pending_step_keeps_current_step),
        ("Skipping last open step completes workflow", test_skipping_last_open_step_completes_workflow),
        ("Activation order is monotonic", test_activation_order_is_monotonic),
        ("Complete non-active step rejected", test_complete_non_active_step_rejected),
        ("Skip resolved step rejected", test_skip_resolved_step_rejected),
        ("Waiting step can be skipped", test_waiting_step_can_be_skipped),
        ("Cancel workflow", test_cancel_workflow),
        ("Cancelled workflow rejects changes", test_cancelled_workflow_rejects_changes),
        ("Cancel completed workflow rejected", test_cancel_completed_workflow_rejected),
        ("Refresh completion is idempotent", test_refresh_completion_is_idempotent),
        ("Refresh completion leaves open workflow", test_refresh_completion_leaves_open_workflow),
        ("Start from empty template rejected", test_start_from_empty_template_rejected),
        ("Start from inactive template rejected", test_start_from_inactive_template_rejected),
        ("Unknown ids raise NotFoundError", test_unknown_ids_raise_not_found),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
