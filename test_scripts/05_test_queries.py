#!/usr/bin/env python3
"""
Test: Workflow Queries and Step Details
Purpose: Test read paths and non-transition step updates

Tests:
- Paged and filtered workflow listing
- Due and overdue step listing
- Reassigning and annotating steps
"""

import asyncio
import sys
from datetime import datetime

from fixtures import (
    run_tests, TestContext, create_test_template, start_test_workflow,
    step_by_title, assert_equal, assert_true, assert_raises_async,
)

from backoffice.core import InvalidStateError, NotFoundError
from backoffice.models.schemas import StepStatus, WorkflowStatus


async def test_list_workflows_paging_and_filters():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            template = await create_test_template(session)

        async with ctx.engine() as engine:
            for index in range(5):
                await start_test_workflow(engine, template.id, customer_business_id=f"cb-{index % 2}")
            cancelled = await start_test_workflow(engine, template.id, customer_business_id="cb-9")
            await engine.cancel_workflow(cancelled.id)

        async with ctx.engine() as engine:
            page_1, total = await engine.list_workflows(page=1, per_page=4)
            page_2, _ = await engine.list_workflows(page=2, per_page=4)
            assert_equal(total, 6)
            assert_equal(len(page_1), 4)
            assert_equal(len(page_2), 2)
            assert_equal(len({wf.id for wf in page_1} | {wf.id for wf in page_2}), 6, "Pages must not overlap")

            by_customer, total = await engine.list_workflows(customer_business_id="cb-0")
            assert_equal(total, 3)
            assert_true(all(wf.customer_business_id == "cb-0" for wf in by_customer))

            by_status, total = await engine.list_workflows(status=WorkflowStatus.CANCELLED)
            assert_equal(total, 1)
            assert_equal(by_status[0].id, cancelled.id)
            assert_equal(len(by_status[0].steps), 3, "Steps are loaded with the list")


async def test_list_due_steps():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            template = await create_test_template(session)

        async with ctx.engine() as engine:
            overdue = await start_test_workflow(engine, template.id, start_date=datetime(2026, 1, 1))
            due_now = await start_test_workflow(
                engine, template.id, start_date=datetime(2026, 1, 3), assignee_id="user-2"
            )
            due_soon = await start_test_workflow(engine, template.id, start_date=datetime(2026, 1, 5))
            cancelled = await start_test_workflow(engine, template.id, start_date=datetime(2026, 1, 1))
            await engine.cancel_workflow(cancelled.id)

        now = datetime(2026, 1, 3)
        async with ctx.engine() as engine:
            due = await engine.list_due_steps(now=now)
            assert_equal(
                [step.workflow_id for step in due],
                [overdue.id, due_now.id],
                "Ordered by due date; cancelled workflows and future steps excluded",
            )
            assert_true(all(step.status == StepStatus.ACTIVE.value for step in due))

            soon = await engine.list_due_steps(now=now, within_days=3)
            assert_equal({step.workflow_id for step in soon}, {overdue.id, due_now.id, due_soon.id})

            mine = await engine.list_due_steps(assignee_id="user-2", now=now, within_days=3)
            assert_equal([step.workflow_id for step in mine], [due_now.id])


async def test_list_due_steps_skips_flagged():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            template = await create_test_template(session)

        async with ctx.engine() as engine:
            workflow = await start_test_workflow(engine, template.id)

        now = datetime(2026, 1, 10)
        async with ctx.engine() as engine:
            step_a = step_by_title(workflow, "A")
            assert_true(await engine.mark_overdue_notified(step_a.id, now=now))
            assert_equal(len(await engine.list_due_steps(now=now, only_unflagged=True)), 0)
            assert_equal(len(await engine.list_due_steps(now=now)), 1)


async def test_reassign_and_annotate_step():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            template = await create_test_template(session)

        async with ctx.engine() as engine:
            workflow = await start_test_workflow(engine, template.id)

        step_b = step_by_title(workflow, "B")
        async with ctx.engine() as engine:
            updated = await engine.update_step_details(step_b.id, assignee_id="user-7", note="Call on Monday")

        assert_equal(updated.assignee_id, "user-7")
        assert_equal(updated.note, "Call on Monday")
        assert_equal(updated.status, StepStatus.PENDING.value, "Status never changes here")

        async with ctx.engine() as engine:
            cleared = await engine.update_step_details(step_b.id, note="")
        assert_equal(cleared.note, None)
        assert_equal(cleared.assignee_id, "user-7", "Assignee untouched when not given")


async def test_resolved_step_note_only():
    async with TestContext() as ctx:
        async with ctx.get_session() as session:
            template = await create_test_template(session)

        async with ctx.engine() as engine:
            workflow = await start_test_workflow(engine, template.id)

        step_a = step_by_title(workflow, "A")
        async with ctx.engine() as engine:
            await engine.complete_step(step_a.id, "user-1")

        async with ctx.engine() as engine:
            annotated = await engine.update_step_details(step_a.id, note="Sent by email")
            assert_equal(annotated.note, "Sent by email")

            await assert_raises_async(
                InvalidStateError,
                engine.update_step_details(step_a.id, assignee_id="user-9"),
            )

        async with ctx.engine() as engine:
            step_a = await engine.get_step(step_a.id)
        assert_equal(step_a.assignee_id, "user-1")
        assert_equal(step_a.note, "Sent by email")


async def test_get_missing_step():
    async with TestContext() as ctx:
        async with ctx.engine() as engine:
            await assert_raises_async(NotFoundError, engine.get_step("missing"))
            await assert_raises_async(NotFoundError, engine.update_step_details("missing", note="x"))


async def main():
    return await run_tests("Query and Step Detail Tests", [
        ("List workflows with paging and filters", test_list_workflows_paging_and_filters),
        ("List due steps", test_list_due_steps),
        ("List due steps skips flagged", test_list_due_steps_skips_flagged),
        ("Reassign and annotate step", test_reassign_and_annotate_step),
        ("Resolved step accepts notes only", test_resolved_step_note_only),
        ("Get missing step", test_get_missing_step),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
