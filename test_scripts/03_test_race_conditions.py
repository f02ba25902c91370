#!/usr/bin/env python3
"""
Test: Race Conditions and Concurrency Control
Purpose: Verify guarded writes keep step and workflow state consistent

Tests:
1. Two concurrent completions of the same step: one wins, one is rejected
2. Concurrent complete and skip of the same step
3. Cancellation racing a step completion
4. Concurrent overdue flagging sets the flag once
"""

import asyncio
import sys
from datetime import datetime

from fixtures import (
    run_tests, TestContext, create_test_template, start_test_workflow,
    step_by_title, assert_equal, assert_true, assert_single_active_step,
)

from backoffice.core import InvalidStateError, ConcurrentModificationError
from backoffice.models.schemas import StepStatus, WorkflowStatus, OPEN_STEP_STATUSES


async def _start(ctx):
    async with ctx.get_session() as session:
        template = await create_test_template(session)
    async with ctx.engine() as engine:
        return await start_test_workflow(engine, template.id)


async def _attempt(ctx, label, operation, results, errors):
    try:
        async with ctx.engine() as engine:
            await operation(engine)
        results.append(label)
    except (InvalidStateError, ConcurrentModificationError) as ex:
        errors.append((label, ex))
    except Exception as ex:
        errors.append((label, AssertionError(f"Unexpected error: {type(ex).__name__}: {ex}")))


async def test_concurrent_complete_same_step():
    """
    Scenario:
    - Step A is ACTIVE
    - Two tasks complete it at the same time
    - Exactly one succeeds; the other gets InvalidStateError
    - B is activated once
    """
    async with TestContext() as ctx:
        workflow = await _start(ctx)
        step_a = step_by_title(workflow, "A")

        results, errors = [], []
        await asyncio.gather(
            _attempt(ctx, "task1", lambda e: e.complete_step(step_a.id, "user-1"), results, errors),
            _attempt(ctx, "task2", lambda e: e.complete_step(step_a.id, "user-2"), results, errors),
        )

        assert_equal(len(results), 1, f"Expected exactly 1 success, got {results} / {errors}")
        assert_equal(len(errors), 1, f"Expected exactly 1 failure, got {errors}")
        assert_true(
            isinstance(errors[0][1], InvalidStateError),
            f"Loser should see InvalidStateError, got {errors[0][1]!r}",
        )

        async with ctx.engine() as engine:
            workflow = await engine.get_workflow(workflow.id)

        assert_equal(step_by_title(workflow, "A").status, StepStatus.DONE.value)
        assert_equal(step_by_title(workflow, "B").status, StepStatus.ACTIVE.value)
        assert_equal(step_by_title(workflow, "C").status, StepStatus.PENDING.value)
        assert_single_active_step(workflow)


async def test_concurrent_complete_and_skip():
    async with TestContext() as ctx:
        workflow = await _start(ctx)
        step_a = step_by_title(workflow, "A")

        results, errors = [], []
        await asyncio.gather(
            _attempt(ctx, "complete", lambda e: e.complete_step(step_a.id, "user-1"), results, errors),
            _attempt(ctx, "skip", lambda e: e.skip_step(step_a.id), results, errors),
        )

        assert_equal(len(results), 1, f"Expected exactly 1 success, got {results} / {errors}")

        async with ctx.engine() as engine:
            workflow = await engine.get_workflow(workflow.id)

        expected = StepStatus.DONE.value if results[0] == "complete" else StepStatus.SKIPPED.value
        assert_equal(step_by_title(workflow, "A").status, expected)
        assert_equal(step_by_title(workflow, "B").status, StepStatus.ACTIVE.value)
        assert_single_active_step(workflow)


async def test_cancel_racing_completion():
    """Whatever the interleaving, a cancelled workflow has no open steps"""
    async with TestContext() as ctx:
        workflow = await _start(ctx)
        step_a = step_by_title(workflow, "A")

        results, errors = [], []
        await asyncio.gather(
            _attempt(ctx, "complete", lambda e: e.complete_step(step_a.id, "user-1"), results, errors),
            _attempt(ctx, "cancel", lambda e: e.cancel_workflow(workflow.id), results, errors),
        )

        assert_true("cancel" in results, f"Cancellation of an active workflow must succeed: {errors}")

        async with ctx.engine() as engine:
            workflow = await engine.get_workflow(workflow.id)

        assert_equal(workflow.status, WorkflowStatus.CANCELLED.value)
        open_values = [status.value for status in OPEN_STEP_STATUSES]
        assert_true(
            all(step.status not in open_values for step in workflow.steps),
            f"Open steps left after cancel: {[(s.title, s.status) for s in workflow.steps]}",
        )
        assert_equal(
            step_by_title(workflow, "A").status,
            StepStatus.DONE.value if "complete" in results else StepStatus.SKIPPED.value,
        )


async def test_concurrent_overdue_flagging():
    async with TestContext() as ctx:
        workflow = await _start(ctx)
        step_a = step_by_title(workflow, "A")
        now = datetime(2026, 1, 5)

        async def flag():
            async with ctx.engine() as engine:
                return await engine.mark_overdue_notified(step_a.id, now=now)

        outcomes = await asyncio.gather(*(flag() for _ in range(5)))

        assert_equal(sorted(outcomes), [False, False, False, False, True])


async def main():
    return await run_tests("Race Condition Tests", [
        ("Concurrent complete of same step", test_concurrent_complete_same_step),
        ("Concurrent complete and skip", test_concurrent_complete_and_skip),
        ("Cancel racing completion", test_cancel_racing_completion),
        ("Concurrent overdue flagging", test_concurrent_overdue_flagging),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
