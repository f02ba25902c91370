#!/usr/bin/env python3
"""
Test: Due-Date Scheduler
Purpose: Verify the projected due dates computed at workflow start

Tests:
- Offsets from start and from the previous step
- First step with only a relative offset falls back to the start date
- Steps with no offset are due on the start date
- Time of day is preserved
- Same inputs always give the same schedule
"""

import asyncio
import sys
from datetime import datetime
from types import SimpleNamespace

from fixtures import run_tests, assert_equal, three_step_plan

from backoffice.core.scheduler import schedule_due_dates, add_days


def offsets(days_from_start=None, days_from_previous=None):
    return SimpleNamespace(days_from_start=days_from_start, days_from_previous=days_from_previous)


async def test_mixed_offsets():
    """A at start, B three days after A, C two days after B"""
    due = schedule_due_dates(datetime(2026, 1, 1), three_step_plan())

    assert_equal(due, [datetime(2026, 1, 1), datetime(2026, 1, 4), datetime(2026, 1, 6)])


async def test_days_from_start_ignores_previous_steps():
    plan = [
        offsets(days_from_previous=10),
        offsets(days_from_previous=5),
        offsets(days_from_start=2),
    ]

    due = schedule_due_dates(datetime(2026, 3, 1), plan)

    assert_equal(due[2], datetime(2026, 3, 3), "days_from_start anchors to the start date")


async def test_first_step_relative_offset_uses_start_date():
    due = schedule_due_dates(datetime(2026, 3, 1), [offsets(days_from_previous=7)])

    assert_equal(due, [datetime(2026, 3, 1)], "Nothing precedes the first step")


async def test_no_offset_means_due_at_start():
    plan = [offsets(days_from_start=4), offsets(), offsets(days_from_previous=1)]

    due = schedule_due_dates(datetime(2026, 3, 1), plan)

    assert_equal(due, [datetime(2026, 3, 5), datetime(2026, 3, 1), datetime(2026, 3, 2)])


async def test_time_of_day_preserved():
    due = schedule_due_dates(datetime(2026, 1, 31, 14, 30), [offsets(0), offsets(days_from_previous=1)])

    assert_equal(due[1], datetime(2026, 2, 1, 14, 30))


async def test_empty_plan():
    assert_equal(schedule_due_dates(datetime(2026, 1, 1), []), [])


async def test_schedule_is_deterministic():
    start = datetime(2026, 5, 10, 8, 0)
    plan = three_step_plan()

    runs = [schedule_due_dates(start, plan) for _ in range(5)]

    for run in runs[1:]:
        assert_equal(run, runs[0], "Schedule must not depend on hidden state")


async def test_add_days():
    assert_equal(add_days(datetime(2026, 2, 27), 2), datetime(2026, 3, 1))
    assert_equal(add_days(datetime(2026, 2, 27), 0), datetime(2026, 2, 27))


async def main():
    return await run_tests("Due-Date Scheduler Tests", [
        ("Mixed offsets", test_mixed_offsets),
        ("days_from_start ignores previous steps", test_days_from_start_ignores_previous_steps),
        ("First step relative offset uses start date", test_first_step_relative_offset_uses_start_date),
        ("No offset means due at start", test_no_offset_means_due_at_start),
        ("Time of day preserved", test_time_of_day_preserved),
        ("Empty plan", test_empty_plan),
        ("Schedule is deterministic", test_schedule_is_deterministic),
        ("add_days", test_add_days),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
