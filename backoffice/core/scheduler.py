"""
Due-date scheduling for workflow steps.

The projection is computed once, when a workflow starts. At runtime the engine
re-anchors relative offsets to actual completion times as each step activates.
"""

from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Sequence


class StepOffsets(Protocol):
    """Anything carrying the two offset rules of a step template"""

    days_from_start: Optional[int]
    days_from_previous: Optional[int]


def add_days(moment: datetime, days: int) -> datetime:
    """Shift a moment by whole days, keeping its time of day"""
    return moment + timedelta(days=days)


def schedule_due_dates(start_date: datetime, step_templates: Sequence[StepOffsets]) -> List[datetime]:
    """
    Compute one due date per step template in a single forward pass.

    Args:
        start_date: Anchor of the workflow schedule
        step_templates: Step templates ordered by sort_order ascending

    Returns:
        Due dates aligned index-for-index with step_templates

    Rules, for the step at index i:
        - days_from_start set: start_date + days_from_start
        - days_from_previous set and i > 0: due[i - 1] + days_from_previous
        - otherwise: start_date
    """
    due_dates: List[datetime] = []

    for index, step in enumerate(step_templates):
        if step.days_from_start is not None:
            due_dates.append(add_days(start_date, step.days_from_start))
        elif step.days_from_previous is not None and index > 0:
            due_dates.append(add_days(due_dates[index - 1], step.days_from_previous))
        else:
            due_dates.append(start_date)

    return due_dates
