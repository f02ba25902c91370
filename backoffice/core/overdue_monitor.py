"""
Overdue monitor for steps that passed their due date.
Runs as a background task checking for overdue steps periodically.
"""

import asyncio
from datetime import datetime
from typing import Callable, Optional
import structlog

from backoffice.models.database import Database
from backoffice.models.schemas import EventType
from backoffice.core.workflow_engine import WorkflowEngine

logger = structlog.get_logger()


class OverdueMonitor:
    """
    Background service that flags overdue steps once and announces them.
    """

    def __init__(
        self,
        db: Database,
        event_bus=None,
        check_interval: int = 60,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.event_bus = event_bus
        self.check_interval = check_interval
        self.clock = clock or datetime.now
        self._running = False
        self._task: asyncio.Task = None

    async def start(self):
        """Start the overdue checker"""
        if self._running:
            logger.warning("overdue_monitor_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._check_overdue_loop())
        logger.info("overdue_monitor_started", check_interval=self.check_interval)

    async def stop(self):
        """Stop the overdue checker"""
        if not self._running:
            return

        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("overdue_monitor_stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def _check_overdue_loop(self):
        """Background loop that checks for overdue steps"""
        logger.info("overdue_checker_started")

        while self._running:
            try:
                # Check immediately on first iteration, then sleep
                await self.check_overdue_steps()
                await asyncio.sleep(self.check_interval)

            except asyncio.CancelledError:
                logger.info("overdue_checker_cancelled")
                break
            except Exception as e:
                logger.error("overdue_checker_error", error=str(e), exc_info=True)
                # Continue running even if one check fails
                await asyncio.sleep(self.check_interval)

        logger.info("overdue_checker_stopped")

    async def check_overdue_steps(self) -> int:
        """
        Flag every overdue step that has not been announced yet.

        The flag is a conditional update, so a step is announced at most once
        even if two checks overlap.

        Returns:
            Number of steps announced by this check
        """
        now = self.clock()
        announced = 0

        async with self.db.session() as session:
            engine = WorkflowEngine(session, clock=self.clock)
            overdue_steps = await engine.list_due_steps(now=now, only_unflagged=True)

            # Due exactly now is not overdue yet
            overdue_steps = [step for step in overdue_steps if step.due_date < now]

            if not overdue_steps:
                return 0

            logger.info("overdue_steps_found", count=len(overdue_steps))

            for step in overdue_steps:
                try:
                    if not await engine.mark_overdue_notified(step.id, now=now):
                        continue

                    if self.event_bus:
                        try:
                            await self.event_bus.publish(EventType.STEP_OVERDUE, step.to_event_data())
                        except asyncio.QueueFull:
                            # Unflag so the next check retries the announcement
                            await engine.clear_overdue_notified(step.id)
                            logger.warning("step_overdue_deferred", step_id=step.id)
                            continue

                    announced += 1
                    logger.info(
                        "step_overdue",
                        step_id=step.id,
                        workflow_id=step.workflow_id,
                        assignee_id=step.assignee_id,
                        due_date=step.due_date.isoformat(),
                    )

                except Exception as e:
                    logger.error(
                        "overdue_processing_error",
                        step_id=step.id,
                        error=str(e),
                        exc_info=True,
                    )

        return announced
