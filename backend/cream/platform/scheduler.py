"""Scheduler for the reconciliation checks.

This module provides a scheduler that enqueues each lifecycle check on its
cron schedule. The checks themselves run in the worker.
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from croniter import croniter

from cream.core.config import settings
from cream.core.datetime_utils import utc_now
from cream.core.logging import logger
from cream.platform.billing.protocols import EventBus
from cream.schemas import TaskName


@dataclass
class ScheduledCheck:
    """A task enqueued on a cron schedule."""

    task_name: str
    cron_schedule: str
    next_run: Optional[datetime] = None

    def schedule_next(self, after: datetime) -> datetime:
        """Set and return the first run strictly after ``after``."""
        self.next_run = croniter(self.cron_schedule, after).get_next(datetime)
        return self.next_run


def default_checks() -> List[ScheduledCheck]:
    """The lifecycle checks with the schedules from settings."""
    return [
        ScheduledCheck(TaskName.TRIAL_ENDING_CHECK, settings.TRIAL_ENDING_CHECK_CRON),
        ScheduledCheck(TaskName.TRIAL_ENDED_CHECK, settings.TRIAL_ENDED_CHECK_CRON),
        ScheduledCheck(TaskName.INVOICE_PAYMENT_FAILED_CHECK, settings.PAYMENT_FAILED_CHECK_CRON),
    ]


class ReconciliationScheduler:
    """Scheduler for the reconciliation checks.

    Each check is enqueued with a fresh ``tid`` when its cron schedule comes
    due. A check whose enqueue fails stays due and is retried on the next
    loop iteration.
    """

    def __init__(
        self,
        event_bus: EventBus,
        checks: Optional[Sequence[ScheduledCheck]] = None,
        clock: Callable[[], datetime] = utc_now,
        check_interval: Optional[float] = None,
    ):
        """Initialize the scheduler."""
        self.event_bus = event_bus
        self.checks = list(checks) if checks is not None else default_checks()
        for check in self.checks:
            if not croniter.is_valid(check.cron_schedule):
                raise ValueError(
                    f"Invalid cron schedule for {check.task_name}: {check.cron_schedule!r}"
                )
        self.clock = clock
        self.check_interval = check_interval or settings.SCHEDULER_CHECK_INTERVAL
        self.running = False
        self.task: Optional[asyncio.Task] = None

    def initialize_next_runs(self) -> None:
        """Compute the first run of every check from now."""
        now = self.clock()
        for check in self.checks:
            next_run = check.schedule_next(now)
            logger.debug(f"{check.task_name} next run at {next_run.isoformat()}")

    async def start(self):
        """Start the scheduler."""
        if self.running:
            logger.warning("Scheduler is already running")
            return

        self.initialize_next_runs()
        self.running = True
        self.task = asyncio.create_task(self._scheduler_loop())
        logger.info(f"Reconciliation scheduler started with {len(self.checks)} checks")

    async def stop(self):
        """Stop the scheduler."""
        if not self.running:
            logger.warning("Scheduler is not running")
            return

        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                logger.debug("Scheduler task cancelled successfully")
            self.task = None
        logger.info("Reconciliation scheduler stopped")

    async def _scheduler_loop(self):
        """Main scheduler loop that enqueues due checks."""
        loop_count = 0

        while self.running:
            loop_count += 1
            try:
                await self.enqueue_due_checks()
            except Exception as e:
                logger.error(f"Error in scheduler loop iteration #{loop_count}: {e}", exc_info=True)

            await asyncio.sleep(self.check_interval)

    async def enqueue_due_checks(self) -> List[str]:
        """Enqueue every check whose next run is due.

        Returns:
            The task names that were enqueued.
        """
        now = self.clock()
        enqueued = []
        for check in self.checks:
            if check.next_run is None:
                check.schedule_next(now)
                continue
            if check.next_run > now:
                continue

            tid = str(uuid.uuid4())
            try:
                await self.event_bus.publish_task(check.task_name, {"tid": tid})
            except Exception as e:
                logger.error(f"Failed to enqueue {check.task_name}: {e}", exc_info=True)
                continue

            enqueued.append(check.task_name)
            next_run = check.schedule_next(now)
            logger.with_context(tid=tid).info(
                f"Enqueued {check.task_name}, next run at {next_run.isoformat()}"
            )
        return enqueued
