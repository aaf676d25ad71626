"""
Task Assistant — Reminder sweeper.

Periodic reconciliation: any reminder still SCHEDULED well after its time
lost its job (process restart, queue hiccup) and is re-enqueued for
immediate delivery. Re-enqueueing uses the reminder's own job key, so a
job that is merely late is replaced rather than duplicated, and delivery
stays idempotent either way.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable

from src.core.constants import SWEEP_BATCH_SIZE
from src.core.reminder_engine import reminder_job_key
from src.core.timeutils import utcnow
from src.data.models import ReminderState

if TYPE_CHECKING:
    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    from src.ports.job_queue_port import JobQueuePort
    from src.ports.storage_port import StoragePort

logger = logging.getLogger(__name__)

SWEEPER_JOB_ID = "reminder_sweeper"


class ReminderSweeper:
    """Re-enqueues reminders that are overdue but still SCHEDULED."""

    def __init__(
        self,
        storage: StoragePort,
        queue: JobQueuePort,
        grace: timedelta = timedelta(minutes=5),
        interval: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._storage = storage
        self._queue = queue
        self._grace = grace
        self._interval = interval
        self._clock = clock

    async def run_once(self) -> int:
        """One sweep. Returns how many reminders were re-enqueued."""
        cutoff = self._clock() - self._grace
        stuck = self._storage.list_reminders(
            state=ReminderState.SCHEDULED,
            scheduled_before=cutoff,
            limit=SWEEP_BATCH_SIZE,
        )
        if not stuck:
            logger.debug("No stuck reminders found")
            return 0

        logger.info("Found %d stuck reminder(s), re-enqueueing", len(stuck))
        requeued = 0
        for reminder in stuck:
            try:
                await self._queue.schedule(
                    reminder_job_key(reminder.id),
                    {"reminder_id": reminder.id, "task_id": reminder.task_id, "user_id": reminder.user_id},
                    0,
                )
                requeued += 1
            except Exception as exc:
                logger.error("Failed to re-enqueue reminder %s: %s", reminder.id, exc)
        return requeued

    async def _tick(self) -> None:
        try:
            await self.run_once()
        except Exception as exc:
            logger.error("Sweeper error: %s", exc)

    def start(self, scheduler: AsyncIOScheduler) -> None:
        """Register the periodic sweep on the scheduler (independent of the reminder jobs)."""
        from apscheduler.triggers.interval import IntervalTrigger

        scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(seconds=self._interval.total_seconds()),
            id=SWEEPER_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info("Sweeper started (every %s)", self._interval)
