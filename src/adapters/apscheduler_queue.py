"""APScheduler job-queue adapter — implements JobQueuePort.

Each reminder job is a one-shot ``DateTrigger`` job whose id is the job
key, so scheduling the same key again replaces the earlier job. Jobs run
through a bounded worker pool (an asyncio semaphore); a handler that raises
is re-added under the same key with exponential backoff until the attempt
limit is reached.

Jobs live in the scheduler's in-memory job store. The reminder rows in
SQLite are the durable record; the sweeper re-enqueues anything a restart
dropped.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED
from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.date import DateTrigger

from src.core.timeutils import utcnow
from src.ports.job_queue_port import QueueStats

if TYPE_CHECKING:
    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    from src.ports.job_queue_port import JobHandler

logger = logging.getLogger(__name__)


class SchedulerJobQueue:
    """APScheduler implementation of JobQueuePort."""

    def __init__(
        self,
        scheduler: AsyncIOScheduler,
        *,
        concurrency: int = 5,
        attempts: int = 3,
        backoff_seconds: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._scheduler = scheduler
        self._semaphore = asyncio.Semaphore(concurrency)
        self._attempts = attempts
        self._backoff_seconds = backoff_seconds
        self._clock = clock
        self._handler: JobHandler | None = None
        self._job_keys: set[str] = set()
        self._active = 0
        self._completed = 0
        self._failed = 0

        self._scheduler.add_listener(self._job_error, EVENT_JOB_ERROR | EVENT_JOB_MISSED)

    def set_handler(self, handler: JobHandler) -> None:
        """Register the coroutine that processes a job payload."""
        self._handler = handler

    # ------------------------------------------------------------------
    # JobQueuePort
    # ------------------------------------------------------------------

    async def schedule(self, job_key: str, payload: dict, delay_seconds: float) -> str:
        self._add(job_key, payload, delay_seconds, attempt=1)
        return job_key

    async def cancel(self, job_key: str) -> bool:
        self._job_keys.discard(job_key)
        try:
            self._scheduler.remove_job(job_key)
        except JobLookupError:
            logger.debug("Job %s not found, nothing to cancel", job_key)
            return False
        logger.info("Job %s removed", job_key)
        return True

    def stats(self) -> QueueStats:
        now = self._clock()
        waiting = delayed = 0
        for job in self._scheduler.get_jobs():
            if job.id not in self._job_keys:
                continue
            next_run = getattr(job, "next_run_time", None)
            if next_run is not None and next_run <= now:
                waiting += 1
            else:
                delayed += 1
        return QueueStats(
            waiting=waiting,
            active=self._active,
            completed=self._completed,
            failed=self._failed,
            delayed=delayed,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _add(self, job_key: str, payload: dict, delay_seconds: float, attempt: int) -> None:
        run_date = self._clock() + timedelta(seconds=max(0.0, delay_seconds))
        self._scheduler.add_job(
            self._run,
            trigger=DateTrigger(run_date=run_date),
            id=job_key,
            kwargs={"job_key": job_key, "payload": payload, "attempt": attempt},
            replace_existing=True,
            misfire_grace_time=None,
        )
        self._job_keys.add(job_key)
        logger.debug("Job %s scheduled for %s (attempt %d)", job_key, run_date.isoformat(), attempt)

    async def _run(self, job_key: str, payload: dict, attempt: int) -> None:
        self._job_keys.discard(job_key)
        if self._handler is None:
            logger.error("No handler registered, dropping job %s", job_key)
            self._failed += 1
            return

        async with self._semaphore:
            self._active += 1
            try:
                await self._handler(payload)
            except Exception as exc:
                if attempt < self._attempts:
                    delay = self._backoff_seconds * 2 ** (attempt - 1)
                    logger.warning(
                        "Job %s failed (attempt %d/%d): %s — retrying in %.1fs",
                        job_key, attempt, self._attempts, exc, delay,
                    )
                    self._add(job_key, payload, delay, attempt + 1)
                else:
                    logger.error("Job %s failed after %d attempts: %s", job_key, attempt, exc)
                    self._failed += 1
                return
            finally:
                self._active -= 1

        self._completed += 1
        logger.debug("Job %s completed", job_key)

    def _job_error(self, event) -> None:
        logger.error("Scheduler job error: %s, exception: %s", event.job_id, getattr(event, "exception", None))
