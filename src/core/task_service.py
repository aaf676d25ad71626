"""
Task Assistant — Task mutations.

Every change to a task that can affect its reminder goes through here, so
the "at most one SCHEDULED reminder per task" rule holds no matter which
surface (WhatsApp or the dashboard) made the change.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from difflib import get_close_matches
from typing import TYPE_CHECKING, Callable

from src.core.constants import SNOOZE_TOMORROW
from src.core.timeutils import next_day_at, utcnow
from src.data.models import TaskSource, TaskStatus

if TYPE_CHECKING:
    from src.core.parser import TaskDraft
    from src.core.reminder_engine import ReminderEngine
    from src.data.models import Task, User
    from src.ports.storage_port import StoragePort

logger = logging.getLogger(__name__)


class TaskNotFoundError(Exception):
    """Raised when a task id does not exist."""


class TaskService:
    """Creates and updates tasks, keeping their reminders consistent."""

    def __init__(
        self,
        storage: StoragePort,
        reminders: ReminderEngine,
        default_reminder_hour: int = 10,
        default_reminder_minute: int = 0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._storage = storage
        self._reminders = reminders
        self._default_hour = default_reminder_hour
        self._default_minute = default_reminder_minute
        self._clock = clock

    # ------------------------------------------------------------------
    # Create / lookup
    # ------------------------------------------------------------------

    async def create_task(
        self,
        user: User,
        draft: TaskDraft,
        source: TaskSource = TaskSource.WHATSAPP,
    ) -> Task:
        """Persist a drafted task and schedule its reminder when it has one."""
        reminder_at = draft.reminder_at if draft.status == TaskStatus.TODO else None
        task = self._storage.create_task(
            user.id,
            draft.title,
            status=draft.status,
            notes=draft.notes,
            due_at=draft.due_at,
            reminder_at=reminder_at,
            source=source,
        )
        await self._reminders.schedule_for_task(task)
        return task

    def get_task(self, task_id: str) -> Task:
        task = self._storage.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def find_task(
        self,
        user_id: str,
        reference: str,
        status: TaskStatus | None = TaskStatus.TODO,
    ) -> Task | None:
        """Resolve a task id or a loose title reference ("the deck") to one of the user's tasks."""
        task = self._storage.get_task(reference)
        if task is not None and task.user_id == user_id:
            return task

        candidates = self._storage.list_tasks(user_id, status)
        if not candidates:
            return None

        needle = reference.strip().lower()
        contains = [t for t in candidates if needle and needle in t.title.lower()]
        if len(contains) == 1:
            return contains[0]

        titles = {t.title.lower(): t for t in candidates}
        matches = get_close_matches(needle, list(titles), n=1, cutoff=0.6)
        if matches:
            logger.info("Matched task reference '%s' → '%s'", reference, titles[matches[0]].title)
            return titles[matches[0]]
        return None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def mark_done(self, task: Task) -> Task:
        """Complete a task; its pending reminder is canceled."""
        updated = self._storage.update_task(task.id, status=TaskStatus.DONE)
        if updated is None:
            raise TaskNotFoundError(task.id)
        canceled = await self._reminders.cancel_for_task(task.id)
        logger.info("Task %s done (%d reminder(s) canceled)", task.id, canceled)
        return updated

    async def snooze(
        self,
        task: Task,
        minutes: int,
        tz_name: str,
        now: datetime | None = None,
    ) -> Task:
        """Push the task's reminder ``minutes`` ahead, or to tomorrow's default time for -1."""
        now = now or self._clock()
        if minutes == SNOOZE_TOMORROW:
            new_time = next_day_at(tz_name, self._default_hour, self._default_minute, now)
        else:
            new_time = now + timedelta(minutes=minutes)

        updated = self._storage.update_task(task.id, reminder_at=new_time)
        if updated is None:
            raise TaskNotFoundError(task.id)
        await self._reminders.reschedule_task(updated, new_time)
        logger.info("Task %s snoozed until %s", task.id, new_time.isoformat())
        return updated

    async def update_task(self, task_id: str, **fields: object) -> Task:
        """Apply edits; a changed reminder time or status re-plans the reminder."""
        if fields.get("status") == TaskStatus.IDEA:
            fields["reminder_at"] = None

        updated = self._storage.update_task(task_id, **fields)
        if updated is None:
            raise TaskNotFoundError(task_id)
        logger.info("Task %s updated: %s", task_id, sorted(fields))

        if "reminder_at" in fields or "status" in fields:
            await self._reminders.cancel_for_task(task_id)
            if updated.reminder_at is not None and updated.status == TaskStatus.TODO:
                await self._reminders.schedule_for_task(updated)
        return updated

    async def delete_task(self, task_id: str) -> bool:
        await self._reminders.cancel_for_task(task_id)
        return self._storage.delete_task(task_id)
