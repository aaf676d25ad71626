"""
Task Assistant — Reminder Lifecycle Engine.

Owns the reminder state machine:

    SCHEDULED → SENT → ACKED_DONE | ACKED_SNOOZE
    SCHEDULED → CANCELED | FAILED

Scheduling writes the reminder row first, then enqueues a delayed job
keyed by the reminder id. Delivery is idempotent: a job that finds its
reminder in any state other than SCHEDULED does nothing, so duplicate or
late jobs never produce a second message.

This module is provider-agnostic: it depends on the storage, messaging and
job-queue ports, not on SQLite, WhatsApp or APScheduler.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable

from src.core import replies
from src.core.constants import RECENT_REMINDER_WINDOW
from src.core.timeutils import ensure_aware, is_within_session_window, utcnow
from src.data.models import DeliveryMode, Direction, ReminderState, TaskStatus

if TYPE_CHECKING:
    from src.data.models import Reminder, Task, User
    from src.ports.job_queue_port import JobQueuePort, QueueStats
    from src.ports.messaging_port import MessagingPort, SendResult
    from src.ports.storage_port import StoragePort

logger = logging.getLogger(__name__)


class ReminderDeliveryError(Exception):
    """A reminder send failed. Raised so the job queue retries the delivery."""


def reminder_job_key(reminder_id: str) -> str:
    return f"reminder-{reminder_id}"


class ReminderEngine:
    """Schedules, delivers and acknowledges reminders."""

    def __init__(
        self,
        storage: StoragePort,
        queue: JobQueuePort,
        messenger: MessagingPort,
        *,
        max_retries: int = 3,
        session_window: timedelta = timedelta(hours=24),
        template_name: str = "task_reminder_v1",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._storage = storage
        self._queue = queue
        self._messenger = messenger
        self._max_retries = max_retries
        self._session_window = session_window
        self._template_name = template_name
        self._clock = clock

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def schedule_for_task(self, task: Task) -> Reminder | None:
        """Create and enqueue the reminder for a task, superseding any earlier one."""
        if task.reminder_at is None or task.status == TaskStatus.DONE:
            logger.debug("No reminder needed for task %s", task.id)
            return None

        await self.cancel_for_task(task.id)

        at = ensure_aware(task.reminder_at)
        reminder = self._storage.create_reminder(task.id, task.user_id, at)
        delay = max(0.0, (at - self._clock()).total_seconds())
        await self._queue.schedule(
            reminder_job_key(reminder.id),
            {"reminder_id": reminder.id, "task_id": task.id, "user_id": task.user_id},
            delay,
        )
        logger.info("Reminder %s scheduled for task %s at %s", reminder.id, task.id, at.isoformat())
        return reminder

    async def cancel(self, reminder: Reminder) -> bool:
        """Cancel one reminder. Returns False when it was no longer SCHEDULED."""
        if reminder.state != ReminderState.SCHEDULED:
            logger.debug("Reminder %s already %s, not canceling", reminder.id, reminder.state.value)
            return False

        removed = await self._queue.cancel(reminder_job_key(reminder.id))
        self._storage.update_reminder(reminder.id, state=ReminderState.CANCELED)
        logger.info("Reminder %s canceled (job removed: %s)", reminder.id, removed)
        return True

    async def cancel_for_task(self, task_id: str) -> int:
        """Cancel every SCHEDULED reminder of a task. Returns how many were canceled."""
        canceled = 0
        for reminder in self._storage.list_reminders(state=ReminderState.SCHEDULED, task_id=task_id):
            if await self.cancel(reminder):
                canceled += 1
        return canceled

    async def reschedule_task(self, task: Task, new_time: datetime) -> Reminder | None:
        """Move a task's reminder to ``new_time``. The old reminder is canceled first."""
        return await self.schedule_for_task(replace(task, reminder_at=new_time))

    # ------------------------------------------------------------------
    # Acknowledgement
    # ------------------------------------------------------------------

    def acknowledge(self, task_id: str, state: ReminderState) -> Reminder | None:
        """Mark the task's most recently sent reminder ACKED_DONE or ACKED_SNOOZE."""
        if state not in (ReminderState.ACKED_DONE, ReminderState.ACKED_SNOOZE):
            raise ValueError(f"Not an acknowledgement state: {state}")

        sent = self._storage.list_reminders(state=ReminderState.SENT, task_id=task_id, limit=1)
        if not sent:
            return None
        logger.info("Reminder %s acknowledged: %s", sent[0].id, state.value)
        return self._storage.update_reminder(sent[0].id, state=state)

    def recent_sent_reminder(
        self, user_id: str, window: timedelta = RECENT_REMINDER_WINDOW
    ) -> Reminder | None:
        """The user's latest SENT reminder, if it went out within ``window``."""
        since = self._clock() - window
        sent = self._storage.list_reminders(
            state=ReminderState.SENT, user_id=user_id, sent_after=since, limit=1,
        )
        return sent[0] if sent else None

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def handle_job(self, payload: dict) -> None:
        """Job-queue entry point."""
        await self.deliver(payload["reminder_id"])

    async def deliver(self, reminder_id: str) -> None:
        """Send a due reminder.

        Raises ReminderDeliveryError after recording the failure, so the
        queue can retry. Every other outcome is a terminal or benign no-op.
        """
        reminder = self._storage.get_reminder(reminder_id)
        if reminder is None:
            logger.warning("Reminder %s not found, skipping", reminder_id)
            return

        if reminder.state != ReminderState.SCHEDULED:
            logger.info("Reminder %s is %s, skipping", reminder_id, reminder.state.value)
            return

        task = self._storage.get_task(reminder.task_id)
        if task is None or task.status == TaskStatus.DONE:
            logger.info("Task %s is done or deleted, canceling reminder %s", reminder.task_id, reminder_id)
            self._storage.update_reminder(reminder_id, state=ReminderState.CANCELED)
            return

        if reminder.retries_count >= self._max_retries:
            logger.warning("Reminder %s exceeded %d retries, marking failed", reminder_id, self._max_retries)
            self._storage.update_reminder(
                reminder_id, state=ReminderState.FAILED, last_error="Max retries exceeded",
            )
            return

        user = self._storage.get_user(reminder.user_id)
        if user is None:
            logger.error("User %s for reminder %s not found, marking failed", reminder.user_id, reminder_id)
            self._storage.update_reminder(
                reminder_id, state=ReminderState.FAILED, last_error="User not found",
            )
            return

        try:
            result, mode = await self._send(user, task)
            if not result.success:
                raise ReminderDeliveryError(result.error or "Unknown error sending reminder")
        except Exception as exc:
            logger.error("Error delivering reminder %s: %s", reminder_id, exc)
            self._storage.update_reminder(
                reminder_id,
                state=ReminderState.SCHEDULED,
                retries_count=reminder.retries_count + 1,
                last_error=str(exc),
            )
            if isinstance(exc, ReminderDeliveryError):
                raise
            raise ReminderDeliveryError(str(exc)) from exc

        self._storage.update_reminder(
            reminder_id,
            state=ReminderState.SENT,
            sent_at=self._clock(),
            message_id=result.message_id,
            delivery_mode=mode,
        )
        self._storage.log_message_event(user.id, Direction.OUTBOUND, {
            "type": "reminder",
            "reminder_id": reminder_id,
            "task_id": task.id,
            "message_id": result.message_id,
            "delivery_mode": mode.value,
        })
        logger.info("Reminder %s sent (%s, message %s)", reminder_id, mode.value, result.message_id)

    async def _send(self, user: User, task: Task) -> tuple[SendResult, DeliveryMode]:
        """Interactive buttons inside the session window, the approved template outside it."""
        now = self._clock()
        time_label = replies.reminder_time_label(task, user.timezone, now)

        if is_within_session_window(user.last_inbound_at, now, self._session_window):
            result = await self._messenger.send_interactive_buttons(
                user.whatsapp_number,
                replies.session_reminder_body(task, time_label),
                replies.reminder_buttons(task.id),
            )
            return result, DeliveryMode.SESSION_FREEFORM

        result = await self._messenger.send_template(
            user.whatsapp_number,
            self._template_name,
            replies.template_params(task, time_label),
        )
        return result, DeliveryMode.TEMPLATE

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def queue_stats(self) -> QueueStats:
        return self._queue.stats()
