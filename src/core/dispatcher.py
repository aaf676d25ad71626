"""
Task Assistant — Intent Dispatcher.

Channel-facing service layer: takes an inbound WhatsApp text or an
interactive reply, interprets it, performs the task / reminder actions and
sends the user-facing reply.

parse text -> resolve target task -> mutate via TaskService / ReminderEngine
-> reply via MessagingPort -> return a structured DispatchResult.

Failures inside an action never escape: the user gets a short apology and
the caller gets ``DispatchResult(success=False, ...)``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from src.core import replies
from src.core.actions import SnoozeReply, TaskActionReply, parse_reply_id
from src.core.constants import AI_CONFIDENCE_THRESHOLD, DEFAULT_SNOOZE_MINUTES, SNOOZE_TOMORROW
from src.core.parser import ParsedIntent, TaskDraft, parse_message
from src.core.task_service import TaskNotFoundError
from src.core.timeutils import utcnow
from src.data.models import Direction, ReminderState, TaskStatus

if TYPE_CHECKING:
    from src.core.reminder_engine import ReminderEngine
    from src.core.task_service import TaskService
    from src.data.models import Task, User
    from src.ports.messaging_port import MessagingPort
    from src.ports.storage_port import StoragePort

logger = logging.getLogger(__name__)

INBOUND_REACTION = "👀"


# ---------------------------------------------------------------------------
# Response type
# ---------------------------------------------------------------------------


@dataclass
class DispatchResult:
    success: bool
    action: str
    task: Task | None = None
    error: str | None = None


class _TargetNotFound(Exception):
    """An explicit task reference matched nothing."""


# ---------------------------------------------------------------------------
# IntentDispatcher
# ---------------------------------------------------------------------------


class IntentDispatcher:
    """Routes interpreted intents to task and reminder actions.

    All collaborators are injected; the dispatcher holds no state of its own.
    """

    def __init__(
        self,
        storage: StoragePort,
        messenger: MessagingPort,
        tasks: TaskService,
        reminders: ReminderEngine,
        dashboard_url: str = "http://localhost:3000",
        default_reminder_hour: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._storage = storage
        self._messenger = messenger
        self._tasks = tasks
        self._reminders = reminders
        self._dashboard_url = dashboard_url
        self._default_hour = default_reminder_hour
        self._clock = clock

    # ------------------------------------------------------------------
    # Public: inbound entry points
    # ------------------------------------------------------------------

    async def handle_inbound_message(
        self,
        from_number: str,
        text: str,
        message_id: str | None = None,
    ) -> DispatchResult:
        """Handle one free-text message from a user."""
        try:
            user = self._storage.get_or_create_user(from_number)
            now = self._clock()
            self._storage.update_last_inbound(user.id, now)
            self._storage.log_message_event(user.id, Direction.INBOUND, {
                "from": from_number,
                "text": text,
                "message_id": message_id,
                "timestamp": now.isoformat(),
            })

            if message_id:
                await self._acknowledge_receipt(user, message_id)

            parsed = await parse_message(text, user.timezone, now)
            logger.info("Message from %s → %s (%.2f)", user.id, parsed.intent, parsed.confidence)
            return await self.dispatch(user, parsed)
        except Exception as exc:
            logger.error("Error handling message from %s: %s", from_number, exc)
            return DispatchResult(success=False, action="error", error=str(exc))

    async def handle_interactive_reply(self, from_number: str, reply_id: str) -> DispatchResult:
        """Handle a tap on a reminder button or a snooze list row."""
        try:
            user = self._storage.get_or_create_user(from_number)
            self._storage.update_last_inbound(user.id, self._clock())
            self._storage.log_message_event(user.id, Direction.INBOUND, {
                "from": from_number,
                "reply_id": reply_id,
            })

            reply = parse_reply_id(reply_id)
            if reply is None:
                logger.warning("Unknown reply id from %s: %s", from_number, reply_id)
                return DispatchResult(success=False, action="unknown_reply", error=f"Unknown reply: {reply_id}")

            task = self._storage.get_task(reply.task_id)
            if task is None or task.user_id != user.id:
                await self._send(user, replies.TASK_NOT_FOUND_MESSAGE)
                return DispatchResult(success=False, action="task_not_found", error=reply.task_id)

            if isinstance(reply, SnoozeReply):
                minutes = SNOOZE_TOMORROW if reply.tomorrow else reply.minutes
                return await self._snooze(user, task, minutes)

            if isinstance(reply, TaskActionReply):
                if reply.kind == "done":
                    return await self._complete(user, task)
                if reply.kind == "snooze":
                    return await self._offer_snooze_options(user, task)
                await self._send(user, replies.EDIT_TASK_MESSAGE)
                return DispatchResult(success=True, action="edit_instruction_sent", task=task)

            return DispatchResult(success=False, action="unknown_reply", error=f"Unknown reply: {reply_id}")
        except Exception as exc:
            logger.error("Error handling reply %s from %s: %s", reply_id, from_number, exc)
            return DispatchResult(success=False, action="error", error=str(exc))

    # ------------------------------------------------------------------
    # Public: intent routing
    # ------------------------------------------------------------------

    async def dispatch(self, user: User, parsed: ParsedIntent) -> DispatchResult:
        """Perform the action for an interpreted intent and reply to the user."""
        try:
            if parsed.intent == "create_task":
                return await self._handle_create(user, parsed)
            if parsed.intent == "list_tasks":
                return await self._handle_list(user, parsed)
            if parsed.intent == "mark_done":
                return await self._handle_mark_done(user, parsed)
            if parsed.intent == "snooze":
                return await self._handle_snooze(user, parsed)
            if parsed.intent == "move_task":
                await self._send(user, replies.MOVE_TASK_MESSAGE)
                return DispatchResult(success=True, action="move_instruction_sent")
            if parsed.intent == "edit_task":
                await self._send(user, replies.EDIT_TASK_MESSAGE)
                return DispatchResult(success=True, action="edit_instruction_sent")
            if parsed.intent == "help":
                await self._send(user, replies.HELP_MESSAGE)
                return DispatchResult(success=True, action="help_sent")
            if parsed.intent == "set_pref":
                await self._send(user, replies.settings_link_message(self._dashboard_url))
                return DispatchResult(success=True, action="settings_link_sent")
            return await self._handle_unknown(user, parsed)
        except Exception as exc:
            logger.error("Error dispatching %s for user %s: %s", parsed.intent, user.id, exc)
            try:
                await self._send(user, replies.ERROR_MESSAGE)
            except Exception as send_exc:
                logger.error("Failed to send error reply to %s: %s", user.id, send_exc)
            return DispatchResult(success=False, action=parsed.intent, error=str(exc))

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_create(self, user: User, parsed: ParsedIntent) -> DispatchResult:
        if parsed.task is None or not parsed.task.title.strip():
            await self._send(user, replies.INVALID_TASK_MESSAGE)
            return DispatchResult(success=False, action="invalid_task", error="No title")

        task = await self._tasks.create_task(user, parsed.task)
        await self._send(user, replies.task_created_message(task, user.timezone, self._clock()))
        return DispatchResult(success=True, action="task_created", task=task)

    async def _handle_list(self, user: User, parsed: ParsedIntent) -> DispatchResult:
        status = TaskStatus.IDEA if parsed.task and parsed.task.status == TaskStatus.IDEA else TaskStatus.TODO
        tasks = self._storage.list_tasks(user.id, status)
        await self._send(user, replies.task_list_message(tasks, status, user.timezone, self._clock()))
        return DispatchResult(success=True, action="list_sent")

    async def _handle_mark_done(self, user: User, parsed: ParsedIntent) -> DispatchResult:
        task, failure = await self._pick_target(
            user, parsed, replies.AMBIGUOUS_TASK_MESSAGE, replies.NO_TASKS_MESSAGE, "no_tasks",
        )
        if failure is not None:
            return failure
        return await self._complete(user, task)

    async def _handle_snooze(self, user: User, parsed: ParsedIntent) -> DispatchResult:
        task, failure = await self._pick_target(
            user,
            parsed,
            replies.AMBIGUOUS_SNOOZE_MESSAGE,
            replies.NO_REMINDER_TO_SNOOZE_MESSAGE,
            "no_reminder_to_snooze",
        )
        if failure is not None:
            return failure

        if not parsed.snooze_minutes or parsed.snooze_minutes == DEFAULT_SNOOZE_MINUTES:
            return await self._offer_snooze_options(user, task)

        return await self._snooze(user, task, parsed.snooze_minutes)

    async def _handle_unknown(self, user: User, parsed: ParsedIntent) -> DispatchResult:
        """Low-confidence text with a usable title is kept as an idea; anything else gets help."""
        if parsed.confidence < AI_CONFIDENCE_THRESHOLD and parsed.task and parsed.task.title.strip():
            draft = TaskDraft(title=parsed.task.title, notes=parsed.task.notes, status=TaskStatus.IDEA)
            task = await self._tasks.create_task(user, draft)
            await self._send(user, replies.saved_as_idea_message(task))
            return DispatchResult(success=True, action="saved_as_idea", task=task)

        await self._send(user, replies.HELP_MESSAGE)
        return DispatchResult(success=True, action="help_sent")

    # ------------------------------------------------------------------
    # Shared actions
    # ------------------------------------------------------------------

    async def _complete(self, user: User, task: Task) -> DispatchResult:
        done = await self._tasks.mark_done(task)
        self._reminders.acknowledge(task.id, ReminderState.ACKED_DONE)
        await self._send(user, replies.task_done_message(done))
        return DispatchResult(success=True, action="task_done", task=done)

    async def _snooze(self, user: User, task: Task, minutes: int) -> DispatchResult:
        self._reminders.acknowledge(task.id, ReminderState.ACKED_SNOOZE)
        snoozed = await self._tasks.snooze(task, minutes, user.timezone)
        await self._send(
            user, replies.task_snoozed_message(snoozed, minutes, user.timezone, snoozed.reminder_at),
        )
        return DispatchResult(success=True, action="task_snoozed", task=snoozed)

    async def _offer_snooze_options(self, user: User, task: Task) -> DispatchResult:
        await self._messenger.send_interactive_list(
            user.whatsapp_number,
            replies.SNOOZE_PROMPT,
            replies.SNOOZE_BUTTON_LABEL,
            replies.snooze_sections(task.id, self._default_hour),
        )
        return DispatchResult(success=True, action="snooze_options_sent", task=task)

    async def _pick_target(
        self,
        user: User,
        parsed: ParsedIntent,
        ambiguous_message: str,
        empty_message: str,
        empty_action: str,
    ) -> tuple[Task | None, DispatchResult | None]:
        """Resolve the task for done/snooze, falling back to the user's only TODO task.

        Returns (task, None) on success, or (None, result) after the user
        has been told why nothing was picked.
        """
        try:
            task = self._resolve_target(user, parsed.task_id)
        except _TargetNotFound:
            await self._send(user, replies.TASK_NOT_FOUND_MESSAGE)
            return None, DispatchResult(success=False, action="task_not_found", error=parsed.task_id)
        if task is not None:
            return task, None

        todo = self._storage.list_tasks(user.id, TaskStatus.TODO)
        if len(todo) == 1:
            return todo[0], None
        if len(todo) > 1:
            await self._send(user, ambiguous_message)
            return None, DispatchResult(success=False, action="ambiguous_task")
        await self._send(user, empty_message)
        return None, DispatchResult(success=False, action=empty_action)

    def _resolve_target(self, user: User, reference: str | None) -> Task | None:
        """Pick the task a done/snooze refers to.

        An explicit reference (id or title) wins and must match. Without
        one, the task of the reminder sent in the last few minutes is used.
        Returns None when neither applies.
        """
        if reference:
            task = self._tasks.find_task(user.id, reference)
            if task is None:
                raise _TargetNotFound(reference)
            return task

        recent = self._reminders.recent_sent_reminder(user.id)
        if recent is None:
            return None
        try:
            return self._tasks.get_task(recent.task_id)
        except TaskNotFoundError:
            logger.warning("Recent reminder %s points at a missing task", recent.id)
            return None

    async def _acknowledge_receipt(self, user: User, message_id: str) -> None:
        """React 👀 to the inbound message. Failures only get logged."""
        try:
            result = await self._messenger.send_reaction(user.whatsapp_number, message_id, INBOUND_REACTION)
            if not result.success:
                logger.debug("Reaction to %s not delivered: %s", message_id, result.error)
        except Exception as exc:
            logger.debug("Reaction to %s failed: %s", message_id, exc)

    async def _send(self, user: User, body: str) -> None:
        result = await self._messenger.send_text(user.whatsapp_number, body)
        if not result.success:
            logger.warning("Reply to %s not delivered: %s", user.id, result.error)
            return
        self._storage.log_message_event(user.id, Direction.OUTBOUND, {
            "type": "reply",
            "message_id": result.message_id,
            "text": body,
        })
