"""Tests for src.core.dispatcher — message → action → reply, with mocked messaging and queue."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import pytest

from src.core import replies
from src.core.dispatcher import IntentDispatcher
from src.core.parser import ParsedIntent, TaskDraft
from src.data.models import Direction, ReminderState, TaskStatus
from src.ports.messaging_port import SendResult

NOW = datetime(2024, 1, 15, 4, 30, tzinfo=timezone.utc)
IST = ZoneInfo("Asia/Kolkata")
PHONE = "+919876543210"


def _last_text(messenger) -> str:
    return messenger.send_text.call_args.args[1]


async def _sent_reminder_task(task_service, engine, store, user, title="send the deck"):
    """Create a task whose reminder has just gone out."""
    task = await task_service.create_task(user, TaskDraft(title=title, reminder_at=NOW + timedelta(minutes=1)))
    reminder = store.list_reminders(state=ReminderState.SCHEDULED, task_id=task.id)[0]
    await engine.deliver(reminder.id)
    return task, reminder


# ---------------------------------------------------------------------------
# Free-text messages
# ---------------------------------------------------------------------------


class TestInboundMessage:
    @pytest.mark.asyncio
    async def test_create_task_with_reminder(self, dispatcher, store, messenger, queue, user):
        result = await dispatcher.handle_inbound_message(PHONE, "remind me tomorrow to send the deck", "wamid.in")

        assert result.success is True
        assert result.action == "task_created"
        assert result.task.title == "send the deck"
        assert result.task.reminder_at.astimezone(IST) == datetime(2024, 1, 16, 10, 0, tzinfo=IST)
        queue.schedule.assert_awaited_once()
        assert _last_text(messenger) == (
            "✅ added to to-do: send the deck — tomorrow 10:00 am. i'll remind you."
        )

    @pytest.mark.asyncio
    async def test_records_inbound_and_reacts(self, dispatcher, store, messenger, user):
        await dispatcher.handle_inbound_message(PHONE, "help", "wamid.in")

        messenger.send_reaction.assert_awaited_once_with(PHONE, "wamid.in", "👀")
        assert store.get_user(user.id).last_inbound_at == NOW
        events = store.list_message_events(user.id)
        assert events[0].direction == Direction.INBOUND
        assert events[0].payload["text"] == "help"
        assert events[-1].direction == Direction.OUTBOUND
        assert events[-1].payload["type"] == "reply"

    @pytest.mark.asyncio
    async def test_first_message_creates_user(self, dispatcher, store):
        await dispatcher.handle_inbound_message("+15551234567", "help")
        assert store.get_or_create_user("+15551234567").last_inbound_at == NOW

    @pytest.mark.asyncio
    async def test_create_idea(self, dispatcher, messenger, queue, user):
        result = await dispatcher.handle_inbound_message(PHONE, "idea: build a newsletter app")

        assert result.task.status == TaskStatus.IDEA
        assert result.task.title == "build a newsletter app"
        queue.schedule.assert_not_called()
        assert _last_text(messenger) == "💡 added to ideas: build a newsletter app"

    @pytest.mark.asyncio
    async def test_list_empty(self, dispatcher, messenger, user):
        result = await dispatcher.handle_inbound_message(PHONE, "list")
        assert result.action == "list_sent"
        assert "No tasks yet" in _last_text(messenger)

    @pytest.mark.asyncio
    async def test_list_ideas(self, dispatcher, store, messenger, user):
        store.create_task(user.id, "podcast", status=TaskStatus.IDEA)
        store.create_task(user.id, "buy milk")
        await dispatcher.handle_inbound_message(PHONE, "ideas")
        text = _last_text(messenger)
        assert "podcast" in text
        assert "buy milk" not in text

    @pytest.mark.asyncio
    async def test_help(self, dispatcher, messenger, user):
        result = await dispatcher.handle_inbound_message(PHONE, "help")
        assert result.action == "help_sent"
        assert _last_text(messenger) == replies.HELP_MESSAGE

    @pytest.mark.asyncio
    async def test_settings(self, dispatcher, messenger, user):
        result = await dispatcher.handle_inbound_message(PHONE, "settings")
        assert result.action == "settings_link_sent"
        assert "https://tasks.example.com/settings" in _last_text(messenger)

    @pytest.mark.asyncio
    async def test_move_sends_instructions(self, dispatcher, messenger, user):
        result = await dispatcher.handle_inbound_message(PHONE, "move podcast to ideas")
        assert result.action == "move_instruction_sent"
        assert _last_text(messenger) == replies.MOVE_TASK_MESSAGE

    @pytest.mark.asyncio
    async def test_unclear_message_saved_as_idea(self, dispatcher, messenger, user):
        result = await dispatcher.handle_inbound_message(PHONE, "please move that thing to todo later")
        assert result.action == "saved_as_idea"
        assert result.task.status == TaskStatus.IDEA
        assert _last_text(messenger).startswith("💡 saved to ideas: please move that thing to todo later")

    @pytest.mark.asyncio
    async def test_reaction_failure_does_not_block(self, dispatcher, messenger, user):
        messenger.send_reaction = AsyncMock(side_effect=RuntimeError("boom"))
        result = await dispatcher.handle_inbound_message(PHONE, "buy milk", "wamid.in")
        assert result.action == "task_created"

    @pytest.mark.asyncio
    async def test_failed_reply_is_not_logged(self, dispatcher, store, messenger, user):
        messenger.send_text = AsyncMock(return_value=SendResult(success=False, error="131047"))
        result = await dispatcher.handle_inbound_message(PHONE, "help")

        assert result.success is True
        events = store.list_message_events(user.id)
        assert [e.direction for e in events] == [Direction.INBOUND]

    @pytest.mark.asyncio
    async def test_action_error_apologises(self, dispatcher, task_service, messenger, user):
        task_service.create_task = AsyncMock(side_effect=RuntimeError("db down"))

        result = await dispatcher.handle_inbound_message(PHONE, "buy milk")

        assert result.success is False
        assert result.action == "create_task"
        assert result.error == "db down"
        assert _last_text(messenger) == replies.ERROR_MESSAGE

    @pytest.mark.asyncio
    async def test_storage_error_is_contained(self, messenger, task_service, engine):
        storage = MagicMock()
        storage.get_or_create_user.side_effect = RuntimeError("disk full")
        dispatcher = IntentDispatcher(storage, messenger, task_service, engine)

        result = await dispatcher.handle_inbound_message(PHONE, "help")

        assert result.success is False
        assert result.action == "error"


# ---------------------------------------------------------------------------
# done / snooze by text
# ---------------------------------------------------------------------------


class TestDoneByText:
    @pytest.mark.asyncio
    async def test_single_active_task(self, dispatcher, store, messenger, user):
        task = store.create_task(user.id, "buy milk")
        result = await dispatcher.handle_inbound_message(PHONE, "done")

        assert result.action == "task_done"
        assert store.get_task(task.id).status == TaskStatus.DONE
        assert _last_text(messenger) == "✅ done: buy milk"

    @pytest.mark.asyncio
    async def test_several_active_tasks_is_ambiguous(self, dispatcher, store, messenger, user):
        store.create_task(user.id, "a")
        store.create_task(user.id, "b")
        result = await dispatcher.handle_inbound_message(PHONE, "done")
        assert result.action == "ambiguous_task"
        assert _last_text(messenger) == replies.AMBIGUOUS_TASK_MESSAGE

    @pytest.mark.asyncio
    async def test_no_active_tasks(self, dispatcher, messenger, user):
        result = await dispatcher.handle_inbound_message(PHONE, "done")
        assert result.action == "no_tasks"
        assert _last_text(messenger) == replies.NO_TASKS_MESSAGE

    @pytest.mark.asyncio
    async def test_recent_reminder_wins(self, dispatcher, task_service, engine, store, user):
        task, reminder = await _sent_reminder_task(task_service, engine, store, user)
        store.create_task(user.id, "buy milk")

        result = await dispatcher.handle_inbound_message(PHONE, "done")

        assert result.action == "task_done"
        assert result.task.id == task.id
        assert store.get_reminder(reminder.id).state == ReminderState.ACKED_DONE

    @pytest.mark.asyncio
    async def test_named_task(self, dispatcher, store, user):
        store.create_task(user.id, "send the deck")
        milk = store.create_task(user.id, "buy milk")
        result = await dispatcher.handle_inbound_message(PHONE, "done: buy milk")
        assert result.task.id == milk.id

    @pytest.mark.asyncio
    async def test_named_task_not_found(self, dispatcher, store, messenger, user):
        store.create_task(user.id, "buy milk")
        result = await dispatcher.handle_inbound_message(PHONE, "done: renew passport")
        assert result.action == "task_not_found"
        assert _last_text(messenger) == replies.TASK_NOT_FOUND_MESSAGE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["done.", "Done!", "done !"])
    async def test_punctuated_done_uses_recent_reminder(self, text, dispatcher, task_service, engine, store, user):
        task, _ = await _sent_reminder_task(task_service, engine, store, user)
        other = store.create_task(user.id, "call Dr. Smith")

        result = await dispatcher.handle_inbound_message(PHONE, text)

        assert result.action == "task_done"
        assert result.task.id == task.id
        assert store.get_task(other.id).status == TaskStatus.TODO

    @pytest.mark.asyncio
    async def test_move_to_done(self, dispatcher, store, user):
        task = store.create_task(user.id, "send the deck")
        result = await dispatcher.handle_inbound_message(PHONE, "move the deck to done")
        assert result.action == "task_done"
        assert store.get_task(task.id).status == TaskStatus.DONE


class TestSnoozeByText:
    @pytest.mark.asyncio
    async def test_nothing_to_snooze(self, dispatcher, messenger, user):
        result = await dispatcher.handle_inbound_message(PHONE, "snooze 1h")
        assert result.action == "no_reminder_to_snooze"
        assert _last_text(messenger) == replies.NO_REMINDER_TO_SNOOZE_MESSAGE

    @pytest.mark.asyncio
    async def test_single_active_task_is_snoozed(self, dispatcher, store, user):
        task = store.create_task(user.id, "buy milk")

        result = await dispatcher.handle_inbound_message(PHONE, "snooze 1h")

        assert result.action == "task_snoozed"
        assert result.task.id == task.id
        scheduled = store.list_reminders(state=ReminderState.SCHEDULED, task_id=task.id)
        assert [r.scheduled_at for r in scheduled] == [NOW + timedelta(hours=1)]

    @pytest.mark.asyncio
    async def test_several_active_tasks_is_ambiguous(self, dispatcher, store, messenger, user):
        store.create_task(user.id, "a")
        store.create_task(user.id, "b")
        result = await dispatcher.handle_inbound_message(PHONE, "snooze 1h")
        assert result.action == "ambiguous_task"
        assert _last_text(messenger) == replies.AMBIGUOUS_SNOOZE_MESSAGE

    @pytest.mark.asyncio
    async def test_snooze_recent_reminder(self, dispatcher, task_service, engine, store, messenger, user):
        task, reminder = await _sent_reminder_task(task_service, engine, store, user)

        result = await dispatcher.handle_inbound_message(PHONE, "snooze 1h")

        assert result.action == "task_snoozed"
        assert store.get_reminder(reminder.id).state == ReminderState.ACKED_SNOOZE
        scheduled = store.list_reminders(state=ReminderState.SCHEDULED, task_id=task.id)
        assert len(scheduled) == 1
        assert scheduled[0].scheduled_at == NOW + timedelta(hours=1)
        assert _last_text(messenger) == "⏰ snoozed: send the deck — 1h"

    @pytest.mark.asyncio
    async def test_bare_snooze_offers_options(self, dispatcher, task_service, engine, store, messenger, user):
        task, _ = await _sent_reminder_task(task_service, engine, store, user)

        result = await dispatcher.handle_inbound_message(PHONE, "snooze")

        assert result.action == "snooze_options_sent"
        to, body, label, sections = messenger.send_interactive_list.call_args.args
        assert to == PHONE
        assert body == replies.SNOOZE_PROMPT
        assert sections[0].rows[0].id == f"snooze_15_{task.id}"


# ---------------------------------------------------------------------------
# Button / list replies
# ---------------------------------------------------------------------------


class TestInteractiveReply:
    @pytest.mark.asyncio
    async def test_done_button(self, dispatcher, task_service, engine, store, user):
        task, reminder = await _sent_reminder_task(task_service, engine, store, user)

        result = await dispatcher.handle_interactive_reply(PHONE, f"action_done_{task.id}")

        assert result.action == "task_done"
        assert store.get_task(task.id).status == TaskStatus.DONE
        assert store.get_reminder(reminder.id).state == ReminderState.ACKED_DONE

    @pytest.mark.asyncio
    async def test_snooze_button_offers_options(self, dispatcher, store, messenger, user):
        task = store.create_task(user.id, "x")
        result = await dispatcher.handle_interactive_reply(PHONE, f"action_snooze_{task.id}")
        assert result.action == "snooze_options_sent"
        messenger.send_interactive_list.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_snooze_row(self, dispatcher, task_service, engine, store, user):
        task, reminder = await _sent_reminder_task(task_service, engine, store, user)

        result = await dispatcher.handle_interactive_reply(PHONE, f"snooze_60_{task.id}")

        assert result.action == "task_snoozed"
        assert result.task.reminder_at == NOW + timedelta(minutes=60)
        assert store.get_reminder(reminder.id).state == ReminderState.ACKED_SNOOZE

    @pytest.mark.asyncio
    async def test_snooze_tomorrow_row(self, dispatcher, store, user):
        task = store.create_task(user.id, "x")
        result = await dispatcher.handle_interactive_reply(PHONE, f"snooze_tomorrow_{task.id}")
        assert result.task.reminder_at.astimezone(IST) == datetime(2024, 1, 16, 10, 0, tzinfo=IST)

    @pytest.mark.asyncio
    async def test_edit_button(self, dispatcher, store, messenger, user):
        task = store.create_task(user.id, "x")
        result = await dispatcher.handle_interactive_reply(PHONE, f"action_edit_{task.id}")
        assert result.action == "edit_instruction_sent"
        assert _last_text(messenger) == replies.EDIT_TASK_MESSAGE

    @pytest.mark.asyncio
    async def test_unknown_reply_id(self, dispatcher, user):
        result = await dispatcher.handle_interactive_reply(PHONE, "bogus")
        assert result.success is False
        assert result.action == "unknown_reply"

    @pytest.mark.asyncio
    async def test_other_users_task(self, dispatcher, store, messenger, user):
        other = store.get_or_create_user("+15550000000")
        task = store.create_task(other.id, "not yours")

        result = await dispatcher.handle_interactive_reply(PHONE, f"action_done_{task.id}")

        assert result.action == "task_not_found"
        assert store.get_task(task.id).status == TaskStatus.TODO


# ---------------------------------------------------------------------------
# dispatch() with pre-parsed intents
# ---------------------------------------------------------------------------


class TestDispatch:
    @pytest.mark.asyncio
    async def test_create_without_title(self, dispatcher, messenger, user):
        parsed = ParsedIntent(intent="create_task", task=TaskDraft(title="  "), confidence=0.9)
        result = await dispatcher.dispatch(user, parsed)
        assert result.action == "invalid_task"
        assert _last_text(messenger) == replies.INVALID_TASK_MESSAGE

    @pytest.mark.asyncio
    async def test_edit_intent(self, dispatcher, user):
        result = await dispatcher.dispatch(user, ParsedIntent(intent="edit_task", confidence=0.9))
        assert result.action == "edit_instruction_sent"

    @pytest.mark.asyncio
    async def test_confident_unknown_gets_help(self, dispatcher, messenger, user):
        result = await dispatcher.dispatch(user, ParsedIntent(intent="unknown", confidence=0.9))
        assert result.action == "help_sent"
        assert _last_text(messenger) == replies.HELP_MESSAGE
