"""Tests for src.core.reminder_engine — reminder lifecycle with mocked ports."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from src.core.reminder_engine import ReminderDeliveryError, reminder_job_key
from src.data.models import DeliveryMode, Direction, ReminderState, TaskStatus
from src.ports.messaging_port import SendResult

NOW = datetime(2024, 1, 15, 4, 30, tzinfo=timezone.utc)   # matches the conftest clock
AT = NOW + timedelta(hours=2)


@pytest.fixture
def task(store, user):
    return store.create_task(user.id, "send the deck", reminder_at=AT, due_at=AT)


async def _scheduled(engine, task):
    return await engine.schedule_for_task(task)


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


class TestSchedule:
    @pytest.mark.asyncio
    async def test_creates_reminder_and_job(self, engine, store, queue, task):
        reminder = await engine.schedule_for_task(task)

        assert reminder.state == ReminderState.SCHEDULED
        assert reminder.scheduled_at == AT
        queue.schedule.assert_awaited_once_with(
            f"reminder-{reminder.id}",
            {"reminder_id": reminder.id, "task_id": task.id, "user_id": task.user_id},
            7200.0,
        )

    @pytest.mark.asyncio
    async def test_past_time_is_enqueued_immediately(self, engine, store, queue, user):
        task = store.create_task(user.id, "late", reminder_at=NOW - timedelta(minutes=1))
        await engine.schedule_for_task(task)
        assert queue.schedule.call_args.args[2] == 0.0

    @pytest.mark.asyncio
    async def test_no_reminder_time_is_a_no_op(self, engine, store, queue, user):
        task = store.create_task(user.id, "whenever")
        assert await engine.schedule_for_task(task) is None
        queue.schedule.assert_not_called()

    @pytest.mark.asyncio
    async def test_done_task_is_not_scheduled(self, engine, store, queue, user):
        task = store.create_task(user.id, "x", status=TaskStatus.DONE, reminder_at=AT)
        assert await engine.schedule_for_task(task) is None
        queue.schedule.assert_not_called()

    @pytest.mark.asyncio
    async def test_at_most_one_scheduled_reminder_per_task(self, engine, store, queue, task):
        first = await engine.schedule_for_task(task)
        second = await engine.reschedule_task(task, AT + timedelta(hours=1))

        scheduled = store.list_reminders(state=ReminderState.SCHEDULED, task_id=task.id)
        assert [r.id for r in scheduled] == [second.id]
        assert store.get_reminder(first.id).state == ReminderState.CANCELED
        queue.cancel.assert_awaited_with(reminder_job_key(first.id))

    @pytest.mark.asyncio
    async def test_cancel_for_task(self, engine, store, queue, task):
        reminder = await engine.schedule_for_task(task)
        assert await engine.cancel_for_task(task.id) == 1
        assert store.get_reminder(reminder.id).state == ReminderState.CANCELED
        assert await engine.cancel_for_task(task.id) == 0

    @pytest.mark.asyncio
    async def test_cancel_ignores_sent_reminder(self, engine, store, queue, task):
        reminder = await engine.schedule_for_task(task)
        sent = store.update_reminder(reminder.id, state=ReminderState.SENT, sent_at=NOW)
        assert await engine.cancel(sent) is False
        queue.cancel.assert_not_called()


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


class TestDeliver:
    @pytest.mark.asyncio
    async def test_outside_session_window_uses_template(self, engine, store, messenger, task, user):
        store.update_last_inbound(user.id, NOW - timedelta(hours=25))
        reminder = await _scheduled(engine, task)

        await engine.deliver(reminder.id)

        messenger.send_template.assert_awaited_once()
        messenger.send_interactive_buttons.assert_not_called()
        to, name, params = messenger.send_template.call_args.args
        assert to == user.whatsapp_number
        assert name == "task_reminder_v1"
        assert params[0] == "send the deck"
        sent = store.get_reminder(reminder.id)
        assert sent.state == ReminderState.SENT
        assert sent.delivery_mode == DeliveryMode.TEMPLATE
        assert sent.message_id == "wamid.test"
        assert sent.sent_at == NOW

    @pytest.mark.asyncio
    async def test_inside_session_window_uses_buttons(self, engine, store, messenger, task, user):
        store.update_last_inbound(user.id, NOW - timedelta(hours=23))
        reminder = await _scheduled(engine, task)

        await engine.deliver(reminder.id)

        messenger.send_interactive_buttons.assert_awaited_once()
        messenger.send_template.assert_not_called()
        body = messenger.send_interactive_buttons.call_args.args[1]
        buttons = messenger.send_interactive_buttons.call_args.args[2]
        assert "send the deck" in body
        assert [b.id for b in buttons][0] == f"action_done_{task.id}"
        assert store.get_reminder(reminder.id).delivery_mode == DeliveryMode.SESSION_FREEFORM

    @pytest.mark.asyncio
    async def test_never_messaged_user_gets_template(self, engine, messenger, task):
        reminder = await _scheduled(engine, task)
        await engine.deliver(reminder.id)
        messenger.send_template.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_second_delivery_is_a_no_op(self, engine, store, messenger, task):
        reminder = await _scheduled(engine, task)

        await engine.deliver(reminder.id)
        await engine.deliver(reminder.id)

        assert messenger.send_template.await_count == 1
        assert store.get_reminder(reminder.id).state == ReminderState.SENT

    @pytest.mark.asyncio
    async def test_logs_outbound_event(self, engine, store, task, user):
        reminder = await _scheduled(engine, task)
        await engine.deliver(reminder.id)

        events = store.list_message_events(user.id)
        assert events[-1].direction == Direction.OUTBOUND
        assert events[-1].payload["reminder_id"] == reminder.id
        assert events[-1].payload["delivery_mode"] == "TEMPLATE"

    @pytest.mark.asyncio
    async def test_done_task_cancels_reminder(self, engine, store, messenger, task):
        reminder = await _scheduled(engine, task)
        store.update_task(task.id, status=TaskStatus.DONE)

        await engine.deliver(reminder.id)

        messenger.send_template.assert_not_called()
        assert store.get_reminder(reminder.id).state == ReminderState.CANCELED

    @pytest.mark.asyncio
    async def test_deleted_task_cancels_reminder(self, engine, store, messenger, task):
        reminder = await _scheduled(engine, task)
        store.delete_task(task.id)

        await engine.deliver(reminder.id)

        assert store.get_reminder(reminder.id).state == ReminderState.CANCELED

    @pytest.mark.asyncio
    async def test_missing_reminder_is_ignored(self, engine, messenger):
        await engine.deliver("does-not-exist")
        messenger.send_template.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_user_fails_reminder(self, engine, store, messenger, task):
        reminder = store.create_reminder(task.id, "ghost", AT)
        await engine.deliver(reminder.id)

        failed = store.get_reminder(reminder.id)
        assert failed.state == ReminderState.FAILED
        assert failed.last_error == "User not found"
        messenger.send_template.assert_not_called()

    @pytest.mark.asyncio
    async def test_send_failure_records_and_raises(self, engine, store, messenger, task):
        messenger.send_template = AsyncMock(return_value=SendResult(success=False, error="rate limited"))
        reminder = await _scheduled(engine, task)

        with pytest.raises(ReminderDeliveryError, match="rate limited"):
            await engine.deliver(reminder.id)

        after = store.get_reminder(reminder.id)
        assert after.state == ReminderState.SCHEDULED
        assert after.retries_count == 1
        assert after.last_error == "rate limited"

    @pytest.mark.asyncio
    async def test_send_exception_is_wrapped(self, engine, store, messenger, task):
        messenger.send_template = AsyncMock(side_effect=RuntimeError("socket closed"))
        reminder = await _scheduled(engine, task)

        with pytest.raises(ReminderDeliveryError):
            await engine.deliver(reminder.id)
        assert store.get_reminder(reminder.id).last_error == "socket closed"

    @pytest.mark.asyncio
    async def test_retry_ceiling_marks_failed(self, engine, store, messenger, task):
        messenger.send_template = AsyncMock(return_value=SendResult(success=False, error="down"))
        reminder = await _scheduled(engine, task)

        for _ in range(3):
            with pytest.raises(ReminderDeliveryError):
                await engine.deliver(reminder.id)
        await engine.deliver(reminder.id)

        failed = store.get_reminder(reminder.id)
        assert failed.state == ReminderState.FAILED
        assert failed.last_error == "Max retries exceeded"
        assert messenger.send_template.await_count == 3

    @pytest.mark.asyncio
    async def test_handle_job_delivers_payload(self, engine, store, messenger, task):
        reminder = await _scheduled(engine, task)
        await engine.handle_job({"reminder_id": reminder.id, "task_id": task.id, "user_id": task.user_id})
        assert store.get_reminder(reminder.id).state == ReminderState.SENT


# ---------------------------------------------------------------------------
# Acknowledgement
# ---------------------------------------------------------------------------


class TestAcknowledge:
    @pytest.mark.asyncio
    async def test_acks_sent_reminder(self, engine, store, task):
        reminder = await _scheduled(engine, task)
        await engine.deliver(reminder.id)

        acked = engine.acknowledge(task.id, ReminderState.ACKED_DONE)
        assert acked.id == reminder.id
        assert store.get_reminder(reminder.id).state == ReminderState.ACKED_DONE

    def test_nothing_sent_returns_none(self, engine, task):
        assert engine.acknowledge(task.id, ReminderState.ACKED_SNOOZE) is None

    def test_rejects_non_ack_state(self, engine, task):
        with pytest.raises(ValueError):
            engine.acknowledge(task.id, ReminderState.CANCELED)

    @pytest.mark.asyncio
    async def test_recent_sent_reminder(self, engine, store, task, user):
        reminder = await _scheduled(engine, task)
        await engine.deliver(reminder.id)
        assert engine.recent_sent_reminder(user.id).id == reminder.id

    @pytest.mark.asyncio
    async def test_old_sent_reminder_is_not_recent(self, engine, store, task, user):
        reminder = await _scheduled(engine, task)
        store.update_reminder(reminder.id, state=ReminderState.SENT, sent_at=NOW - timedelta(minutes=10))
        assert engine.recent_sent_reminder(user.id) is None

    def test_queue_stats(self, engine, queue):
        assert engine.queue_stats().delayed == 1
