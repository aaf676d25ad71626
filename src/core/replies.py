"""
Task Assistant — User-facing message formatting.

Pure functions: every outbound text, button set and list the assistant
sends is built here so the dispatcher and reminder engine stay free of
wording.
"""

from __future__ import annotations

from datetime import datetime

from src.core.actions import action_reply_id, snooze_reply_id
from src.core.constants import LIST_LIMIT, SNOOZE_OPTIONS, TEMPLATE_TITLE_LIMIT
from src.core.timeutils import format_duration, format_relative_time, truncate
from src.data.models import Task, TaskStatus
from src.ports.messaging_port import Button, ListRow, ListSection

HELP_MESSAGE = """Here's how I can help:

📝 *Create tasks*
"remind me tomorrow 9am to send the deck"
"todo: review the proposal"
"idea: build a newsletter app"

✅ *Manage tasks*
"done" - mark last reminder done
"snooze 1h" - snooze reminder
"list" - show your tasks
"ideas" - show saved ideas

⚙️ *Settings*
"settings" - open web dashboard

Just send me natural messages and I'll understand!"""

INVALID_TASK_MESSAGE = "I couldn't understand the task. Please try again."
AMBIGUOUS_TASK_MESSAGE = "Which task did you complete? You have multiple active tasks."
AMBIGUOUS_SNOOZE_MESSAGE = "Which task should I snooze? You have multiple active tasks."
NO_TASKS_MESSAGE = "No active tasks found to mark done."
NO_REMINDER_TO_SNOOZE_MESSAGE = "No recent reminder to snooze."
TASK_NOT_FOUND_MESSAGE = "I couldn't find that task. Send \"list\" to see your tasks."
MOVE_TASK_MESSAGE = "Use the web dashboard to move tasks between columns."
EDIT_TASK_MESSAGE = "To edit, visit the web dashboard or send a new task description."
ERROR_MESSAGE = "Something went wrong. Please try again."

SNOOZE_PROMPT = "How long do you want to snooze?"
SNOOZE_BUTTON_LABEL = "Snooze options"
SNOOZE_SECTION_TITLE = "Snooze for..."


# ---------------------------------------------------------------------------
# Task confirmations
# ---------------------------------------------------------------------------


def task_created_message(task: Task, tz_name: str, now: datetime | None = None) -> str:
    emoji, label = ("💡", "ideas") if task.status == TaskStatus.IDEA else ("✅", "to-do")
    message = f"{emoji} added to {label}: {task.title}"
    if task.reminder_at is not None:
        message += f" — {format_relative_time(task.reminder_at, tz_name, now)}. i'll remind you."
    return message


def task_done_message(task: Task) -> str:
    return f"✅ done: {task.title}"


def task_snoozed_message(task: Task, minutes: int, tz_name: str, until: datetime | None = None) -> str:
    """Snooze confirmation. Next-day snoozes show the new time instead of a duration."""
    if minutes < 0 and until is not None:
        return f"⏰ snoozed: {task.title} — {format_relative_time(until, tz_name)}"
    return f"⏰ snoozed: {task.title} — {format_duration(minutes)}"


def saved_as_idea_message(task: Task) -> str:
    return (
        f"💡 saved to ideas: {task.title}\n\n"
        "Tip: say \"remind me [time] to [task]\" for reminders"
    )


def settings_link_message(dashboard_url: str) -> str:
    return f"⚙️ Manage your settings here:\n{dashboard_url.rstrip('/')}/settings"


# ---------------------------------------------------------------------------
# Lists
# ---------------------------------------------------------------------------


def task_list_message(
    tasks: list[Task],
    status: TaskStatus,
    tz_name: str,
    now: datetime | None = None,
) -> str:
    if not tasks:
        if status == TaskStatus.IDEA:
            return "No ideas saved yet. Send 'idea: your idea' to add one."
        return "No tasks yet. Send me a reminder or task to get started!"

    header = "💡 Your ideas:" if status == TaskStatus.IDEA else "📋 Your tasks:"
    lines = [header, ""]
    for i, task in enumerate(tasks[:LIST_LIMIT], start=1):
        when = f" ({format_relative_time(task.reminder_at, tz_name, now)})" if task.reminder_at else ""
        lines.append(f"{i}. {task.title}{when}")

    message = "\n".join(lines) + "\n"
    if len(tasks) > LIST_LIMIT:
        message += f"\n...and {len(tasks) - LIST_LIMIT} more"
    return message


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------


def reminder_time_label(task: Task, tz_name: str, now: datetime | None = None) -> str:
    at = task.due_at or task.reminder_at
    return format_relative_time(at, tz_name, now) if at else "now"


def session_reminder_body(task: Task, time_label: str) -> str:
    return f"🔔 reminder: {task.title}\n({time_label})\n\ndone?"


def reminder_buttons(task_id: str) -> list[Button]:
    return [
        Button(id=action_reply_id("done", task_id), title="✅ Done"),
        Button(id=action_reply_id("snooze", task_id), title="⏰ Snooze"),
        Button(id=action_reply_id("edit", task_id), title="✏️ Edit"),
    ]


def template_params(task: Task, time_label: str) -> list[str]:
    return [truncate(task.title, TEMPLATE_TITLE_LIMIT), time_label]


def snooze_sections(task_id: str, default_hour: int = 10) -> list[ListSection]:
    rows = [ListRow(id=snooze_reply_id(minutes, task_id), title=label) for minutes, label in SNOOZE_OPTIONS]
    hour_label = f"{default_hour % 12 or 12}{'am' if default_hour < 12 else 'pm'}"
    rows.append(ListRow(id=snooze_reply_id(None, task_id), title=f"Tomorrow {hour_label}"))
    return [ListSection(title=SNOOZE_SECTION_TITLE, rows=rows)]
