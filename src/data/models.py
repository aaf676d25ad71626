"""
Task Assistant — Data Models.

Users, tasks and reminders persist across restarts; the reminder rows are
the only entity whose lifecycle the core owns. Rows are never deleted —
terminal reminder states are kept as history.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TaskStatus(str, Enum):
    IDEA = "IDEA"
    TODO = "TODO"
    DONE = "DONE"


class TaskSource(str, Enum):
    WHATSAPP = "WHATSAPP"
    WEB = "WEB"


class ReminderState(str, Enum):
    SCHEDULED = "SCHEDULED"
    SENT = "SENT"
    ACKED_DONE = "ACKED_DONE"
    ACKED_SNOOZE = "ACKED_SNOOZE"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


class DeliveryMode(str, Enum):
    SESSION_FREEFORM = "SESSION_FREEFORM"
    TEMPLATE = "TEMPLATE"


class Direction(str, Enum):
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"


@dataclass
class User:
    """A WhatsApp user, keyed by their E.164 phone number."""

    id: str
    whatsapp_number: str
    timezone: str = "Asia/Kolkata"
    name: str | None = None
    last_inbound_at: datetime | None = None   # drives the session window
    snooze_minutes_default: int = 15
    created_at: datetime | None = None


@dataclass
class Task:
    """A task or idea on the user's board.

    Created from WhatsApp messages or the web dashboard; the core only
    touches it through the storage port.
    """

    id: str
    user_id: str
    title: str
    status: TaskStatus = TaskStatus.TODO
    notes: str | None = None
    due_at: datetime | None = None
    reminder_at: datetime | None = None
    source: TaskSource = TaskSource.WHATSAPP
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Reminder:
    """One scheduled notification for a task.

    At most one reminder per task is SCHEDULED at any time.
    """

    id: str
    task_id: str
    user_id: str
    scheduled_at: datetime
    state: ReminderState = ReminderState.SCHEDULED
    sent_at: datetime | None = None
    delivery_mode: DeliveryMode | None = None
    message_id: str | None = None
    retries_count: int = 0
    last_error: str | None = None


@dataclass
class MessageEvent:
    """Audit log entry for an inbound or outbound WhatsApp message."""

    id: str
    user_id: str
    direction: Direction
    payload: dict = field(default_factory=dict)
    channel: str = "WHATSAPP"
    created_at: datetime | None = None
