"""Storage port — abstract interface for task, user and reminder persistence.

Core modules depend on this protocol, never on a specific database.
Every call is atomic on its own; no multi-call transactions are assumed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from src.data.models import (
    Direction,
    MessageEvent,
    Reminder,
    ReminderState,
    Task,
    TaskSource,
    TaskStatus,
    User,
)


class StorageError(Exception):
    """Raised when any storage operation fails."""


class StoragePort(Protocol):
    """Abstract storage interface used by core modules.

    Getters return None for a missing row; updates return None when the
    row vanished between read and write.
    """

    # Users
    def get_or_create_user(self, whatsapp_number: str) -> User: ...

    def get_user(self, user_id: str) -> User | None: ...

    def update_last_inbound(self, user_id: str, at: datetime) -> None: ...

    # Tasks
    def create_task(
        self,
        user_id: str,
        title: str,
        status: TaskStatus = TaskStatus.TODO,
        notes: str | None = None,
        due_at: datetime | None = None,
        reminder_at: datetime | None = None,
        source: TaskSource = TaskSource.WHATSAPP,
    ) -> Task: ...

    def get_task(self, task_id: str) -> Task | None: ...

    def list_tasks(
        self, user_id: str, status: TaskStatus | None = None
    ) -> list[Task]: ...

    def update_task(self, task_id: str, **fields: object) -> Task | None: ...

    def delete_task(self, task_id: str) -> bool: ...

    # Reminders
    def create_reminder(
        self, task_id: str, user_id: str, scheduled_at: datetime
    ) -> Reminder: ...

    def get_reminder(self, reminder_id: str) -> Reminder | None: ...

    def list_reminders(
        self,
        state: ReminderState | None = None,
        task_id: str | None = None,
        user_id: str | None = None,
        scheduled_before: datetime | None = None,
        sent_after: datetime | None = None,
        limit: int | None = None,
    ) -> list[Reminder]: ...

    def update_reminder(self, reminder_id: str, **fields: object) -> Reminder | None: ...

    # Audit log
    def log_message_event(
        self, user_id: str, direction: Direction, payload: dict
    ) -> MessageEvent: ...
