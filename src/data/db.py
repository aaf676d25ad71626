"""
Task Assistant — SQLite storage.

Implements StoragePort: users, tasks, reminders and the message audit log
persist in SQLite across restarts. Timestamps are stored as UTC ISO strings.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path

from src.data.models import (
    DeliveryMode,
    Direction,
    MessageEvent,
    Reminder,
    ReminderState,
    Task,
    TaskSource,
    TaskStatus,
    User,
)
from src.ports.storage_port import StorageError

logger = logging.getLogger(__name__)

_TASK_COLUMNS = {"title", "notes", "status", "due_at", "reminder_at", "source"}
_REMINDER_COLUMNS = {
    "scheduled_at", "state", "sent_at", "delivery_mode",
    "message_id", "retries_count", "last_error",
}


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_db(value: object) -> object:
    """Convert a Python value into its SQLite column representation."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if hasattr(value, "value"):  # Enum
        return value.value
    return value


def _from_db(raw: str | None) -> datetime | None:
    if raw is None:
        return None
    return datetime.fromisoformat(raw)


class TaskStore:
    """SQLite-backed implementation of StoragePort."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from src.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        """Create the tables if they don't exist."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id                     TEXT PRIMARY KEY,
                    whatsapp_number        TEXT NOT NULL UNIQUE,
                    timezone               TEXT NOT NULL DEFAULT 'Asia/Kolkata',
                    name                   TEXT,
                    last_inbound_at        TEXT,
                    snooze_minutes_default INTEGER NOT NULL DEFAULT 15,
                    created_at             TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id          TEXT PRIMARY KEY,
                    user_id     TEXT NOT NULL REFERENCES users(id),
                    title       TEXT NOT NULL,
                    notes       TEXT,
                    status      TEXT NOT NULL DEFAULT 'TODO',
                    due_at      TEXT,
                    reminder_at TEXT,
                    source      TEXT NOT NULL DEFAULT 'WHATSAPP',
                    created_at  TEXT NOT NULL,
                    updated_at  TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS reminders (
                    id            TEXT PRIMARY KEY,
                    task_id       TEXT NOT NULL,
                    user_id       TEXT NOT NULL,
                    scheduled_at  TEXT NOT NULL,
                    state         TEXT NOT NULL DEFAULT 'SCHEDULED',
                    sent_at       TEXT,
                    delivery_mode TEXT,
                    message_id    TEXT,
                    retries_count INTEGER NOT NULL DEFAULT 0,
                    last_error    TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS message_events (
                    id         TEXT PRIMARY KEY,
                    user_id    TEXT NOT NULL,
                    direction  TEXT NOT NULL,
                    channel    TEXT NOT NULL DEFAULT 'WHATSAPP',
                    payload    TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_reminders_state_time "
                "ON reminders (state, scheduled_at)"
            )
        logger.debug("Task tables initialized at %s", self._db_path)

    # ------------------------------------------------------------------
    # Row mappers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            id=row["id"],
            whatsapp_number=row["whatsapp_number"],
            timezone=row["timezone"],
            name=row["name"],
            last_inbound_at=_from_db(row["last_inbound_at"]),
            snooze_minutes_default=row["snooze_minutes_default"],
            created_at=_from_db(row["created_at"]),
        )

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            notes=row["notes"],
            status=TaskStatus(row["status"]),
            due_at=_from_db(row["due_at"]),
            reminder_at=_from_db(row["reminder_at"]),
            source=TaskSource(row["source"]),
            created_at=_from_db(row["created_at"]),
            updated_at=_from_db(row["updated_at"]),
        )

    @staticmethod
    def _row_to_reminder(row: sqlite3.Row) -> Reminder:
        mode = row["delivery_mode"]
        return Reminder(
            id=row["id"],
            task_id=row["task_id"],
            user_id=row["user_id"],
            scheduled_at=_from_db(row["scheduled_at"]),
            state=ReminderState(row["state"]),
            sent_at=_from_db(row["sent_at"]),
            delivery_mode=DeliveryMode(mode) if mode else None,
            message_id=row["message_id"],
            retries_count=row["retries_count"],
            last_error=row["last_error"],
        )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def get_or_create_user(self, whatsapp_number: str) -> User:
        """Fetch the user for a phone number, creating one on first contact."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE whatsapp_number = ?", (whatsapp_number,)
            ).fetchone()
            if row:
                return self._row_to_user(row)

            from src.config import settings

            user_id = _new_id()
            conn.execute(
                "INSERT INTO users (id, whatsapp_number, timezone, created_at) "
                "VALUES (?, ?, ?, ?)",
                (user_id, whatsapp_number, settings.DEFAULT_TIMEZONE, _to_db(_utcnow())),
            )
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()

        logger.info("User created for %s", whatsapp_number)
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> User | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def update_last_inbound(self, user_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET last_inbound_at = ? WHERE id = ?",
                (_to_db(at), user_id),
            )

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_task(
        self,
        user_id: str,
        title: str,
        status: TaskStatus = TaskStatus.TODO,
        notes: str | None = None,
        due_at: datetime | None = None,
        reminder_at: datetime | None = None,
        source: TaskSource = TaskSource.WHATSAPP,
    ) -> Task:
        """Insert a new task and return it."""
        task_id = _new_id()
        now = _utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO tasks
                        (id, user_id, title, notes, status, due_at,
                         reminder_at, source, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        task_id, user_id, title, notes, _to_db(status),
                        _to_db(due_at), _to_db(reminder_at), _to_db(source),
                        _to_db(now), _to_db(now),
                    ),
                )
                row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to create task: {exc}") from exc

        logger.info("Task created: %s '%s' (%s)", task_id, title, status.value)
        return self._row_to_task(row)

    def get_task(self, task_id: str) -> Task | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row else None

    def list_tasks(self, user_id: str, status: TaskStatus | None = None) -> list[Task]:
        """List a user's tasks, soonest reminder first, then newest."""
        query = "SELECT * FROM tasks WHERE user_id = ?"
        params: list[object] = [user_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY reminder_at IS NULL, reminder_at, created_at DESC"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(r) for r in rows]

    def update_task(self, task_id: str, **fields: object) -> Task | None:
        unknown = set(fields) - _TASK_COLUMNS
        if unknown:
            raise StorageError(f"Unknown task fields: {sorted(unknown)}")

        fields["updated_at"] = _utcnow()
        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = [_to_db(v) for v in fields.values()]

        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE tasks SET {assignments} WHERE id = ?", (*values, task_id)
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row)

    def delete_task(self, task_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Task deleted: %s", task_id)
        return deleted

    # ------------------------------------------------------------------
    # Reminders
    # ------------------------------------------------------------------

    def create_reminder(
        self, task_id: str, user_id: str, scheduled_at: datetime
    ) -> Reminder:
        reminder_id = _new_id()
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO reminders (id, task_id, user_id, scheduled_at, state) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    reminder_id, task_id, user_id,
                    _to_db(scheduled_at), ReminderState.SCHEDULED.value,
                ),
            )
            row = conn.execute(
                "SELECT * FROM reminders WHERE id = ?", (reminder_id,)
            ).fetchone()
        return self._row_to_reminder(row)

    def get_reminder(self, reminder_id: str) -> Reminder | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM reminders WHERE id = ?", (reminder_id,)
            ).fetchone()
        return self._row_to_reminder(row) if row else None

    def list_reminders(
        self,
        state: ReminderState | None = None,
        task_id: str | None = None,
        user_id: str | None = None,
        scheduled_before: datetime | None = None,
        sent_after: datetime | None = None,
        limit: int | None = None,
    ) -> list[Reminder]:
        """Filter reminders; results are ordered most recently sent, then soonest."""
        clauses: list[str] = []
        params: list[object] = []
        if state is not None:
            clauses.append("state = ?")
            params.append(state.value)
        if task_id is not None:
            clauses.append("task_id = ?")
            params.append(task_id)
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if scheduled_before is not None:
            clauses.append("scheduled_at <= ?")
            params.append(_to_db(scheduled_before))
        if sent_after is not None:
            clauses.append("sent_at >= ?")
            params.append(_to_db(sent_after))

        query = "SELECT * FROM reminders"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY sent_at IS NULL, sent_at DESC, scheduled_at ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_reminder(r) for r in rows]

    def update_reminder(self, reminder_id: str, **fields: object) -> Reminder | None:
        unknown = set(fields) - _REMINDER_COLUMNS
        if unknown:
            raise StorageError(f"Unknown reminder fields: {sorted(unknown)}")

        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = [_to_db(v) for v in fields.values()]

        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE reminders SET {assignments} WHERE id = ?", (*values, reminder_id)
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT * FROM reminders WHERE id = ?", (reminder_id,)
            ).fetchone()
        return self._row_to_reminder(row)

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def log_message_event(
        self, user_id: str, direction: Direction, payload: dict
    ) -> MessageEvent:
        from src.core.timeutils import sanitize_for_logging

        event = MessageEvent(
            id=_new_id(),
            user_id=user_id,
            direction=direction,
            payload=sanitize_for_logging(payload),
            created_at=_utcnow(),
        )
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO message_events (id, user_id, direction, channel, payload, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    event.id, user_id, direction.value, event.channel,
                    json.dumps(event.payload, default=str), _to_db(event.created_at),
                ),
            )
        return event

    def list_message_events(self, user_id: str) -> list[MessageEvent]:
        """Return a user's message history, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM message_events WHERE user_id = ? ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [
            MessageEvent(
                id=r["id"],
                user_id=r["user_id"],
                direction=Direction(r["direction"]),
                payload=json.loads(r["payload"]),
                channel=r["channel"],
                created_at=_from_db(r["created_at"]),
            )
            for r in rows
        ]
