"""
Task Assistant — Interactive reply identifiers.

Reminder buttons and snooze list rows carry an opaque id of the form
``<action>_<taskId>``. This module is the only place that builds or reads
those ids; everything else works with the typed replies below.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

# Button / list-row id prefixes
ACTION_DONE = "action_done"
ACTION_SNOOZE = "action_snooze"
ACTION_EDIT = "action_edit"
SNOOZE_15 = "snooze_15"
SNOOZE_60 = "snooze_60"
SNOOZE_180 = "snooze_180"
SNOOZE_TOMORROW = "snooze_tomorrow"

_ACTION_KINDS = {
    ACTION_DONE: "done",
    ACTION_SNOOZE: "snooze",
    ACTION_EDIT: "edit",
}

_SNOOZE_MINUTES = {
    SNOOZE_15: 15,
    SNOOZE_60: 60,
    SNOOZE_180: 180,
}


@dataclass(frozen=True)
class TaskActionReply:
    """A tap on one of the reminder buttons (Done / Snooze / Edit)."""

    kind: Literal["done", "snooze", "edit"]
    task_id: str


@dataclass(frozen=True)
class SnoozeReply:
    """A pick from the snooze options list. ``minutes`` is None for "tomorrow"."""

    task_id: str
    minutes: int | None = None

    @property
    def tomorrow(self) -> bool:
        return self.minutes is None


InteractiveReply = TaskActionReply | SnoozeReply


def parse_reply_id(reply_id: str) -> InteractiveReply | None:
    """Decode a button or list-row id. Returns None for unknown ids."""
    for prefix, kind in _ACTION_KINDS.items():
        if reply_id.startswith(prefix + "_"):
            task_id = reply_id[len(prefix) + 1:]
            return TaskActionReply(kind=kind, task_id=task_id) if task_id else None

    for prefix, minutes in _SNOOZE_MINUTES.items():
        if reply_id.startswith(prefix + "_"):
            task_id = reply_id[len(prefix) + 1:]
            return SnoozeReply(task_id=task_id, minutes=minutes) if task_id else None

    if reply_id.startswith(SNOOZE_TOMORROW + "_"):
        task_id = reply_id[len(SNOOZE_TOMORROW) + 1:]
        return SnoozeReply(task_id=task_id) if task_id else None

    return None


def action_reply_id(kind: Literal["done", "snooze", "edit"], task_id: str) -> str:
    prefix = {v: k for k, v in _ACTION_KINDS.items()}[kind]
    return f"{prefix}_{task_id}"


def snooze_reply_id(minutes: int | None, task_id: str) -> str:
    """Row id for a snooze option; ``minutes=None`` means tomorrow."""
    if minutes is None:
        return f"{SNOOZE_TOMORROW}_{task_id}"
    return f"snooze_{minutes}_{task_id}"
