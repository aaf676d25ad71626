"""
Task Assistant — Message Interpreter.

Converts a free-text WhatsApp message into a typed intent with a
confidence score, an extracted task title and resolved reminder times.

A deterministic rule pass runs first. Only when it is unsure (confidence
below AI_CONFIDENCE_THRESHOLD) and an LLM key is configured does the
interpreter escalate to the configured provider. The interpreter never
raises: provider and parse failures fall back to the rule result.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Literal

from dateutil import parser as date_parser
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.config import settings
from src.core.constants import AI_CONFIDENCE_THRESHOLD, DEFAULT_SNOOZE_MINUTES, SNOOZE_TOMORROW
from src.core.llm import complete, is_configured
from src.core.timeutils import (
    apply_default_time,
    ensure_aware,
    get_zone,
    parse_datetime,
    settle_past_reminder,
    utcnow,
)
from src.data.models import TaskStatus

logger = logging.getLogger(__name__)

IntentName = Literal[
    "create_task",
    "list_tasks",
    "mark_done",
    "snooze",
    "edit_task",
    "move_task",
    "set_pref",
    "help",
    "unknown",
]

# ---------------------------------------------------------------------------
# Shared JSON contract: produced by the rule pass and by the LLM
# ---------------------------------------------------------------------------


class TaskDraft(BaseModel):
    """Task fields extracted from a message, before anything is persisted.

    JSON example:
    {
        "title": "send the deck",
        "status": "TODO",
        "reminderAt": "2024-01-16T04:30:00Z"
    }
    """
    model_config = ConfigDict(populate_by_name=True)

    title: str = ""
    notes: str | None = None
    status: TaskStatus = TaskStatus.TODO
    due_at: datetime | None = Field(default=None, alias="dueAt")
    reminder_at: datetime | None = Field(default=None, alias="reminderAt")

    @field_validator("status")
    @classmethod
    def check_status(cls, v: TaskStatus) -> TaskStatus:
        if v == TaskStatus.DONE:
            raise ValueError("a new task cannot start as DONE")
        return v


class ParsedIntent(BaseModel):
    """Typed result of interpreting one message. Never persisted.

    JSON example:
    {
        "intent": "snooze",
        "snoozeMinutes": 60,
        "confidence": 0.9
    }
    """
    model_config = ConfigDict(populate_by_name=True)

    intent: IntentName
    task: TaskDraft | None = None
    task_id: str | None = Field(default=None, alias="taskId")
    snooze_minutes: int | None = Field(default=None, alias="snoozeMinutes")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


# ---------------------------------------------------------------------------
# Rule pass
# ---------------------------------------------------------------------------

_LIST_TODO_COMMANDS = {"list", "tasks", "show tasks", "my tasks"}
_LIST_IDEA_COMMANDS = {"ideas", "show ideas", "my ideas"}
_HELP_COMMANDS = {"help", "?"}
_SETTINGS_COMMANDS = {"settings"}

_COMMAND_CONFIDENCE = 0.95
_KEYWORD_CONFIDENCE = 0.9
_TITLED_CONFIDENCE = 0.85
_UNTITLED_CONFIDENCE = 0.7
_UNSURE_CONFIDENCE = 0.3

_DONE_RE = re.compile(r"^done(?:[\s:,-]+(.*?))?[\s.!]*$", re.IGNORECASE | re.DOTALL)
_SNOOZE_RE = re.compile(r"^snooze\b", re.IGNORECASE)
_MOVE_RE = re.compile(r"^move\s+(.+?)\s+to\s+(ideas?|todo|to-do|done)\s*$", re.IGNORECASE)
_IDEA_PREFIX_RE = re.compile(r"^idea\s*:", re.IGNORECASE)
_TODO_PREFIX_RE = re.compile(r"^todo\s*:", re.IGNORECASE)
_REMIND_RE = re.compile(r"\bremind\s+me\b|\breminder\b", re.IGNORECASE)
_BRAINSTORM_RE = re.compile(r"\bbrainstorm", re.IGNORECASE)
_MOVE_HINT_RE = re.compile(r"\bmove\b.*\bto\s+(?:ideas?|todo|done)\b", re.IGNORECASE | re.DOTALL)

_WEEKDAY = r"(?:monday|tuesday|wednesday|thursday|friday|saturday|sunday)"
_MONTH = (
    r"(?:january|february|march|april|may|june|july|august|september|october|november|december"
    r"|jan|feb|mar|apr|jun|jul|aug|sept|sep|oct|nov|dec)"
)
_DAYPART = r"(?:morning|afternoon|evening|night)"

_LEADING_PHRASES = [
    re.compile(r"^remind\s+me\s+(?:to\s+)?", re.IGNORECASE),
    re.compile(r"^reminder\s*:?\s*(?:to\s+)?", re.IGNORECASE),
    re.compile(r"^(?:todo|idea|task)\s*:\s*", re.IGNORECASE),
]

_TIME_PHRASES = [
    re.compile(r"\bin\s+(?:\d+|an?|one)\s*(?:minutes?|mins?|hours?|hrs?|h|days?|weeks?)\b", re.IGNORECASE),
    re.compile(rf"\bday\s+after\s+tomorrow(?:\s+{_DAYPART})?\b", re.IGNORECASE),
    re.compile(rf"\b(?:tomorrow|tmrw|tmr|today)(?:\s+{_DAYPART})?\b", re.IGNORECASE),
    re.compile(rf"\b(?:on\s+)?(?:next\s+)?{_WEEKDAY}(?:\s+{_DAYPART})?\b", re.IGNORECASE),
    re.compile(rf"\bthis\s+{_DAYPART}\b", re.IGNORECASE),
    re.compile(r"\btonight\b", re.IGNORECASE),
    re.compile(r"\b(?:on\s+)?\d{4}-\d{2}-\d{2}\b", re.IGNORECASE),
    re.compile(r"\b(?:on\s+)?\d{1,2}/\d{1,2}(?:/(?:\d{4}|\d{2}))?\b", re.IGNORECASE),
    re.compile(rf"\b(?:on\s+)?\d{{1,2}}(?:st|nd|rd|th)?\s+(?:of\s+)?{_MONTH}\.?(?:,?\s+(?:19|20)\d{{2}})?(?![a-z\d])", re.IGNORECASE),
    re.compile(rf"\b(?:on\s+)?{_MONTH}\.?\s+\d{{1,2}}(?:st|nd|rd|th)?(?:,?\s+(?:19|20)\d{{2}})?\b", re.IGNORECASE),
    re.compile(r"(?:\bat|@)\s*\d{1,2}(?::\d{2})?\s*(?:a\.?m\.?|p\.?m\.?)?(?![a-z\d])", re.IGNORECASE),
    re.compile(r"\b\d{1,2}(?::\d{2})?\s*(?:a\.?m\.?|p\.?m\.?)(?![a-z])", re.IGNORECASE),
    re.compile(r"\b(?:at\s+)?(?:noon|midday|midnight)\b", re.IGNORECASE),
]


def extract_task_title(text: str) -> str:
    """Strip command prefixes and date/time phrases, leaving the task itself.

    Returns the original text when nothing is left.
    """
    title = text.strip()
    for pattern in _LEADING_PHRASES:
        title = pattern.sub("", title, count=1)
    for pattern in _TIME_PHRASES:
        title = pattern.sub(" ", title)

    title = re.sub(r"\s+", " ", title).strip(" ,.-")
    title = re.sub(r"^to\s+", "", title, flags=re.IGNORECASE)
    title = re.sub(r"\s+(?:to|at|on|by)$", "", title, flags=re.IGNORECASE).strip(" ,.-")

    return title or text.strip()


def parse_snooze_minutes(text: str) -> int:
    """Read a snooze duration: "2h" → 120, "30 minutes" → 30, "tomorrow" → -1."""
    lower = text.lower()

    if "tomorrow" in lower:
        return SNOOZE_TOMORROW

    m = re.search(r"(\d+)\s*(?:m|min|mins|minute|minutes)\b", lower)
    if m:
        return int(m.group(1))

    m = re.search(r"(\d+)\s*(?:h|hr|hrs|hour|hours)\b", lower)
    if m:
        return int(m.group(1)) * 60

    m = re.search(r"\b(\d+)\b", lower)
    if m:
        return int(m.group(1))

    return DEFAULT_SNOOZE_MINUTES


def _resolve_reminder(text: str, tz_name: str, reference: datetime) -> datetime | None:
    """Resolve the reminder moment named in ``text``, or None when there is none."""
    match = parse_datetime(text, tz_name, reference)
    if match is None:
        return None
    at = apply_default_time(
        match,
        tz_name,
        reference,
        hour=settings.DEFAULT_REMINDER_HOUR,
        minute=settings.DEFAULT_REMINDER_MINUTE,
    )
    return settle_past_reminder(at, tz_name, reference)


def _create_intent(
    text: str,
    status: TaskStatus,
    tz_name: str,
    reference: datetime,
    title: str | None = None,
) -> ParsedIntent:
    if title is None:
        title = extract_task_title(text)

    reminder_at = None
    if status == TaskStatus.TODO:
        reminder_at = _resolve_reminder(text, tz_name, reference)

    return ParsedIntent(
        intent="create_task",
        task=TaskDraft(title=title, status=status, reminder_at=reminder_at),
        confidence=_TITLED_CONFIDENCE if title else _UNTITLED_CONFIDENCE,
    )


def parse_with_rules(
    text: str,
    tz_name: str,
    reference_time: datetime | None = None,
) -> ParsedIntent:
    """Deterministic first pass. Always returns an intent."""
    reference = ensure_aware(reference_time or utcnow())
    stripped = text.strip()
    lower = stripped.lower()

    if lower in _LIST_TODO_COMMANDS:
        return ParsedIntent(
            intent="list_tasks",
            task=TaskDraft(status=TaskStatus.TODO),
            confidence=_COMMAND_CONFIDENCE,
        )
    if lower in _LIST_IDEA_COMMANDS:
        return ParsedIntent(
            intent="list_tasks",
            task=TaskDraft(status=TaskStatus.IDEA),
            confidence=_COMMAND_CONFIDENCE,
        )
    if lower in _HELP_COMMANDS:
        return ParsedIntent(intent="help", confidence=_COMMAND_CONFIDENCE)
    if lower in _SETTINGS_COMMANDS:
        return ParsedIntent(intent="set_pref", confidence=_COMMAND_CONFIDENCE)

    m = _DONE_RE.match(stripped)
    if m:
        reference_text = (m.group(1) or "").strip()
        if len(re.findall(r"\w", reference_text)) < 2:
            reference_text = None
        return ParsedIntent(intent="mark_done", task_id=reference_text, confidence=_KEYWORD_CONFIDENCE)

    if _SNOOZE_RE.match(stripped):
        return ParsedIntent(
            intent="snooze",
            snooze_minutes=parse_snooze_minutes(stripped),
            confidence=_KEYWORD_CONFIDENCE,
        )

    m = _MOVE_RE.match(stripped)
    if m:
        target, destination = m.group(1).strip(), m.group(2).lower()
        if destination == "done":
            return ParsedIntent(intent="mark_done", task_id=target, confidence=_TITLED_CONFIDENCE)
        status = TaskStatus.IDEA if destination.startswith("idea") else TaskStatus.TODO
        return ParsedIntent(
            intent="move_task",
            task_id=target,
            task=TaskDraft(title=target, status=status),
            confidence=_TITLED_CONFIDENCE,
        )
    if _MOVE_HINT_RE.search(stripped):
        return ParsedIntent(
            intent="unknown",
            task=TaskDraft(title=stripped, status=TaskStatus.IDEA),
            confidence=_UNSURE_CONFIDENCE,
        )

    if _IDEA_PREFIX_RE.match(stripped):
        title = _IDEA_PREFIX_RE.sub("", stripped, count=1).strip()
        return _create_intent(stripped, TaskStatus.IDEA, tz_name, reference, title=title or stripped)
    if _BRAINSTORM_RE.search(stripped):
        return _create_intent(stripped, TaskStatus.IDEA, tz_name, reference)

    if _TODO_PREFIX_RE.match(stripped) or _REMIND_RE.search(stripped):
        return _create_intent(stripped, TaskStatus.TODO, tz_name, reference)

    return _create_intent(stripped, TaskStatus.TODO, tz_name, reference)


# ---------------------------------------------------------------------------
# LLM escalation
# ---------------------------------------------------------------------------

_SYSTEM_PROMPT = """\
You are the intent extraction engine of a WhatsApp task assistant.
Parse the user's message and return ONE JSON object.

The user's timezone is {timezone}. The current time there is {now}.

Schema:
{{"intent": "create_task" | "list_tasks" | "mark_done" | "snooze" | "edit_task" | "move_task" | "set_pref" | "help" | "unknown",
  "task": {{"title": "string", "notes": "string or null", "status": "IDEA" | "TODO", "reminderAt": "ISO-8601 with offset or null"}},
  "taskId": "string or null",
  "snoozeMinutes": integer or null,
  "confidence": number between 0 and 1}}

Rules:
- "title" is a short imperative description of the task, without dates or times.
- Use status IDEA for thoughts, plans without a deadline and brainstorming; IDEA never has reminderAt.
- Interpret relative dates ("tomorrow", "next Monday", "in 2 hours") relative to the current time above.
- If a date is given without a time, use {default_time} in the user's timezone.
- Never return a reminder time in the past.
- "taskId" is the task the user refers to (by name) for mark_done / snooze / move_task.
- Return ONLY the JSON object. No markdown, no explanation, no extra text.
"""


def _clean_llm_response(raw_text: str) -> str:
    """Remove markdown code block delimiters from LLM's raw response."""
    cleaned_text = raw_text.strip()
    if cleaned_text.startswith("```json"):
        cleaned_text = cleaned_text.removeprefix("```json")
    elif cleaned_text.startswith("```"):
        cleaned_text = cleaned_text.removeprefix("```")
    if cleaned_text.endswith("```"):
        cleaned_text = cleaned_text.removesuffix("```")
    return cleaned_text.strip()


def _coerce_reminder_at(
    data: dict,
    tz_name: str,
    reference: datetime,
    fallback: ParsedIntent,
) -> None:
    """Replace an unparseable LLM reminder time with the rule result, or drop it."""
    task = data.get("task")
    if not isinstance(task, dict):
        return

    key = "reminderAt" if "reminderAt" in task else "reminder_at"
    raw = task.get(key)
    if raw in (None, ""):
        task.pop(key, None)
        return

    try:
        at = date_parser.isoparse(str(raw))
        if at.tzinfo is None:
            at = at.replace(tzinfo=get_zone(tz_name))
        task[key] = settle_past_reminder(at.astimezone(timezone.utc), tz_name, reference)
    except (ValueError, OverflowError) as exc:
        logger.warning("LLM returned unparseable reminderAt %r: %s", raw, exc)
        replacement = fallback.task.reminder_at if fallback.task else None
        if replacement is None:
            task.pop(key, None)
        else:
            task[key] = replacement


async def _parse_with_llm(
    text: str,
    tz_name: str,
    reference: datetime,
    fallback: ParsedIntent,
) -> ParsedIntent | None:
    local_now = reference.astimezone(get_zone(tz_name))
    system_prompt = _SYSTEM_PROMPT.format(
        timezone=tz_name,
        now=local_now.isoformat(timespec="minutes"),
        default_time=f"{settings.DEFAULT_REMINDER_HOUR:02d}:{settings.DEFAULT_REMINDER_MINUTE:02d}",
    )

    raw_text = ""
    try:
        raw_text = await complete(
            system=system_prompt,
            user_message=text,
            max_tokens=512,
            json_mode=True,
        )
        raw_text = _clean_llm_response(raw_text)
        logger.debug("LLM raw response: %s", raw_text)

        data = json.loads(raw_text)
        if not isinstance(data, dict):
            logger.warning("LLM returned unexpected type: %s", type(data).__name__)
            return None

        _coerce_reminder_at(data, tz_name, reference, fallback)
        parsed = ParsedIntent.model_validate(data)

        if parsed.task is not None and parsed.task.status == TaskStatus.IDEA:
            parsed.task.reminder_at = None
        return parsed

    except json.JSONDecodeError as exc:
        logger.error("Failed to parse LLM response as JSON: %s — raw: '%s'", exc, raw_text)
        return None
    except ValidationError as exc:
        logger.warning("LLM response failed validation: %s", exc)
        return None
    except Exception as exc:
        logger.error("Unexpected error in LLM escalation: %s", exc)
        return None


async def parse_message(
    text: str,
    tz_name: str,
    reference_time: datetime | None = None,
) -> ParsedIntent:
    """Interpret a user message in the user's timezone.

    Returns the rule result unless it is below the confidence threshold and
    the LLM produced a more confident answer.
    """
    reference = ensure_aware(reference_time or utcnow())
    result = parse_with_rules(text, tz_name, reference)
    logger.info("Rule pass: %s (confidence %.2f)", result.intent, result.confidence)

    if result.confidence >= AI_CONFIDENCE_THRESHOLD or not is_configured():
        return result

    ai_result = await _parse_with_llm(text, tz_name, reference, result)
    if ai_result is not None and ai_result.confidence > result.confidence:
        logger.info("LLM escalation: %s (confidence %.2f)", ai_result.intent, ai_result.confidence)
        return ai_result

    return result
