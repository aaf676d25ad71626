"""Shared temporal utilities — date/time resolution and display.

A forward-looking, rule-based natural-language date/time resolver plus the
helpers around it (default-time policy, relative display strings, session
window checks).

No I/O: this module only transforms data. Public resolvers return aware
UTC datetimes; all calendar reasoning happens in the user's local zone.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

_FALLBACK_TIMEZONE = "Asia/Kolkata"

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

_MONTH_NAMES = (
    "january", "february", "march", "april", "may", "june", "july", "august",
    "september", "october", "november", "december",
    "jan", "feb", "mar", "apr", "jun", "jul", "aug", "sept", "sep", "oct", "nov", "dec",
)

# Implied (not certain) hours for named parts of the day
DAYPART_HOURS = {
    "morning": 9,
    "afternoon": 15,
    "evening": 18,
    "night": 20,
    "tonight": 20,
}

_MONTH_PATTERN = "|".join(sorted(_MONTH_NAMES, key=len, reverse=True))
_WEEKDAY_NAMES = "|".join(_WEEKDAYS)

_RELATIVE_RE = re.compile(
    r"\bin\s+(\d+|an?|one)\s*(minutes?|mins?|hours?|hrs?|h|days?|weeks?)\b"
)
_DAY_AFTER_TOMORROW_RE = re.compile(r"\bday\s+after\s+tomorrow\b")
_TOMORROW_RE = re.compile(r"\b(?:tomorrow|tmrw|tmr)\b")
_TODAY_RE = re.compile(r"\btoday\b")
_TONIGHT_RE = re.compile(r"\btonight\b")
_NEXT_WEEKDAY_RE = re.compile(rf"\bnext\s+({_WEEKDAY_NAMES})\b")
_WEEKDAY_RE = re.compile(rf"\b(?:on\s+)?({_WEEKDAY_NAMES})\b")
_ISO_DATE_RE = re.compile(r"\b\d{4}-\d{2}-\d{2}\b")
_YEAR = r"(?:,?\s+(?P<year>(?:19|20)\d{2}))?"
_NUMERIC_DATE_RE = re.compile(r"\b\d{1,2}/\d{1,2}(?:/(?P<year>\d{2}|\d{4}))?\b")
_DAY_MONTH_RE = re.compile(
    rf"\b\d{{1,2}}(?:st|nd|rd|th)?\s+(?:of\s+)?(?:{_MONTH_PATTERN})\.?{_YEAR}(?![a-z\d])"
)
_MONTH_DAY_RE = re.compile(rf"\b(?:{_MONTH_PATTERN})\.?\s+\d{{1,2}}(?:st|nd|rd|th)?{_YEAR}\b")
# "may" is left out: as a verb it is far more common than the month
_MONTH_HINT_RE = re.compile(r"\b(?:" + "|".join(n for n in _MONTH_NAMES if n != "may") + r")\b")
_YEAR_RE = re.compile(r"\b(?:19|20)\d{2}\b")
_DAYPART_RE = re.compile(r"\b(morning|afternoon|evening|night)\b")

_MERIDIEM_CLOCK_RE = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*(a\.?m\.?|p\.?m\.?)(?![a-z])")
_AT_CLOCK_RE = re.compile(
    r"(?:\bat|@)\s*(\d{1,2})(?::(\d{2}))?\b(?!\s*(?:min|minute|hour|hr|day|week|%))"
)
_COLON_CLOCK_RE = re.compile(r"\b(\d{1,2}):(\d{2})\b")
_NOON_RE = re.compile(r"\b(?:noon|midday)\b")
_MIDNIGHT_RE = re.compile(r"\bmidnight\b")

_SENSITIVE_KEYS = ("token", "access_token", "password", "secret", "authorization")

# Only hour and minute are read from clock strings
_CLOCK_DEFAULT = datetime(2000, 1, 1)


# ---------------------------------------------------------------------------
# Zone helpers
# ---------------------------------------------------------------------------


def get_zone(tz_name: str | None) -> ZoneInfo:
    """Return the ZoneInfo for a name, falling back to the default zone."""
    try:
        return ZoneInfo(tz_name or _FALLBACK_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, using %s", tz_name, _FALLBACK_TIMEZONE)
        return ZoneInfo(_FALLBACK_TIMEZONE)


def ensure_aware(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _at_local(day: date, clock: time, zone: ZoneInfo) -> datetime:
    return datetime.combine(day, clock, tzinfo=zone)


# ---------------------------------------------------------------------------
# Natural-language resolver
# ---------------------------------------------------------------------------


@dataclass
class MomentMatch:
    """Result of scanning text for a date/time phrase.

    ``at`` is set only when the text named a certain clock time (or a
    relative minute/hour offset). When it is None, a date was found but the
    hour was not — callers must go through apply_default_time() explicitly.
    """

    day: date                       # local calendar date
    at: datetime | None = None      # aware UTC, only when the hour was certain
    daypart_hour: int | None = None
    explicit_today: bool = False
    explicit_tomorrow: bool = False
    pinned_day: bool = False        # weekday / explicit calendar date named
    weekday_today: bool = False     # bare weekday that names today


def _parse_amount(raw: str) -> int:
    return 1 if raw in ("a", "an", "one") else int(raw)


def _parse_clock(raw: str) -> time | None:
    """Read a located clock string ("5pm", "5:30 pm", "17:45") with dateutil."""
    try:
        return date_parser.parse(raw, default=_CLOCK_DEFAULT).time()
    except (ValueError, OverflowError) as exc:
        logger.debug("Ignoring clock phrase %r: %s", raw, exc)
        return None


def _find_clock(lower: str) -> tuple[int, int, bool] | None:
    """Return (hour, minute, meridiem_known) for the first clock phrase."""
    m = _MERIDIEM_CLOCK_RE.search(lower)
    if m:
        clock = _parse_clock(m.group(0).replace(".", ""))
        return (clock.hour, clock.minute, True) if clock else None

    if _NOON_RE.search(lower):
        return 12, 0, True
    if _MIDNIGHT_RE.search(lower):
        return 0, 0, True

    m = _AT_CLOCK_RE.search(lower) or _COLON_CLOCK_RE.search(lower)
    if m:
        clock = _parse_clock(f"{m.group(1)}:{m.group(2) or '00'}")
        if clock is None:
            return None
        # 0 and 12-23 are unambiguous 24h values
        return clock.hour, clock.minute, not 1 <= clock.hour <= 11

    return None


def _calendar_date(phrase: str, today: date, has_year: bool) -> date | None:
    """Resolve a located date phrase with dateutil; a year-less date never lies in the past."""
    try:
        found = date_parser.parse(
            phrase, default=datetime.combine(today, time()), dayfirst=True, fuzzy=True,
        ).date()
    except (ValueError, OverflowError) as exc:
        logger.debug("Ignoring date phrase %r: %s", phrase, exc)
        return None

    if found < today and not has_year:
        try:
            found = found.replace(year=found.year + 1)
        except ValueError:
            return None
    return found


def _find_day(lower: str, today: date) -> tuple[date, dict] | None:
    """Return the named local date and flags describing how it was named."""
    if _DAY_AFTER_TOMORROW_RE.search(lower):
        return today + timedelta(days=2), {"pinned_day": True}
    if _TOMORROW_RE.search(lower):
        return today + timedelta(days=1), {"explicit_tomorrow": True}
    if _TODAY_RE.search(lower):
        return today, {"explicit_today": True}

    m = _ISO_DATE_RE.search(lower)
    if m:
        try:
            return date_parser.isoparse(m.group(0)).date(), {"pinned_day": True}
        except ValueError:
            pass

    for pattern in (_NUMERIC_DATE_RE, _DAY_MONTH_RE, _MONTH_DAY_RE):
        m = pattern.search(lower)
        if m:
            found = _calendar_date(m.group(0), today, m.group("year") is not None)
            if found:
                return found, {"pinned_day": True}

    m = _NEXT_WEEKDAY_RE.search(lower)
    if m:
        ahead = (_WEEKDAYS.index(m.group(1)) - today.weekday()) % 7 or 7
        return today + timedelta(days=ahead), {"pinned_day": True}
    m = _WEEKDAY_RE.search(lower)
    if m:
        ahead = (_WEEKDAYS.index(m.group(1)) - today.weekday()) % 7
        return today + timedelta(days=ahead), {"weekday_today": ahead == 0, "pinned_day": True}

    # Last resort for other month-name forms ("mid march", "march 2025")
    if _MONTH_HINT_RE.search(lower):
        found = _calendar_date(lower, today, _YEAR_RE.search(lower) is not None)
        if found:
            return found, {"pinned_day": True}

    return None


def parse_datetime(
    text: str,
    tz_name: str | None,
    reference: datetime | None = None,
) -> MomentMatch | None:
    """Find a date/time phrase in ``text``, anchored to ``reference`` in the user's zone.

    Returns None when the text contains no date or time phrase at all.
    Interpretations prefer the future: a time with no day word that has
    already passed today rolls forward one day, keeping the clock time.
    An explicit "today" stays on today even when already past.
    """
    zone = get_zone(tz_name)
    ref = ensure_aware(reference or utcnow())
    local_now = ref.astimezone(zone)
    today = local_now.date()
    lower = text.lower()

    # Relative offsets: "in 30 minutes", "in 2 hours", "in 3 days"
    m = _RELATIVE_RE.search(lower)
    if m:
        amount, unit = _parse_amount(m.group(1)), m.group(2)
        if unit.startswith(("min", "h")):
            delta = timedelta(hours=amount) if unit.startswith("h") else timedelta(minutes=amount)
            moment = (ref + delta).replace(second=0, microsecond=0)
            return MomentMatch(day=moment.astimezone(zone).date(), at=moment.astimezone(timezone.utc))
        days = amount * 7 if unit.startswith("week") else amount
        day = today + timedelta(days=days)
        clock = _find_clock(lower)
        if clock is None:
            return MomentMatch(day=day, daypart_hour=_find_daypart(lower), pinned_day=True)
        at = _at_local(day, time(clock[0], clock[1]), zone)
        return MomentMatch(day=day, at=at.astimezone(timezone.utc), pinned_day=True)

    day_info = _find_day(lower, today)
    clock = _find_clock(lower)
    daypart = _find_daypart(lower)

    if day_info is None and clock is None and daypart is None:
        return None

    if day_info is None:
        day, flags = today, {}
    else:
        day, flags = day_info

    match = MomentMatch(
        day=day,
        daypart_hour=daypart,
        explicit_today=flags.get("explicit_today", False),
        explicit_tomorrow=flags.get("explicit_tomorrow", False),
        pinned_day=flags.get("pinned_day", False),
        weekday_today=flags.get("weekday_today", False),
    )

    if clock is None:
        logger.debug("Date without a certain hour in %r", text)
        return match

    hour, minute, meridiem_known = clock
    if not meridiem_known:
        hour = _disambiguate_hour(hour, minute, day, local_now, daypart)

    at = _at_local(day, time(hour, minute), zone)

    if at <= local_now:
        if match.weekday_today:
            at = _at_local(day + timedelta(days=7), time(hour, minute), zone)
        elif day_info is None:
            at = _at_local(day + timedelta(days=1), time(hour, minute), zone)

    match.day = at.date()
    match.at = at.astimezone(timezone.utc)
    return match


def _find_daypart(lower: str) -> int | None:
    if _TONIGHT_RE.search(lower):
        return DAYPART_HOURS["tonight"]
    m = _DAYPART_RE.search(lower)
    return DAYPART_HOURS[m.group(1)] if m else None


def _disambiguate_hour(
    hour: int,
    minute: int,
    day: date,
    local_now: datetime,
    daypart: int | None,
) -> int:
    """Pick AM or PM for a bare 1-11 hour."""
    if daypart is not None:
        return hour + 12 if daypart >= 12 else hour

    if day != local_now.date() or local_now.hour < 12:
        return hour

    zone = local_now.tzinfo
    literal = _at_local(day, time(hour, minute), zone)
    evening = _at_local(day, time(hour + 12, minute), zone)
    if literal <= local_now < evening:
        return hour + 12
    return hour


def apply_default_time(
    match: MomentMatch,
    tz_name: str | None,
    reference: datetime | None = None,
    hour: int = 10,
    minute: int = 0,
) -> datetime:
    """Default-time policy for a match that named a date but no certain hour.

    Uses the named part of the day when there was one ("tomorrow evening"),
    otherwise ``hour:minute`` local. A non-explicit day that has already
    passed rolls forward one day, and a bare weekday naming today moves a week.
    """
    if match.at is not None:
        return match.at

    zone = get_zone(tz_name)
    ref = ensure_aware(reference or utcnow())
    clock = time(match.daypart_hour, 0) if match.daypart_hour is not None else time(hour, minute)
    at = _at_local(match.day, clock, zone)

    if at <= ref and match.weekday_today:
        at = _at_local(match.day + timedelta(days=7), clock, zone)
    elif at <= ref and not (match.explicit_today or match.explicit_tomorrow or match.pinned_day):
        at = _at_local(match.day + timedelta(days=1), clock, zone)
    return at.astimezone(timezone.utc)


def settle_past_reminder(
    at: datetime,
    tz_name: str | None,
    reference: datetime | None = None,
) -> datetime:
    """Move a reminder that is already due to the same clock time tomorrow.

    Reminders are never delivered for a past moment, so "today at 9am" sent
    at 11am becomes tomorrow 9am instead of silently never firing.
    """
    ref = ensure_aware(reference or utcnow())
    at = ensure_aware(at)
    if at > ref:
        return at

    zone = get_zone(tz_name)
    local_at = at.astimezone(zone)
    local_ref = ref.astimezone(zone)
    day = local_ref.date()
    if _at_local(day, local_at.time(), zone) <= local_ref:
        day += timedelta(days=1)
    return _at_local(day, local_at.time(), zone).astimezone(timezone.utc)


def next_day_at(
    tz_name: str | None,
    hour: int = 10,
    minute: int = 0,
    now: datetime | None = None,
) -> datetime:
    """Tomorrow at ``hour:minute`` in the user's zone, as aware UTC."""
    zone = get_zone(tz_name)
    local_now = ensure_aware(now or utcnow()).astimezone(zone)
    tomorrow = local_now.date() + timedelta(days=1)
    return _at_local(tomorrow, time(hour, minute), zone).astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Display
# ---------------------------------------------------------------------------


def _clock_label(dt: datetime) -> str:
    suffix = "am" if dt.hour < 12 else "pm"
    return f"{dt.hour % 12 or 12}:{dt.minute:02d} {suffix}"


def format_relative_time(
    at: datetime,
    tz_name: str | None,
    now: datetime | None = None,
) -> str:
    """Human time string: "today 3:00 pm", "tomorrow 10:00 am" or "Jan 20 at 9:00 am"."""
    zone = get_zone(tz_name)
    local_at = ensure_aware(at).astimezone(zone)
    today = ensure_aware(now or utcnow()).astimezone(zone).date()

    if local_at.date() == today:
        return f"today {_clock_label(local_at)}"
    if local_at.date() == today + timedelta(days=1):
        return f"tomorrow {_clock_label(local_at)}"
    return f"{local_at.strftime('%b')} {local_at.day} at {_clock_label(local_at)}"


def format_duration(minutes: int) -> str:
    """Short snooze label: 45 → "45m", 120 → "2h"."""
    if minutes >= 60:
        return f"{round(minutes / 60)}h"
    return f"{minutes}m"


def truncate(text: str, max_length: int = 100) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


# ---------------------------------------------------------------------------
# Session window
# ---------------------------------------------------------------------------


def is_within_session_window(
    last_inbound_at: datetime | None,
    now: datetime | None = None,
    window: timedelta = timedelta(hours=24),
) -> bool:
    """True when free-form messages are still allowed for this user."""
    if last_inbound_at is None:
        return False
    elapsed = ensure_aware(now or utcnow()) - ensure_aware(last_inbound_at)
    return elapsed <= window


# ---------------------------------------------------------------------------
# Logging helpers
# ---------------------------------------------------------------------------


def sanitize_for_logging(obj: dict) -> dict:
    """Redact credential-like keys before a payload is logged or stored."""
    sanitized: dict = {}
    for key, value in obj.items():
        if any(k in str(key).lower() for k in _SENSITIVE_KEYS):
            sanitized[key] = "[REDACTED]"
        elif isinstance(value, dict):
            sanitized[key] = sanitize_for_logging(value)
        else:
            sanitized[key] = value
    return sanitized
