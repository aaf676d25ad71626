"""Fixed policy constants shared by the interpreter, dispatcher and reminder engine.

Deployment knobs (timeouts, retry counts, URLs) live in src.config instead.
"""

from __future__ import annotations

from datetime import timedelta

# Snooze
DEFAULT_SNOOZE_MINUTES = 15
SNOOZE_TOMORROW = -1          # sentinel: next-day default reminder time
SNOOZE_OPTIONS: tuple[tuple[int, str], ...] = (
    (15, "15 minutes"),
    (60, "1 hour"),
    (180, "3 hours"),
)

# Escalate to the LLM below this rule-based confidence
AI_CONFIDENCE_THRESHOLD = 0.6

# "done" / "snooze" without a task reference targets a reminder sent this recently
RECENT_REMINDER_WINDOW = timedelta(minutes=5)

# Outbound formatting limits
LIST_LIMIT = 10
BUTTON_TITLE_LIMIT = 20
TEMPLATE_TITLE_LIMIT = 60

# Sweeper batch size
SWEEP_BATCH_SIZE = 50
