"""Shared test fixtures and configuration.

Sets up fake environment variables so src.config doesn't sys.exit(),
and provides common fixtures like a temp DB and mocked ports.
"""

import os

# Patch env vars BEFORE any src imports
os.environ.setdefault("WHATSAPP_ACCESS_TOKEN", "fake-token-for-tests")
os.environ.setdefault("WHATSAPP_PHONE_NUMBER_ID", "1234567890")
os.environ["LLM_API_KEY"] = ""          # rule-based parsing unless a test opts in
os.environ.setdefault("LLM_PROVIDER", "openai")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("DEFAULT_TIMEZONE", "Asia/Kolkata")

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.ports.job_queue_port import QueueStats
from src.ports.messaging_port import SendResult

NOW = datetime(2024, 1, 15, 4, 30, tzinfo=timezone.utc)   # 10:00 in Asia/Kolkata
PHONE = "+919876543210"


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_tasks.db")


@pytest.fixture
def store(tmp_db_path):
    """Return a TaskStore instance backed by a temp file."""
    from src.data.db import TaskStore
    return TaskStore(db_path=tmp_db_path)


@pytest.fixture
def user(store):
    return store.get_or_create_user(PHONE)


@pytest.fixture
def messenger():
    """MessagingPort mock where every send succeeds."""
    mock = MagicMock()
    for name in (
        "send_text",
        "send_interactive_buttons",
        "send_interactive_list",
        "send_template",
        "send_reaction",
    ):
        setattr(mock, name, AsyncMock(return_value=SendResult(success=True, message_id="wamid.test")))
    return mock


@pytest.fixture
def queue():
    """JobQueuePort mock that records schedule / cancel calls."""
    mock = MagicMock()
    mock.schedule = AsyncMock(side_effect=lambda key, payload, delay: key)
    mock.cancel = AsyncMock(return_value=True)
    mock.stats = MagicMock(return_value=QueueStats(delayed=1))
    return mock


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def engine(store, queue, messenger, clock):
    from src.core.reminder_engine import ReminderEngine
    return ReminderEngine(store, queue, messenger, max_retries=3, clock=clock)


@pytest.fixture
def task_service(store, engine, clock):
    from src.core.task_service import TaskService
    return TaskService(store, engine, clock=clock)


@pytest.fixture
def dispatcher(store, messenger, task_service, engine, clock):
    from src.core.dispatcher import IntentDispatcher
    return IntentDispatcher(
        store, messenger, task_service, engine, dashboard_url="https://tasks.example.com", clock=clock,
    )
