"""
Task Assistant — Centralized configuration.

Loads all settings from .env and validates required keys.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from src/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # WhatsApp Cloud API
    WHATSAPP_ACCESS_TOKEN: str
    WHATSAPP_PHONE_NUMBER_ID: str
    WHATSAPP_API_URL: str = "https://graph.facebook.com/v18.0"
    WHATSAPP_REMINDER_TEMPLATE: str = "task_reminder_v1"
    WHATSAPP_VERIFY_TOKEN: str = ""      # webhook subscription handshake

    # LLM escalation, provider-agnostic (openai, anthropic, gemini, cohere).
    # Empty LLM_API_KEY disables escalation; the rule-based parser still runs.
    LLM_PROVIDER: str = "openai"
    LLM_MODEL: str = ""          # empty → smart default per provider
    LLM_API_KEY: str = ""

    # SQLite
    DATABASE_PATH: str = "data/tasks.db"

    # Time defaults
    DEFAULT_TIMEZONE: str = "Asia/Kolkata"
    DEFAULT_REMINDER_HOUR: int = 10
    DEFAULT_REMINDER_MINUTE: int = 0

    # Reminder delivery
    SESSION_WINDOW_HOURS: int = 24
    MAX_REMINDER_RETRIES: int = 3
    WORKER_CONCURRENCY: int = 5
    JOB_ATTEMPTS: int = 3
    JOB_BACKOFF_SECONDS: float = 1.0

    # Sweeper
    SWEEPER_INTERVAL_MINUTES: int = 5
    SWEEPER_GRACE_MINUTES: int = 5

    # Web dashboard (settings / move / edit pointers)
    DASHBOARD_URL: str = "http://localhost:3000"

    @field_validator(
        "DEFAULT_REMINDER_HOUR",
        "DEFAULT_REMINDER_MINUTE",
        "SESSION_WINDOW_HOURS",
        "MAX_REMINDER_RETRIES",
        "WORKER_CONCURRENCY",
        "JOB_ATTEMPTS",
        "SWEEPER_INTERVAL_MINUTES",
        "SWEEPER_GRACE_MINUTES",
        mode="before",
    )
    @classmethod
    def parse_int(cls, v: str | int) -> int:
        return int(v)

    @field_validator("DEFAULT_REMINDER_HOUR")
    @classmethod
    def check_hour(cls, v: int) -> int:
        if not 0 <= v <= 23:
            raise ValueError(f"DEFAULT_REMINDER_HOUR out of range: {v}")
        return v

    @property
    def llm_enabled(self) -> bool:
        return bool(self.LLM_API_KEY) and not self.LLM_API_KEY.startswith("your-")


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("WHATSAPP_ACCESS_TOKEN", "")
    phone_number_id = os.getenv("WHATSAPP_PHONE_NUMBER_ID", "")

    if not token or token.startswith("your-"):
        print("ERROR: WHATSAPP_ACCESS_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    if not phone_number_id or phone_number_id.startswith("your-"):
        print("ERROR: WHATSAPP_PHONE_NUMBER_ID is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        WHATSAPP_ACCESS_TOKEN=token,
        WHATSAPP_PHONE_NUMBER_ID=phone_number_id,
        WHATSAPP_API_URL=os.getenv("WHATSAPP_API_URL", "https://graph.facebook.com/v18.0"),
        WHATSAPP_REMINDER_TEMPLATE=os.getenv("WHATSAPP_REMINDER_TEMPLATE", "task_reminder_v1"),
        WHATSAPP_VERIFY_TOKEN=os.getenv("WHATSAPP_VERIFY_TOKEN", ""),
        LLM_PROVIDER=os.getenv("LLM_PROVIDER", "openai"),
        LLM_MODEL=os.getenv("LLM_MODEL", ""),
        LLM_API_KEY=os.getenv("LLM_API_KEY", ""),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/tasks.db"),
        DEFAULT_TIMEZONE=os.getenv("DEFAULT_TIMEZONE", "Asia/Kolkata"),
        DEFAULT_REMINDER_HOUR=os.getenv("DEFAULT_REMINDER_HOUR", "10"),
        DEFAULT_REMINDER_MINUTE=os.getenv("DEFAULT_REMINDER_MINUTE", "0"),
        SESSION_WINDOW_HOURS=os.getenv("SESSION_WINDOW_HOURS", "24"),
        MAX_REMINDER_RETRIES=os.getenv("MAX_REMINDER_RETRIES", "3"),
        WORKER_CONCURRENCY=os.getenv("WORKER_CONCURRENCY", "5"),
        JOB_ATTEMPTS=os.getenv("JOB_ATTEMPTS", "3"),
        JOB_BACKOFF_SECONDS=float(os.getenv("JOB_BACKOFF_SECONDS", "1.0")),
        SWEEPER_INTERVAL_MINUTES=os.getenv("SWEEPER_INTERVAL_MINUTES", "5"),
        SWEEPER_GRACE_MINUTES=os.getenv("SWEEPER_GRACE_MINUTES", "5"),
        DASHBOARD_URL=os.getenv("DASHBOARD_URL", "http://localhost:3000"),
    )


# Singleton, imported by all other modules as:
#   from src.config import settings
settings = _load_settings()
