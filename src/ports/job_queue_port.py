"""Delayed job queue port — abstract interface for timed reminder delivery.

Scheduling the same job key twice replaces the earlier job.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol

JobHandler = Callable[[dict], Awaitable[None]]


@dataclass
class QueueStats:
    """Job counts, used only for observability."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0


class JobQueuePort(Protocol):
    """Abstract delayed-job queue used by the reminder engine and sweeper."""

    async def schedule(self, job_key: str, payload: dict, delay_seconds: float) -> str: ...

    async def cancel(self, job_key: str) -> bool: ...

    def stats(self) -> QueueStats: ...
