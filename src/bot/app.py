"""
Task Assistant — Application wiring.

Builds the concrete adapters (SQLite storage, WhatsApp messenger,
APScheduler job queue), the core services on top of them, and runs the
reminder worker and sweeper.

HTTP routing is not part of this package: a web frontend calls
``TaskAssistantApp.handle_webhook`` with the decoded webhook JSON and
returns its result as the response body.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from src.config import settings

if TYPE_CHECKING:
    from src.adapters.apscheduler_queue import SchedulerJobQueue
    from src.core.dispatcher import DispatchResult, IntentDispatcher
    from src.core.reminder_engine import ReminderEngine
    from src.core.sweeper import ReminderSweeper
    from src.core.task_service import TaskService
    from src.ports.messaging_port import MessagingPort
    from src.ports.storage_port import StoragePort

logger = logging.getLogger(__name__)


@dataclass
class TaskAssistantApp:
    """Holds every wired component of a running assistant."""

    storage: StoragePort
    messenger: MessagingPort
    scheduler: AsyncIOScheduler
    queue: SchedulerJobQueue
    reminders: ReminderEngine
    tasks: TaskService
    dispatcher: IntentDispatcher
    sweeper: ReminderSweeper

    def start(self) -> None:
        """Start the reminder worker and the sweeper. Call from inside the event loop."""
        if not self.scheduler.running:
            self.scheduler.start()
        self.sweeper.start(self.scheduler)
        logger.info("Reminder worker and sweeper running")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler shut down")

    async def handle_webhook(self, payload: dict) -> str:
        """Webhook POST body → immediate acknowledgement; processing continues in the background."""
        from src.adapters.whatsapp_webhook import accept_webhook

        return accept_webhook(payload, self.dispatcher)

    def verify_webhook(self, mode: str | None, token: str | None, challenge: str | None) -> str | None:
        """Webhook GET handshake."""
        from src.adapters.whatsapp_webhook import verify_subscription

        return verify_subscription(mode, token, challenge, settings.WHATSAPP_VERIFY_TOKEN)

    async def simulate_message(self, from_number: str, text: str) -> DispatchResult:
        """Development helper: process a text as if it had arrived over WhatsApp."""
        logger.info("Simulating inbound message from %s: %s", from_number, text)
        return await self.dispatcher.handle_inbound_message(from_number, text)

    async def simulate_reply(self, from_number: str, reply_id: str) -> DispatchResult:
        """Development helper: process a button / list tap."""
        logger.info("Simulating interactive reply from %s: %s", from_number, reply_id)
        return await self.dispatcher.handle_interactive_reply(from_number, reply_id)


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


def build_app(
    storage: StoragePort | None = None,
    messenger: MessagingPort | None = None,
    scheduler: AsyncIOScheduler | None = None,
) -> TaskAssistantApp:
    """Wire the assistant.

    Args:
        storage: Storage port implementation. Defaults to TaskStore (SQLite).
        messenger: Messaging port implementation. Defaults to WhatsAppMessenger.
        scheduler: APScheduler instance backing the job queue and the sweeper.
    """
    from src.adapters.apscheduler_queue import SchedulerJobQueue
    from src.core.dispatcher import IntentDispatcher
    from src.core.reminder_engine import ReminderEngine
    from src.core.sweeper import ReminderSweeper
    from src.core.task_service import TaskService

    if storage is None:
        from src.data.db import TaskStore
        storage = TaskStore(settings.DATABASE_PATH)

    if messenger is None:
        from src.adapters.whatsapp_messenger import WhatsAppMessenger
        messenger = WhatsAppMessenger(
            settings.WHATSAPP_ACCESS_TOKEN,
            settings.WHATSAPP_PHONE_NUMBER_ID,
            settings.WHATSAPP_API_URL,
        )

    if scheduler is None:
        scheduler = AsyncIOScheduler(timezone="UTC")

    queue = SchedulerJobQueue(
        scheduler,
        concurrency=settings.WORKER_CONCURRENCY,
        attempts=settings.JOB_ATTEMPTS,
        backoff_seconds=settings.JOB_BACKOFF_SECONDS,
    )
    reminders = ReminderEngine(
        storage,
        queue,
        messenger,
        max_retries=settings.MAX_REMINDER_RETRIES,
        session_window=timedelta(hours=settings.SESSION_WINDOW_HOURS),
        template_name=settings.WHATSAPP_REMINDER_TEMPLATE,
    )
    queue.set_handler(reminders.handle_job)

    tasks = TaskService(
        storage,
        reminders,
        default_reminder_hour=settings.DEFAULT_REMINDER_HOUR,
        default_reminder_minute=settings.DEFAULT_REMINDER_MINUTE,
    )
    dispatcher = IntentDispatcher(
        storage,
        messenger,
        tasks,
        reminders,
        dashboard_url=settings.DASHBOARD_URL,
        default_reminder_hour=settings.DEFAULT_REMINDER_HOUR,
    )
    sweeper = ReminderSweeper(
        storage,
        queue,
        grace=timedelta(minutes=settings.SWEEPER_GRACE_MINUTES),
        interval=timedelta(minutes=settings.SWEEPER_INTERVAL_MINUTES),
    )

    logger.info("Task assistant built (db: %s)", settings.DATABASE_PATH)
    return TaskAssistantApp(
        storage=storage,
        messenger=messenger,
        scheduler=scheduler,
        queue=queue,
        reminders=reminders,
        tasks=tasks,
        dispatcher=dispatcher,
        sweeper=sweeper,
    )


async def _serve(app: TaskAssistantApp) -> None:
    app.start()
    # Pick up reminders whose jobs were lost with the previous process
    await app.sweeper.run_once()
    try:
        await asyncio.Event().wait()
    finally:
        app.shutdown()


def main() -> None:
    """Entry point: build the app and run the reminder worker until interrupted."""
    logger.info("Starting Task Assistant...")
    app = build_app()
    try:
        asyncio.run(_serve(app))
    except KeyboardInterrupt:
        logger.info("Stopped")


if __name__ == "__main__":
    main()
