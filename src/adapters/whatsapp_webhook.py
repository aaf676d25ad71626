"""WhatsApp webhook adapter — inbound channel.

Turns Cloud API webhook payloads into dispatcher calls. The provider
expects a fast acknowledgement, so ``accept_webhook`` hands processing to
the running event loop and returns immediately.

Signature verification and HTTP routing live outside this package; any web
framework can call these functions from its route handlers.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.core.dispatcher import IntentDispatcher

logger = logging.getLogger(__name__)

EVENT_RECEIVED = "EVENT_RECEIVED"

# Keep references so pending processing tasks are not garbage-collected
_background_tasks: set[asyncio.Task] = set()


@dataclass
class InboundMessage:
    """One user message extracted from a webhook payload."""

    from_number: str
    message_id: str
    text: str | None = None
    reply_id: str | None = None


def verify_subscription(
    mode: str | None,
    token: str | None,
    challenge: str | None,
    verify_token: str,
) -> str | None:
    """Webhook subscription handshake. Returns the challenge to echo, or None to reject."""
    if mode == "subscribe" and verify_token and token == verify_token:
        logger.info("Webhook verified successfully")
        return challenge
    logger.warning("Webhook verification failed")
    return None


def extract_inbound_messages(payload: dict) -> list[InboundMessage]:
    """Pull text messages and button / list replies out of a webhook payload.

    Delivery status updates and other message types are ignored.
    """
    if payload.get("object") != "whatsapp_business_account":
        return []

    inbound: list[InboundMessage] = []
    for entry in payload.get("entry", []):
        for change in entry.get("changes", []):
            if change.get("field") != "messages":
                continue
            value = change.get("value", {})

            for status in value.get("statuses", []):
                logger.debug("Message status update: %s → %s", status.get("id"), status.get("status"))

            for message in value.get("messages", []):
                sender = message.get("from")
                message_id = message.get("id", "")
                kind = message.get("type")
                if not sender:
                    continue

                if kind == "text" and message.get("text", {}).get("body"):
                    inbound.append(InboundMessage(sender, message_id, text=message["text"]["body"]))
                elif kind == "interactive":
                    interactive = message.get("interactive", {})
                    reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
                    if reply.get("id"):
                        inbound.append(InboundMessage(sender, message_id, reply_id=reply["id"]))
                elif kind == "button" and message.get("button", {}).get("payload"):
                    inbound.append(InboundMessage(sender, message_id, reply_id=message["button"]["payload"]))
                else:
                    logger.debug("Ignoring %s message %s", kind, message_id)
    return inbound


async def process_webhook(payload: dict, dispatcher: IntentDispatcher) -> int:
    """Dispatch every message in a payload. Returns how many were handled."""
    handled = 0
    for message in extract_inbound_messages(payload):
        try:
            if message.reply_id is not None:
                result = await dispatcher.handle_interactive_reply(message.from_number, message.reply_id)
            else:
                result = await dispatcher.handle_inbound_message(
                    message.from_number, message.text or "", message.message_id,
                )
            logger.info("Message %s from %s → %s", message.message_id, message.from_number, result.action)
            handled += 1
        except Exception as exc:
            logger.error("Error processing message %s from %s: %s", message.message_id, message.from_number, exc)
    return handled


def _log_task_failure(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.error("Error processing webhook: %s", task.exception())


def accept_webhook(payload: dict, dispatcher: IntentDispatcher) -> str:
    """Acknowledge at once and process in the background. Call from inside the event loop."""
    task = asyncio.get_running_loop().create_task(process_webhook(payload, dispatcher))
    _background_tasks.add(task)
    task.add_done_callback(_log_task_failure)
    return EVENT_RECEIVED
