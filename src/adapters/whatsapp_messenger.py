"""WhatsApp Cloud API adapter — implements MessagingPort.

Sends text, interactive button / list, template and reaction messages via
the Graph API ``/<phone_number_id>/messages`` endpoint.

Never raises: HTTP and transport errors are logged and returned as
``SendResult(success=False, error=...)``.
"""

from __future__ import annotations

import json
import logging

import httpx

from src.core.constants import BUTTON_TITLE_LIMIT
from src.core.timeutils import sanitize_for_logging
from src.ports.messaging_port import Button, ListSection, SendResult

logger = logging.getLogger(__name__)

_TIMEOUT_SECONDS = 10
_MAX_BUTTONS = 3


class WhatsAppMessenger:
    """WhatsApp Cloud API implementation of MessagingPort."""

    def __init__(
        self,
        access_token: str,
        phone_number_id: str,
        api_url: str = "https://graph.facebook.com/v18.0",
    ) -> None:
        self._access_token = access_token
        self._url = f"{api_url.rstrip('/')}/{phone_number_id}/messages"

    async def _post(self, body: dict) -> SendResult:
        logger.debug("Calling WhatsApp API: %s", sanitize_for_logging(body))
        try:
            async with httpx.AsyncClient(timeout=_TIMEOUT_SECONDS) as client:
                resp = await client.post(
                    self._url,
                    json=body,
                    headers={
                        "Authorization": f"Bearer {self._access_token}",
                        "Content-Type": "application/json",
                    },
                )
                data = resp.json()

            if resp.status_code >= 400:
                logger.error("WhatsApp API error %s: %s", resp.status_code, data)
                return SendResult(success=False, error=json.dumps(data))

            messages = data.get("messages") or [{}]
            return SendResult(success=True, message_id=messages[0].get("id"))
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("WhatsApp API call failed: %s", exc)
            return SendResult(success=False, error=str(exc))

    @staticmethod
    def _envelope(to: str, message_type: str, content: dict) -> dict:
        return {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": message_type,
            message_type: content,
        }

    async def send_text(self, to: str, body: str) -> SendResult:
        return await self._post(self._envelope(to, "text", {"body": body}))

    async def send_interactive_buttons(
        self, to: str, body: str, buttons: list[Button]
    ) -> SendResult:
        interactive = {
            "type": "button",
            "body": {"text": body},
            "action": {
                "buttons": [
                    {"type": "reply", "reply": {"id": b.id, "title": b.title[:BUTTON_TITLE_LIMIT]}}
                    for b in buttons[:_MAX_BUTTONS]
                ],
            },
        }
        return await self._post(self._envelope(to, "interactive", interactive))

    async def send_interactive_list(
        self, to: str, body: str, button_label: str, sections: list[ListSection]
    ) -> SendResult:
        interactive = {
            "type": "list",
            "body": {"text": body},
            "action": {
                "button": button_label,
                "sections": [
                    {
                        "title": s.title,
                        "rows": [
                            {"id": r.id, "title": r.title, **({"description": r.description} if r.description else {})}
                            for r in s.rows
                        ],
                    }
                    for s in sections
                ],
            },
        }
        return await self._post(self._envelope(to, "interactive", interactive))

    async def send_template(
        self, to: str, template_name: str, params: list[str]
    ) -> SendResult:
        template = {
            "name": template_name,
            "language": {"code": "en"},
            "components": [
                {
                    "type": "body",
                    "parameters": [{"type": "text", "text": p} for p in params],
                }
            ],
        }
        return await self._post(self._envelope(to, "template", template))

    async def send_reaction(self, to: str, message_id: str, emoji: str) -> SendResult:
        return await self._post(
            self._envelope(to, "reaction", {"message_id": message_id, "emoji": emoji})
        )
