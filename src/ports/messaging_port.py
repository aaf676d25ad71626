"""Messaging port — abstract interface for sending messages to users.

Core modules depend on this protocol, never on a specific messaging provider.
Every send returns a SendResult instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass
class SendResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


@dataclass
class Button:
    id: str
    title: str   # providers cap this at 20 chars


@dataclass
class ListRow:
    id: str
    title: str
    description: str = ""


@dataclass
class ListSection:
    title: str
    rows: list[ListRow] = field(default_factory=list)


class MessagingPort(Protocol):
    """Abstract messaging interface used by core modules."""

    async def send_text(self, to: str, body: str) -> SendResult: ...

    async def send_interactive_buttons(
        self, to: str, body: str, buttons: list[Button]
    ) -> SendResult: ...

    async def send_interactive_list(
        self, to: str, body: str, button_label: str, sections: list[ListSection]
    ) -> SendResult: ...

    async def send_template(
        self, to: str, template_name: str, params: list[str]
    ) -> SendResult: ...

    async def send_reaction(
        self, to: str, message_id: str, emoji: str
    ) -> SendResult: ...
