"""Telegram chat adapter backed by a Telethon session.

Posts relay messages into a chat (Saved Messages by default) and reads the
chat history back for the recovery cursor store.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Union

from telethon import errors

from core.errors import ChannelUnavailable
from core.models import ChannelMessage

LOGGER = logging.getLogger(__name__)

# Failures that affect the chat as a whole rather than a single message.
_UNAVAILABLE_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    errors.ChannelPrivateError,
    errors.ChannelInvalidError,
    errors.ChatWriteForbiddenError,
    errors.ChatAdminRequiredError,
    errors.UserBannedInChannelError,
    errors.PeerIdInvalidError,
)


def chat_reference(chat: str) -> Union[str, int]:
    """Turn a configured chat ("me", "@name" or a numeric id) into a Telethon peer."""

    chat = chat.strip()
    if chat.lstrip("-").isdigit():
        return int(chat)
    return chat


class TelethonChannel:
    """Channel port implementation for a Telethon client."""

    def __init__(self, client, chat: str = "me", parse_mode: str = "md") -> None:
        self._client = client
        self._chat = chat
        self._parse_mode = parse_mode
        self._entity = None
        self._own_id: Optional[int] = None

    async def _resolve(self):
        if self._entity is not None:
            return self._entity
        try:
            self._entity = await self._client.get_entity(chat_reference(self._chat))
        except ValueError as exc:
            raise ChannelUnavailable(f"Cannot resolve chat {self._chat!r}: {exc}") from exc
        except _UNAVAILABLE_ERRORS as exc:
            raise ChannelUnavailable(f"Cannot reach chat {self._chat!r}: {exc}") from exc
        return self._entity

    async def send(self, text: str) -> None:
        entity = await self._resolve()
        try:
            await self._client.send_message(entity, text, parse_mode=self._parse_mode, link_preview=True)
        except _UNAVAILABLE_ERRORS as exc:
            raise ChannelUnavailable(f"Chat {self._chat!r} unavailable: {exc}") from exc

    async def fetch_recent(self, limit: int) -> list[ChannelMessage]:
        """Return up to ``limit`` messages, most recent first."""

        entity = await self._resolve()
        messages: list[ChannelMessage] = []
        try:
            async for message in self._client.iter_messages(entity, limit=limit):
                messages.append(
                    ChannelMessage(
                        author_id=message.sender_id,
                        text=message.raw_text or "",
                        outgoing=bool(message.out),
                    )
                )
        except _UNAVAILABLE_ERRORS as exc:
            raise ChannelUnavailable(f"Cannot read history of chat {self._chat!r}: {exc}") from exc
        return messages

    async def own_id(self) -> int:
        if self._own_id is None:
            try:
                me = await self._client.get_me()
            except _UNAVAILABLE_ERRORS as exc:
                raise ChannelUnavailable(f"Cannot identify the relay account: {exc}") from exc
            if me is None:
                raise ChannelUnavailable("Telegram session is not authorized")
            self._own_id = me.id
        return self._own_id
