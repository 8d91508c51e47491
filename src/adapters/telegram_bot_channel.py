"""Telegram Bot API chat adapter.

Uses the Bot API for delivery so relay messages can be posted by a bot. The
Bot API cannot read chat history, so this channel cannot back the recovery
cursor store.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from core.errors import ChannelUnavailable
from core.models import ChannelMessage

LOGGER = logging.getLogger(__name__)

BOT_API_BASE = "https://api.telegram.org"


class BotApiChannel:
    """Channel port implementation that posts via ``sendMessage``."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        client: Optional[httpx.AsyncClient] = None,
        parse_mode: str = "HTML",
    ) -> None:
        self._bot_token = bot_token
        self._chat_id = chat_id
        self._parse_mode = parse_mode
        self._client = client or httpx.AsyncClient(timeout=10.0)
        self._own_id: Optional[int] = None

    async def aclose(self) -> None:
        await self._client.aclose()

    def _endpoint(self, method: str) -> str:
        return f"{BOT_API_BASE}/bot{self._bot_token}/{method}"

    async def _call(self, method: str, payload: Optional[dict[str, Any]] = None) -> Any:
        try:
            response = await self._client.post(self._endpoint(method), json=payload or {})
        except httpx.TransportError as exc:
            raise ChannelUnavailable(f"Bot API unreachable: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {"ok": False, "description": response.text[:200]}

        if response.status_code >= 500:
            raise ChannelUnavailable(f"Bot API error {response.status_code}")
        if response.status_code in (401, 403, 404):
            raise ChannelUnavailable(f"Bot API rejected {method} ({response.status_code}): {body.get('description')}")
        if not body.get("ok"):
            description = str(body.get("description") or "")
            if "chat not found" in description.lower():
                raise ChannelUnavailable(f"Bot API: {description}")
            raise RuntimeError(f"Bot API error {response.status_code}: {description}")
        return body.get("result")

    async def send(self, text: str) -> None:
        payload = {
            "chat_id": self._chat_id,
            "text": text,
            "parse_mode": self._parse_mode,
            "disable_web_page_preview": False,
        }
        await self._call("sendMessage", payload)

    async def fetch_recent(self, limit: int) -> list[ChannelMessage]:
        raise ChannelUnavailable("The Bot API cannot read chat history")

    async def own_id(self) -> int:
        if self._own_id is None:
            result = await self._call("getMe")
            self._own_id = int(result["id"])
        return self._own_id
