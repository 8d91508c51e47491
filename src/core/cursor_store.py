"""Cursor store strategies that need no storage of their own.

- MemoryCursorStore: process-local, always cold after a restart
- RecoveryScanCursorStore: rebuilds the cursor from the relay's own messages
  in the downstream chat
"""

from __future__ import annotations

import logging
from typing import Optional

from core.errors import ChannelUnavailable
from core.models import ChannelMessage, Cursor
from core.permalinks import extract_item_ids
from core.ports import Channel

LOGGER = logging.getLogger(__name__)


class MemoryCursorStore:
    """Keeps the cursor in memory only."""

    def __init__(self) -> None:
        self._cursor: Cursor = None

    async def load(self) -> Cursor:
        self._cursor = None
        return None

    async def read(self) -> Cursor:
        return self._cursor

    async def advance(self, item_id: int) -> None:
        if self._cursor is None or item_id > self._cursor:
            self._cursor = item_id


def newest_own_item_id(messages: list[ChannelMessage], own_id: Optional[int], handle: str) -> Cursor:
    """Return the newest item id from relay permalinks in the relay's own messages.

    Links to other accounts never count, even in outgoing messages.
    """

    newest: Cursor = None
    for message in messages:
        if not (message.outgoing or (own_id is not None and message.author_id == own_id)):
            continue
        for item_id in extract_item_ids(message.text, handle):
            if newest is None or item_id > newest:
                newest = item_id
    return newest


class RecoveryScanCursorStore:
    """Reconstruct the cursor by scanning recent messages in the chat.

    The chat history is the durable state; ``advance`` only mirrors the value
    in memory so ticks do not rescan unless ``rescan_each_tick`` is set.
    """

    def __init__(self, channel: Channel, handle: str, scan_limit: int = 20, rescan_each_tick: bool = False) -> None:
        if scan_limit < 1:
            raise ValueError("scan_limit must be >= 1")
        self._channel = channel
        self._handle = handle
        self._scan_limit = scan_limit
        self._rescan_each_tick = rescan_each_tick
        self._cursor: Cursor = None

    async def _scan(self) -> Cursor:
        own_id = await self._channel.own_id()
        messages = await self._channel.fetch_recent(self._scan_limit)
        return newest_own_item_id(messages, own_id, self._handle)

    async def load(self) -> Cursor:
        """Scan the chat; ChannelUnavailable propagates to the caller."""

        found = await self._scan()
        self._merge(found)
        LOGGER.info("Recovered cursor %s from the last %s chat messages", self._cursor, self._scan_limit)
        return self._cursor

    async def read(self) -> Cursor:
        if not self._rescan_each_tick:
            return self._cursor
        try:
            self._merge(await self._scan())
        except ChannelUnavailable as exc:
            LOGGER.warning("Cursor rescan failed, keeping last known cursor %s: %s", self._cursor, exc)
        return self._cursor

    async def advance(self, item_id: int) -> None:
        self._merge(item_id)

    def _merge(self, item_id: Cursor) -> None:
        if item_id is None:
            return
        if self._cursor is None or item_id > self._cursor:
            self._cursor = item_id
