"""Ports (interfaces) used by the relay engine.

Ports define the minimal contracts for the upstream feed, the downstream chat
and cursor persistence so that the core can be reused with different backends.
"""

from __future__ import annotations

from typing import Protocol

from core.models import ChannelMessage, Cursor, DeliveryOutcome, Item, PollBatch


class UpstreamFeed(Protocol):
    """Source of new items for a single subject."""

    subject_id: str

    async def fetch_since(self, cursor: Cursor) -> PollBatch:
        ...


class Channel(Protocol):
    """Downstream chat the relay posts into."""

    async def send(self, text: str) -> None:
        ...

    async def fetch_recent(self, limit: int) -> list[ChannelMessage]:
        ...

    async def own_id(self) -> int:
        ...


class CursorStore(Protocol):
    """Owner of the last-delivered marker."""

    async def load(self) -> Cursor:
        ...

    async def read(self) -> Cursor:
        ...

    async def advance(self, item_id: int) -> None:
        ...


class Relay(Protocol):
    async def deliver(self, item: Item, initial: bool = False) -> DeliveryOutcome:
        ...
